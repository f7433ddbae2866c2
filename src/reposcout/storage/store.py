"""
Store - Async SQLite persistence for tier, batch and analysis state.

The store is the single source of truth. Every public method runs under one
asyncio lock so that a multi-statement transaction from one coroutine never
interleaves with statements from another on the shared connection.

Any sqlite failure (or use of a closed store) surfaces as
StoreUnavailableError, the only error the scheduler and orchestrator treat
as fatal.
"""

import asyncio
import json
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple, Union

import aiosqlite
import structlog

from ..errors import StoreUnavailableError
from .records import (
    Batch,
    BatchItem,
    BatchStatus,
    ItemState,
    TierRecord,
    from_iso,
    to_iso,
    utcnow,
)


SCHEMA = """
CREATE TABLE IF NOT EXISTS tiers (
    item_id TEXT PRIMARY KEY,
    tier INTEGER NOT NULL CHECK (tier IN (1, 2, 3)),
    stars INTEGER NOT NULL,
    growth_velocity REAL NOT NULL,
    engagement_score REAL NOT NULL,
    scan_priority INTEGER NOT NULL,
    last_deep_scan TEXT,
    last_basic_scan TEXT,
    next_scan_due TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_tiers_due ON tiers (tier, next_scan_due);

CREATE TABLE IF NOT EXISTS batches (
    batch_id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    total INTEGER NOT NULL,
    completed_count INTEGER NOT NULL DEFAULT 0,
    failed_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    finished_at TEXT,
    stop_reason TEXT,
    options TEXT NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS batch_items (
    batch_id TEXT NOT NULL,
    item_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    state TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    error_kind TEXT,
    retryable INTEGER,
    error_message TEXT,
    duration_ms INTEGER,
    PRIMARY KEY (batch_id, item_id)
);

CREATE TABLE IF NOT EXISTS analyses (
    item_id TEXT PRIMARY KEY,
    analyzed_at TEXT NOT NULL,
    result TEXT NOT NULL
);
"""


class Store:
    """
    SQLite-backed store for TierRecords, Batches, BatchItems and analyses.

    Example:
        >>> store = Store("reposcout.db")
        >>> await store.connect()
        >>> due = await store.due_tiers(tier=1, now=utcnow(), limit=10)
        >>> await store.close()
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        """
        Initialize the store.

        Args:
            db_path: SQLite file path, or ":memory:" for an ephemeral store
        """
        self.db_path = str(db_path)
        self._connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

        self.logger = structlog.get_logger(__name__)

    async def connect(self):
        """Open the connection and create tables"""
        if self._connection is not None:
            return

        try:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self._connection = await aiosqlite.connect(
                self.db_path, timeout=30, isolation_level=None
            )
            self._connection.row_factory = aiosqlite.Row
            if self.db_path != ":memory:":
                await self._connection.execute("PRAGMA journal_mode=WAL;")
            await self._connection.execute("PRAGMA busy_timeout=30000;")
            await self._connection.executescript(SCHEMA)
        except (sqlite3.Error, OSError) as e:
            self.logger.error("store_connect_failed", db_path=self.db_path, error=str(e))
            raise StoreUnavailableError(f"Cannot open store at {self.db_path}: {e}") from e

        self.logger.info("store_connected", db_path=self.db_path)

    async def close(self):
        """Close the connection; later calls raise StoreUnavailableError"""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            self.logger.info("store_closed", db_path=self.db_path)

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    def _conn(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise StoreUnavailableError("Store is not connected")
        return self._connection

    @asynccontextmanager
    async def _reading(self) -> AsyncIterator[aiosqlite.Connection]:
        async with self._lock:
            conn = self._conn()
            try:
                yield conn
            except sqlite3.Error as e:
                raise StoreUnavailableError(str(e)) from e

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run the body inside BEGIN/COMMIT; any failure rolls back"""
        async with self._lock:
            conn = self._conn()
            try:
                await conn.execute("BEGIN")
                yield conn
                await conn.execute("COMMIT")
            except sqlite3.Error as e:
                await self._rollback(conn)
                raise StoreUnavailableError(str(e)) from e
            except BaseException:
                await self._rollback(conn)
                raise

    async def _rollback(self, conn: aiosqlite.Connection):
        try:
            await conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            # Nothing to roll back once the connection itself is gone
            self.logger.warning("store_rollback_failed", error=str(e))

    # ------------------------------------------------------------------
    # Tier records
    # ------------------------------------------------------------------

    @staticmethod
    def _tier_from_row(row: aiosqlite.Row) -> TierRecord:
        return TierRecord(
            item_id=row["item_id"],
            tier=row["tier"],
            stars=row["stars"],
            growth_velocity=row["growth_velocity"],
            engagement_score=row["engagement_score"],
            scan_priority=row["scan_priority"],
            last_deep_scan=from_iso(row["last_deep_scan"]),
            last_basic_scan=from_iso(row["last_basic_scan"]),
            next_scan_due=from_iso(row["next_scan_due"]),
        )

    async def ingest_tier(self, record: TierRecord) -> bool:
        """
        Insert a new TierRecord, or refresh metrics of an existing one.

        The schedule of an existing record (tier, scan timestamps,
        next_scan_due) is left alone.

        Returns:
            True if the record was created, False if it already existed
        """
        async with self.transaction() as conn:
            cursor = await conn.execute(
                "SELECT 1 FROM tiers WHERE item_id = ?", (record.item_id,)
            )
            exists = await cursor.fetchone() is not None

            if exists:
                await conn.execute(
                    """
                    UPDATE tiers
                    SET stars = ?, growth_velocity = ?, engagement_score = ?,
                        scan_priority = ?, updated_at = ?
                    WHERE item_id = ?
                    """,
                    (
                        record.stars,
                        record.growth_velocity,
                        record.engagement_score,
                        record.scan_priority,
                        to_iso(utcnow()),
                        record.item_id,
                    ),
                )
            else:
                await conn.execute(
                    """
                    INSERT INTO tiers (
                        item_id, tier, stars, growth_velocity, engagement_score,
                        scan_priority, last_deep_scan, last_basic_scan,
                        next_scan_due, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.item_id,
                        record.tier,
                        record.stars,
                        record.growth_velocity,
                        record.engagement_score,
                        record.scan_priority,
                        to_iso(record.last_deep_scan),
                        to_iso(record.last_basic_scan),
                        to_iso(record.next_scan_due),
                        to_iso(utcnow()),
                    ),
                )
            return not exists

    async def save_tier_scan(self, record: TierRecord) -> bool:
        """
        Persist the outcome of a scheduler scan.

        next_scan_due never moves backwards: the stored value becomes the
        later of the current and the proposed due time.

        Returns:
            True if a row was updated
        """
        async with self.transaction() as conn:
            cursor = await conn.execute(
                """
                UPDATE tiers
                SET tier = ?, stars = ?, growth_velocity = ?, engagement_score = ?,
                    scan_priority = ?, last_deep_scan = ?, last_basic_scan = ?,
                    next_scan_due = MAX(next_scan_due, ?), updated_at = ?
                WHERE item_id = ?
                """,
                (
                    record.tier,
                    record.stars,
                    record.growth_velocity,
                    record.engagement_score,
                    record.scan_priority,
                    to_iso(record.last_deep_scan),
                    to_iso(record.last_basic_scan),
                    to_iso(record.next_scan_due),
                    to_iso(utcnow()),
                    record.item_id,
                ),
            )
            return cursor.rowcount > 0

    async def update_tier_assignments(self, assignments: Dict[str, int], priorities: Optional[Dict[str, int]] = None):
        """Rewrite tiers (and optionally priorities) in one transaction"""
        priorities = priorities or {}
        async with self.transaction() as conn:
            for item_id, tier in assignments.items():
                if item_id in priorities:
                    await conn.execute(
                        "UPDATE tiers SET tier = ?, scan_priority = ?, updated_at = ? WHERE item_id = ?",
                        (tier, priorities[item_id], to_iso(utcnow()), item_id),
                    )
                else:
                    await conn.execute(
                        "UPDATE tiers SET tier = ?, updated_at = ? WHERE item_id = ?",
                        (tier, to_iso(utcnow()), item_id),
                    )

    async def delete_tier(self, item_id: str) -> bool:
        """Take an item off the schedule; False if it was not tiered"""
        async with self.transaction() as conn:
            cursor = await conn.execute("DELETE FROM tiers WHERE item_id = ?", (item_id,))
            return cursor.rowcount > 0

    async def get_tier(self, item_id: str) -> Optional[TierRecord]:
        async with self._reading() as conn:
            cursor = await conn.execute("SELECT * FROM tiers WHERE item_id = ?", (item_id,))
            row = await cursor.fetchone()
        return self._tier_from_row(row) if row else None

    async def list_tier(self, tier: int, limit: Optional[int] = None) -> List[TierRecord]:
        """Records of one tier, most urgent first"""
        sql = "SELECT * FROM tiers WHERE tier = ? ORDER BY scan_priority DESC, item_id ASC"
        params: Sequence[Any] = (tier,)
        if limit is not None:
            sql += " LIMIT ?"
            params = (tier, limit)

        async with self._reading() as conn:
            cursor = await conn.execute(sql, params)
            rows = await cursor.fetchall()
        return [self._tier_from_row(row) for row in rows]

    async def all_tiers(self) -> List[TierRecord]:
        async with self._reading() as conn:
            cursor = await conn.execute("SELECT * FROM tiers ORDER BY item_id ASC")
            rows = await cursor.fetchall()
        return [self._tier_from_row(row) for row in rows]

    async def due_tiers(self, tier: int, now: datetime, limit: int) -> List[TierRecord]:
        """Due records of one tier, highest scan_priority first"""
        async with self._reading() as conn:
            cursor = await conn.execute(
                """
                SELECT * FROM tiers
                WHERE tier = ? AND next_scan_due <= ?
                ORDER BY scan_priority DESC, item_id ASC
                LIMIT ?
                """,
                (tier, to_iso(now), limit),
            )
            rows = await cursor.fetchall()
        return [self._tier_from_row(row) for row in rows]

    async def tier_counts(self) -> Dict[int, int]:
        async with self._reading() as conn:
            cursor = await conn.execute("SELECT tier, COUNT(*) AS n FROM tiers GROUP BY tier")
            rows = await cursor.fetchall()
        counts = {1: 0, 2: 0, 3: 0}
        for row in rows:
            counts[row["tier"]] = row["n"]
        return counts

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    @staticmethod
    def _batch_from_row(row: aiosqlite.Row) -> Batch:
        return Batch(
            batch_id=row["batch_id"],
            status=BatchStatus(row["status"]),
            total=row["total"],
            completed_count=row["completed_count"],
            failed_count=row["failed_count"],
            created_at=from_iso(row["created_at"]),
            finished_at=from_iso(row["finished_at"]),
            stop_reason=row["stop_reason"],
            options=json.loads(row["options"]),
        )

    @staticmethod
    def _item_from_row(row: aiosqlite.Row) -> BatchItem:
        retryable = row["retryable"]
        return BatchItem(
            batch_id=row["batch_id"],
            item_id=row["item_id"],
            position=row["position"],
            state=ItemState(row["state"]),
            attempts=row["attempts"],
            error_kind=row["error_kind"],
            retryable=None if retryable is None else bool(retryable),
            error_message=row["error_message"],
            duration_ms=row["duration_ms"],
        )

    async def create_batch(self, batch: Batch, items: Sequence[BatchItem]):
        """Insert a batch and all its items atomically"""
        async with self.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO batches (
                    batch_id, status, total, completed_count, failed_count,
                    created_at, finished_at, options
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    batch.batch_id,
                    batch.status.value,
                    batch.total,
                    batch.completed_count,
                    batch.failed_count,
                    to_iso(batch.created_at),
                    to_iso(batch.finished_at),
                    json.dumps(batch.options),
                ),
            )
            await conn.executemany(
                """
                INSERT INTO batch_items (batch_id, item_id, position, state, attempts)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (item.batch_id, item.item_id, item.position, item.state.value, item.attempts)
                    for item in items
                ],
            )

    async def get_batch(self, batch_id: str) -> Optional[Batch]:
        async with self._reading() as conn:
            cursor = await conn.execute("SELECT * FROM batches WHERE batch_id = ?", (batch_id,))
            row = await cursor.fetchone()
        return self._batch_from_row(row) if row else None

    async def get_batch_status(self, batch_id: str) -> Optional[BatchStatus]:
        """Cheap status poll used at item boundaries"""
        async with self._reading() as conn:
            cursor = await conn.execute("SELECT status FROM batches WHERE batch_id = ?", (batch_id,))
            row = await cursor.fetchone()
        return BatchStatus(row["status"]) if row else None

    async def list_batches(self) -> List[Batch]:
        async with self._reading() as conn:
            cursor = await conn.execute("SELECT * FROM batches ORDER BY created_at DESC")
            rows = await cursor.fetchall()
        return [self._batch_from_row(row) for row in rows]

    async def list_batch_items(self, batch_id: str) -> List[BatchItem]:
        async with self._reading() as conn:
            cursor = await conn.execute(
                "SELECT * FROM batch_items WHERE batch_id = ? ORDER BY position ASC",
                (batch_id,),
            )
            rows = await cursor.fetchall()
        return [self._item_from_row(row) for row in rows]

    async def get_batch_snapshot(self, batch_id: str) -> Optional[Tuple[Batch, List[BatchItem]]]:
        """Batch and its items read together, so counters always match item states"""
        async with self._reading() as conn:
            cursor = await conn.execute("SELECT * FROM batches WHERE batch_id = ?", (batch_id,))
            row = await cursor.fetchone()
            if row is None:
                return None
            cursor = await conn.execute(
                "SELECT * FROM batch_items WHERE batch_id = ? ORDER BY position ASC",
                (batch_id,),
            )
            item_rows = await cursor.fetchall()
        return self._batch_from_row(row), [self._item_from_row(r) for r in item_rows]

    async def mark_item_running(self, batch_id: str, item_id: str, attempts: int) -> bool:
        """
        Move an item to RUNNING for its next attempt.

        Returns:
            False if the item no longer exists (batch cleared)
        """
        async with self.transaction() as conn:
            cursor = await conn.execute(
                """
                UPDATE batch_items SET state = ?, attempts = ?
                WHERE batch_id = ? AND item_id = ?
                """,
                (ItemState.RUNNING.value, attempts, batch_id, item_id),
            )
            return cursor.rowcount > 0

    async def record_item_result(
        self,
        item: BatchItem,
        completed_delta: int = 0,
        failed_delta: int = 0,
    ) -> bool:
        """
        Write an item transition and the matching counter change together.

        Returns:
            False if the item no longer exists; nothing is written then
        """
        async with self.transaction() as conn:
            cursor = await conn.execute(
                """
                UPDATE batch_items
                SET state = ?, attempts = ?, error_kind = ?, retryable = ?,
                    error_message = ?, duration_ms = ?
                WHERE batch_id = ? AND item_id = ?
                """,
                (
                    item.state.value,
                    item.attempts,
                    item.error_kind,
                    None if item.retryable is None else int(item.retryable),
                    item.error_message,
                    item.duration_ms,
                    item.batch_id,
                    item.item_id,
                ),
            )
            if cursor.rowcount == 0:
                return False

            if completed_delta or failed_delta:
                await conn.execute(
                    """
                    UPDATE batches
                    SET completed_count = completed_count + ?, failed_count = failed_count + ?
                    WHERE batch_id = ?
                    """,
                    (completed_delta, failed_delta, item.batch_id),
                )
            return True

    async def transition_batch(
        self, batch_id: str, status: BatchStatus, reason: Optional[str] = None
    ) -> bool:
        """
        Move a RUNNING batch to a terminal status.

        Args:
            batch_id: Batch to finish
            status: Terminal status
            reason: Optional stop reason stored with the batch

        Returns:
            True only for the call that performed the transition
        """
        async with self.transaction() as conn:
            cursor = await conn.execute(
                """
                UPDATE batches SET status = ?, finished_at = ?, stop_reason = ?
                WHERE batch_id = ? AND status = ?
                """,
                (status.value, to_iso(utcnow()), reason, batch_id, BatchStatus.RUNNING.value),
            )
            return cursor.rowcount > 0

    async def clear_batches(self) -> int:
        """Delete every batch and batch item; returns the number of batches"""
        async with self.transaction() as conn:
            cursor = await conn.execute("SELECT COUNT(*) AS n FROM batches")
            count = (await cursor.fetchone())["n"]
            await conn.execute("DELETE FROM batch_items")
            await conn.execute("DELETE FROM batches")
        return count

    # ------------------------------------------------------------------
    # Analyses
    # ------------------------------------------------------------------

    async def save_analysis(self, item_id: str, result: Any, analyzed_at: Optional[datetime] = None):
        async with self.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO analyses (item_id, analyzed_at, result) VALUES (?, ?, ?)
                ON CONFLICT(item_id) DO UPDATE SET
                    analyzed_at = excluded.analyzed_at, result = excluded.result
                """,
                (item_id, to_iso(analyzed_at or utcnow()), json.dumps(result, default=str)),
            )

    async def get_analysis(self, item_id: str) -> Optional[Dict[str, Any]]:
        async with self._reading() as conn:
            cursor = await conn.execute("SELECT * FROM analyses WHERE item_id = ?", (item_id,))
            row = await cursor.fetchone()
        if row is None:
            return None
        return {
            "item_id": row["item_id"],
            "analyzed_at": from_iso(row["analyzed_at"]),
            "result": json.loads(row["result"]),
        }

    async def recently_analyzed(self, item_ids: Sequence[str], since: datetime) -> set:
        """Subset of item_ids with an analysis at or after since"""
        found = set()
        async with self._reading() as conn:
            # Stay under SQLite's bound-variable limit
            for start in range(0, len(item_ids), 500):
                chunk = list(item_ids[start:start + 500])
                placeholders = ", ".join("?" * len(chunk))
                cursor = await conn.execute(
                    f"SELECT item_id FROM analyses WHERE analyzed_at >= ? AND item_id IN ({placeholders})",
                    (to_iso(since), *chunk),
                )
                found.update(row["item_id"] for row in await cursor.fetchall())
        return found
