"""
Unit tests for the aiosqlite Store.

Run with: pytest tests/unit/test_store.py -v
"""

import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone

from reposcout.errors import StoreUnavailableError
from reposcout.storage import (
    Batch,
    BatchItem,
    BatchStatus,
    ItemState,
    Store,
    TierRecord,
)


NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


def make_record(item_id: str, tier: int = 1, scan_priority: int = 5, due: datetime = NOW) -> TierRecord:
    return TierRecord(
        item_id=item_id,
        tier=tier,
        stars=100,
        growth_velocity=2.0,
        engagement_score=30.0,
        scan_priority=scan_priority,
        next_scan_due=due,
    )


@pytest_asyncio.fixture
async def store():
    store = Store(":memory:")
    await store.connect()
    yield store
    await store.close()


class TestTierRecords:
    """Test suite for tier persistence"""

    @pytest.mark.asyncio
    async def test_ingest_creates_then_updates(self, store):
        """Test ingest_tier() inserts once and refreshes metrics afterwards"""
        assert await store.ingest_tier(make_record("a/one")) is True

        refreshed = make_record("a/one", tier=3, due=NOW + timedelta(days=9))
        refreshed.stars = 500
        assert await store.ingest_tier(refreshed) is False

        record = await store.get_tier("a/one")
        assert record.stars == 500
        assert record.tier == 1                 # schedule untouched
        assert record.next_scan_due == NOW

    @pytest.mark.asyncio
    async def test_due_tiers_ordering(self, store):
        """Test due selection orders by priority then item id"""
        await store.ingest_tier(make_record("b/low", scan_priority=1))
        await store.ingest_tier(make_record("b/high", scan_priority=9))
        await store.ingest_tier(make_record("a/high", scan_priority=9))
        await store.ingest_tier(make_record("c/later", scan_priority=99, due=NOW + timedelta(hours=1)))
        await store.ingest_tier(make_record("d/other-tier", tier=2, scan_priority=50))

        due = await store.due_tiers(tier=1, now=NOW, limit=10)

        assert [r.item_id for r in due] == ["a/high", "b/high", "b/low"]

    @pytest.mark.asyncio
    async def test_due_tiers_limit(self, store):
        """Test the per-tier cap is applied"""
        for i in range(5):
            await store.ingest_tier(make_record(f"r/{i}", scan_priority=i))

        due = await store.due_tiers(tier=1, now=NOW, limit=2)

        assert [r.item_id for r in due] == ["r/4", "r/3"]

    @pytest.mark.asyncio
    async def test_next_scan_due_never_moves_back(self, store):
        """Test save_tier_scan() keeps the later due time"""
        await store.ingest_tier(make_record("a/one"))
        record = await store.get_tier("a/one")

        record.next_scan_due = NOW + timedelta(hours=6)
        await store.save_tier_scan(record)
        record.next_scan_due = NOW + timedelta(hours=1)
        await store.save_tier_scan(record)

        stored = await store.get_tier("a/one")
        assert stored.next_scan_due == NOW + timedelta(hours=6)

    @pytest.mark.asyncio
    async def test_update_tier_assignments(self, store):
        """Test tiers and priorities are rewritten together"""
        await store.ingest_tier(make_record("a/one", tier=1))
        await store.ingest_tier(make_record("a/two", tier=1))

        await store.update_tier_assignments({"a/one": 3, "a/two": 2}, {"a/one": 42})

        assert (await store.get_tier("a/one")).tier == 3
        assert (await store.get_tier("a/one")).scan_priority == 42
        assert (await store.tier_counts()) == {1: 0, 2: 1, 3: 1}

    @pytest.mark.asyncio
    async def test_delete_tier(self, store):
        """Test a deleted record is gone and no longer due"""
        await store.ingest_tier(make_record("a/one"))

        assert await store.delete_tier("a/one") is True
        assert await store.delete_tier("a/one") is False
        assert await store.get_tier("a/one") is None
        assert await store.due_tiers(tier=1, now=NOW, limit=10) == []


class TestBatches:
    """Test suite for batch persistence"""

    async def _create(self, store, batch_id="b1", items=("x/1", "x/2")):
        batch = Batch(batch_id=batch_id, status=BatchStatus.RUNNING, total=len(items))
        await store.create_batch(batch, [
            BatchItem(batch_id=batch_id, item_id=item_id, position=i) for i, item_id in enumerate(items)
        ])

    @pytest.mark.asyncio
    async def test_record_item_result_updates_counters(self, store):
        """Test item transition and counter change are written together"""
        await self._create(store)

        item = BatchItem(batch_id="b1", item_id="x/1", position=0, state=ItemState.SUCCESS, attempts=1)
        assert await store.record_item_result(item, completed_delta=1) is True

        batch = await store.get_batch("b1")
        assert batch.completed_count == 1
        assert batch.pending_count == 1
        assert (await store.list_batch_items("b1"))[0].state is ItemState.SUCCESS

    @pytest.mark.asyncio
    async def test_transition_only_from_running(self, store):
        """Test a batch reaches a terminal status exactly once"""
        await self._create(store)

        assert await store.transition_batch("b1", BatchStatus.STOPPED) is True
        assert await store.transition_batch("b1", BatchStatus.COMPLETED) is False
        assert await store.get_batch_status("b1") is BatchStatus.STOPPED
        assert (await store.get_batch("b1")).finished_at is not None
        assert (await store.get_batch("b1")).stop_reason is None

    @pytest.mark.asyncio
    async def test_transition_stores_stop_reason(self, store):
        """Test an auto-stop keeps its reason"""
        await self._create(store)

        assert await store.transition_batch("b1", BatchStatus.STOPPED, reason="max_runtime") is True
        assert (await store.get_batch("b1")).stop_reason == "max_runtime"

    @pytest.mark.asyncio
    async def test_clear_then_late_result_is_dropped(self, store):
        """Test writes after clear_batches() never recreate rows"""
        await self._create(store)
        await self._create(store, batch_id="b2", items=("y/1",))

        assert await store.clear_batches() == 2

        late = BatchItem(batch_id="b1", item_id="x/1", position=0, state=ItemState.SUCCESS, attempts=1)
        assert await store.record_item_result(late, completed_delta=1) is False
        assert await store.mark_item_running("b1", "x/2", 1) is False
        assert await store.get_batch("b1") is None
        assert await store.list_batch_items("b1") == []

    @pytest.mark.asyncio
    async def test_options_round_trip(self, store):
        """Test batch options are stored as JSON"""
        batch = Batch(batch_id="b3", status=BatchStatus.COMPLETED, total=0, options={"force": True})
        await store.create_batch(batch, [])

        assert (await store.get_batch("b3")).options == {"force": True}


class TestAnalyses:
    """Test suite for analysis records"""

    @pytest.mark.asyncio
    async def test_recently_analyzed(self, store):
        """Test freshness filter by timestamp"""
        await store.save_analysis("a/fresh", {"score": 1}, analyzed_at=NOW)
        await store.save_analysis("a/stale", {"score": 2}, analyzed_at=NOW - timedelta(days=3))

        fresh = await store.recently_analyzed(["a/fresh", "a/stale", "a/never"], NOW - timedelta(days=1))

        assert fresh == {"a/fresh"}

    @pytest.mark.asyncio
    async def test_save_analysis_upserts(self, store):
        """Test saving twice keeps the latest result"""
        await store.save_analysis("a/one", {"v": 1}, analyzed_at=NOW)
        await store.save_analysis("a/one", {"v": 2}, analyzed_at=NOW + timedelta(hours=1))

        analysis = await store.get_analysis("a/one")
        assert analysis["result"] == {"v": 2}


class TestUnavailable:
    """Test suite for store failures"""

    @pytest.mark.asyncio
    async def test_closed_store_raises(self):
        """Test every call on a closed store raises StoreUnavailableError"""
        store = Store(":memory:")
        await store.connect()
        await store.close()

        with pytest.raises(StoreUnavailableError):
            await store.get_batch("b1")
        with pytest.raises(StoreUnavailableError):
            await store.ingest_tier(make_record("a/one"))

    @pytest.mark.asyncio
    async def test_unopenable_path_raises(self, tmp_path):
        """Test a path that cannot be opened is reported as unavailable"""
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        store = Store(blocker / "nested" / "db.sqlite")

        with pytest.raises(StoreUnavailableError):
            await store.connect()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
