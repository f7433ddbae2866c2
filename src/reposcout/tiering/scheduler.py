"""
Scan Scheduler - Time-boxed re-scanning of due catalog items, tier by tier.

Each run() is one bounded unit of work: select what is due, process it in
priority order until the wall-clock budget runs out, persist progress and
return. Whatever is left stays due and is picked up by the next run, so an
early stop never corrupts state.

Design Pattern: Select / Process / Persist with a cooperative budget
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence

import structlog

from ..catalog.analysis_client import Analyzer
from ..catalog.github_catalog import RepoItem
from ..core.rate_limiter import ANALYSIS_CALL, CATALOG_READ, CATALOG_SEARCH, RateLimiter
from ..errors import AnalysisTimeoutError, ErrorKind, StoreUnavailableError, classify_error
from ..storage.records import ScanType, TierRecord, utcnow
from ..storage.store import Store
from .assigner import TIERS, TierAssigner, TierPolicy


class ItemSource(Protocol):
    """Read side of the catalog used by the scheduler"""

    async def get_repository(self, full_name: str) -> RepoItem:
        ...

    async def search(self, query: str, per_page: int = 30, page: int = 1) -> List[RepoItem]:
        ...


@dataclass
class SchedulerConfig:
    """Configuration for one scheduler pass"""
    budget_seconds: float = 45.0
    tier_batch_sizes: Dict[int, int] = field(
        default_factory=lambda: {1: 10, 2: 20, 3: 30}
    )
    deep_scan_tiers: Sequence[int] = (1,)
    analysis_timeout: float = 30.0  # Deep scans only; must fit inside the budget

    def __post_init__(self):
        if self.budget_seconds <= 0:
            raise ValueError("budget_seconds must be positive")
        if self.analysis_timeout <= 0:
            raise ValueError("analysis_timeout must be positive")
        for tier in TIERS:
            if tier not in self.tier_batch_sizes:
                raise ValueError(f"no batch size for tier {tier}")
            if self.tier_batch_sizes[tier] < 0:
                raise ValueError(f"batch size for tier {tier} must not be negative")


@dataclass
class SchedulerResult:
    """Outcome of a single run()"""
    processed_counts: Dict[int, int] = field(default_factory=lambda: {1: 0, 2: 0, 3: 0})
    rate_limited: int = 0
    failed: int = 0
    unscheduled: int = 0       # Archived or forked since the last scan
    budget_exhausted: bool = False
    elapsed_seconds: float = 0.0

    @property
    def processed(self) -> int:
        return sum(self.processed_counts.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processedCounts": {f"tier{tier}": count for tier, count in self.processed_counts.items()},
            "processed": self.processed,
            "rateLimited": self.rate_limited,
            "failed": self.failed,
            "unscheduled": self.unscheduled,
            "budgetExhausted": self.budget_exhausted,
            "elapsedSeconds": round(self.elapsed_seconds, 3),
        }


# Outcomes of _process_item
_PROCESSED = "processed"
_RATE_LIMITED = "rate_limited"
_FAILED = "failed"
_UNSCHEDULED = "unscheduled"


class ScanScheduler:
    """
    Periodic, budgeted scanner over the tier table.

    Tiers run 1 -> 2 -> 3; within a tier, due records run by scan_priority
    descending. The rate limiter is only ever checked, never waited on, so
    a depleted bucket costs nothing against the budget.

    Example:
        >>> scheduler = ScanScheduler(store, catalog, analyzer, rate_limiter)
        >>> result = await scheduler.run()
        >>> result.to_dict()["processedCounts"]
        {'tier1': 4, 'tier2': 0, 'tier3': 0}
    """

    def __init__(
        self,
        store: Store,
        catalog: ItemSource,
        analyzer: Optional[Analyzer],
        rate_limiter: RateLimiter,
        assigner: Optional[TierAssigner] = None,
        config: Optional[SchedulerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the scheduler.

        Args:
            store: Persistent tier state
            catalog: Source of fresh item metrics
            analyzer: Analysis call for deep scans (None disables deep scans)
            rate_limiter: Shared limiter
            assigner: Tier rules (defaults to TierAssigner())
            config: Pass configuration
            clock: Monotonic seconds, injectable for deterministic budgets
        """
        self.store = store
        self.catalog = catalog
        self.analyzer = analyzer
        self.rate_limiter = rate_limiter
        self.assigner = assigner or TierAssigner()
        self.config = config or SchedulerConfig()
        self.clock = clock

        self.logger = structlog.get_logger(__name__)

    # ------------------------------------------------------------------
    # Scan pass
    # ------------------------------------------------------------------

    def _over_budget(self, started: float) -> bool:
        return self.clock() - started >= self.config.budget_seconds

    async def run(self, now: Optional[datetime] = None) -> SchedulerResult:
        """
        Process due records until done or out of budget.

        Args:
            now: Reference time for due selection and rescheduling

        Returns:
            Per-tier processed counts and skip/failure tallies

        Raises:
            StoreUnavailableError: The only error that escapes a pass
        """
        now = now or utcnow()
        started = self.clock()
        result = SchedulerResult()

        population = sum((await self.store.tier_counts()).values())
        threshold_active = not self.assigner.uses_percentile(population)

        self.logger.info(
            "scheduler_pass_started",
            budget_seconds=self.config.budget_seconds,
            population=population,
            policy="threshold" if threshold_active else "percentile",
        )

        for tier in TIERS:
            if self._over_budget(started):
                result.budget_exhausted = True
                break

            records = await self.store.due_tiers(tier, now, self.config.tier_batch_sizes[tier])
            if not records:
                continue

            self.logger.debug("scheduler_tier_selected", tier=tier, due=len(records))

            for record in records:
                if self._over_budget(started):
                    result.budget_exhausted = True
                    break

                outcome = await self._process_item(record, now, threshold_active, started)
                if outcome == _PROCESSED:
                    result.processed_counts[tier] += 1
                elif outcome == _RATE_LIMITED:
                    result.rate_limited += 1
                elif outcome == _UNSCHEDULED:
                    result.unscheduled += 1
                else:
                    result.failed += 1

            if result.budget_exhausted:
                break

        result.elapsed_seconds = self.clock() - started

        if result.budget_exhausted:
            self.logger.warning(
                "scheduler_budget_exhausted",
                processed=result.processed,
                elapsed_seconds=round(result.elapsed_seconds, 3),
            )

        self.logger.info(
            "scheduler_pass_complete",
            tier1=result.processed_counts[1],
            tier2=result.processed_counts[2],
            tier3=result.processed_counts[3],
            rate_limited=result.rate_limited,
            failed=result.failed,
            unscheduled=result.unscheduled,
        )
        return result

    async def _process_item(self, record: TierRecord, now: datetime, threshold_active: bool, started: float) -> str:
        deep = record.tier in self.config.deep_scan_tiers and self.analyzer is not None

        # Both buckets are checked before either token is spent
        if self.rate_limiter.get_wait_time(CATALOG_READ) > 0:
            self.logger.debug("scheduler_item_rate_limited", item_id=record.item_id, resource=CATALOG_READ)
            return _RATE_LIMITED
        if deep and self.rate_limiter.get_wait_time(ANALYSIS_CALL) > 0:
            self.logger.debug("scheduler_item_rate_limited", item_id=record.item_id, resource=ANALYSIS_CALL)
            return _RATE_LIMITED
        if not self.rate_limiter.check_limit(CATALOG_READ):
            return _RATE_LIMITED
        if deep and not self.rate_limiter.check_limit(ANALYSIS_CALL):
            return _RATE_LIMITED

        try:
            item = await self.catalog.get_repository(record.item_id)

            if not item.is_schedulable:
                await self.store.delete_tier(record.item_id)
                self.logger.info(
                    "scheduler_item_unscheduled",
                    item_id=record.item_id,
                    archived=item.archived,
                    fork=item.fork,
                )
                return _UNSCHEDULED

            analysis = None
            if deep:
                analysis = await self._analyze(record.item_id, started)

        except StoreUnavailableError:
            raise
        except Exception as e:
            classified = classify_error(e)
            if classified.kind is ErrorKind.NOT_FOUND:
                # Keep the record but push it out a full cadence
                record.next_scan_due = self.assigner.next_due(record.tier, now)
                await self.store.save_tier_scan(record)
                self.logger.warning(
                    "scheduler_item_not_found",
                    item_id=record.item_id,
                    next_scan_due=record.next_scan_due.isoformat(),
                )
            else:
                self.logger.error(
                    "scheduler_item_failed",
                    item_id=record.item_id,
                    tier=record.tier,
                    error_kind=classified.kind.value,
                    error=str(e),
                )
            return _FAILED

        if analysis is not None:
            await self.store.save_analysis(record.item_id, analysis, analyzed_at=now)

        self._refresh(record, item, now, threshold_active, ScanType.DEEP if deep else ScanType.BASIC)
        await self.store.save_tier_scan(record)

        self.logger.debug(
            "scheduler_item_scanned",
            item_id=record.item_id,
            tier=record.tier,
            scan_type="deep" if deep else "basic",
            scan_priority=record.scan_priority,
        )
        return _PROCESSED

    async def _analyze(self, item_id: str, started: float) -> Any:
        """Deep-scan analysis, cut off at whichever ends first: its timeout or the pass budget"""
        remaining = self.config.budget_seconds - (self.clock() - started)
        if remaining <= 0:
            raise AnalysisTimeoutError(f"Budget spent before analysis of {item_id}")

        timeout = min(self.config.analysis_timeout, remaining)
        try:
            return await asyncio.wait_for(self.analyzer(item_id), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise AnalysisTimeoutError(f"Analysis of {item_id} exceeded {timeout:.1f}s") from e

    def _refresh(self, record: TierRecord, item: RepoItem, now: datetime, threshold_active: bool, scan_type: ScanType):
        """Fold fresh catalog metrics and the scan outcome into the record"""
        record.stars = item.stars
        record.growth_velocity = item.growth_velocity
        record.engagement_score = item.engagement_score
        record.scan_priority = self.assigner.priority(
            item.growth_velocity, item.engagement_score, item.stars
        )

        # Percentile tiers are only rewritten by rebalance()
        if threshold_active:
            record.tier = self.assigner.classify(item.stars, item.growth_velocity)

        if scan_type is ScanType.DEEP:
            record.last_deep_scan = now
        else:
            record.last_basic_scan = now
        record.next_scan_due = self.assigner.next_due(record.tier, now)

    # ------------------------------------------------------------------
    # Population maintenance
    # ------------------------------------------------------------------

    async def ingest(self, items: Iterable[RepoItem], now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Add discovered items to the tier table.

        Archived repositories and forks are dropped. Known items get their
        metrics refreshed; their schedule is left alone.

        Returns:
            Counts of created, updated and filtered items
        """
        now = now or utcnow()
        counts = {"created": 0, "updated": 0, "filtered": 0}

        for item in items:
            if not item.is_schedulable:
                counts["filtered"] += 1
                continue
            created = await self.store.ingest_tier(self.assigner.assign(item, now))
            counts["created" if created else "updated"] += 1

        self.logger.info("scheduler_ingest_complete", **counts)
        return counts

    async def discover(
        self,
        queries: Sequence[str],
        per_page: int = 30,
        now: Optional[datetime] = None,
    ) -> Dict[str, int]:
        """
        Run catalog search strategies and ingest what they return.

        A failing query is logged and skipped; the others still run.
        """
        found: Dict[str, RepoItem] = {}
        failed_queries = 0

        for query in queries:
            await self.rate_limiter.acquire(CATALOG_SEARCH)
            try:
                items = await self.catalog.search(query, per_page=per_page)
            except Exception as e:
                failed_queries += 1
                classified = classify_error(e)
                self.logger.error(
                    "discovery_query_failed",
                    query=query,
                    error_kind=classified.kind.value,
                    error=str(e),
                )
                continue

            for item in items:
                found.setdefault(item.item_id, item)

        counts = await self.ingest(found.values(), now)
        counts["failed_queries"] = failed_queries
        return counts

    async def rebalance(self) -> Dict[int, int]:
        """
        Re-tier the whole population.

        Uses percentile ranking when the population is large enough,
        otherwise the threshold rule for every record. Priorities are
        refreshed too; schedule fields are not touched.

        Returns:
            Number of records per tier after the pass
        """
        records = await self.store.all_tiers()
        if not records:
            return {1: 0, 2: 0, 3: 0}

        if self.assigner.uses_percentile(len(records)):
            assignments = self.assigner.rank(records)
            policy = TierPolicy.PERCENTILE
        else:
            assignments = {
                record.item_id: self.assigner.classify(record.stars, record.growth_velocity)
                for record in records
            }
            policy = TierPolicy.THRESHOLD

        priorities = {
            record.item_id: self.assigner.priority(
                record.growth_velocity, record.engagement_score, record.stars
            )
            for record in records
        }
        await self.store.update_tier_assignments(assignments, priorities)

        counts = {1: 0, 2: 0, 3: 0}
        for tier in assignments.values():
            counts[tier] += 1

        moved = sum(1 for record in records if assignments[record.item_id] != record.tier)
        self.logger.info(
            "scheduler_rebalance_complete",
            policy=policy.value,
            population=len(records),
            moved=moved,
            tier1=counts[1],
            tier2=counts[2],
            tier3=counts[3],
        )
        return counts
