"""
Scout Service - Facade wiring the store, clients, scheduler and orchestrator.

This is the request surface the CLI (or any other front end) talks to. It
owns component construction and lifecycle; every operation returns plain
dicts or records so callers never reach into the components.

Usage:
    async with ScoutService(load_settings()) as service:
        await service.discover()
        summary = await service.run_scheduler()
"""

import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

import structlog

from .catalog.analysis_client import AnalysisClient, Analyzer
from .catalog.github_catalog import GitHubCatalog
from .config import Settings
from .core.orchestrator import BatchOrchestrator
from .core.rate_limiter import RateLimiter
from .errors import ConfigError
from .storage.records import TierRecord
from .storage.store import Store
from .tiering.assigner import TIERS, TierAssigner
from .tiering.scheduler import ItemSource, ScanScheduler


BATCH_TARGETS = ("tier1", "tier2", "tier3", "all")


async def _analysis_not_configured(item_id: str) -> Any:
    raise ConfigError("analysis_url is not configured")


class ScoutService:
    """
    Main entry point for discovery, scheduling and batch analysis.

    Collaborators can be injected (tests do this); anything not injected
    is built from settings when the service starts.

    Example:
        >>> service = ScoutService(settings)
        >>> await service.start()
        >>> result = await service.start_batch(target="tier1")
        >>> status = await service.wait_for_batch(result["batch_id"])
        >>> await service.close()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[Store] = None,
        catalog: Optional[ItemSource] = None,
        analyzer: Optional[Analyzer] = None,
        rate_limiter: Optional[RateLimiter] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the service.

        Args:
            settings: Application settings (defaults when None)
            store: Store to use instead of one at settings.db_path
            catalog: Item source to use instead of a GitHubCatalog
            analyzer: Analysis call to use instead of an AnalysisClient
            rate_limiter: Limiter to use instead of one built from settings
            clock: Monotonic clock for the scheduler budget
        """
        self.settings = settings or Settings()

        self.store = store or Store(self.settings.db_path)
        self.rate_limiter = rate_limiter or RateLimiter(limits=self.settings.rate_limit_configs())

        # Clients created here are closed by close()
        self._owned_clients: List[Any] = []
        if catalog is None:
            catalog = GitHubCatalog(
                token=self.settings.github_token,
                base_url=self.settings.github_api_url,
            )
            self._owned_clients.append(catalog)
        if analyzer is None and self.settings.analysis_url:
            analyzer = AnalysisClient(
                base_url=self.settings.analysis_url,
                api_key=self.settings.analysis_api_key,
            )
            self._owned_clients.append(analyzer)

        self.catalog = catalog
        self.analyzer = analyzer

        self.assigner = TierAssigner(self.settings.tier_config())
        self.scheduler = ScanScheduler(
            store=self.store,
            catalog=self.catalog,
            analyzer=self.analyzer,
            rate_limiter=self.rate_limiter,
            assigner=self.assigner,
            config=self.settings.scheduler_config(),
            clock=clock,
        )
        self.orchestrator = BatchOrchestrator(
            store=self.store,
            analyzer=self.analyzer or _analysis_not_configured,
            rate_limiter=self.rate_limiter,
            config=self.settings.batch_config(),
        )

        self.logger = structlog.get_logger(__name__)

    async def start(self):
        """Connect the store and open HTTP sessions"""
        await self.store.connect()
        for client in self._owned_clients:
            await client.initialize()
        self.logger.info(
            "service_started",
            db_path=self.store.db_path,
            analysis_enabled=self.analyzer is not None,
        )

    async def close(self):
        for client in self._owned_clients:
            await client.close()
        await self.store.close()

    async def __aenter__(self) -> "ScoutService":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def _target_items(self, target: str) -> List[str]:
        if target not in BATCH_TARGETS:
            raise ValueError(f"Unknown target {target!r}; expected one of {', '.join(BATCH_TARGETS)}")
        tiers = TIERS if target == "all" else (int(target[-1]),)

        item_ids: List[str] = []
        for tier in tiers:
            item_ids.extend(record.item_id for record in await self.store.list_tier(tier))
        return item_ids

    async def start_batch(
        self,
        target: Optional[str] = None,
        item_ids: Optional[Sequence[str]] = None,
        force: bool = False,
        chunk_size: Optional[int] = None,
        start_index: int = 0,
    ) -> Dict[str, Any]:
        """
        Start a batch over a tier (or all tiers) or an explicit item list.

        Args:
            target: "tier1", "tier2", "tier3" or "all"
            item_ids: Explicit items; takes precedence over target
            force: Ignore recent analyses
            chunk_size: Process at most this many items
            start_index: Offset of the chunk

        Returns:
            {"batch_id": ...}
        """
        if self.analyzer is None:
            raise ConfigError("analysis_url is not configured; batches cannot run")
        if item_ids is None:
            if target is None:
                raise ValueError("Either target or item_ids is required")
            item_ids = await self._target_items(target)

        batch_id = await self.orchestrator.start(
            item_ids,
            force=force,
            chunk_size=chunk_size,
            start_index=start_index,
        )
        return {"batch_id": batch_id}

    async def get_batch_status(self, batch_id: str) -> Dict[str, Any]:
        report = await self.orchestrator.status(batch_id)
        return report.to_dict()

    async def stop_batch(self, batch_id: str) -> Dict[str, Any]:
        status = await self.orchestrator.stop(batch_id)
        return {"batch_id": batch_id, "status": status.value}

    async def clear_batches(self) -> Dict[str, Any]:
        return {"batchesCleared": await self.orchestrator.clear()}

    async def retry_failed(self, batch_id: str) -> Dict[str, Any]:
        return {"batch_id": await self.orchestrator.retry_failed(batch_id)}

    async def wait_for_batch(self, batch_id: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        report = await self.orchestrator.wait(batch_id, timeout=timeout)
        return report.to_dict()

    async def list_batches(self) -> List[Dict[str, Any]]:
        return [
            {
                "batch_id": batch.batch_id,
                "status": batch.status.value,
                "total": batch.total,
                "completed": batch.completed_count,
                "failed": batch.failed_count,
                "created_at": batch.created_at.isoformat(),
                "stop_reason": batch.stop_reason,
            }
            for batch in await self.store.list_batches()
        ]

    # ------------------------------------------------------------------
    # Tiers and scheduling
    # ------------------------------------------------------------------

    async def list_tier(self, tier: int, limit: Optional[int] = None) -> List[TierRecord]:
        if tier not in TIERS:
            raise ValueError(f"Unknown tier: {tier}")
        return await self.store.list_tier(tier, limit=limit)

    async def run_scheduler(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        result = await self.scheduler.run(now)
        return result.to_dict()

    async def discover(self, now: Optional[datetime] = None) -> Dict[str, int]:
        return await self.scheduler.discover(
            self.settings.discovery.queries,
            per_page=self.settings.discovery.per_page,
            now=now,
        )

    async def rebalance(self) -> Dict[str, int]:
        counts = await self.scheduler.rebalance()
        return {f"tier{tier}": count for tier, count in counts.items()}

    def get_limits(self) -> Dict[str, Any]:
        return self.rate_limiter.get_stats()
