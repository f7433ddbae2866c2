"""
Integration test for the full scouting pipeline.

This test drives ScoutService end-to-end against an in-memory store and
in-process fakes for GitHub and the analysis service:
1. Discovery (search -> filter -> tier assignment)
2. Scheduled scan (tier-ordered refresh, deep analysis for tier 1)
3. Batch analysis (start -> wait -> clear)
"""

import pytest
import pytest_asyncio
from datetime import datetime, timezone
from typing import Dict, List

from reposcout.catalog import RepoItem
from reposcout.config import BatchSettings, DiscoverySettings, Settings
from reposcout.core.rate_limiter import ANALYSIS_CALL, CATALOG_READ, CATALOG_SEARCH, RateLimitConfig, RateLimiter
from reposcout.errors import BatchNotFoundError, ConfigError
from reposcout.service import ScoutService
from reposcout.storage import Store


NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)

REPOS = {
    "acme/rocket": RepoItem(item_id="acme/rocket", stars=5000, growth_velocity=50.0, engagement_score=60.0),
    "acme/agent": RepoItem(item_id="acme/agent", stars=300, growth_velocity=15.0, engagement_score=40.0),
    "acme/steady": RepoItem(item_id="acme/steady", stars=80, growth_velocity=2.0, engagement_score=10.0),
    "acme/tiny": RepoItem(item_id="acme/tiny", stars=5, growth_velocity=0.1, engagement_score=0.0),
    "acme/rocket-fork": RepoItem(item_id="acme/rocket-fork", stars=40, fork=True),
}


class FakeGitHub:
    """Catalog serving a fixed set of repositories"""

    def __init__(self):
        self.searches: List[str] = []
        self.reads: List[str] = []
        self.results: Dict[str, List[str]] = {
            "topic:llm": ["acme/rocket", "acme/agent", "acme/rocket-fork"],
            "topic:ai": ["acme/agent", "acme/steady", "acme/tiny"],
        }

    async def search(self, query: str, per_page: int = 30, page: int = 1) -> List[RepoItem]:
        self.searches.append(query)
        return [REPOS[item_id] for item_id in self.results.get(query, [])]

    async def get_repository(self, full_name: str) -> RepoItem:
        self.reads.append(full_name)
        return REPOS[full_name]


class FakeAnalysis:
    def __init__(self):
        self.calls: List[str] = []

    async def __call__(self, item_id: str) -> Dict[str, str]:
        self.calls.append(item_id)
        return {"item_id": item_id, "summary": f"analysis of {item_id}"}


@pytest_asyncio.fixture
async def service():
    settings = Settings(
        discovery=DiscoverySettings(queries=["topic:llm", "topic:ai"]),
        batch=BatchSettings(base_delay=0.01, item_timeout=5.0),
    )
    limiter = RateLimiter(limits={
        key: RateLimitConfig(capacity=100, refill_rate=100)
        for key in (CATALOG_SEARCH, CATALOG_READ, ANALYSIS_CALL)
    })
    service = ScoutService(
        settings,
        store=Store(":memory:"),
        catalog=FakeGitHub(),
        analyzer=FakeAnalysis(),
        rate_limiter=limiter,
    )
    await service.start()
    yield service
    await service.close()


@pytest.mark.integration
@pytest.mark.asyncio
async def test_full_scouting_pipeline(service):
    """
    Test complete pipeline: Discover -> Schedule -> Batch -> Clear
    """
    # ========================================
    # Phase 1: Discovery
    # ========================================
    discovered = await service.discover(now=NOW)

    assert discovered == {"created": 4, "updated": 0, "filtered": 1, "failed_queries": 0}
    assert service.catalog.searches == ["topic:llm", "topic:ai"]

    tier1 = [record.item_id for record in await service.list_tier(1)]
    assert sorted(tier1) == ["acme/agent", "acme/rocket"]
    assert [r.item_id for r in await service.list_tier(2)] == ["acme/steady"]
    assert [r.item_id for r in await service.list_tier(3)] == ["acme/tiny"]

    # ========================================
    # Phase 2: Scheduled scan
    # ========================================
    summary = await service.run_scheduler(now=NOW)

    assert summary["processedCounts"] == {"tier1": 2, "tier2": 1, "tier3": 1}
    assert summary["budgetExhausted"] is False
    assert summary["failed"] == 0
    # Tier 1 is read first and is the only tier deep-scanned
    assert set(service.catalog.reads[:2]) == {"acme/rocket", "acme/agent"}
    assert sorted(service.analyzer.calls) == ["acme/agent", "acme/rocket"]

    rescan = await service.run_scheduler(now=NOW)
    assert rescan["processed"] == 0

    # Small population stays on the threshold rule
    assert await service.rebalance() == {"tier1": 2, "tier2": 1, "tier3": 1}

    # ========================================
    # Phase 3: Batch analysis
    # ========================================
    started = await service.start_batch(target="tier1", force=True)
    report = await service.wait_for_batch(started["batch_id"], timeout=5)

    assert report["status"] == "completed"
    assert report["completed"] == 2
    assert report["failed"] == 0
    assert sorted(item["item_id"] for item in report["items"]) == ["acme/agent", "acme/rocket"]

    batches = await service.list_batches()
    assert [b["batch_id"] for b in batches] == [started["batch_id"]]

    assert await service.clear_batches() == {"batchesCleared": 1}
    with pytest.raises(BatchNotFoundError):
        await service.get_batch_status(started["batch_id"])


@pytest.mark.integration
@pytest.mark.asyncio
async def test_batch_over_all_tiers_with_chunking(service):
    """Test target=all honours chunk_size and start_index"""
    await service.discover(now=NOW)

    started = await service.start_batch(target="all", force=True, chunk_size=2, start_index=1)
    report = await service.wait_for_batch(started["batch_id"], timeout=5)

    assert report["total"] == 2
    assert report["status"] == "completed"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_batch_requires_analysis_service():
    """Test batches are refused when no analysis service is configured"""
    service = ScoutService(Settings(), store=Store(":memory:"), catalog=FakeGitHub())
    await service.start()
    try:
        with pytest.raises(ConfigError):
            await service.start_batch(target="tier1")
    finally:
        await service.close()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
