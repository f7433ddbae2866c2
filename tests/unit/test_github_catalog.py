"""
Unit tests for the GitHub catalog and the analysis client.

Run with: pytest tests/unit/test_github_catalog.py -v
"""

import pytest
import aiohttp
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from reposcout.catalog import (
    AnalysisClient,
    GitHubCatalog,
    RepoItem,
    derive_engagement_score,
    derive_growth_velocity,
)
from reposcout.errors import AnalysisError, CatalogError, ErrorKind, classify_error


NOW = datetime(2025, 1, 15, tzinfo=timezone.utc)


class FakeResponse:
    """Stands in for aiohttp.ClientResponse inside `async with`"""

    def __init__(self, status=200, payload=None, body="", headers=None, json_error=None):
        self.status = status
        self.payload = payload
        self.body = body
        self.headers = headers or {}
        self.json_error = json_error

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def text(self):
        return self.body

    async def json(self):
        if self.json_error is not None:
            raise self.json_error
        return self.payload


def _repo_payload(**overrides):
    payload = {
        "full_name": "acme/agent",
        "stargazers_count": 1000,
        "forks_count": 100,
        "open_issues_count": 25,
        "created_at": "2024-12-16T00:00:00Z",
        "pushed_at": "2025-01-14T08:30:00Z",
        "archived": False,
        "fork": False,
        "language": "Python",
        "topics": ["llm", "agents", "cli"],
    }
    payload.update(overrides)
    return payload


def _session(response=None, side_effect=None) -> MagicMock:
    session = MagicMock()
    session.get.return_value = response
    session.post.return_value = response
    if side_effect is not None:
        session.get.side_effect = side_effect
        session.post.side_effect = side_effect
    return session


class TestDerivedMetrics:
    """Test suite for growth velocity and engagement"""

    def test_growth_velocity(self):
        """Test stars per day since creation"""
        assert derive_growth_velocity(300, NOW - timedelta(days=30), NOW) == 10.0

    def test_growth_velocity_floors_age(self):
        """Test a repository younger than a day counts as one day old"""
        assert derive_growth_velocity(50, NOW - timedelta(hours=2), NOW) == 50.0

    def test_growth_velocity_unknown_creation(self):
        """Test missing creation date yields zero"""
        assert derive_growth_velocity(50, None, NOW) == 0.0

    def test_engagement_saturates(self):
        """Test every component caps at its maximum"""
        score = derive_engagement_score(100, forks=100, open_issues=100, topics=["llm", "ai", "gpt"])
        assert score == 100.0

    def test_engagement_components(self):
        """Test fork, issue and topic points add up"""
        # 10% forks -> 25, 2.5% issues -> 15, one focus topic -> 10
        score = derive_engagement_score(1000, forks=100, open_issues=25, topics=["llm", "cli"])
        assert score == 50.0

    def test_engagement_without_stars(self):
        """Test ratios are skipped when there are no stars"""
        assert derive_engagement_score(0, forks=5, open_issues=5, topics=[]) == 0.0


class TestRepoItem:
    """Test suite for RepoItem.from_api()"""

    def test_from_api(self):
        """Test payload fields and derived metrics"""
        item = RepoItem.from_api(_repo_payload(), now=NOW)

        assert item.item_id == "acme/agent"
        assert item.stars == 1000
        assert item.created_at == datetime(2024, 12, 16, tzinfo=timezone.utc)
        assert item.growth_velocity == round(1000 / 30, 4)
        assert item.engagement_score > 0
        assert item.is_schedulable

    def test_forks_and_archived_not_schedulable(self):
        """Test forks and archived repositories are flagged"""
        assert not RepoItem.from_api(_repo_payload(fork=True), now=NOW).is_schedulable
        assert not RepoItem.from_api(_repo_payload(archived=True), now=NOW).is_schedulable

    def test_missing_optional_fields(self):
        """Test nulls in the payload fall back to defaults"""
        item = RepoItem.from_api({"full_name": "a/b", "stargazers_count": None, "topics": None}, now=NOW)

        assert item.stars == 0
        assert item.topics == []
        assert item.created_at is None


class TestGitHubCatalog:
    """Test suite for GitHubCatalog"""

    @pytest.mark.asyncio
    async def test_get_repository(self):
        """Test a repository read"""
        session = _session(FakeResponse(payload=_repo_payload()))
        catalog = GitHubCatalog(session=session)

        item = await catalog.get_repository("acme/agent")

        assert item.item_id == "acme/agent"
        assert session.get.call_args[0][0] == "https://api.github.com/repos/acme/agent"
        assert catalog.get_stats()["requests"] == 1

    @pytest.mark.asyncio
    async def test_search_params(self):
        """Test search sorts by stars and caps per_page"""
        payload = {"items": [_repo_payload(), _repo_payload(full_name="acme/other")]}
        session = _session(FakeResponse(payload=payload))
        catalog = GitHubCatalog(session=session)

        items = await catalog.search("topic:llm", per_page=500)

        assert [i.item_id for i in items] == ["acme/agent", "acme/other"]
        params = session.get.call_args[1]["params"]
        assert params["sort"] == "stars"
        assert params["per_page"] == 100

    @pytest.mark.asyncio
    async def test_not_found(self):
        """Test a deleted repository surfaces as not_found"""
        catalog = GitHubCatalog(session=_session(FakeResponse(status=404, body="Not Found")))

        with pytest.raises(CatalogError) as exc_info:
            await catalog.get_repository("acme/gone")

        assert exc_info.value.status == 404
        assert classify_error(exc_info.value).kind is ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_quota_403_is_rate_limit(self):
        """Test exhausted quota reported as 403 is treated as 429"""
        response = FakeResponse(status=403, body="API rate limit exceeded", headers={"X-RateLimit-Remaining": "0"})
        catalog = GitHubCatalog(session=_session(response))

        with pytest.raises(CatalogError) as exc_info:
            await catalog.get_repository("acme/agent")

        assert exc_info.value.status == 429
        assert classify_error(exc_info.value).kind is ErrorKind.RATE_LIMIT

    @pytest.mark.asyncio
    async def test_plain_403_is_auth(self):
        """Test a 403 that is not about quota stays an auth error"""
        catalog = GitHubCatalog(session=_session(FakeResponse(status=403, body="Resource not accessible")))

        with pytest.raises(CatalogError) as exc_info:
            await catalog.get_repository("acme/private")

        assert exc_info.value.status == 403

    @pytest.mark.asyncio
    async def test_network_error(self):
        """Test connection failures become retryable catalog errors"""
        catalog = GitHubCatalog(session=_session(side_effect=aiohttp.ClientConnectionError("reset")))

        with pytest.raises(CatalogError) as exc_info:
            await catalog.get_repository("acme/agent")

        assert classify_error(exc_info.value).kind is ErrorKind.NETWORK

    @pytest.mark.asyncio
    async def test_injected_session_not_closed(self):
        """Test close() leaves an injected session alone"""
        session = _session()
        catalog = GitHubCatalog(session=session)

        await catalog.close()

        session.close.assert_not_called()


class TestAnalysisClient:
    """Test suite for AnalysisClient"""

    @pytest.mark.asyncio
    async def test_analyze(self):
        """Test the request body and returned payload"""
        session = _session(FakeResponse(payload={"result": {"score": 7}}))
        client = AnalysisClient("https://analysis.local/", session=session)

        result = await client("acme/agent")

        assert result == {"result": {"score": 7}}
        assert session.post.call_args[0][0] == "https://analysis.local/analyze"
        assert session.post.call_args[1]["json"] == {"item_id": "acme/agent"}

    @pytest.mark.asyncio
    async def test_http_error_carries_status(self):
        """Test service rejections keep their HTTP status"""
        client = AnalysisClient("https://analysis.local", session=_session(FakeResponse(status=429, body="slow down")))

        with pytest.raises(AnalysisError) as exc_info:
            await client.analyze("acme/agent")

        assert exc_info.value.status == 429
        assert classify_error(exc_info.value).retryable

    @pytest.mark.asyncio
    async def test_error_payload(self):
        """Test an error body without a result is a failure"""
        response = FakeResponse(payload={"error": "No README found"})
        client = AnalysisClient("https://analysis.local", session=_session(response))

        with pytest.raises(AnalysisError) as exc_info:
            await client.analyze("acme/empty")

        assert classify_error(exc_info.value).kind is ErrorKind.MISSING_INPUT

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        """Test an HTML error page is reported as an analysis error"""
        response = FakeResponse(json_error=aiohttp.ContentTypeError(MagicMock(), ()))
        client = AnalysisClient("https://analysis.local", session=_session(response))

        with pytest.raises(AnalysisError):
            await client.analyze("acme/agent")

    @pytest.mark.asyncio
    async def test_network_error(self):
        """Test connection failures are wrapped"""
        client = AnalysisClient(
            "https://analysis.local",
            session=_session(side_effect=aiohttp.ClientConnectionError("refused")),
        )

        with pytest.raises(AnalysisError) as exc_info:
            await client.analyze("acme/agent")

        assert classify_error(exc_info.value).kind is ErrorKind.NETWORK


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
