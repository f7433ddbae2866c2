"""
GitHub Catalog - Repository discovery and metric refresh via the GitHub REST API.

The catalog is the only source of item metrics. Each repository is turned
into a RepoItem carrying the two derived metrics the tiering logic needs:

- growth_velocity: stars gained per day over the repository's lifetime
- engagement_score: 0-100 blend of fork ratio, issue activity and topic fit

Callers are responsible for rate limiting; every request made here is one
token of catalog-search or catalog-read.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import aiohttp
import structlog

from ..errors import CatalogError


GITHUB_API_URL = "https://api.github.com"

# Topics that mark a repository as in-scope for analysis
FOCUS_TOPICS = ("ai", "llm", "ml", "gpt", "agent", "machine-learning")


def derive_growth_velocity(stars: int, created_at: Optional[datetime], now: Optional[datetime] = None) -> float:
    """Stars per day since creation (age floored at one day)"""
    if created_at is None:
        return 0.0
    now = now or datetime.now(timezone.utc)
    age_days = (now - created_at).total_seconds() / 86400
    return round(stars / max(age_days, 1.0), 4)


def derive_engagement_score(stars: int, forks: int, open_issues: int, topics: List[str]) -> float:
    """
    Engagement on a 0-100 scale.

    - fork ratio: up to 50 points, saturating at 20% forks/stars
    - issue activity: up to 30 points, saturating at 5% issues/stars
    - topic fit: 10 points per focus topic, up to 20
    """
    if stars <= 0:
        fork_points = 0.0
        issue_points = 0.0
    else:
        fork_points = min(forks / stars / 0.2, 1.0) * 50
        issue_points = min(open_issues / stars / 0.05, 1.0) * 30

    matching = sum(
        1 for topic in topics if any(keyword in topic.lower() for keyword in FOCUS_TOPICS)
    )
    topic_points = min(matching * 10, 20)

    return round(min(fork_points + issue_points + topic_points, 100.0), 2)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass
class RepoItem:
    """A repository as seen by the catalog, with derived metrics"""
    item_id: str  # GitHub full_name, e.g. "owner/name"
    stars: int
    forks: int = 0
    open_issues: int = 0
    created_at: Optional[datetime] = None
    pushed_at: Optional[datetime] = None
    archived: bool = False
    fork: bool = False
    language: Optional[str] = None
    topics: List[str] = field(default_factory=list)
    growth_velocity: float = 0.0
    engagement_score: float = 0.0

    @property
    def is_schedulable(self) -> bool:
        """Archived repositories and forks never enter the tier table"""
        return not self.archived and not self.fork

    @classmethod
    def from_api(cls, data: Dict[str, Any], now: Optional[datetime] = None) -> "RepoItem":
        """Build from a GitHub repository payload"""
        stars = int(data.get("stargazers_count") or 0)
        forks = int(data.get("forks_count") or 0)
        open_issues = int(data.get("open_issues_count") or 0)
        topics = list(data.get("topics") or [])
        created_at = _parse_timestamp(data.get("created_at"))

        return cls(
            item_id=data["full_name"],
            stars=stars,
            forks=forks,
            open_issues=open_issues,
            created_at=created_at,
            pushed_at=_parse_timestamp(data.get("pushed_at")),
            archived=bool(data.get("archived", False)),
            fork=bool(data.get("fork", False)),
            language=data.get("language"),
            topics=topics,
            growth_velocity=derive_growth_velocity(stars, created_at, now),
            engagement_score=derive_engagement_score(stars, forks, open_issues, topics),
        )


class GitHubCatalog:
    """
    Async GitHub REST client for repository search and reads.

    Example:
        >>> async with GitHubCatalog(token="ghp_...") as catalog:
        ...     items = await catalog.search("topic:llm stars:>50")
        ...     item = await catalog.get_repository("owner/name")
    """

    def __init__(
        self,
        token: Optional[str] = None,
        base_url: str = GITHUB_API_URL,
        timeout: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Initialize the catalog client.

        Args:
            token: GitHub token (unauthenticated requests get far lower limits)
            base_url: API root, overridable for GitHub Enterprise
            timeout: Total timeout per request in seconds
            session: Existing session to reuse (not closed by this client)
        """
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

        # Statistics
        self.request_count = 0

        self.logger = structlog.get_logger(__name__)

    async def initialize(self):
        """Create the HTTP session if one was not injected"""
        if self._session is None:
            headers = {
                "Accept": "application/vnd.github+json",
                "User-Agent": "reposcout/1.0",
            }
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._session = aiohttp.ClientSession(
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
            self._owns_session = True

    async def close(self):
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "GitHubCatalog":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if self._session is None:
            await self.initialize()

        url = f"{self.base_url}{path}"
        self.request_count += 1

        try:
            async with self._session.get(url, params=params) as response:
                if response.status >= 400:
                    body = await response.text()
                    status = response.status
                    # GitHub reports exhausted quota as 403, not 429
                    if status == 403 and (
                        response.headers.get("X-RateLimit-Remaining") == "0"
                        or "rate limit" in body.lower()
                    ):
                        status = 429
                    self.logger.warning(
                        "catalog_request_failed",
                        url=url,
                        status=response.status,
                        body=body[:200],
                    )
                    raise CatalogError(f"GitHub API error {response.status}: {body[:200]}", status=status)
                return await response.json()
        except aiohttp.ClientConnectionError as e:
            self.logger.warning("catalog_network_error", url=url, error=str(e))
            raise CatalogError(f"GitHub network error: {e}") from e

    async def search(self, query: str, per_page: int = 30, page: int = 1) -> List[RepoItem]:
        """
        Search repositories, most-starred first.

        Args:
            query: GitHub search qualifier string, e.g. "topic:llm stars:>50"
            per_page: Results per page (GitHub caps this at 100)
            page: 1-based page number

        Returns:
            RepoItems for every result (archived repos and forks included;
            filtering is the caller's decision)
        """
        data = await self._get_json(
            "/search/repositories",
            params={
                "q": query,
                "sort": "stars",
                "order": "desc",
                "per_page": min(per_page, 100),
                "page": page,
            },
        )
        items = [RepoItem.from_api(entry) for entry in data.get("items", [])]

        self.logger.info("catalog_search_complete", query=query, results=len(items))
        return items

    async def get_repository(self, full_name: str) -> RepoItem:
        """
        Fetch current metadata for one repository.

        Raises:
            CatalogError: With status 404 when the repository no longer exists
        """
        data = await self._get_json(f"/repos/{full_name}")
        return RepoItem.from_api(data)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "base_url": self.base_url,
            "authenticated": self.token is not None,
            "requests": self.request_count,
        }
