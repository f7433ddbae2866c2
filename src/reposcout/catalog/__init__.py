"""
Catalog module - External collaborators.

- GitHubCatalog: repository search and reads (GitHub REST API)
- AnalysisClient: the slow external analysis service
- RepoItem: repository metadata with derived tiering metrics
"""

from .github_catalog import (
    GitHubCatalog,
    RepoItem,
    derive_engagement_score,
    derive_growth_velocity,
)
from .analysis_client import AnalysisClient, Analyzer


__all__ = [
    # Clients
    "GitHubCatalog",
    "AnalysisClient",
    "Analyzer",
    # Data structures
    "RepoItem",
    "derive_engagement_score",
    "derive_growth_velocity",
]
