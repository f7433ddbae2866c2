"""
Core module - Batch orchestration and shared admission control.

This package contains the components every external call goes through.
"""

from .orchestrator import BatchConfig, BatchOrchestrator, BatchStatusReport, backoff_delay
from .rate_limiter import (
    ANALYSIS_CALL,
    CATALOG_READ,
    CATALOG_SEARCH,
    RateLimitConfig,
    RateLimiter,
    RateLimitError,
    RateLimitStatus,
    get_rate_limiter,
    reset_rate_limiter,
)


__all__ = [
    # Orchestration
    "BatchConfig",
    "BatchOrchestrator",
    "BatchStatusReport",
    "backoff_delay",
    # Rate limiting
    "ANALYSIS_CALL",
    "CATALOG_READ",
    "CATALOG_SEARCH",
    "RateLimitConfig",
    "RateLimiter",
    "RateLimitError",
    "RateLimitStatus",
    "get_rate_limiter",
    "reset_rate_limiter",
]
