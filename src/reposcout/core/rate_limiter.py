"""
Rate Limiter - Per-resource token buckets shared by every external caller.

Each named resource (catalog search, catalog reads, analysis calls) owns an
independent token bucket. Callers that must not block use check_limit() and
skip work when it returns False; callers that can afford to wait use
acquire(), which sleeps for get_wait_time() and then retries.

Design Pattern: Token Bucket (one bucket per resource key)
"""

import asyncio
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

import structlog


CATALOG_SEARCH = "catalog-search"
CATALOG_READ = "catalog-read"
ANALYSIS_CALL = "analysis-call"


class RateLimitError(Exception):
    """Raised when a token is not available within the caller's patience"""
    pass


@dataclass
class RateLimitConfig:
    """Configuration for a single resource bucket"""
    capacity: float = 10.0     # Maximum burst size (tokens)
    refill_rate: float = 30.0  # Tokens added per interval
    interval: float = 60.0     # Interval length (seconds)

    def __post_init__(self):
        if self.capacity < 1:
            raise ValueError("capacity must allow at least one token")
        if self.refill_rate <= 0 or self.interval <= 0:
            raise ValueError("refill_rate and interval must be positive")

    @property
    def tokens_per_second(self) -> float:
        return self.refill_rate / self.interval


# Conservative limits carried over from production usage
DEFAULT_RESOURCE_LIMITS: Dict[str, RateLimitConfig] = {
    CATALOG_SEARCH: RateLimitConfig(capacity=3, refill_rate=10, interval=60),
    CATALOG_READ: RateLimitConfig(capacity=10, refill_rate=30, interval=60),
    ANALYSIS_CALL: RateLimitConfig(capacity=2, refill_rate=5, interval=60),
}


@dataclass
class RateLimitStatus:
    """Point-in-time view of one bucket"""
    key: str
    remaining: int
    capacity: int
    reset_time: datetime  # When the bucket will be full again

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "remaining": self.remaining,
            "capacity": self.capacity,
            "reset_time": self.reset_time.isoformat(),
        }


class _TokenBucket:
    """Mutable bucket state; all access goes through its lock"""

    def __init__(self, config: RateLimitConfig, now: float):
        self.config = config
        self.tokens = float(config.capacity)
        self.last_refill = now
        self.lock = threading.Lock()

    def refill(self, now: float):
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(
            float(self.config.capacity),
            self.tokens + elapsed * self.config.tokens_per_second,
        )
        self.last_refill = now


class RateLimiter:
    """
    Keyed token-bucket rate limiter.

    Buckets are created lazily on first use. Keys without an explicit
    configuration share the default config but never share tokens.

    Example:
        >>> limiter = RateLimiter()
        >>> if limiter.check_limit("catalog-read"):
        ...     await catalog.get_repository("owner/name")
        >>> await limiter.acquire("analysis-call")  # waits if needed
    """

    def __init__(
        self,
        limits: Optional[Dict[str, RateLimitConfig]] = None,
        default_config: Optional[RateLimitConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the rate limiter.

        Args:
            limits: Per-key bucket configuration (uses DEFAULT_RESOURCE_LIMITS if None)
            default_config: Config for keys missing from limits
            clock: Monotonic clock used for refill arithmetic
            wall_clock: Wall clock used to report reset times
        """
        self.limits = dict(DEFAULT_RESOURCE_LIMITS if limits is None else limits)
        self.default_config = default_config or RateLimitConfig()
        self._clock = clock
        self._wall_clock = wall_clock
        self._buckets: Dict[str, _TokenBucket] = {}
        self._registry_lock = threading.Lock()

        self.logger = structlog.get_logger(__name__)

        self.logger.info(
            "rate_limiter_initialized",
            keys=sorted(self.limits),
            default_capacity=self.default_config.capacity,
        )

    def _bucket(self, key: str) -> _TokenBucket:
        with self._registry_lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                config = self.limits.get(key, self.default_config)
                bucket = _TokenBucket(config, self._clock())
                self._buckets[key] = bucket
            return bucket

    def check_limit(self, key: str) -> bool:
        """
        Consume one token for key if available.

        Never blocks. Returns False when the bucket is empty so the caller
        can skip the work and leave it for a later pass.
        """
        bucket = self._bucket(key)
        with bucket.lock:
            bucket.refill(self._clock())
            if bucket.tokens >= 1:
                bucket.tokens -= 1
                return True

        self.logger.debug("rate_limit_denied", key=key)
        return False

    def get_wait_time(self, key: str) -> float:
        """Seconds until the next token for key becomes available"""
        bucket = self._bucket(key)
        with bucket.lock:
            bucket.refill(self._clock())
            if bucket.tokens >= 1:
                return 0.0
            return (1 - bucket.tokens) / bucket.config.tokens_per_second

    async def acquire(self, key: str, max_wait: Optional[float] = None):
        """
        Wait until a token for key is available, then consume it.

        Args:
            key: Resource key
            max_wait: Give up with RateLimitError if a single wait would exceed this

        Raises:
            RateLimitError: If the required wait exceeds max_wait
        """
        while not self.check_limit(key):
            wait = self.get_wait_time(key)
            if max_wait is not None and wait > max_wait:
                raise RateLimitError(
                    f"Token for {key} not available within {max_wait:.2f}s (needs {wait:.2f}s)"
                )

            self.logger.debug("rate_limit_deferred", key=key, wait=f"{wait:.2f}s")
            # Floor keeps float rounding from spinning on an almost-full token
            await asyncio.sleep(max(wait, 0.001))

    def status(self, key: str) -> RateLimitStatus:
        """Remaining tokens and the time at which the bucket is full again"""
        bucket = self._bucket(key)
        with bucket.lock:
            bucket.refill(self._clock())
            missing = bucket.config.capacity - bucket.tokens
            seconds_to_full = missing / bucket.config.tokens_per_second
            remaining = int(bucket.tokens)
            capacity = int(bucket.config.capacity)

        reset_time = datetime.fromtimestamp(self._wall_clock(), tz=timezone.utc) + timedelta(
            seconds=seconds_to_full
        )
        return RateLimitStatus(
            key=key,
            remaining=remaining,
            capacity=capacity,
            reset_time=reset_time,
        )

    def reset(self, key: Optional[str] = None):
        """Refill one bucket (or all buckets). Only for tests and operators."""
        with self._registry_lock:
            if key is None:
                self._buckets.clear()
            else:
                self._buckets.pop(key, None)

        self.logger.info("rate_limiter_reset", key=key or "all")

    def get_stats(self) -> dict:
        """
        Get status for every configured or used key.

        Returns:
            Dictionary keyed by resource name
        """
        with self._registry_lock:
            keys = set(self.limits) | set(self._buckets)
        return {key: self.status(key).to_dict() for key in sorted(keys)}


_global_limiter: Optional[RateLimiter] = None
_global_lock = threading.Lock()


def get_rate_limiter() -> RateLimiter:
    """Process-wide limiter shared by the scheduler and the orchestrator"""
    global _global_limiter
    with _global_lock:
        if _global_limiter is None:
            _global_limiter = RateLimiter()
        return _global_limiter


def reset_rate_limiter(limits: Optional[Dict[str, RateLimitConfig]] = None) -> RateLimiter:
    """Replace the process-wide limiter. Never called by normal operation."""
    global _global_limiter
    with _global_lock:
        _global_limiter = RateLimiter(limits=limits)
        return _global_limiter
