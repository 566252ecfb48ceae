"""
Rate limiting for Streamgate.

Fixed-interval counters per identifier: a bucket opens on first use with
reset_at = now + window, every call increments it (denied calls included),
and a call is allowed while count <= limit.

The in-memory limiter is local process state. Its guarantees hold for a
single instance only; multi-instance deployments must use the Redis-backed
limiter so that all instances share one counter per identifier.

Fail-open: callers let the request through if the limiter itself errors.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Protocol, runtime_checkable

from streamgate.core.errors import FailurePolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitConfig:
    """Limit and window for one class of endpoint."""

    limit: int
    window_seconds: float

    def __post_init__(self) -> None:
        if self.limit < 0:
            raise ValueError("limit must be >= 0")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")


# Presets per endpoint class
RATE_LIMITS: dict[str, RateLimitConfig] = {
    "query": RateLimitConfig(limit=120, window_seconds=60),
    "auth": RateLimitConfig(limit=10, window_seconds=60),
    "upload": RateLimitConfig(limit=10, window_seconds=300),
    "ai": RateLimitConfig(limit=5, window_seconds=60),
    "write": RateLimitConfig(limit=30, window_seconds=60),
    "impression": RateLimitConfig(limit=30, window_seconds=60),
}

DEFAULT_CONFIG = RateLimitConfig(limit=60, window_seconds=60)


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one rate limit check."""

    allowed: bool
    remaining: int
    reset_at: float  # Unix timestamp when the current window closes
    count: int
    limit: int
    retry_after: float = 0.0  # Seconds until a new window opens, when denied

    def headers(self) -> dict[str, str]:
        """Standard X-RateLimit-* response headers."""
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at)),
        }


def _retry_after(count: int, limit: int, seconds_left: float) -> float:
    return 0.0 if count <= limit else max(0.0, seconds_left)


@runtime_checkable
class RateLimiter(Protocol):
    """
    Protocol for rate limiter implementations.

    check() must serialize increments for the same identifier.
    """

    failure_policy: FailurePolicy

    def check(self, identifier: str, config: RateLimitConfig = DEFAULT_CONFIG) -> RateLimitDecision:
        """Increment the identifier's counter and report whether it is allowed."""
        ...

    def reset(self, identifier: str) -> bool:
        """Forget an identifier's bucket. Returns True if one existed."""
        ...


@dataclass
class RateLimitBucket:
    """Counter for one identifier."""

    identifier: str
    count: int
    reset_at: float


class InMemoryRateLimiter:
    """
    In-memory fixed-window rate limiter for single-instance deployments.

    Usage:
        limiter = InMemoryRateLimiter()
        limiter.start_sweeper()

        decision = limiter.check(f"query:{ip}", RATE_LIMITS["query"])
        if not decision.allowed:
            raise RateLimitExceeded(retry_after=decision.retry_after)
    """

    failure_policy = FailurePolicy.OPEN

    def __init__(
        self,
        *,
        sweep_interval: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize rate limiter.

        Args:
            sweep_interval: Seconds between background sweeps of expired buckets
            clock: Time source (seconds since epoch)
        """
        self._buckets: dict[str, RateLimitBucket] = {}
        self._lock = threading.RLock()
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._stop = threading.Event()
        self._sweeper: threading.Thread | None = None

    def check(self, identifier: str, config: RateLimitConfig = DEFAULT_CONFIG) -> RateLimitDecision:
        now = self._clock()

        with self._lock:
            bucket = self._buckets.get(identifier)
            if bucket is None or now > bucket.reset_at:
                bucket = RateLimitBucket(
                    identifier=identifier,
                    count=0,
                    reset_at=now + config.window_seconds,
                )
                self._buckets[identifier] = bucket

            # Denied calls still consume a slot
            bucket.count += 1

            return RateLimitDecision(
                allowed=bucket.count <= config.limit,
                remaining=max(0, config.limit - bucket.count),
                reset_at=bucket.reset_at,
                count=bucket.count,
                limit=config.limit,
                retry_after=_retry_after(bucket.count, config.limit, bucket.reset_at - now),
            )

    def reset(self, identifier: str) -> bool:
        with self._lock:
            return self._buckets.pop(identifier, None) is not None

    def sweep(self) -> int:
        """
        Remove expired buckets.

        Returns:
            Number of buckets removed
        """
        now = self._clock()
        with self._lock:
            expired = [key for key, bucket in self._buckets.items() if now > bucket.reset_at]
            for key in expired:
                del self._buckets[key]
        return len(expired)

    def start_sweeper(self) -> None:
        """Start the background sweep thread (idempotent)."""
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop,
            name="streamgate-rate-limit-sweep",
            daemon=True,
        )
        self._sweeper.start()

    def stop_sweeper(self, timeout: float = 1.0) -> None:
        """Stop the background sweep thread."""
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout)
            self._sweeper = None

    @property
    def sweeper_running(self) -> bool:
        return self._sweeper is not None and self._sweeper.is_alive()

    @property
    def tracked_keys(self) -> int:
        """Number of live buckets."""
        with self._lock:
            return len(self._buckets)

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self._sweep_interval):
            try:
                removed = self.sweep()
            except Exception:
                logger.exception("Rate limit sweep failed")
                continue
            if removed:
                logger.debug("Swept %d expired rate limit buckets", removed)


class RedisRateLimiter:
    """
    Redis-backed fixed-window rate limiter for multi-instance deployments.

    Each identifier is one counter key with a TTL equal to the window, so
    every instance sharing the Redis server sees the same count.

    Requires:
        pip install redis

    Usage:
        import redis
        client = redis.Redis.from_url("redis://localhost:6379/0")
        limiter = RedisRateLimiter(client)
    """

    failure_policy = FailurePolicy.OPEN

    def __init__(
        self,
        redis_client: Any,  # redis.Redis
        *,
        key_prefix: str = "streamgate:ratelimit:",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis_client
        self._key_prefix = key_prefix
        self._clock = clock

    def check(self, identifier: str, config: RateLimitConfig = DEFAULT_CONFIG) -> RateLimitDecision:
        key = f"{self._key_prefix}{identifier}"
        window_ms = int(config.window_seconds * 1000)

        pipe = self._redis.pipeline()
        pipe.incr(key)
        pipe.pttl(key)
        count, ttl_ms = pipe.execute()

        # New key, or a key that somehow lost its TTL
        if count == 1 or ttl_ms is None or ttl_ms < 0:
            self._redis.pexpire(key, window_ms)
            ttl_ms = window_ms

        count = int(count)
        return RateLimitDecision(
            allowed=count <= config.limit,
            remaining=max(0, config.limit - count),
            reset_at=self._clock() + ttl_ms / 1000.0,
            count=count,
            limit=config.limit,
            retry_after=_retry_after(count, config.limit, ttl_ms / 1000.0),
        )

    def reset(self, identifier: str) -> bool:
        return self._redis.delete(f"{self._key_prefix}{identifier}") > 0


def client_identifier(headers: Mapping[str, str], peer: str | None = None) -> str:
    """
    Best-effort client address for rate limiting.

    First X-Forwarded-For hop, then X-Real-IP, then the socket peer.
    """
    normalized = {k.lower(): v for k, v in headers.items()}
    forwarded = normalized.get("x-forwarded-for", "")
    first_hop = forwarded.split(",")[0].strip()
    if first_hop:
        return first_hop
    real_ip = normalized.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip
    return peer or "unknown"
