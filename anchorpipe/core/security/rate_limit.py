"""
Sliding-window rate limiting.

Limits are named by key (``auth:login``, ``ingestion:submit``...) and
applied per client IP. Windows are kept in a Redis sorted set when Redis
is available and in process memory otherwise; Redis errors fall back to
the in-memory store for that request.
"""

import math
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import (
    Awaitable,
    Callable,
    Deque,
    Dict,
    Iterable,
    Mapping,
    Optional,
    Tuple,
)

from redis.exceptions import RedisError

from ..config import get_config
from ..logging import get_logger, security_logger
from ..redis import RedisManager, redis_manager

logger = get_logger(__name__)

ViolationCallback = Callable[[str, str], Awaitable[None]]

# Oldest entries are pruned once the in-memory store grows past this size
MAX_MEMORY_KEYS = 10000


def get_client_ip(headers: Mapping[str, str]) -> str:
    """
    Resolve the client IP from proxy headers.

    Uses the first ``x-forwarded-for`` entry, then ``x-real-ip``, then
    ``"unknown"``.
    """
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return headers.get("x-real-ip") or "unknown"


@dataclass
class RateLimitResult:
    """Outcome of a rate limit check and the headers to send back."""

    allowed: bool
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def retry_after(self) -> Optional[int]:
        value = self.headers.get("Retry-After")
        return int(value) if value is not None else None


@dataclass
class WindowState:
    """Window contents after a hit: count and the oldest timestamp (ms)."""

    allowed: bool
    count: int
    oldest_ms: float


class MemoryWindowStore:
    """Per-key deques of hit timestamps in milliseconds."""

    def __init__(self) -> None:
        self._hits: Dict[str, Deque[float]] = {}

    def hit(
        self, store_key: str, now_ms: float, window_ms: int, max_requests: int
    ) -> WindowState:
        hits = self._hits.setdefault(store_key, deque())
        cutoff = now_ms - window_ms
        while hits and hits[0] <= cutoff:
            hits.popleft()

        allowed = len(hits) < max_requests
        if allowed:
            hits.append(now_ms)

        if len(self._hits) > MAX_MEMORY_KEYS:
            self.prune(now_ms, window_ms)

        return WindowState(
            allowed=allowed, count=len(hits), oldest_ms=hits[0] if hits else now_ms
        )

    def prune(self, now_ms: float, window_ms: int) -> None:
        """Drop keys whose newest hit has left the window."""
        cutoff = now_ms - window_ms
        for key in [k for k, v in self._hits.items() if not v or v[-1] <= cutoff]:
            del self._hits[key]

    def clear(self) -> None:
        self._hits.clear()

    def __len__(self) -> int:
        return len(self._hits)


class RedisWindowStore:
    """Sorted-set windows stored under ``ratelimit:{key}:{client}``."""

    def __init__(self, manager: RedisManager) -> None:
        self.manager = manager

    async def hit(
        self, store_key: str, now_ms: float, window_ms: int, max_requests: int
    ) -> WindowState:
        """
        Record a hit and read the window in one MULTI/EXEC block.

        The hit is added before counting, so concurrent requests see distinct
        counts; a hit that lands over the limit is removed again.
        """
        client = self.manager.get_client()
        redis_key = f"ratelimit:{store_key}"
        member = f"{int(now_ms)}-{uuid.uuid4().hex[:8]}"

        pipe = client.pipeline(transaction=True)
        pipe.zremrangebyscore(redis_key, 0, now_ms - window_ms)
        pipe.zadd(redis_key, {member: now_ms})
        pipe.zcard(redis_key)
        pipe.zrange(redis_key, 0, 0, withscores=True)
        pipe.pexpire(redis_key, window_ms)
        _, _, count, oldest, _ = await pipe.execute()
        count = int(count)
        oldest_ms = float(oldest[0][1]) if oldest else now_ms

        if count > max_requests:
            await client.zrem(redis_key, member)
            return WindowState(allowed=False, count=max_requests, oldest_ms=oldest_ms)
        return WindowState(allowed=True, count=count, oldest_ms=oldest_ms)


class RateLimiter:
    """
    Named sliding-window limits applied per client.

    Args:
        limits: Mapping of key to (max_requests, window_ms)
        trusted_ips: Client IPs that bypass limiting
        redis: Redis manager; the in-memory store is used when it is not healthy
        clock: Returns the current time in seconds
    """

    def __init__(
        self,
        limits: Mapping[str, Tuple[int, int]],
        trusted_ips: Optional[Iterable[str]] = None,
        redis: Optional[RedisManager] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.limits = dict(limits)
        self.trusted_ips = set(trusted_ips or [])
        self.redis = redis
        self.clock = clock
        self.memory = MemoryWindowStore()
        self.redis_store = RedisWindowStore(redis) if redis else None

    @staticmethod
    def _headers(max_requests: int, remaining: int, reset_ms: float) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(max_requests),
            "X-RateLimit-Remaining": str(max(0, remaining)),
            "X-RateLimit-Reset": str(math.floor(reset_ms / 1000)),
        }

    async def _hit(
        self, store_key: str, now_ms: float, window_ms: int, max_requests: int
    ) -> WindowState:
        if self.redis_store and self.redis and self.redis.is_healthy:
            try:
                return await self.redis_store.hit(
                    store_key, now_ms, window_ms, max_requests
                )
            except RedisError as e:
                logger.warning(
                    "Redis rate limit store unavailable, using memory",
                    store_key=store_key,
                    error=str(e),
                )
        return self.memory.hit(store_key, now_ms, window_ms, max_requests)

    async def check(
        self,
        key: str,
        client_id: str,
        on_violation: Optional[ViolationCallback] = None,
    ) -> RateLimitResult:
        """
        Count a request against a named limit.

        Args:
            key: Limit name, e.g. ``auth:login``
            client_id: Client identifier, normally from get_client_ip
            on_violation: Awaited with (client_id, key) when the limit is hit

        Returns:
            RateLimitResult with X-RateLimit-* headers and Retry-After on violation
        """
        limit = self.limits.get(key)
        if limit is None:
            return RateLimitResult(allowed=True)

        max_requests, window_ms = limit
        now_ms = self.clock() * 1000

        if client_id in self.trusted_ips:
            return RateLimitResult(
                allowed=True,
                headers=self._headers(max_requests, max_requests, now_ms + window_ms),
            )

        state = await self._hit(f"{key}:{client_id}", now_ms, window_ms, max_requests)
        reset_ms = state.oldest_ms + window_ms

        if state.allowed:
            return RateLimitResult(
                allowed=True,
                headers=self._headers(
                    max_requests, max_requests - state.count, reset_ms
                ),
            )

        headers = self._headers(max_requests, 0, reset_ms)
        headers["Retry-After"] = str(max(1, math.ceil((reset_ms - now_ms) / 1000)))

        security_logger.log_rate_limit_exceeded(ip_address=client_id, endpoint=key)
        if on_violation is not None:
            await on_violation(client_id, key)

        return RateLimitResult(allowed=False, headers=headers)

    async def check_request(
        self,
        key: str,
        headers: Mapping[str, str],
        on_violation: Optional[ViolationCallback] = None,
    ) -> RateLimitResult:
        """Check a limit for the client identified by request headers."""
        return await self.check(key, get_client_ip(headers), on_violation)

    def reset(self) -> None:
        """Forget all in-memory windows."""
        self.memory.clear()


_rate_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    """Get the process-wide rate limiter built from configuration."""
    global _rate_limiter
    if _rate_limiter is None:
        config = get_config().rate_limit
        _rate_limiter = RateLimiter(
            limits=config.limits(),
            trusted_ips=config.trusted_ip_list,
            redis=redis_manager if redis_manager.is_configured else None,
        )
    return _rate_limiter


def reset_rate_limiter() -> None:
    """Drop the process-wide limiter so it is rebuilt from configuration."""
    global _rate_limiter
    _rate_limiter = None
