"""
Unit tests for sliding-window rate limiting.
"""

import asyncio
from typing import AsyncIterator
from unittest.mock import AsyncMock, Mock

import pytest
from fakeredis.aioredis import FakeRedis
from redis.exceptions import RedisError

from anchorpipe.core.config import RedisConfig
from anchorpipe.core.redis import RedisManager
from anchorpipe.core.security.rate_limit import (
    MemoryWindowStore,
    RateLimiter,
    RedisWindowStore,
    get_client_ip,
)


class FakeClock:
    """Manually advanced clock returning seconds."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def limiter(clock: FakeClock) -> RateLimiter:
    return RateLimiter(
        {"auth:login": (2, 60000)}, trusted_ips=["10.9.9.9"], clock=clock
    )


@pytest.mark.unit
class TestGetClientIp:
    """Test client IP resolution from proxy headers."""

    def test_first_forwarded_entry(self) -> None:
        headers = {"x-forwarded-for": "203.0.113.7, 10.0.0.2", "x-real-ip": "10.0.0.3"}
        assert get_client_ip(headers) == "203.0.113.7"

    def test_real_ip_fallback(self) -> None:
        assert get_client_ip({"x-real-ip": "198.51.100.4"}) == "198.51.100.4"

    def test_unknown(self) -> None:
        assert get_client_ip({}) == "unknown"


@pytest.mark.unit
@pytest.mark.asyncio
class TestRateLimiter:
    """Test the limiter with the in-memory store."""

    async def test_allows_until_limit(self, limiter: RateLimiter) -> None:
        """Test remaining counts and the reset header."""
        first = await limiter.check("auth:login", "1.2.3.4")
        second = await limiter.check("auth:login", "1.2.3.4")

        assert first.allowed and second.allowed
        assert first.headers["X-RateLimit-Limit"] == "2"
        assert first.headers["X-RateLimit-Remaining"] == "1"
        assert second.headers["X-RateLimit-Remaining"] == "0"
        assert first.headers["X-RateLimit-Reset"] == "1060"
        assert "Retry-After" not in second.headers

    async def test_blocks_with_retry_after(
        self, limiter: RateLimiter, clock: FakeClock
    ) -> None:
        """Test that the request over the limit is refused."""
        await limiter.check("auth:login", "1.2.3.4")
        clock.advance(10)
        await limiter.check("auth:login", "1.2.3.4")
        clock.advance(5)

        result = await limiter.check("auth:login", "1.2.3.4")

        assert not result.allowed
        assert result.headers["X-RateLimit-Remaining"] == "0"
        assert result.retry_after == 45

    async def test_window_slides(self, limiter: RateLimiter, clock: FakeClock) -> None:
        """Test that hits older than the window stop counting."""
        await limiter.check("auth:login", "1.2.3.4")
        await limiter.check("auth:login", "1.2.3.4")
        clock.advance(60.001)

        result = await limiter.check("auth:login", "1.2.3.4")
        assert result.allowed

    async def test_clients_are_independent(self, limiter: RateLimiter) -> None:
        for _ in range(2):
            await limiter.check("auth:login", "1.2.3.4")

        assert not (await limiter.check("auth:login", "1.2.3.4")).allowed
        assert (await limiter.check("auth:login", "5.6.7.8")).allowed

    async def test_unknown_key_is_unlimited(self, limiter: RateLimiter) -> None:
        result = await limiter.check("not:configured", "1.2.3.4")
        assert result.allowed
        assert result.headers == {}

    async def test_trusted_ip_bypasses(self, limiter: RateLimiter) -> None:
        """Test that trusted IPs are never limited."""
        for _ in range(5):
            result = await limiter.check("auth:login", "10.9.9.9")

        assert result.allowed
        assert result.headers["X-RateLimit-Remaining"] == "2"

    async def test_violation_callback(self, limiter: RateLimiter) -> None:
        """Test that the violation callback receives client and key."""
        on_violation = AsyncMock()
        for _ in range(3):
            await limiter.check("auth:login", "1.2.3.4", on_violation)

        on_violation.assert_awaited_once_with("1.2.3.4", "auth:login")

    async def test_check_request_uses_headers(self, limiter: RateLimiter) -> None:
        headers = {"x-forwarded-for": "192.0.2.1"}
        for _ in range(2):
            await limiter.check_request("auth:login", headers)

        assert not (await limiter.check("auth:login", "192.0.2.1")).allowed

    async def test_redis_error_falls_back_to_memory(self, clock: FakeClock) -> None:
        """Test that a failing Redis store does not block requests."""
        manager = Mock()
        manager.is_healthy = True
        manager.get_client.side_effect = RedisError("connection refused")
        limiter = RateLimiter({"auth:login": (1, 60000)}, redis=manager, clock=clock)

        assert (await limiter.check("auth:login", "1.2.3.4")).allowed
        assert not (await limiter.check("auth:login", "1.2.3.4")).allowed
        assert manager.get_client.call_count == 2


@pytest.mark.unit
class TestMemoryWindowStore:
    """Test pruning of idle keys."""

    def test_prune_drops_idle_keys(self) -> None:
        store = MemoryWindowStore()
        store.hit("a", now_ms=1000, window_ms=500, max_requests=5)
        store.hit("b", now_ms=1400, window_ms=500, max_requests=5)

        store.prune(now_ms=1600, window_ms=500)

        assert len(store) == 1


@pytest.fixture
async def fake_redis() -> AsyncIterator[RedisManager]:
    manager = RedisManager(RedisConfig(url="redis://localhost:6379/0"))
    manager.client = FakeRedis(decode_responses=True)
    await manager.check_health()
    yield manager
    await manager.close()


@pytest.mark.unit
@pytest.mark.asyncio
class TestRedisWindowStore:
    """Test the sorted-set store against an in-process Redis."""

    async def test_concurrent_hits_respect_limit(
        self, fake_redis: RedisManager, clock: FakeClock
    ) -> None:
        limiter = RateLimiter({"auth:login": (3, 60000)}, redis=fake_redis, clock=clock)

        results = await asyncio.gather(
            *(limiter.check("auth:login", "203.0.113.7") for _ in range(10))
        )

        assert sum(result.allowed for result in results) == 3
        client = fake_redis.get_client()
        assert await client.zcard("ratelimit:auth:login:203.0.113.7") == 3

    async def test_window_state(self, fake_redis: RedisManager) -> None:
        store = RedisWindowStore(fake_redis)

        first = await store.hit("k", now_ms=1000, window_ms=500, max_requests=2)
        second = await store.hit("k", now_ms=1100, window_ms=500, max_requests=2)
        denied = await store.hit("k", now_ms=1200, window_ms=500, max_requests=2)
        later = await store.hit("k", now_ms=1550, window_ms=500, max_requests=2)

        assert (first.allowed, first.count, first.oldest_ms) == (True, 1, 1000)
        assert (second.allowed, second.count) == (True, 2)
        assert (denied.allowed, denied.count, denied.oldest_ms) == (False, 2, 1000)
        assert (later.allowed, later.count, later.oldest_ms) == (True, 2, 1100)
        assert await fake_redis.get_client().ttl("ratelimit:k") >= 0

    async def test_limiter_uses_redis_when_healthy(
        self, fake_redis: RedisManager, clock: FakeClock
    ) -> None:
        limiter = RateLimiter({"auth:login": (1, 60000)}, redis=fake_redis, clock=clock)

        assert (await limiter.check("auth:login", "1.2.3.4")).allowed
        assert not (await limiter.check("auth:login", "1.2.3.4")).allowed
        assert len(limiter.memory) == 0
