"""Tests for the per-installation fixed-window rate limiter."""

import asyncio

import pytest

from marketplace.errors import RateLimited
from marketplace.services.rate_limiter import RateLimiter


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestRateLimiter:
    """Tests for RateLimiter."""

    async def test_permits_count_down(self, store):
        """Test consume returns the permits left in the window."""
        limiter = RateLimiter(store, limit=3, window=60, clock=FakeClock())

        assert [await limiter.consume("inst_1") for _ in range(3)] == [2, 1, 0]

    async def test_exceeding_limit_raises(self, store):
        """Test the call past the limit is rejected with retry-after."""
        # 1000 % 60 == 40, so 20 seconds remain in the window
        limiter = RateLimiter(store, limit=2, window=60, clock=FakeClock(1_000.0))
        await limiter.consume("inst_1")
        await limiter.consume("inst_1")

        with pytest.raises(RateLimited) as exc_info:
            await limiter.consume("inst_1")

        assert exc_info.value.retry_after == 20
        assert exc_info.value.installation_id == "inst_1"

    async def test_retry_after_is_at_least_one_second(self, store):
        limiter = RateLimiter(store, limit=1, window=60, clock=FakeClock(1_019.9))
        await limiter.consume("inst_1")

        with pytest.raises(RateLimited) as exc_info:
            await limiter.consume("inst_1")

        assert exc_info.value.retry_after == 1

    async def test_next_window_resets(self, store):
        """Test permits come back in the next window."""
        clock = FakeClock(1_000.0)
        limiter = RateLimiter(store, limit=1, window=60, clock=clock)
        await limiter.consume("inst_1")

        clock.now = 1_021.0

        assert await limiter.consume("inst_1") == 0

    async def test_installations_are_isolated(self, store):
        """Test one installation's burst doesn't use another's permits."""
        limiter = RateLimiter(store, limit=1, window=60, clock=FakeClock())
        await limiter.consume("inst_1")

        assert await limiter.consume("inst_2") == 0
        with pytest.raises(RateLimited):
            await limiter.consume("inst_1")

    async def test_concurrent_consumers_never_exceed_limit(self, store):
        """Test exactly `limit` of many concurrent calls get through."""
        limiter = RateLimiter(store, limit=5, window=60, clock=FakeClock())

        results = await asyncio.gather(
            *(limiter.consume("inst_1") for _ in range(12)),
            return_exceptions=True,
        )

        allowed = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, RateLimited)]
        assert len(allowed) == 5
        assert len(rejected) == 7

    async def test_window_key_expires(self, store):
        """Test the counter key carries the window as TTL."""
        limiter = RateLimiter(store, limit=5, window=60, clock=FakeClock(1_000.0))
        await limiter.consume("inst_1")

        ttl = await store.redis.ttl("ratelimit:inst_1:16")
        assert 0 < ttl <= 60

    async def test_get_current_count(self, store):
        limiter = RateLimiter(store, limit=2, window=60, clock=FakeClock())
        assert await limiter.get_current_count("inst_1") == 0

        await limiter.consume("inst_1")
        assert await limiter.get_current_count("inst_1") == 1

        await limiter.consume("inst_1")
        with pytest.raises(RateLimited):
            await limiter.consume("inst_1")
        assert await limiter.get_current_count("inst_1") == 2
