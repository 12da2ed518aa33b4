"""
Rate Limiter Service using Redis counters (fixed window).
"""
import math
import time
from typing import Callable

from marketplace.config import settings
from marketplace.errors import RateLimited
from marketplace.routes.metrics import track_rate_limit_exceeded
from marketplace.store import RedisStore


class RateLimiter:
    """
    Per-installation rate limiter.

    Each installation gets its own counter per window, so one tenant's
    burst never eats into another's budget. The increment and the expiry
    are applied in a single MULTI, so concurrent callers can't both read
    the same count.
    """

    def __init__(
        self,
        store: RedisStore,
        limit: int | None = None,
        window: int | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.limit = limit or settings.RATE_LIMIT_PERMITS  # requests per window
        self.window = window or settings.RATE_LIMIT_WINDOW_SECONDS
        self.clock = clock

    def _key(self, installation_id: str, now: float) -> str:
        return f"ratelimit:{installation_id}:{int(now // self.window)}"

    def _retry_after(self, now: float) -> int:
        return max(math.ceil(self.window - (now % self.window)), 1)

    async def consume(self, installation_id: str) -> int:
        """
        Take one permit for the installation.

        Returns:
            Permits left in the current window.

        Raises:
            RateLimited: the window's permits are exhausted.
        """
        now = self.clock()
        count = await self.store.incr_with_ttl(self._key(installation_id, now), self.window)

        if count > self.limit:
            track_rate_limit_exceeded(installation_id)
            raise RateLimited(installation_id, retry_after=self._retry_after(now))

        return self.limit - count

    async def get_current_count(self, installation_id: str) -> int:
        """Get permits used by the installation in the current window."""
        now = self.clock()
        count = await self.store.get_counter(self._key(installation_id, now))
        return min(count, self.limit)
