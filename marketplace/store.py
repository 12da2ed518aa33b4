"""
Persistent store backed by Redis.

Every durable record (integrations, installations, webhook events) and every
index lives here. The rest of the service only uses the primitives below:
get/put/delete/scan for documents, set and sorted-set helpers for indices,
an atomic counter for rate limiting and a compare-and-swap update for
read-modify-write on composite records.
"""
from typing import AsyncIterator, Callable, Optional

import redis.asyncio as redis
from redis.exceptions import WatchError

from marketplace.errors import MarketplaceError
from marketplace.logging_config import get_logger


log = get_logger(component="store")

# Optimistic transactions give up after this many conflicting writers
CAS_MAX_RETRIES = 50


class StoreConflict(MarketplaceError):
    """A compare-and-swap update kept losing to concurrent writers."""

    def __init__(self, key: str, attempts: int):
        self.key = key
        super().__init__(f"Gave up updating {key} after {attempts} conflicting writes")


def _decode(value):
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value


class RedisStore:
    """Key/value, set and sorted-set storage on a redis.asyncio client."""

    def __init__(self, client: redis.Redis):
        self.redis = client

    @classmethod
    def from_url(cls, url: str) -> "RedisStore":
        return cls(redis.from_url(url, decode_responses=True))

    async def close(self):
        await self.redis.aclose()

    async def ping(self) -> bool:
        return bool(await self.redis.ping())

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Optional[str]:
        return _decode(await self.redis.get(key))

    async def put(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        await self.redis.set(key, value, ex=ttl)

    async def put_if_absent(self, key: str, value: str) -> bool:
        """Write only if the key does not exist. Returns True when written."""
        return bool(await self.redis.set(key, value, nx=True))

    async def delete(self, key: str) -> None:
        await self.redis.delete(key)

    async def scan(self, match: str) -> AsyncIterator[str]:
        async for key in self.redis.scan_iter(match=match, count=500):
            yield _decode(key)

    async def update(
        self,
        key: str,
        fn: Callable[[Optional[str]], str],
        ttl: Optional[int] = None,
    ) -> str:
        """
        Read-modify-write a document with WATCH/MULTI.

        fn receives the current value (None if missing) and returns the new
        value. It is re-run whenever another writer changes the key between
        the read and the write, so it must not have side effects.
        """
        async with self.redis.pipeline(transaction=True) as pipe:
            for attempt in range(1, CAS_MAX_RETRIES + 1):
                try:
                    await pipe.watch(key)
                    current = _decode(await pipe.get(key))
                    new_value = fn(current)
                    pipe.multi()
                    pipe.set(key, new_value, ex=ttl)
                    await pipe.execute()
                    return new_value
                except WatchError:
                    log.debug("store_cas_conflict", key=key, attempt=attempt)
                    continue
        raise StoreConflict(key, CAS_MAX_RETRIES)

    # ------------------------------------------------------------------
    # Counters
    # ------------------------------------------------------------------

    async def incr_with_ttl(self, key: str, ttl: int) -> int:
        """Atomically increment a counter and (re)arm its expiry."""
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, ttl)
            results = await pipe.execute()
        return int(results[0])

    async def get_counter(self, key: str) -> int:
        value = await self.get(key)
        return int(value) if value else 0

    # ------------------------------------------------------------------
    # Sets
    # ------------------------------------------------------------------

    async def set_add(self, key: str, *members: str) -> None:
        if members:
            await self.redis.sadd(key, *members)

    async def set_remove(self, key: str, *members: str) -> None:
        if members:
            await self.redis.srem(key, *members)

    async def set_members(self, key: str) -> set[str]:
        return {_decode(m) for m in await self.redis.smembers(key)}

    # ------------------------------------------------------------------
    # Sorted sets
    # ------------------------------------------------------------------

    async def sorted_add(self, key: str, member: str, score: float) -> None:
        await self.redis.zadd(key, {member: score})

    async def sorted_remove(self, key: str, member: str) -> None:
        await self.redis.zrem(key, member)

    async def sorted_trim(self, key: str, max_score: float) -> int:
        """Drop members scored strictly below max_score. Returns how many went."""
        return int(await self.redis.zremrangebyscore(key, "-inf", f"({max_score}"))

    async def sorted_recent(self, key: str, limit: int = 50) -> list[str]:
        """Members with the highest scores first."""
        members = await self.redis.zrevrange(key, 0, limit - 1)
        return [_decode(m) for m in members]

    async def sorted_count(self, key: str) -> int:
        return int(await self.redis.zcard(key))
