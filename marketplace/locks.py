"""
Per-key asyncio locks.

Serializes work on one key (an installation id) inside a single process
while leaving unrelated keys free to run concurrently.
"""
import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager


class KeyedLock:
    """A lazily created asyncio.Lock per key, dropped once nobody waits on it."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def lock(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)
