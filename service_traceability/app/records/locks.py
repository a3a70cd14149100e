"""
Per-key mutual exclusion for record operations.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Dict, List


class KeyedLock:
    """Hands out one asyncio.Lock per key.

    Entries are reference counted and dropped once no task holds or waits on
    the key, so the table only grows with the number of keys in flight.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def active_keys(self) -> List[str]:
        return list(self._locks.keys())
