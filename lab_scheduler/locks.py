# locks.py
import asyncio
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Dict, Hashable


class KeyedLocks:
    """One asyncio.Lock per key, created on first use and dropped again once
    nobody holds or waits on it.

    Callers that take several keys must always pass them in the same order
    (computer before user) so two writers never wait on each other.
    """

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def _acquire(self, key: Hashable):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        # Holders and waiters both count, so a waiter never finds its lock replaced
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    @asynccontextmanager
    async def hold(self, *keys: Hashable):
        async with AsyncExitStack() as stack:
            seen = set()
            for key in keys:
                if key in seen:
                    continue
                seen.add(key)
                await stack.enter_async_context(self._acquire(key))
            yield
