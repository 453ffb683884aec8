"""Per-credential asyncio locks.

Adapters whose rate-limit check is a read-modify-write over awaited I/O use
these locks to serialize concurrent checks for the same credential id.

Note: These locks only work within a single process/event loop. Backends
shared by several processes need store-level atomicity on top (see each
adapter's consistency notes).
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class KeyedAsyncLock:
    """A lazily populated map of ``asyncio.Lock`` objects keyed by id."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for ``key`` for the duration of the block.

        The lock entry is dropped once nobody holds or waits for it, so the
        map does not grow with every credential ever checked.
        """
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
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
