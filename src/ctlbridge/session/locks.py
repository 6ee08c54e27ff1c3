"""Per-id single-flight guard.

Operations on the same resource id run one at a time, in the order they
asked for the lock. Different ids never contend.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterable
from contextlib import AsyncExitStack, asynccontextmanager


class KeyedLocks:
    """FIFO asyncio locks created on demand and dropped when unused."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for a single key."""
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    async def acquire_all(self, stack: AsyncExitStack, keys: Iterable[str]) -> None:
        """Acquire several locks in order, released when the stack unwinds.

        Callers pass keys top-down (ancestor before descendant) so that two
        overlapping acquisitions cannot wait on each other.
        """
        for key in keys:
            await stack.enter_async_context(self.hold(key))

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
