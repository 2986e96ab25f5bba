"""Per-key asyncio lock registry.

Locks are created on first use and dropped once no coroutine holds or waits
on them, so the registry does not grow with every scope ever seen.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Hashable, Optional


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class KeyedLocks:
    """Hands out one lock per key; different keys never contend."""

    def __init__(self) -> None:
        self._entries: Dict[Hashable, _Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def locked(self, key: Hashable) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    @asynccontextmanager
    async def hold(
        self, key: Hashable, *, timeout: Optional[float] = None
    ) -> AsyncIterator[None]:
        """Hold the lock for ``key``.

        With ``timeout`` set, raises :class:`asyncio.TimeoutError` when the
        lock cannot be acquired in time.
        """

        entry = self._entries.get(key)
        if entry is None:
            entry = _Entry()
            self._entries[key] = entry
        entry.users += 1
        try:
            if timeout is None:
                await entry.lock.acquire()
            else:
                await asyncio.wait_for(entry.lock.acquire(), timeout)
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            entry.users -= 1
            if entry.users == 0 and self._entries.get(key) is entry:
                del self._entries[key]
