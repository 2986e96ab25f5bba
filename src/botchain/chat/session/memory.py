from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from ...core.clock import Clock, MonotonicClock
from ..models import Scope
from .store import SessionData, expires_at, is_expired, validate_session_data


@dataclass
class _Entry:
    data: SessionData
    expires_at: Optional[float]


class MemorySessionStore:
    """Process-local store; pair with a ``SessionCollector`` to reclaim memory."""

    def __init__(self, *, clock: Optional[Clock] = None) -> None:
        self._clock = clock or MonotonicClock()
        self._entries: Dict[Scope, _Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, scope: Scope) -> Optional[SessionData]:
        entry = self._entries.get(scope)
        if entry is None:
            return None
        if is_expired(entry.expires_at, self._clock.now()):
            del self._entries[scope]
            return None
        return dict(entry.data)

    async def set(
        self, scope: Scope, data: Mapping[str, bytes], ttl: Optional[float] = None
    ) -> None:
        self._entries[scope] = _Entry(
            data=validate_session_data(data),
            expires_at=expires_at(self._clock.now(), ttl),
        )

    async def remove(self, scope: Scope) -> None:
        self._entries.pop(scope, None)

    async def sweep_expired(self) -> int:
        now = self._clock.now()
        expired = [
            scope
            for scope, entry in self._entries.items()
            if is_expired(entry.expires_at, now)
        ]
        for scope in expired:
            del self._entries[scope]
        return len(expired)

    async def close(self) -> None:
        self._entries.clear()
