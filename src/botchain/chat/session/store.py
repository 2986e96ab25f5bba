"""Session store contract and the scope-bound ``Session`` helper.

A session is a ``dict[str, bytes]`` per :class:`~botchain.chat.models.Scope`.
Backends are interchangeable: callers may rely only on the TTL contract (an
entry set with ``ttl`` is unreadable once it expires), never on sweep timing.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Mapping, Optional, Protocol, runtime_checkable

from ..models import Scope

SessionData = Dict[str, bytes]


@runtime_checkable
class SessionStore(Protocol):
    async def get(self, scope: Scope) -> Optional[SessionData]:
        """Return a copy of the scope's session, or ``None`` when absent/expired."""

    async def set(
        self, scope: Scope, data: Mapping[str, bytes], ttl: Optional[float] = None
    ) -> None:
        """Replace the scope's session; ``ttl`` seconds from now, or forever."""

    async def remove(self, scope: Scope) -> None:
        """Delete the scope's session; missing sessions are ignored."""

    async def sweep_expired(self) -> int:
        """Physically drop expired sessions and return how many were removed."""

    async def close(self) -> None: ...


def validate_session_data(data: Mapping[str, bytes]) -> SessionData:
    copied: SessionData = {}
    for key, value in data.items():
        if not isinstance(key, str):
            raise TypeError("session keys must be strings")
        if not isinstance(value, (bytes, bytearray, memoryview)):
            raise TypeError(f"session value for {key!r} must be bytes")
        copied[key] = bytes(value)
    return copied


def expires_at(now: float, ttl: Optional[float]) -> Optional[float]:
    if ttl is None:
        return None
    if ttl <= 0:
        raise ValueError("session ttl must be positive")
    return now + ttl


def is_expired(deadline: Optional[float], now: float) -> bool:
    return deadline is not None and now >= deadline


class Session:
    """Read-modify-write view of one scope's session.

    Values are JSON-encoded so handlers can store plain Python data. Every
    call goes straight to the store; hold the dialogue lock (or otherwise
    serialize per scope) when several writers may race.
    """

    def __init__(
        self, scope: Scope, store: SessionStore, *, ttl: Optional[float] = None
    ) -> None:
        self.scope = scope
        self._store = store
        self._ttl = ttl

    @property
    def ttl(self) -> Optional[float]:
        """TTL applied on the next write; updated by :meth:`expire`."""

        return self._ttl

    async def get_json(self, key: str, default: Any = None) -> Any:
        data = await self._store.get(self.scope)
        if not data or key not in data:
            return default
        return json.loads(data[key].decode("utf-8"))

    async def set_json(self, key: str, value: Any) -> None:
        data = await self._store.get(self.scope) or {}
        data[key] = json.dumps(value).encode("utf-8")
        await self._store.set(self.scope, data, ttl=self._ttl)

    async def delete(self, key: str) -> None:
        data = await self._store.get(self.scope)
        if not data or key not in data:
            return
        del data[key]
        if data:
            await self._store.set(self.scope, data, ttl=self._ttl)
        else:
            await self._store.remove(self.scope)

    async def expire(self, seconds: float) -> None:
        """Re-save the session so it expires ``seconds`` from now."""

        self._ttl = seconds
        data = await self._store.get(self.scope)
        if data is not None:
            await self._store.set(self.scope, data, ttl=seconds)

    async def clear(self) -> None:
        await self._store.remove(self.scope)
