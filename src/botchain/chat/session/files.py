"""File-per-scope session backend.

Each scope lives in ``<root>/<chat_id>-<user_id>.json``::

    {"version": 1, "expires_at": 1767225600.0, "data": {"key": "<base64>"}}

Writes go through a temp file and ``os.replace`` so a crash never leaves a
half-written session behind.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Mapping, Optional

from ...core.clock import Clock, WallClock
from ...core.logging_utils import log_event
from ..errors import SessionBackendError
from ..models import Scope
from .store import SessionData, expires_at, is_expired, validate_session_data

FILE_SESSION_VERSION = 1
_SUFFIX = ".json"

logger = logging.getLogger(__name__)


def atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


class FileSessionStore:
    def __init__(self, root: Path, *, clock: Optional[Clock] = None) -> None:
        self._root = Path(root)
        self._clock = clock or WallClock()

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, scope: Scope) -> Path:
        return self._root / f"{scope.key}{_SUFFIX}"

    async def get(self, scope: Scope) -> Optional[SessionData]:
        return await asyncio.to_thread(self._get_sync, scope)

    async def set(
        self, scope: Scope, data: Mapping[str, bytes], ttl: Optional[float] = None
    ) -> None:
        validated = validate_session_data(data)
        deadline = expires_at(self._clock.now(), ttl)
        await asyncio.to_thread(self._set_sync, scope, validated, deadline)

    async def remove(self, scope: Scope) -> None:
        await asyncio.to_thread(self._remove_path, self.path_for(scope))

    async def sweep_expired(self) -> int:
        return await asyncio.to_thread(self._sweep_sync)

    async def close(self) -> None:
        return None

    def _get_sync(self, scope: Scope) -> Optional[SessionData]:
        path = self.path_for(scope)
        record = self._read_record(path)
        if record is None:
            return None
        deadline, data = record
        # Only the sweep unlinks expired files.
        if is_expired(deadline, self._clock.now()):
            return None
        return data

    def _set_sync(
        self, scope: Scope, data: SessionData, deadline: Optional[float]
    ) -> None:
        payload = {
            "version": FILE_SESSION_VERSION,
            "expires_at": deadline,
            "data": {
                key: base64.b64encode(value).decode("ascii")
                for key, value in data.items()
            },
        }
        try:
            atomic_write_text(self.path_for(scope), json.dumps(payload))
        except OSError as exc:
            raise SessionBackendError(
                f"failed to write session {scope.key}: {exc}"
            ) from exc

    def _read_record(
        self, path: Path
    ) -> Optional[tuple[Optional[float], SessionData]]:
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise SessionBackendError(f"failed to read session {path}: {exc}") from exc
        try:
            payload: Any = json.loads(raw)
            if not isinstance(payload, dict):
                raise ValueError("session file is not an object")
            deadline = payload.get("expires_at")
            encoded = payload.get("data") or {}
            if not isinstance(encoded, dict):
                raise ValueError("session data is not an object")
            data = {
                str(key): base64.b64decode(value, validate=True)
                for key, value in encoded.items()
            }
        except (ValueError, TypeError, binascii.Error) as exc:
            raise SessionBackendError(f"corrupt session file {path}: {exc}") from exc
        return (float(deadline) if deadline is not None else None), data

    def _remove_path(self, path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise SessionBackendError(f"failed to remove session {path}: {exc}") from exc

    def _remove_if_unchanged(self, path: Path, seen: os.stat_result) -> bool:
        try:
            current = path.stat()
        except FileNotFoundError:
            return False
        if (current.st_ino, current.st_mtime_ns) != (seen.st_ino, seen.st_mtime_ns):
            return False
        self._remove_path(path)
        return True

    def _sweep_sync(self) -> int:
        if not self._root.exists():
            return 0
        now = self._clock.now()
        removed = 0
        for path in sorted(self._root.glob(f"*{_SUFFIX}")):
            try:
                seen = path.stat()
            except FileNotFoundError:
                continue
            try:
                record = self._read_record(path)
            except SessionBackendError as exc:
                log_event(
                    logger,
                    logging.WARNING,
                    "chat.session.file.unreadable",
                    path=str(path),
                    exc=exc,
                )
                continue
            if record is None or not is_expired(record[0], now):
                continue
            if self._remove_if_unchanged(path, seen):
                removed += 1
        return removed
