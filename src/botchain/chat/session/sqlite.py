from __future__ import annotations

import asyncio
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

from ...core.clock import Clock, WallClock
from ...core.retry import retry_transient
from ...core.sqlite_utils import connect_sqlite, is_lock_contention
from ..errors import SessionBackendError, SessionBackendTransientError
from ..models import Scope
from .store import SessionData, expires_at, validate_session_data

SESSION_SCHEMA_VERSION = 1


class SqliteSessionStore:
    """Sessions in one SQLite table, one row per (scope, key).

    All database work runs on a dedicated single-thread executor so the
    connection never crosses threads and the event loop never blocks.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        clock: Optional[Clock] = None,
        durable: bool = False,
    ) -> None:
        self._db_path = Path(db_path)
        self._clock = clock or WallClock()
        self._durable = durable
        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="botchain-session"
        )
        self._connection: Optional[sqlite3.Connection] = None
        self._closed = False

    @property
    def path(self) -> Path:
        return self._db_path

    async def initialize(self) -> None:
        await self._run(self._connection_sync)

    async def close(self) -> None:
        if self._closed:
            return
        await self._run(self._close_sync)
        self._closed = True
        self._executor.shutdown(wait=True)

    async def get(self, scope: Scope) -> Optional[SessionData]:
        return await self._run(self._get_sync, scope.key, self._clock.now())

    async def set(
        self, scope: Scope, data: Mapping[str, bytes], ttl: Optional[float] = None
    ) -> None:
        validated = validate_session_data(data)
        deadline = expires_at(self._clock.now(), ttl)
        await self._run(self._set_sync, scope.key, validated, deadline)

    async def remove(self, scope: Scope) -> None:
        await self._run(self._remove_sync, scope.key)

    async def sweep_expired(self) -> int:
        return await self._run(self._sweep_sync, self._clock.now())

    @retry_transient(retry_on=(SessionBackendTransientError,))
    async def _run(self, func: Callable[..., Any], *args: Any) -> Any:
        if self._closed:
            raise SessionBackendError("session store is closed")
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._executor, func, *args)
        except sqlite3.Error as exc:
            if is_lock_contention(exc):
                raise SessionBackendTransientError(
                    f"session database busy: {exc}"
                ) from exc
            raise SessionBackendError(f"session database error: {exc}") from exc
        except OSError as exc:
            raise SessionBackendError(f"session database I/O error: {exc}") from exc

    def _connection_sync(self) -> sqlite3.Connection:
        if self._connection is None:
            self._connection = connect_sqlite(self._db_path, durable=self._durable)
            self._ensure_schema(self._connection)
        return self._connection

    def _close_sync(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        with conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_info (
                    version INTEGER NOT NULL
                )
                """
            )
            row = conn.execute(
                "SELECT version FROM schema_info ORDER BY version DESC LIMIT 1"
            ).fetchone()
            if row is None:
                conn.execute(
                    "INSERT INTO schema_info(version) VALUES (?)",
                    (SESSION_SCHEMA_VERSION,),
                )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    scope_key TEXT PRIMARY KEY,
                    expires_at REAL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS session_values (
                    scope_key TEXT NOT NULL,
                    name TEXT NOT NULL,
                    value BLOB NOT NULL,
                    PRIMARY KEY (scope_key, name)
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_sessions_expires_at "
                "ON sessions(expires_at)"
            )

    def _get_sync(self, scope_key: str, now: float) -> Optional[SessionData]:
        conn = self._connection_sync()
        row = conn.execute(
            "SELECT expires_at FROM sessions WHERE scope_key = ?", (scope_key,)
        ).fetchone()
        if row is None:
            return None
        if row["expires_at"] is not None and now >= row["expires_at"]:
            self._remove_sync(scope_key)
            return None
        rows = conn.execute(
            "SELECT name, value FROM session_values WHERE scope_key = ?",
            (scope_key,),
        ).fetchall()
        return {str(item["name"]): bytes(item["value"]) for item in rows}

    def _set_sync(
        self, scope_key: str, data: SessionData, deadline: Optional[float]
    ) -> None:
        conn = self._connection_sync()
        with conn:
            conn.execute(
                """
                INSERT INTO sessions(scope_key, expires_at) VALUES (?, ?)
                ON CONFLICT(scope_key) DO UPDATE SET expires_at = excluded.expires_at
                """,
                (scope_key, deadline),
            )
            conn.execute(
                "DELETE FROM session_values WHERE scope_key = ?", (scope_key,)
            )
            conn.executemany(
                "INSERT INTO session_values(scope_key, name, value) VALUES (?, ?, ?)",
                [(scope_key, name, value) for name, value in data.items()],
            )

    def _remove_sync(self, scope_key: str) -> None:
        conn = self._connection_sync()
        with conn:
            conn.execute(
                "DELETE FROM session_values WHERE scope_key = ?", (scope_key,)
            )
            conn.execute("DELETE FROM sessions WHERE scope_key = ?", (scope_key,))

    def _sweep_sync(self, now: float) -> int:
        conn = self._connection_sync()
        with conn:
            expired = [
                row["scope_key"]
                for row in conn.execute(
                    "SELECT scope_key FROM sessions "
                    "WHERE expires_at IS NOT NULL AND expires_at <= ?",
                    (now,),
                ).fetchall()
            ]
            for scope_key in expired:
                conn.execute(
                    "DELETE FROM session_values WHERE scope_key = ?", (scope_key,)
                )
                conn.execute(
                    "DELETE FROM sessions WHERE scope_key = ?", (scope_key,)
                )
        return len(expired)
