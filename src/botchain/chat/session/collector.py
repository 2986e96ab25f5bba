"""Background sweeper that reclaims expired sessions."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from ...core.logging_utils import log_event
from ..errors import SessionBackendError
from .store import SessionStore

DEFAULT_SWEEP_INTERVAL_SECONDS = 60.0


class SessionCollector:
    def __init__(
        self,
        store: SessionStore,
        *,
        interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._store = store
        self._interval = interval_seconds
        self._logger = logger or logging.getLogger(__name__)
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def collect_once(self) -> int:
        try:
            removed = await self._store.sweep_expired()
        except SessionBackendError as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "chat.session.sweep.failed",
                exc=exc,
            )
            return 0
        if removed:
            log_event(
                self._logger,
                logging.DEBUG,
                "chat.session.sweep.done",
                removed=removed,
            )
        return removed

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await self.collect_once()
