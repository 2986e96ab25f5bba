"""Ordered handler chain executed once per inbound update.

Handlers run strictly in registration order within one dispatch; separate
updates dispatch concurrently and share nothing except the stores injected
into their handlers. Every failure is reported through the returned
:class:`DispatchOutcome`; ``dispatch`` itself never raises for a per-update
problem.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass, replace
from typing import (
    Awaitable,
    Callable,
    Iterable,
    Optional,
    Set,
    Union,
)

from ..core.exceptions import BotchainError
from ..core.logging_utils import log_event
from .api import API_CLIENT, ApiClient
from .context import Context
from .errors import DispatchTimeoutError, HandlerError
from .handlers import (
    Continue,
    Error,
    HandlerLike,
    Predicate,
    Stop,
    handler_name,
    invoke_handler,
    resolve_predicate,
)
from .models import Update

_UNSET = object()


class DispatchStatus(str, enum.Enum):
    STOPPED = "stopped"
    EXHAUSTED = "exhausted"
    ERROR = "error"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class ChainEntry:
    handler: HandlerLike
    predicate: Optional[Predicate]
    name: str


@dataclass(frozen=True)
class DispatchOutcome:
    """Final result of running the chain for one update."""

    status: DispatchStatus
    update: Update
    handler: Optional[str] = None
    handlers_run: int = 0
    cause: Optional[BaseException] = None
    elapsed_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status in (DispatchStatus.STOPPED, DispatchStatus.EXHAUSTED)

    @property
    def handled(self) -> bool:
        """True when a handler explicitly claimed the update with ``Stop``."""

        return self.status is DispatchStatus.STOPPED


OutcomeCallback = Callable[[DispatchOutcome], Union[None, Awaitable[None]]]


class _Progress:
    __slots__ = ("handler", "handlers_run")

    def __init__(self) -> None:
        self.handler: Optional[str] = None
        self.handlers_run = 0


def as_chain_error(exc: BaseException, handler: str) -> BotchainError:
    """Keep botchain errors as they are; wrap anything else in HandlerError."""

    if isinstance(exc, BotchainError):
        return exc
    wrapped = HandlerError(f"{handler} failed: {exc}", handler_name=handler)
    wrapped.__cause__ = exc
    return wrapped


class Dispatcher:
    """Runs the registered handler chain for each update."""

    def __init__(
        self,
        *,
        api_client: Optional[ApiClient] = None,
        default_timeout_seconds: Optional[float] = None,
        max_concurrency: Optional[int] = None,
        on_error: Optional[OutcomeCallback] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if default_timeout_seconds is not None and default_timeout_seconds <= 0:
            raise ValueError("default_timeout_seconds must be positive")
        if max_concurrency is not None and max_concurrency <= 0:
            raise ValueError("max_concurrency must be positive")
        self._logger = logger or logging.getLogger(__name__)
        self._api_client = api_client
        self._default_timeout = default_timeout_seconds
        self._max_concurrency = max_concurrency
        self._on_error = on_error
        self._pending: list[ChainEntry] = []
        self._chain: Optional[tuple[ChainEntry, ...]] = None
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._tasks: Set[asyncio.Task[DispatchOutcome]] = set()
        self._idle_event: Optional[asyncio.Event] = None

    def register(
        self,
        handler: HandlerLike,
        predicate: Optional[Predicate] = None,
        *,
        name: Optional[str] = None,
    ) -> "Dispatcher":
        if self._chain is not None:
            raise RuntimeError("handler chain is frozen; register before dispatching")
        self._pending.append(
            ChainEntry(
                handler=handler,
                predicate=predicate,
                name=name or handler_name(handler),
            )
        )
        return self

    def build(self) -> tuple[ChainEntry, ...]:
        """Freeze the chain; further ``register`` calls fail."""

        if self._chain is None:
            self._chain = tuple(self._pending)
            self._pending = []
        return self._chain

    @property
    def chain(self) -> tuple[ChainEntry, ...]:
        return self._chain if self._chain is not None else tuple(self._pending)

    async def dispatch(
        self, update: Update, *, timeout_seconds: object = _UNSET
    ) -> DispatchOutcome:
        chain = self.build()
        timeout: Optional[float]
        if timeout_seconds is _UNSET:
            timeout = self._default_timeout
        elif timeout_seconds is None:
            timeout = None
        else:
            timeout = float(timeout_seconds)  # type: ignore[arg-type]
            if timeout <= 0:
                raise ValueError("timeout_seconds must be positive")
        log_event(
            self._logger,
            logging.INFO,
            "chat.dispatch.received",
            update_id=update.update_id,
            chat_id=update.chat_id,
            user_id=update.user_id,
            payload=type(update.payload).__name__,
        )
        context = Context()
        if self._api_client is not None:
            context.set(API_CLIENT, self._api_client)
        progress = _Progress()
        started = time.monotonic()
        if timeout is None:
            outcome = await self._run_chain(chain, context, update, progress)
        else:
            try:
                outcome = await asyncio.wait_for(
                    self._run_chain(chain, context, update, progress),
                    timeout,
                )
            except asyncio.TimeoutError:
                outcome = DispatchOutcome(
                    status=DispatchStatus.TIMEOUT,
                    update=update,
                    handler=progress.handler,
                    handlers_run=progress.handlers_run,
                    cause=DispatchTimeoutError(timeout),
                )
        outcome = replace(outcome, elapsed_seconds=time.monotonic() - started)
        await self._report(outcome)
        return outcome

    def submit(self, update: Update) -> "asyncio.Task[DispatchOutcome]":
        """Schedule ``update`` for concurrent dispatch and return its task."""

        if self._idle_event is None:
            self._idle_event = asyncio.Event()
        if self._semaphore is None and self._max_concurrency is not None:
            self._semaphore = asyncio.Semaphore(self._max_concurrency)
        self._idle_event.clear()
        task = asyncio.create_task(self._dispatch_bounded(update))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    async def dispatch_many(self, updates: Iterable[Update]) -> list[DispatchOutcome]:
        """Dispatch concurrently; outcomes come back in input order."""

        tasks = [self.submit(update) for update in updates]
        if not tasks:
            return []
        return list(await asyncio.gather(*tasks))

    async def wait_idle(self) -> None:
        """Wait until every submitted update has finished dispatching."""

        if self._idle_event is None or not self._tasks:
            return
        await self._idle_event.wait()

    async def _dispatch_bounded(self, update: Update) -> DispatchOutcome:
        if self._semaphore is None:
            return await self.dispatch(update)
        async with self._semaphore:
            return await self.dispatch(update)

    def _task_done(self, task: "asyncio.Task[DispatchOutcome]") -> None:
        self._tasks.discard(task)
        if not self._tasks and self._idle_event is not None:
            self._idle_event.set()

    async def _run_chain(
        self,
        chain: tuple[ChainEntry, ...],
        context: Context,
        update: Update,
        progress: _Progress,
    ) -> DispatchOutcome:
        for entry in chain:
            if entry.predicate is not None:
                try:
                    matched = await resolve_predicate(entry.predicate, update)
                except Exception as exc:
                    return self._failed(update, entry.name, progress, exc)
                if not matched:
                    continue
            progress.handler = entry.name
            progress.handlers_run += 1
            log_event(
                self._logger,
                logging.DEBUG,
                "chat.dispatch.handler.start",
                update_id=update.update_id,
                handler=entry.name,
            )
            try:
                result = await invoke_handler(entry.handler, context, update)
            except Exception as exc:
                return self._failed(update, entry.name, progress, exc)
            if isinstance(result, Continue):
                continue
            if isinstance(result, Stop):
                return DispatchOutcome(
                    status=DispatchStatus.STOPPED,
                    update=update,
                    handler=entry.name,
                    handlers_run=progress.handlers_run,
                )
            if isinstance(result, Error):
                return self._failed(update, entry.name, progress, result.cause)
        return DispatchOutcome(
            status=DispatchStatus.EXHAUSTED,
            update=update,
            handler=progress.handler,
            handlers_run=progress.handlers_run,
        )

    def _failed(
        self,
        update: Update,
        handler: str,
        progress: _Progress,
        exc: BaseException,
    ) -> DispatchOutcome:
        return DispatchOutcome(
            status=DispatchStatus.ERROR,
            update=update,
            handler=handler,
            handlers_run=progress.handlers_run,
            cause=as_chain_error(exc, handler),
        )

    async def _report(self, outcome: DispatchOutcome) -> None:
        update = outcome.update
        if outcome.ok:
            log_event(
                self._logger,
                logging.INFO,
                "chat.dispatch.done",
                update_id=update.update_id,
                status=outcome.status.value,
                handler=outcome.handler,
                handlers_run=outcome.handlers_run,
                elapsed_ms=round(outcome.elapsed_seconds * 1000, 1),
            )
            return
        log_event(
            self._logger,
            logging.WARNING,
            "chat.dispatch.handler.failed",
            update_id=update.update_id,
            scope=update.scope.key,
            status=outcome.status.value,
            handler=outcome.handler,
            exc=outcome.cause,
        )
        if self._on_error is None:
            return
        try:
            result = self._on_error(outcome)
            if asyncio.iscoroutine(result):
                await result
        except Exception as exc:
            log_event(
                self._logger,
                logging.ERROR,
                "chat.dispatch.on_error.failed",
                update_id=update.update_id,
                exc=exc,
            )

