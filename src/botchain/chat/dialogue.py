"""Session-backed dialogue state machine.

The current state name of each scope lives in its session under a reserved
key. For every update the machine, holding the scope's lock:

1. loads the state (the initial state when nothing is stored),
2. resolves the state's handler, failing loudly on unknown names,
3. runs the handler, which may call :func:`request_transition` or
   :func:`exit_dialogue`,
4. persists the requested change once the handler has returned
   ``Continue``/``Stop``.

Nothing is written when the handler fails, raises or is cancelled, so a
timeout can never leave a half-applied transition.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Mapping, Optional

from ..core.locks import KeyedLocks
from ..core.logging_utils import log_event
from .context import Context, ContextKey
from .errors import DialogueBusyError, SessionBackendError, UnknownDialogueState
from .handlers import Error, HandlerLike, HandlerResult, invoke_handler
from .models import Scope, Update
from .session.store import Session, SessionStore

DIALOGUE_STATE_KEY = "__dialogue_state__"
DEFAULT_INITIAL_STATE = "start"

CURRENT_STATE: ContextKey[str] = ContextKey("dialogue.current_state", str)
NEXT_STATE: ContextKey[str] = ContextKey("dialogue.next_state", str)
EXIT_DIALOGUE: ContextKey[bool] = ContextKey("dialogue.exit", bool)
SESSION: ContextKey[Session] = ContextKey("dialogue.session", Session)


def request_transition(context: Context, state: str) -> None:
    """Ask the machine to move to ``state`` after the current handler."""

    context.pop(EXIT_DIALOGUE)
    context.set(NEXT_STATE, state)


def exit_dialogue(context: Context) -> None:
    """Ask the machine to forget the stored state (next update starts over)."""

    context.pop(NEXT_STATE)
    context.set(EXIT_DIALOGUE, True)


class DialogueMachine:
    def __init__(
        self,
        store: SessionStore,
        states: Mapping[str, HandlerLike],
        *,
        initial_state: str = DEFAULT_INITIAL_STATE,
        ttl: Optional[float] = None,
        state_key: str = DIALOGUE_STATE_KEY,
        locks: Optional[KeyedLocks] = None,
        lock_timeout_seconds: Optional[float] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._states = dict(states)
        if initial_state not in self._states:
            raise UnknownDialogueState(initial_state, known=self.state_names)
        self._store = store
        self.initial_state = initial_state
        self._ttl = ttl
        self._state_key = state_key
        self._locks = locks or KeyedLocks()
        self._lock_timeout = lock_timeout_seconds
        self._logger = logger or logging.getLogger(__name__)

    @property
    def state_names(self) -> tuple[str, ...]:
        return tuple(self._states)

    @property
    def store(self) -> SessionStore:
        return self._store

    def busy(self, scope: Scope) -> bool:
        return self._locks.locked(scope)

    async def state_for(self, scope: Scope) -> str:
        """Current state name of ``scope`` (validated against the table)."""

        data = await self._store.get(scope)
        return self._resolve_state_name(data)

    async def reset(self, scope: Scope) -> None:
        async with self._locks.hold(scope):
            await self._write_state(scope, None, ttl=self._ttl)

    async def run(self, context: Context, update: Update) -> HandlerResult:
        scope = update.scope
        acquired = False
        try:
            async with self._locks.hold(scope, timeout=self._lock_timeout):
                acquired = True
                return await self._run_locked(scope, context, update)
        except asyncio.TimeoutError as exc:
            if acquired:
                raise
            raise DialogueBusyError(
                f"dialogue for scope {scope.key} is busy",
            ) from exc

    async def _run_locked(
        self, scope: Scope, context: Context, update: Update
    ) -> HandlerResult:
        data = await self._store.get(scope)
        state = self._resolve_state_name(data)
        handler = self._states[state]
        context.pop(NEXT_STATE)
        context.pop(EXIT_DIALOGUE)
        context.set(CURRENT_STATE, state)
        session = Session(scope, self._store, ttl=self._ttl)
        context.set(SESSION, session)

        result = await invoke_handler(handler, context, update)
        if isinstance(result, Error):
            return result

        if context.pop(EXIT_DIALOGUE):
            await self._write_state(scope, None, ttl=session.ttl)
            log_event(
                self._logger,
                logging.DEBUG,
                "chat.dialogue.exit",
                update_id=update.update_id,
                scope=scope.key,
                state=state,
            )
            return result
        next_state = context.pop(NEXT_STATE)
        if next_state is not None:
            if next_state not in self._states:
                raise UnknownDialogueState(next_state, known=self.state_names)
            await self._write_state(scope, next_state, ttl=session.ttl)
            log_event(
                self._logger,
                logging.DEBUG,
                "chat.dialogue.transition",
                update_id=update.update_id,
                scope=scope.key,
                state=state,
                next_state=next_state,
            )
        return result

    def _resolve_state_name(self, data: Optional[Mapping[str, bytes]]) -> str:
        raw = (data or {}).get(self._state_key)
        if raw is None:
            return self.initial_state
        try:
            state = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SessionBackendError("stored dialogue state is not UTF-8") from exc
        if state not in self._states:
            raise UnknownDialogueState(state, known=self.state_names)
        return state

    async def _write_state(
        self, scope: Scope, state: Optional[str], *, ttl: Optional[float]
    ) -> None:
        # Re-read so values the handler stored through the Session survive.
        latest = await self._store.get(scope) or {}
        if state is None:
            if self._state_key not in latest:
                return
            del latest[self._state_key]
            if not latest:
                await self._store.remove(scope)
                return
        else:
            latest[self._state_key] = state.encode("utf-8")
        await self._store.set(scope, latest, ttl=ttl)


class DialogueHandler:
    """Chain entry running the scope's current dialogue state."""

    name = "dialogue"

    def __init__(self, machine: DialogueMachine) -> None:
        self.machine = machine

    async def handle(self, context: Context, update: Update) -> HandlerResult:
        return await self.machine.run(context, update)
