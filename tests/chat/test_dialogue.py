from __future__ import annotations

import asyncio

import pytest

from botchain.chat.context import Context
from botchain.chat.dialogue import (
    CURRENT_STATE,
    DIALOGUE_STATE_KEY,
    SESSION,
    DialogueHandler,
    DialogueMachine,
    exit_dialogue,
    request_transition,
)
from botchain.chat.dispatcher import Dispatcher, DispatchStatus
from botchain.chat.errors import (
    DialogueBusyError,
    SessionBackendError,
    UnknownDialogueState,
)
from botchain.chat.handlers import STOP, Error
from botchain.chat.models import Scope, Update, message_update
from botchain.chat.session import MemorySessionStore
from botchain.core.clock import ManualClock

SCOPE = Scope(chat_id=10, user_id=20)


async def _noop(_context: Context, _update: Update) -> None:
    return None


def _update(update_id: int, text: str = "hi", *, user_id: int = 20) -> Update:
    return message_update(update_id, chat_id=10, user_id=user_id, text=text)


def _signup_states(seen: list[str]):
    async def start(context: Context, update: Update):
        seen.append(f"start:{update.text}")
        request_transition(context, "awaiting_name")
        return STOP

    async def awaiting_name(context: Context, update: Update):
        seen.append(f"awaiting_name:{update.text}")
        await context.require(SESSION).set_json("name", update.text)
        request_transition(context, "done")
        return STOP

    async def done(context: Context, update: Update):
        seen.append(f"done:{update.text}")
        exit_dialogue(context)
        return STOP

    return {"start": start, "awaiting_name": awaiting_name, "done": done}


@pytest.mark.anyio
async def test_new_scope_starts_in_initial_state() -> None:
    store = MemorySessionStore()
    machine = DialogueMachine(store, _signup_states([]))

    assert await machine.state_for(SCOPE) == "start"
    assert await store.get(SCOPE) is None


@pytest.mark.anyio
async def test_requested_transition_applies_to_next_update() -> None:
    seen: list[str] = []
    store = MemorySessionStore()
    machine = DialogueMachine(store, _signup_states(seen))

    await machine.run(Context(), _update(1, "/signup"))
    assert await machine.state_for(SCOPE) == "awaiting_name"

    await machine.run(Context(), _update(2, "Alice"))
    await machine.run(Context(), _update(3, "thanks"))

    assert seen == ["start:/signup", "awaiting_name:Alice", "done:thanks"]
    # Exit forgets the state but keeps handler data.
    data = await store.get(SCOPE)
    assert data == {"name": b'"Alice"'}
    assert await machine.state_for(SCOPE) == "start"


@pytest.mark.anyio
async def test_current_state_is_exposed_to_handler() -> None:
    observed: list[str] = []

    async def start(context: Context, _update: Update):
        observed.append(context.require(CURRENT_STATE))

    machine = DialogueMachine(MemorySessionStore(), {"start": start})
    await machine.run(Context(), _update(1))

    assert observed == ["start"]


@pytest.mark.anyio
async def test_scopes_progress_independently() -> None:
    seen: list[str] = []
    machine = DialogueMachine(MemorySessionStore(), _signup_states(seen))

    await machine.run(Context(), _update(1, user_id=1))
    await machine.run(Context(), _update(2, user_id=2))
    await machine.run(Context(), _update(3, "Bob", user_id=1))

    assert await machine.state_for(Scope(10, 1)) == "done"
    assert await machine.state_for(Scope(10, 2)) == "awaiting_name"


def test_initial_state_must_exist() -> None:
    with pytest.raises(UnknownDialogueState):
        DialogueMachine(MemorySessionStore(), {"a": _noop}, initial_state="b")


@pytest.mark.anyio
async def test_transition_to_unknown_state_fails_without_persisting() -> None:
    async def start(context: Context, _update: Update):
        request_transition(context, "nowhere")

    store = MemorySessionStore()
    machine = DialogueMachine(store, {"start": start})

    with pytest.raises(UnknownDialogueState) as excinfo:
        await machine.run(Context(), _update(1))

    assert excinfo.value.state == "nowhere"
    assert await store.get(SCOPE) is None


@pytest.mark.anyio
async def test_stored_unknown_state_fails_loudly() -> None:
    store = MemorySessionStore()
    await store.set(SCOPE, {DIALOGUE_STATE_KEY: b"retired"})
    machine = DialogueMachine(store, {"start": _noop})

    with pytest.raises(UnknownDialogueState):
        await machine.run(Context(), _update(1))


@pytest.mark.anyio
async def test_stored_state_that_is_not_utf8_is_a_backend_error() -> None:
    store = MemorySessionStore()
    await store.set(SCOPE, {DIALOGUE_STATE_KEY: b"\xff\xfe"})
    machine = DialogueMachine(store, {"start": _noop})

    with pytest.raises(SessionBackendError):
        await machine.state_for(SCOPE)


@pytest.mark.anyio
async def test_error_result_does_not_persist_transition() -> None:
    async def start(context: Context, _update: Update):
        request_transition(context, "other")
        return Error(RuntimeError("nope"))

    store = MemorySessionStore()
    machine = DialogueMachine(store, {"start": start, "other": _noop})

    result = await machine.run(Context(), _update(1))

    assert isinstance(result, Error)
    assert await machine.state_for(SCOPE) == "start"


@pytest.mark.anyio
async def test_raised_exception_does_not_persist_transition() -> None:
    async def start(context: Context, _update: Update):
        request_transition(context, "other")
        raise RuntimeError("broken")

    store = MemorySessionStore()
    machine = DialogueMachine(store, {"start": start, "other": _noop})

    with pytest.raises(RuntimeError):
        await machine.run(Context(), _update(1))
    assert await machine.state_for(SCOPE) == "start"


@pytest.mark.anyio
async def test_dispatch_timeout_leaves_state_untouched_and_releases_lock() -> None:
    calls = 0

    async def start(context: Context, _update: Update):
        nonlocal calls
        calls += 1
        request_transition(context, "other")
        if calls == 1:
            await asyncio.sleep(10)
        return STOP

    store = MemorySessionStore()
    machine = DialogueMachine(store, {"start": start, "other": _noop})
    dispatcher = Dispatcher(default_timeout_seconds=0.05)
    dispatcher.register(DialogueHandler(machine))

    first = await dispatcher.dispatch(_update(1))
    assert first.status is DispatchStatus.TIMEOUT
    assert first.handler == "dialogue"
    assert await machine.state_for(SCOPE) == "start"
    assert not machine.busy(SCOPE)

    second = await dispatcher.dispatch(_update(2))
    assert second.status is DispatchStatus.STOPPED
    assert await machine.state_for(SCOPE) == "other"


@pytest.mark.anyio
async def test_same_scope_updates_are_serialized() -> None:
    order: list[str] = []
    gate = asyncio.Event()

    async def start(context: Context, update: Update):
        order.append(f"enter:{update.update_id}")
        if update.update_id == 1:
            await gate.wait()
        order.append(f"leave:{update.update_id}")
        request_transition(context, "next")

    async def next_state(_context: Context, update: Update):
        order.append(f"next:{update.update_id}")

    machine = DialogueMachine(
        MemorySessionStore(), {"start": start, "next": next_state}
    )

    first = asyncio.create_task(machine.run(Context(), _update(1)))
    await asyncio.sleep(0)
    second = asyncio.create_task(machine.run(Context(), _update(2)))
    await asyncio.sleep(0.01)
    assert machine.busy(SCOPE)
    assert order == ["enter:1"]

    gate.set()
    await asyncio.gather(first, second)

    # The second update sees the state written by the first.
    assert order == ["enter:1", "leave:1", "next:2"]


@pytest.mark.anyio
async def test_lock_timeout_raises_busy_error() -> None:
    gate = asyncio.Event()

    async def start(_context: Context, _update: Update):
        await gate.wait()

    machine = DialogueMachine(
        MemorySessionStore(), {"start": start}, lock_timeout_seconds=0.02
    )
    holder = asyncio.create_task(machine.run(Context(), _update(1)))
    await asyncio.sleep(0)

    with pytest.raises(DialogueBusyError):
        await machine.run(Context(), _update(2))

    gate.set()
    await holder
    assert not machine.busy(SCOPE)


@pytest.mark.anyio
async def test_ttl_applies_to_dialogue_state() -> None:
    clock = ManualClock()
    store = MemorySessionStore(clock=clock)
    machine = DialogueMachine(store, _signup_states([]), ttl=30)

    await machine.run(Context(), _update(1))
    assert await machine.state_for(SCOPE) == "awaiting_name"

    clock.advance(31)
    assert await machine.state_for(SCOPE) == "start"


@pytest.mark.anyio
async def test_reset_clears_state() -> None:
    machine = DialogueMachine(MemorySessionStore(), _signup_states([]))
    await machine.run(Context(), _update(1))

    await machine.reset(SCOPE)

    assert await machine.state_for(SCOPE) == "start"


@pytest.mark.anyio
async def test_transition_keeps_ttl_set_through_session_expire() -> None:
    async def start(context: Context, _update: Update):
        session = context.require(SESSION)
        await session.set_json("draft", "x")
        await session.expire(5)
        request_transition(context, "next")
        return STOP

    clock = ManualClock()
    store = MemorySessionStore(clock=clock)
    machine = DialogueMachine(store, {"start": start, "next": _noop})

    await machine.run(Context(), _update(1))
    assert await store.get(SCOPE) == {
        "draft": b'"x"',
        DIALOGUE_STATE_KEY: b"next",
    }

    clock.advance(10)
    assert await store.get(SCOPE) is None
