from __future__ import annotations

import asyncio
import json
import random

import pytest

from botchain.chat.context import Context
from botchain.chat.dialogue import SESSION, DialogueHandler, DialogueMachine, request_transition
from botchain.chat.dispatcher import Dispatcher, DispatchStatus
from botchain.chat.handlers import STOP
from botchain.chat.models import Scope, Update, message_update
from botchain.chat.ratelimit import RateLimiter, RateLimitHandler
from botchain.chat.session import MemorySessionStore, SessionStore
from botchain.core.clock import ManualClock

SCOPES = 8
UPDATES_PER_SCOPE = 12


async def _tally(context: Context, update: Update):
    session = context.require(SESSION)
    seen = await session.get_json("seen", default=[])
    # Yield between read and write so unserialized updates would interleave.
    await asyncio.sleep(random.random() / 1000)
    seen.append(update.update_id)
    await session.set_json("seen", seen)
    request_transition(context, "counting")
    return STOP


STATES = {"start": _tally, "counting": _tally}


def _workload() -> list[Update]:
    updates = []
    for n in range(UPDATES_PER_SCOPE):
        for user_id in range(SCOPES):
            update_id = n * SCOPES + user_id
            updates.append(
                message_update(update_id, chat_id=1, user_id=user_id, text=str(n))
            )
    return updates


def _dispatcher(store: SessionStore, **kwargs) -> Dispatcher:
    dispatcher = Dispatcher(**kwargs)
    dispatcher.register(DialogueHandler(DialogueMachine(store, STATES)))
    dispatcher.build()
    return dispatcher


async def _snapshot(store: SessionStore) -> dict[Scope, dict[str, bytes]]:
    result = {}
    for user_id in range(SCOPES):
        scope = Scope(chat_id=1, user_id=user_id)
        data = await store.get(scope)
        assert data is not None
        result[scope] = data
    return result


@pytest.mark.anyio
async def test_concurrent_scopes_match_sequential_execution() -> None:
    updates = _workload()

    sequential_store = MemorySessionStore()
    sequential = _dispatcher(sequential_store)
    for update in updates:
        await sequential.dispatch(update)

    concurrent_store = MemorySessionStore()
    concurrent = _dispatcher(concurrent_store)
    for update in updates:
        concurrent.submit(update)
    await asyncio.wait_for(concurrent.wait_idle(), timeout=10)

    assert await _snapshot(concurrent_store) == await _snapshot(sequential_store)


@pytest.mark.anyio
async def test_same_scope_updates_keep_arrival_order() -> None:
    store = MemorySessionStore()
    dispatcher = _dispatcher(store)
    updates = [message_update(i, chat_id=5, user_id=5, text="x") for i in range(20)]

    outcomes = await asyncio.wait_for(dispatcher.dispatch_many(updates), timeout=10)

    assert all(o.status is DispatchStatus.STOPPED for o in outcomes)
    data = await store.get(Scope(5, 5))
    assert data is not None
    assert json.loads(data["seen"]) == list(range(20))


@pytest.mark.anyio
async def test_shared_rate_limit_under_concurrent_dispatch() -> None:
    limiter = RateLimiter(
        capacity=3, refill_amount=1, refill_interval=1.0, clock=ManualClock()
    )
    handled: list[int] = []

    async def record(_context: Context, update: Update):
        await asyncio.sleep(0)
        handled.append(update.update_id)
        return STOP

    dispatcher = Dispatcher()
    dispatcher.register(RateLimitHandler(limiter))
    dispatcher.register(record)

    outcomes = await dispatcher.dispatch_many(
        message_update(i, chat_id=9, user_id=9, text="spam") for i in range(10)
    )

    assert len(handled) == 3
    assert sum(1 for o in outcomes if o.handler == "ratelimit") == 7
