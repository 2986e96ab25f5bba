"""Handler contract, continuation signals and predicate helpers.

A handler is anything with ``async handle(context, update)`` or a plain
``async (context, update)`` callable. It answers with a :data:`HandlerResult`;
returning ``None`` means :data:`CONTINUE`.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import (
    Any,
    Awaitable,
    Callable,
    Optional,
    Protocol,
    Union,
    runtime_checkable,
)

from .commands import command_from_update
from .context import Context
from .models import CallbackPayload, MessagePayload, Update


@dataclass(frozen=True)
class Continue:
    """Pass the update to the next handler."""


@dataclass(frozen=True)
class Stop:
    """The update was handled; end the chain."""


@dataclass(frozen=True)
class Error:
    """The handler failed; end the chain and report ``cause``."""

    cause: BaseException


HandlerResult = Union[Continue, Stop, Error]

CONTINUE = Continue()
STOP = Stop()


@runtime_checkable
class Handler(Protocol):
    async def handle(
        self, context: Context, update: Update
    ) -> Optional[HandlerResult]: ...


HandlerFunc = Callable[[Context, Update], Awaitable[Optional[HandlerResult]]]
HandlerLike = Union[Handler, HandlerFunc]

Predicate = Callable[[Update], Union[bool, Awaitable[bool]]]


def handler_name(handler: Any) -> str:
    name = getattr(handler, "name", None)
    if isinstance(name, str) and name:
        return name
    if isinstance(handler, Handler):
        return type(handler).__name__
    return getattr(handler, "__qualname__", None) or type(handler).__name__


async def invoke_handler(
    handler: HandlerLike, context: Context, update: Update
) -> HandlerResult:
    """Run ``handler`` and normalize its answer."""

    if isinstance(handler, Handler):
        result = await handler.handle(context, update)
    else:
        result = await handler(context, update)
    if result is None:
        return CONTINUE
    if not isinstance(result, (Continue, Stop, Error)):
        raise TypeError(
            f"handler {handler_name(handler)} returned {type(result).__name__}, "
            "expected Continue, Stop, Error or None"
        )
    return result


async def resolve_predicate(predicate: Predicate, update: Update) -> bool:
    result = predicate(update)
    if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
        return bool(await result)
    return bool(result)


def is_message(update: Update) -> bool:
    return isinstance(update.payload, MessagePayload)


def is_callback(update: Update) -> bool:
    return isinstance(update.payload, CallbackPayload)


def command(*names: str, bot_username: Optional[str] = None) -> Predicate:
    """Match messages that start with one of the ``/names`` commands."""

    wanted = frozenset(name.lstrip("/").lower() for name in names)
    if not wanted:
        raise ValueError("command() needs at least one name")

    def predicate(update: Update) -> bool:
        parsed = command_from_update(update, bot_username=bot_username)
        return parsed is not None and parsed.name in wanted

    return predicate


def text_matches(pattern: Union[str, "re.Pattern[str]"]) -> Predicate:
    compiled = re.compile(pattern) if isinstance(pattern, str) else pattern

    def predicate(update: Update) -> bool:
        text = update.text
        return text is not None and compiled.search(text) is not None

    return predicate


def all_of(*predicates: Predicate) -> Predicate:
    async def predicate(update: Update) -> bool:
        for item in predicates:
            if not await resolve_predicate(item, update):
                return False
        return True

    return predicate


def any_of(*predicates: Predicate) -> Predicate:
    async def predicate(update: Update) -> bool:
        for item in predicates:
            if await resolve_predicate(item, update):
                return True
        return False

    return predicate


def negate(inner: Predicate) -> Predicate:
    async def predicate(update: Update) -> bool:
        return not await resolve_predicate(inner, update)

    return predicate
