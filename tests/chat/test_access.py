from __future__ import annotations

import pytest

from botchain.chat.access import (
    ANY,
    AccessDecision,
    AccessHandler,
    AccessPolicy,
    ChatIdMatcher,
    CustomMatcher,
    Principal,
    UserIdMatcher,
    UsernameMatcher,
    allow,
    deny,
)
from botchain.chat.context import Context
from botchain.chat.handlers import CONTINUE, STOP
from botchain.chat.models import message_update
from botchain.core.exceptions import ConfigError


def _principal(
    user_id: int = 1, chat_id: int = 100, username: str | None = None
) -> Principal:
    return Principal(user_id=user_id, chat_id=chat_id, username=username)


def test_first_matching_rule_wins() -> None:
    policy = AccessPolicy([deny(UserIdMatcher(42)), allow(ANY)])

    assert policy.evaluate(_principal(user_id=42)) is AccessDecision.DENY
    assert policy.evaluate(_principal(user_id=7)) is AccessDecision.ALLOW
    assert policy.evaluate(_principal(user_id=8)) is AccessDecision.ALLOW


def test_empty_rules_fall_back_to_default() -> None:
    assert AccessPolicy([], default=AccessDecision.ALLOW).is_allowed(_principal())
    assert not AccessPolicy([], default=AccessDecision.DENY).is_allowed(_principal())


def test_username_matcher_ignores_case_and_at_prefix() -> None:
    policy = AccessPolicy([allow(UsernameMatcher("@Alice"))])

    assert policy.is_allowed(_principal(username="alice"))
    assert policy.is_allowed(_principal(username="@ALICE"))
    assert not policy.is_allowed(_principal(username="bob"))
    assert not policy.is_allowed(_principal(username=None))


def test_chat_and_custom_matchers() -> None:
    policy = AccessPolicy(
        [
            allow(ChatIdMatcher(-100500)),
            allow(CustomMatcher(lambda p: (p.user_id or 0) > 1000)),
        ]
    )

    assert policy.is_allowed(_principal(chat_id=-100500))
    assert policy.is_allowed(_principal(user_id=5000))
    assert not policy.is_allowed(_principal(user_id=5))


def test_evaluation_is_deterministic() -> None:
    policy = AccessPolicy([deny(UserIdMatcher(3))], default=AccessDecision.ALLOW)
    principal = _principal(user_id=3)
    assert {policy.evaluate(principal) for _ in range(10)} == {AccessDecision.DENY}


def test_from_config_builds_ordered_rules() -> None:
    policy = AccessPolicy.from_config(
        [
            {"user_id": 42, "decision": "deny"},
            {"username": "admin", "decision": "allow"},
            {"custom": "staff", "decision": "allow"},
            {"any": True, "decision": "deny"},
        ],
        default="allow",
        predicates={"staff": lambda p: p.chat_id == 1},
    )

    assert not policy.is_allowed(_principal(user_id=42, username="admin"))
    assert policy.is_allowed(_principal(user_id=1, username="Admin"))
    assert policy.is_allowed(_principal(user_id=2, chat_id=1))
    assert not policy.is_allowed(_principal(user_id=2, chat_id=2))


@pytest.mark.parametrize(
    "rule",
    [
        {"decision": "allow"},
        {"user_id": 1, "chat_id": 2, "decision": "allow"},
        {"user_id": "abc", "decision": "allow"},
        {"user_id": 1, "decision": "maybe"},
        {"custom": "unknown", "decision": "allow"},
        {"any": False, "decision": "allow"},
    ],
)
def test_from_config_rejects_invalid_rules(rule: dict) -> None:
    with pytest.raises(ConfigError):
        AccessPolicy.from_config([rule])


@pytest.mark.anyio
async def test_access_handler_stops_denied_updates_and_calls_hook() -> None:
    denied: list[int] = []

    async def on_denied(_context, update, principal) -> None:
        denied.append(principal.user_id)

    handler = AccessHandler(
        AccessPolicy([deny(UserIdMatcher(42)), allow(ANY)]), on_denied=on_denied
    )

    blocked = await handler.handle(
        Context(), message_update(1, chat_id=1, user_id=42, text="hi")
    )
    passed = await handler.handle(
        Context(), message_update(2, chat_id=1, user_id=7, text="hi")
    )

    assert blocked == STOP
    assert passed == CONTINUE
    assert denied == [42]


@pytest.mark.anyio
async def test_access_handler_without_hook_denies_silently() -> None:
    handler = AccessHandler(AccessPolicy([], default=AccessDecision.DENY))
    result = await handler.handle(
        Context(), message_update(1, chat_id=1, user_id=1, text="hi")
    )
    assert result == STOP
