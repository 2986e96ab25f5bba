"""Ordered allow/deny rules evaluated against the sender of an update.

The first matching rule decides; when nothing matches the policy's default
applies. Evaluation has no side effects, so the same principal always gets
the same answer from the same policy.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import (
    Any,
    Awaitable,
    Callable,
    Iterable,
    Mapping,
    Optional,
    Sequence,
    Union,
)

from ..core.exceptions import ConfigError
from ..core.logging_utils import log_event
from .context import Context
from .handlers import CONTINUE, STOP, HandlerResult
from .models import Update


class AccessDecision(enum.Enum):
    ALLOW = "allow"
    DENY = "deny"

    @classmethod
    def parse(cls, value: Any) -> "AccessDecision":
        if isinstance(value, AccessDecision):
            return value
        token = str(value or "").strip().lower()
        try:
            return cls(token)
        except ValueError as exc:
            raise ConfigError(
                f"access decision must be 'allow' or 'deny', got {value!r}"
            ) from exc


@dataclass(frozen=True)
class Principal:
    """Who sent an update, as seen by access rules."""

    user_id: Optional[int]
    chat_id: int
    username: Optional[str] = None
    chat_username: Optional[str] = None

    @classmethod
    def from_update(cls, update: Update) -> "Principal":
        return cls(
            user_id=update.user_id,
            chat_id=update.chat_id,
            username=update.username,
            chat_username=update.chat_username,
        )


def _normalize_username(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    token = value.strip().lstrip("@").lower()
    return token or None


class Matcher:
    """Base matcher; subclasses decide whether a principal is covered."""

    def matches(self, principal: Principal) -> bool:
        raise NotImplementedError


@dataclass(frozen=True)
class AnyPrincipal(Matcher):
    def matches(self, principal: Principal) -> bool:
        return True


@dataclass(frozen=True)
class UserIdMatcher(Matcher):
    user_id: int

    def matches(self, principal: Principal) -> bool:
        return principal.user_id == self.user_id


@dataclass(frozen=True)
class ChatIdMatcher(Matcher):
    chat_id: int

    def matches(self, principal: Principal) -> bool:
        return principal.chat_id == self.chat_id


@dataclass(frozen=True)
class UsernameMatcher(Matcher):
    """Case-insensitive username match; a leading ``@`` is ignored."""

    username: str

    def matches(self, principal: Principal) -> bool:
        wanted = _normalize_username(self.username)
        return wanted is not None and _normalize_username(principal.username) == wanted


@dataclass(frozen=True)
class ChatUsernameMatcher(Matcher):
    username: str

    def matches(self, principal: Principal) -> bool:
        wanted = _normalize_username(self.username)
        return (
            wanted is not None
            and _normalize_username(principal.chat_username) == wanted
        )


@dataclass(frozen=True)
class CustomMatcher(Matcher):
    """Delegates to an external predicate; it must be pure."""

    predicate: Callable[[Principal], bool]
    label: str = "custom"

    def matches(self, principal: Principal) -> bool:
        return bool(self.predicate(principal))


ANY = AnyPrincipal()


@dataclass(frozen=True)
class AccessRule:
    matcher: Matcher
    decision: AccessDecision


def allow(matcher: Matcher) -> AccessRule:
    return AccessRule(matcher=matcher, decision=AccessDecision.ALLOW)


def deny(matcher: Matcher) -> AccessRule:
    return AccessRule(matcher=matcher, decision=AccessDecision.DENY)


class AccessPolicy:
    def __init__(
        self,
        rules: Iterable[AccessRule] = (),
        *,
        default: AccessDecision = AccessDecision.DENY,
    ) -> None:
        self._rules: tuple[AccessRule, ...] = tuple(rules)
        self.default = default

    @property
    def rules(self) -> tuple[AccessRule, ...]:
        return self._rules

    def evaluate(self, principal: Principal) -> AccessDecision:
        for rule in self._rules:
            if rule.matcher.matches(principal):
                return rule.decision
        return self.default

    def is_allowed(self, principal: Principal) -> bool:
        return self.evaluate(principal) is AccessDecision.ALLOW

    @classmethod
    def from_config(
        cls,
        rules: Sequence[Mapping[str, Any]],
        *,
        default: Any = AccessDecision.DENY,
        predicates: Optional[Mapping[str, Callable[[Principal], bool]]] = None,
    ) -> "AccessPolicy":
        """Build a policy from ``[{"user_id": 42, "decision": "deny"}, ...]``.

        Each rule names exactly one matcher: ``user_id``, ``chat_id``,
        ``username``, ``chat_username``, ``custom`` (a key into
        ``predicates``) or ``any: true``.
        """

        registry = dict(predicates or {})
        parsed: list[AccessRule] = []
        for index, raw in enumerate(rules):
            where = f"access.rules[{index}]"
            if not isinstance(raw, Mapping):
                raise ConfigError(f"{where} must be a mapping")
            decision = AccessDecision.parse(raw.get("decision"))
            parsed.append(
                AccessRule(
                    matcher=_parse_matcher(raw, registry, where), decision=decision
                )
            )
        return cls(parsed, default=AccessDecision.parse(default))


_MATCHER_KEYS = ("user_id", "chat_id", "username", "chat_username", "custom", "any")


def _parse_matcher(
    raw: Mapping[str, Any],
    predicates: Mapping[str, Callable[[Principal], bool]],
    where: str,
) -> Matcher:
    present = [key for key in _MATCHER_KEYS if key in raw]
    if len(present) != 1:
        raise ConfigError(
            f"{where} must set exactly one of {', '.join(_MATCHER_KEYS)}"
        )
    key = present[0]
    value = raw[key]
    if key in ("user_id", "chat_id"):
        if isinstance(value, bool):
            raise ConfigError(f"{where}.{key} must be an integer")
        try:
            number = int(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"{where}.{key} must be an integer") from exc
        return UserIdMatcher(number) if key == "user_id" else ChatIdMatcher(number)
    if key in ("username", "chat_username"):
        if not isinstance(value, str) or not _normalize_username(value):
            raise ConfigError(f"{where}.{key} must be a non-empty string")
        return UsernameMatcher(value) if key == "username" else ChatUsernameMatcher(value)
    if key == "custom":
        predicate = predicates.get(str(value))
        if predicate is None:
            raise ConfigError(f"{where}.custom refers to unknown predicate {value!r}")
        return CustomMatcher(predicate=predicate, label=str(value))
    if value is not True:
        raise ConfigError(f"{where}.any must be true")
    return ANY


DeniedHook = Callable[[Context, Update, Principal], Union[None, Awaitable[None]]]


class AccessHandler:
    """Chain entry: ``Stop`` on deny, ``Continue`` on allow.

    ``on_denied`` lets the integrator decide whether a denial is silent or
    answered; the handler itself never messages anyone.
    """

    name = "access"

    def __init__(
        self,
        policy: AccessPolicy,
        *,
        on_denied: Optional[DeniedHook] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._policy = policy
        self._on_denied = on_denied
        self._logger = logger or logging.getLogger(__name__)

    async def handle(self, context: Context, update: Update) -> HandlerResult:
        principal = Principal.from_update(update)
        if self._policy.evaluate(principal) is AccessDecision.ALLOW:
            return CONTINUE
        log_event(
            self._logger,
            logging.INFO,
            "chat.access.denied",
            update_id=update.update_id,
            chat_id=principal.chat_id,
            user_id=principal.user_id,
        )
        if self._on_denied is not None:
            result = self._on_denied(context, update, principal)
            if asyncio.iscoroutine(result):
                await result
        return STOP
