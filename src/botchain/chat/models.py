"""Normalized update models consumed by the dispatch core.

Transports convert platform payloads into these immutable values; nothing in
the core depends on how an update was obtained.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union


@dataclass(frozen=True, order=True)
class Scope:
    """One conversation: the (chat, user) pair partitioning per-user state."""

    chat_id: int
    user_id: int

    @property
    def key(self) -> str:
        """Stable string form used by storage backends."""

        return f"{self.chat_id}-{self.user_id}"

    @classmethod
    def parse(cls, key: str) -> "Scope":
        # Chat ids may be negative, so the separator is the first "-" after
        # the leading sign.
        index = key.find("-", 1)
        if index <= 0:
            raise ValueError(f"invalid scope key: {key!r}")
        try:
            return cls(chat_id=int(key[:index]), user_id=int(key[index + 1 :]))
        except ValueError as exc:
            raise ValueError(f"invalid scope key: {key!r}") from exc


@dataclass(frozen=True)
class MessagePayload:
    """Plain message with optional text."""

    text: Optional[str] = None
    message_id: Optional[int] = None
    is_edited: bool = False


@dataclass(frozen=True)
class CallbackPayload:
    """Button press attached to an earlier message."""

    data: Optional[str] = None
    message_id: Optional[int] = None


@dataclass(frozen=True)
class InlineQueryPayload:
    query: str
    offset: str = ""


@dataclass(frozen=True)
class UnknownPayload:
    """Any other update kind, kept verbatim for custom handlers."""

    kind: str
    raw: Mapping[str, Any]


UpdatePayload = Union[MessagePayload, CallbackPayload, InlineQueryPayload, UnknownPayload]


@dataclass(frozen=True)
class Update:
    """One inbound event from the messaging platform."""

    update_id: int
    chat_id: int
    user_id: Optional[int]
    payload: UpdatePayload
    username: Optional[str] = None
    chat_username: Optional[str] = None

    @property
    def scope(self) -> Scope:
        # Channel posts carry no sender; the chat then stands in for the user.
        user_id = self.user_id if self.user_id is not None else self.chat_id
        return Scope(chat_id=self.chat_id, user_id=user_id)

    @property
    def text(self) -> Optional[str]:
        if isinstance(self.payload, MessagePayload):
            return self.payload.text
        return None


def message_update(
    update_id: int,
    *,
    chat_id: int,
    user_id: Optional[int],
    text: Optional[str],
    username: Optional[str] = None,
    message_id: Optional[int] = None,
) -> Update:
    """Shorthand for the most common update shape."""

    return Update(
        update_id=update_id,
        chat_id=chat_id,
        user_id=user_id,
        username=username,
        payload=MessagePayload(text=text, message_id=message_id),
    )
