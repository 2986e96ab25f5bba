"""Outbound capability handed to handlers through the Context.

The core never speaks a platform wire protocol; transports implement
:class:`ApiClient` and the dispatcher injects it under :data:`API_CLIENT`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable

from .context import Context, ContextKey


@dataclass(frozen=True)
class SendResult:
    ok: bool
    message_id: Optional[int] = None
    error: Optional[str] = None


@runtime_checkable
class ApiClient(Protocol):
    """Minimal platform action surface used by handlers."""

    async def send_message(self, chat_id: int, text: str) -> SendResult:
        """Deliver ``text`` to ``chat_id``."""


API_CLIENT: ContextKey[ApiClient] = ContextKey("api_client", ApiClient)  # type: ignore[type-abstract]


def api_from_context(context: Context) -> ApiClient:
    return context.require(API_CLIENT)
