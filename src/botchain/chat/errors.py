"""Dispatch-layer error hierarchy.

These compose the shared core error types so integrators can branch on
``recoverable``/``severity`` no matter which component failed.
"""

from __future__ import annotations

from typing import Optional

from ..core.exceptions import (
    BotchainError,
    ConfigError,
    PermanentError,
    TransientError,
)


class HandlerError(BotchainError):
    """Failure raised by user handler logic; ends the chain, never retried."""

    def __init__(
        self,
        message: str,
        *,
        handler_name: Optional[str] = None,
        user_message: Optional[str] = None,
    ) -> None:
        super().__init__(message, user_message=user_message)
        self.handler_name = handler_name


class SessionBackendError(BotchainError):
    """I/O failure from a session store; fatal for the current dispatch only."""


class SessionBackendTransientError(SessionBackendError, TransientError):
    """Session backend failure worth retrying (lock contention)."""


class RateLimiterConfigError(ConfigError):
    """Invalid capacity or refill parameters."""


class UnknownDialogueState(PermanentError):
    """A stored or requested state name is absent from the state table."""

    def __init__(self, state: str, *, known: tuple[str, ...] = ()) -> None:
        super().__init__(
            f"unknown dialogue state {state!r}"
            + (f" (known: {', '.join(known)})" if known else "")
        )
        self.state = state
        self.known = known


class DialogueBusyError(TransientError):
    """Another update for the same scope holds the dialogue too long."""


class DispatchTimeoutError(TransientError):
    """The per-update deadline expired before the chain finished."""

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"dispatch exceeded {timeout_seconds:g}s deadline")
        self.timeout_seconds = timeout_seconds
