"""Shared error hierarchy for botchain.

Every error raised by the package derives from :class:`BotchainError`. The
``recoverable`` and ``severity`` class attributes let integrators decide how to
surface a failure without matching on concrete types.
"""

from __future__ import annotations

from typing import Optional


class BotchainError(Exception):
    """Base botchain error."""

    recoverable = True
    severity = "error"

    def __init__(self, message: str, *, user_message: Optional[str] = None) -> None:
        super().__init__(message)
        self.user_message = user_message


class TransientError(BotchainError):
    """Failure that may succeed when retried (locks, timeouts, network)."""

    recoverable = True
    severity = "warning"


class PermanentError(BotchainError):
    """Failure that will not succeed on retry (config, data corruption)."""

    recoverable = False
    severity = "error"


class ConfigError(PermanentError):
    """Raised when botchain configuration is invalid."""
