"""Core runtime primitives."""

from .clock import Clock, ManualClock, MonotonicClock, WallClock
from .exceptions import BotchainError, ConfigError, PermanentError, TransientError
from .locks import KeyedLocks

__all__ = [
    "BotchainError",
    "Clock",
    "ConfigError",
    "KeyedLocks",
    "ManualClock",
    "MonotonicClock",
    "PermanentError",
    "TransientError",
    "WallClock",
]
