"""Injectable monotonic clocks.

Rate limiting and session expiry read time only through a :class:`Clock` so
tests can advance it deterministically.
"""

from __future__ import annotations

import time
from typing import Protocol


class Clock(Protocol):
    def now(self) -> float:
        """Return a monotonic timestamp in seconds."""


class MonotonicClock:
    def now(self) -> float:
        return time.monotonic()


class WallClock:
    """Epoch seconds; used where timestamps outlive the process."""

    def now(self) -> float:
        return time.time()


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = float(start)

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError("cannot move a clock backwards")
        self._now += seconds
