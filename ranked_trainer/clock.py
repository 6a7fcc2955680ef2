from __future__ import annotations

import time
from typing import Protocol

SECONDS_PER_DAY = 86_400.0


class Clock(Protocol):
    """Wall-clock abstraction.

    Core logic depends on this interface rather than calling real time directly.
    """

    def now(self) -> float:
        """Return seconds since the Unix epoch."""


class RealClock:
    """Production clock backed by time.time()."""

    def now(self) -> float:
        return time.time()


def whole_days_between(earlier_s: float, later_s: float) -> int:
    """Number of complete days elapsed; never negative."""

    if later_s <= earlier_s:
        return 0
    return int((later_s - earlier_s) // SECONDS_PER_DAY)
