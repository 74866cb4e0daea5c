"""
Injectable time source.

Decay and backoff are pure functions of elapsed time; components read the
current time through a Clock so tests can move it explicitly.
"""

import threading
import time
from abc import ABC, abstractmethod

SECONDS_PER_DAY = 86400.0


class Clock(ABC):
    """Source of wall-clock time in epoch seconds."""

    @abstractmethod
    def now(self) -> float:
        pass


class SystemClock(Clock):
    def now(self) -> float:
        return time.time()


class ManualClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self._now = start
        self._lock = threading.Lock()

    def now(self) -> float:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> float:
        with self._lock:
            self._now += seconds
            return self._now

    def advance_days(self, days: float) -> float:
        return self.advance(days * SECONDS_PER_DAY)

    def set(self, timestamp: float) -> None:
        with self._lock:
            self._now = timestamp


_default_clock = SystemClock()


def get_clock() -> Clock:
    """Return the process-wide system clock."""
    return _default_clock
