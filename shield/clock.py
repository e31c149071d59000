"""
Clock
=====
Injectable time source for all expiry math.
"""

import time
import threading
from abc import ABC, abstractmethod


class Clock(ABC):
    """Abstract time source returning seconds since the epoch."""

    @abstractmethod
    def now(self) -> float:
        pass


class SystemClock(Clock):
    """Wall clock backed by time.time()."""

    def now(self) -> float:
        return time.time()


class ManualClock(Clock):
    """
    Clock that only moves when told to.

    Example:
        clock = ManualClock()
        cache = TieredCache(primary, clock=clock)
        clock.advance(1.1)
    """

    def __init__(self, start: float = 1_700_000_000.0):
        self._now = start
        self._lock = threading.Lock()

    def now(self) -> float:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> float:
        """Move the clock forward and return the new time."""
        if seconds < 0:
            raise ValueError("ManualClock cannot move backwards")
        with self._lock:
            self._now += seconds
            return self._now

    def set(self, timestamp: float):
        with self._lock:
            self._now = timestamp


__all__ = [
    'Clock',
    'SystemClock',
    'ManualClock',
]
