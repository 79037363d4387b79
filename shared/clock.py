"""
Clock abstraction shared by time-sensitive security checks.

Token refill math uses the monotonic reading; signature freshness uses wall
clock milliseconds. Tests swap in a manually advanced clock.
"""

import threading
import time


class SystemClock:
    """Clock backed by the ``time`` module."""

    def monotonic(self) -> float:
        return time.monotonic()

    def now_millis(self) -> int:
        return int(time.time() * 1000)


class ManualClock:
    """Deterministic clock advanced explicitly by tests and simulations."""

    def __init__(self, start_millis: int = 1_700_000_000_000):
        self._millis = start_millis
        self._lock = threading.Lock()

    def monotonic(self) -> float:
        with self._lock:
            return self._millis / 1000.0

    def now_millis(self) -> int:
        with self._lock:
            return self._millis

    def advance(self, seconds: float) -> None:
        with self._lock:
            self._millis += int(round(seconds * 1000))


system_clock = SystemClock()
