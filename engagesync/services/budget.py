"""Wall-clock budget for a single sync invocation."""

import time
from typing import Callable


class TimeBudget:
    """
    Tracks elapsed time since the invocation started.

    ``exceeded()`` is the stop signal checked between pages and before each
    per-item sub-request; it also turns true after ``halt()`` so an explicit
    pause stops work at the same points.
    """

    def __init__(self, limit_ms: int, clock: Callable[[], float] = time.monotonic):
        self.limit_ms = limit_ms
        self._clock = clock
        self._started = clock()
        self.halted = False

    def elapsed(self) -> float:
        """Milliseconds since the invocation started."""
        return (self._clock() - self._started) * 1000

    def remaining(self) -> float:
        return max(0.0, self.limit_ms - self.elapsed())

    def exceeded(self) -> bool:
        return self.halted or self.elapsed() >= self.limit_ms

    def halt(self):
        """Request a stop at the next check."""
        self.halted = True
