"""Smoothed throughput and ETA tracking for long byte-stream operations."""

import time
from typing import Callable, Optional

SPEED_WINDOW = 1.0  # seconds
SMOOTHING = 0.3


class ThroughputMeter:
    """Derive percent, speed and ETA from cumulative byte counts.

    Speed is only recomputed once at least ``SPEED_WINDOW`` seconds have
    passed since the previous sample, then blended into the running value
    with an exponential moving average so the ETA does not jump around.

    Args:
        total: Expected total bytes (0 if unknown)
        clock: Monotonic time source, injectable for tests
    """

    def __init__(self, total: int, clock: Callable[[], float] = time.monotonic):
        self.total = total
        self._clock = clock
        self.done = 0
        self.speed: float = 0.0
        self._window_start = clock()
        self._window_bytes = 0

    def update(self, done: int) -> bool:
        """Record cumulative progress.

        Returns:
            True when a new speed sample was taken (a good moment to report).
        """
        self.done = done
        now = self._clock()
        elapsed = now - self._window_start
        if elapsed < SPEED_WINDOW:
            return False

        instant = (done - self._window_bytes) / elapsed
        if self.speed <= 0:
            self.speed = instant
        else:
            self.speed = SMOOTHING * instant + (1 - SMOOTHING) * self.speed
        self._window_start = now
        self._window_bytes = done
        return True

    @property
    def percent(self) -> int:
        if self.total <= 0:
            return 0
        return min(100, int(self.done * 100 / self.total))

    @property
    def eta(self) -> Optional[float]:
        if self.speed <= 0 or self.total <= 0:
            return None
        return max(0.0, (self.total - self.done) / self.speed)


def scale_percent(percent: int, low: int, high: int) -> int:
    """Map 0-100 onto the ``low``-``high`` sub-range of a stage."""
    percent = max(0, min(100, percent))
    return low + round(percent * (high - low) / 100)
