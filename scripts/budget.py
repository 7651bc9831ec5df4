"""Budget clock for a single AutoML run.

A ``Countdown`` is created when the run is configured, started once when the
run begins and stopped once when it ends.  A time limit of ``0`` means the run
is unbounded in time.
"""
from __future__ import annotations

import math
import time
from datetime import datetime
from typing import Callable, Optional


class Countdown:
    """Track elapsed/remaining wall-clock time against a deadline."""

    def __init__(self, time_limit_secs: float, time_fn: Callable[[], float] = time.monotonic):
        if time_limit_secs < 0:
            raise ValueError("time_limit_secs must be >= 0")
        self.time_limit_secs = float(time_limit_secs)
        self._time_fn = time_fn
        self._started_at: Optional[float] = None
        self._stopped_at: Optional[float] = None
        self.start_time: Optional[datetime] = None
        self.stop_time: Optional[datetime] = None

    @classmethod
    def from_seconds(cls, seconds: float, **kwargs) -> "Countdown":
        return cls(seconds, **kwargs)

    @property
    def unlimited(self) -> bool:
        return self.time_limit_secs == 0

    def running(self) -> bool:
        return self._started_at is not None and self._stopped_at is None

    def start(self) -> None:
        if self._started_at is not None:
            return
        self._started_at = self._time_fn()
        self.start_time = datetime.now()

    def stop(self) -> None:
        if self._started_at is None or self._stopped_at is not None:
            return
        self._stopped_at = self._time_fn()
        self.stop_time = datetime.now()

    def elapsed(self) -> float:
        if self._started_at is None:
            return 0.0
        end = self._stopped_at if self._stopped_at is not None else self._time_fn()
        return end - self._started_at

    def duration(self) -> float:
        """Elapsed seconds between start and stop (or now, while running)."""
        return self.elapsed()

    def remaining_time(self) -> float:
        """Seconds left before the deadline; ``math.inf`` when unlimited."""
        if self.unlimited:
            return math.inf
        return max(0.0, self.time_limit_secs - self.elapsed())

    def remaining_time_ms(self) -> float:
        return self.remaining_time() * 1e3

    def timed_out(self) -> bool:
        if self.unlimited or self._started_at is None:
            return False
        return self.elapsed() >= self.time_limit_secs

    def __repr__(self) -> str:
        return (
            f"Countdown(limit={self.time_limit_secs}s, elapsed={self.elapsed():.3f}s, "
            f"running={self.running()})"
        )


__all__ = ["Countdown"]
