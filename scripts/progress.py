"""Parent progress sink for an AutoML run.

Mirrors a job whose total amount of work is fixed when the run starts and which
is advanced by the poller in *work units* (see ``scripts.work_plan``).
"""
from __future__ import annotations

import threading
from collections import deque
from typing import Deque, Optional, Tuple

# Most recent updates kept for display.
UPDATE_HISTORY = 100


class RunProgress:
    def __init__(self, total_work: int, history: int = UPDATE_HISTORY):
        self.total_work = total_work
        self._worked = 0
        self._message: Optional[str] = None
        self._stop_requested = threading.Event()
        self._lock = threading.Lock()
        self.updates: Deque[Tuple[int, Optional[str]]] = deque(maxlen=history)

    def update(self, units: int, message: Optional[str] = None) -> None:
        with self._lock:
            self._worked += units
            if message is not None:
                self._message = message
            self.updates.append((units, message))

    @property
    def worked(self) -> int:
        return self._worked

    @property
    def message(self) -> Optional[str]:
        return self._message

    def progress(self) -> float:
        if self.total_work <= 0:
            return 1.0
        return min(1.0, max(0.0, self._worked / self.total_work))

    def request_stop(self) -> None:
        self._stop_requested.set()

    def stop_requested(self) -> bool:
        return self._stop_requested.is_set()


__all__ = ["RunProgress", "UPDATE_HISTORY"]
