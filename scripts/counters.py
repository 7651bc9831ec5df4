from __future__ import annotations

import threading
from typing import Dict


class InstanceCounter:
    """Per-name monotonic counter used to build unique model and grid keys."""

    def __init__(self):
        self._counts: Dict[str, int] = {}
        self._lock = threading.Lock()

    def next(self, name: str) -> int:
        with self._lock:
            n = self._counts.get(name, 0) + 1
            self._counts[name] = n
            return n

    def current(self, name: str) -> int:
        with self._lock:
            return self._counts.get(name, 0)


__all__ = ["InstanceCounter"]
