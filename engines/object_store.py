"""In-process key-value object store.

Holds every object shared between the orchestrator and the task substrate
(models, search results, leaderboards, event logs).  All mutations of a shared
value should go through :meth:`ObjectStore.update` so concurrent writers never
clobber each other.
"""
from __future__ import annotations

import threading
from typing import Any, Callable, Dict, List, Optional


class ObjectStore:
    def __init__(self):
        self._objects: Dict[str, Any] = {}
        self._lock = threading.RLock()

    def put(self, key: str, value: Any) -> None:
        with self._lock:
            self._objects[key] = value

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._objects.get(key, default)

    def contains(self, key: str) -> bool:
        with self._lock:
            return key in self._objects

    def remove(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._objects.pop(key, None)

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return [k for k in self._objects if k.startswith(prefix)]

    def put_if_absent(self, key: str, factory: Callable[[], Any]) -> Any:
        """Return the value stored at *key*, creating it with *factory* if missing."""
        with self._lock:
            if key not in self._objects:
                self._objects[key] = factory()
            return self._objects[key]

    def update(self, key: str, fn: Callable[[Any], Any]) -> Any:
        """Atomically replace the value at *key* with ``fn(current)``."""
        with self._lock:
            value = fn(self._objects.get(key))
            self._objects[key] = value
            return value

    def __len__(self) -> int:
        with self._lock:
            return len(self._objects)


__all__ = ["ObjectStore"]
