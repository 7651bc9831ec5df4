"""Task substrate discovery

This package hosts the task substrate the orchestrator launches its model
builds on (``local_engine.py``) and exposes a helper to discover which
optional training backends are actually available in the runtime environment.
"""
from __future__ import annotations

import importlib.util
from importlib.machinery import ModuleSpec
from typing import Dict, List

# ---------------------------------------------------------------------------
# Optional backends, in the order they are reported.
# ---------------------------------------------------------------------------
_BACKEND_ORDER: List[str] = [
    "xgboost",
]


def discover_available() -> Dict[str, ModuleSpec]:
    """Return a mapping of ``{backend_name: module_spec}`` for those optional
    backends that are importable on *this* machine.

    Only the import spec is resolved; the backend itself is imported lazily by
    the block that uses it.
    """
    available: Dict[str, ModuleSpec] = {}
    for name in _BACKEND_ORDER:
        spec = importlib.util.find_spec(name)
        if spec is not None:
            available[name] = spec
    return available


__all__ = ["discover_available"]
