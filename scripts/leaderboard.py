"""Leaderboard – ranked, de-duplicated collection of trained models.

One leaderboard exists per project and is shared by every AutoML run of that
project.  The authoritative copy is an immutable ``Leaderboard`` snapshot held
in the ``ObjectStore``; ``LeaderboardRef`` handles re-read it on every call and
replace it through an atomic read-modify-write, so concurrent runs adding
disjoint models never lose each other's additions.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Optional, Tuple

import pandas as pd
from rich.table import Table

from engines.object_store import ObjectStore
from scripts.config import metric_is_increasing

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Leaderboard:
    """Snapshot stored in the object store."""

    key: str
    project_name: str
    sort_metric: str
    model_keys: Tuple[str, ...] = ()

    @property
    def sort_increasing(self) -> bool:
        return metric_is_increasing(self.sort_metric)

    def with_models(self, keys: Iterable[str]) -> "Leaderboard":
        merged = list(self.model_keys)
        for key in keys:
            if key not in merged:
                merged.append(key)
        return replace(self, model_keys=tuple(merged))


def _metric_of(result: Any, metric: str) -> float:
    value = (getattr(result, "metrics", None) or {}).get(metric)
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return math.nan
    return float(value)


class LeaderboardRef:
    """Handle to the shared leaderboard of a project."""

    def __init__(self, store: ObjectStore, key: str):
        self._store = store
        self.key = key

    def _snapshot(self) -> Leaderboard:
        snapshot = self._store.get(self.key)
        if snapshot is None:
            raise RuntimeError(f"Leaderboard {self.key} no longer exists")
        return snapshot

    @property
    def project_name(self) -> str:
        return self._snapshot().project_name

    @property
    def sort_metric(self) -> str:
        return self._snapshot().sort_metric

    def add_results(self, keys: Iterable[str]) -> int:
        """Add model *keys*; returns how many were not already present."""
        keys = [k for k in keys if k is not None]
        added = 0

        def _merge(current: Optional[Leaderboard]) -> Leaderboard:
            nonlocal added
            if current is None:
                raise RuntimeError(f"Leaderboard {self.key} no longer exists")
            updated = current.with_models(keys)
            added = len(updated.model_keys) - len(current.model_keys)
            return updated

        self._store.update(self.key, _merge)
        if added:
            logger.debug("Leaderboard %s: added %d model(s)", self.key, added)
        return added

    def add_result(self, key: str) -> int:
        return self.add_results([key])

    def count(self) -> int:
        return len(self._snapshot().model_keys)

    def ranked_keys(self) -> List[str]:
        """Model keys, best first.  Models missing the sort metric rank last."""
        snapshot = self._snapshot()
        increasing = snapshot.sort_increasing
        scored = []
        for position, key in enumerate(snapshot.model_keys):
            value = _metric_of(self._store.get(key), snapshot.sort_metric)
            if math.isnan(value):
                rank_value = math.inf
            else:
                rank_value = -value if increasing else value
            scored.append((rank_value, position, key))
        scored.sort()
        return [key for _, _, key in scored]

    def models(self) -> List[Any]:
        return [m for m in (self._store.get(k) for k in self.ranked_keys()) if m is not None]

    def leader(self) -> Optional[Any]:
        ranked = self.models()
        return ranked[0] if ranked else None

    def as_data_frame(self) -> pd.DataFrame:
        rows: List[Dict[str, Any]] = []
        for rank, result in enumerate(self.models(), start=1):
            row = {"rank": rank, "model_id": result.key, "algo": result.algo, "model_type": result.model_type}
            row.update(result.metrics)
            rows.append(row)
        return pd.DataFrame(rows, columns=None if rows else ["rank", "model_id", "algo", "model_type"])

    def to_table(self, title: Optional[str] = None) -> Table:
        snapshot = self._snapshot()
        table = Table(title=title or f"Leaderboard for project {snapshot.project_name}")
        table.add_column("#", justify="right")
        table.add_column("model_id")
        table.add_column(snapshot.sort_metric, justify="right")
        for rank, result in enumerate(self.models(), start=1):
            table.add_row(str(rank), result.key, f"{_metric_of(result, snapshot.sort_metric):.5f}")
        return table

    def __len__(self) -> int:
        return self.count()

    def __repr__(self) -> str:
        return f"LeaderboardRef({self.key!r})"


class LeaderboardStore:
    """Creates and looks up per-project leaderboards in an ``ObjectStore``."""

    def __init__(self, store: ObjectStore):
        self.store = store

    @staticmethod
    def key_for(project_name: str) -> str:
        return f"{project_name}@@Leaderboard"

    def get_or_create(self, project_name: str, sort_metric: str) -> LeaderboardRef:
        metric_is_increasing(sort_metric)  # validates the metric name
        key = self.key_for(project_name)
        snapshot = self.store.put_if_absent(key, lambda: Leaderboard(key, project_name, sort_metric))
        if snapshot.sort_metric != sort_metric:
            logger.warning(
                "Leaderboard %s already sorts by %s; ignoring requested %s",
                key, snapshot.sort_metric, sort_metric,
            )
        return LeaderboardRef(self.store, key)

    def exists(self, project_name: str) -> bool:
        return self.store.contains(self.key_for(project_name))

    def remove(self, project_name: str) -> None:
        self.store.remove(self.key_for(project_name))


__all__ = ["Leaderboard", "LeaderboardRef", "LeaderboardStore"]
