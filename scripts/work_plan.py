"""Work plan: how much of the run's progress budget each algorithm may consume."""
from __future__ import annotations

import sys
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, List, Optional, Tuple


class JobType(Enum):
    MODEL_BUILD = "build"
    HYPERPARAM_SEARCH = "search"


@dataclass
class Work:
    """One allocation: ``count`` repetitions of a job, each worth ``share`` units."""

    algo: Any
    count: int
    type: JobType
    share: int

    def __post_init__(self):
        if self.count < 0:
            raise ValueError("count must be >= 0")
        if self.share < 0:
            raise ValueError("share must be >= 0")

    def consume(self, amount: int = 1) -> int:
        c = min(self.count, amount)
        self.count -= c
        return c * self.share

    def consume_all(self) -> int:
        return self.consume(sys.maxsize)

    def remaining(self) -> int:
        return self.count * self.share


class WorkAllocations:
    """Ordered collection of ``Work`` items, sealed once planning is over."""

    def __init__(self):
        self._can_allocate = True
        self._allocations: List[Work] = []

    def allocate(self, algo: Any, count: int, job_type: JobType, share: int) -> "WorkAllocations":
        if not self._can_allocate:
            raise RuntimeError("Can't allocate new work.")
        self._allocations.append(Work(algo, count, job_type, share))
        return self

    def end(self) -> None:
        self._can_allocate = False

    @property
    def sealed(self) -> bool:
        return not self._can_allocate

    def remove(self, algo: Any) -> None:
        self._allocations = [w for w in self._allocations if w.algo != algo]

    def get_allocation(self, algo: Any, job_type: JobType) -> Optional[Work]:
        for alloc in self._allocations:
            if alloc.algo == algo and alloc.type == job_type:
                return alloc
        return None

    def remaining_work(self) -> int:
        return sum(w.remaining() for w in self._allocations)

    def algos(self) -> List[Any]:
        seen: List[Any] = []
        for w in self._allocations:
            if w.algo not in seen:
                seen.append(w.algo)
        return seen

    def __iter__(self):
        return iter(list(self._allocations))

    def __len__(self) -> int:
        return len(self._allocations)

    @classmethod
    def from_table(cls, table: Iterable[Tuple[Any, int, str, int]], resolve=lambda a: a) -> "WorkAllocations":
        """Build an (unsealed) plan from ``(algo, count, "build"|"search", share)`` rows."""
        plan = cls()
        for algo, count, job_type, share in table:
            plan.allocate(resolve(algo), count, JobType(job_type), share)
        return plan


__all__ = ["JobType", "Work", "WorkAllocations"]
