"""Event Log – append-only audit trail of scheduling decisions.

Every skip/start/stop/timeout decision taken by the orchestrator is recorded as
an ``EventLogEntry``.  Entries are also forwarded to the standard ``logging``
module so that they end up in ``run.log`` alongside everything else.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from rich.table import Table

from engines.object_store import ObjectStore

logger = logging.getLogger(__name__)

DATE_TIME_FORMAT = "%Y.%m.%d %H:%M:%S"


class Stage(Enum):
    WORKFLOW = "Workflow"
    DATA_IMPORT = "DataImport"
    MODEL_TRAINING = "ModelTraining"


class Level(Enum):
    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARN = logging.WARNING


@dataclass(frozen=True)
class EventLogEntry:
    timestamp: datetime
    stage: Stage
    level: Level
    message: str
    named_values: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(timespec="milliseconds"),
            "stage": self.stage.value,
            "level": self.level.name,
            "message": self.message,
            "named_values": {k: _jsonable(v) for k, v in self.named_values.items()},
        }

    def __str__(self) -> str:
        return f"{self.timestamp.strftime(DATE_TIME_FORMAT)} {self.level.name:<5} {self.stage.value}: {self.message}"


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


class EventLog:
    """Ordered, append-only sequence of entries for one project."""

    def __init__(self, key: str):
        self.key = key
        self._events: List[EventLogEntry] = []
        self._lock = threading.Lock()

    @classmethod
    def get_or_make(cls, store: ObjectStore, project_name: str) -> "EventLog":
        key = cls.key_for(project_name)
        return store.put_if_absent(key, lambda: cls(key))

    @staticmethod
    def key_for(project_name: str) -> str:
        return f"{project_name}@@EventLog"

    def _add(self, stage: Stage, level: Level, message: str, named_values: Optional[Dict[str, Any]]) -> EventLogEntry:
        entry = EventLogEntry(datetime.now(), stage, level, message, dict(named_values or {}))
        with self._lock:
            self._events.append(entry)
        logger.log(level.value, "[%s] %s", stage.value, message)
        return entry

    def debug(self, stage: Stage, message: str, **named_values) -> EventLogEntry:
        return self._add(stage, Level.DEBUG, message, named_values)

    def info(self, stage: Stage, message: str, **named_values) -> EventLogEntry:
        return self._add(stage, Level.INFO, message, named_values)

    def warn(self, stage: Stage, message: str, **named_values) -> EventLogEntry:
        return self._add(stage, Level.WARN, message, named_values)

    @property
    def events(self) -> List[EventLogEntry]:
        with self._lock:
            return list(self._events)

    def __iter__(self) -> Iterator[EventLogEntry]:
        return iter(self.events)

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def find(self, substring: str, level: Optional[Level] = None) -> List[EventLogEntry]:
        return [
            e for e in self.events
            if substring in e.message and (level is None or e.level == level)
        ]

    def as_records(self) -> List[Dict[str, Any]]:
        return [e.as_dict() for e in self.events]

    def to_table(self, title: str) -> Table:
        table = Table(title=title)
        table.add_column("timestamp")
        table.add_column("level")
        table.add_column("stage")
        table.add_column("message")
        for e in self.events:
            table.add_row(e.timestamp.strftime(DATE_TIME_FORMAT), e.level.name, e.stage.value, e.message)
        return table

    def __str__(self) -> str:
        return "\n".join(str(e) for e in self.events)


__all__ = ["DATE_TIME_FORMAT", "Stage", "Level", "EventLogEntry", "EventLog"]
