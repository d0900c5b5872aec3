"""
store.py - Variable and request-history persistence interface.

Captured HTTP variables outlive a run: they are saved per (project, env)
and fed back into the variable chain of later requests. Completed HTTP
requests are appended to a history log.

InMemoryVariableStore is the bundled implementation. It lives only as long
as the process; durable backends implement the same VariableStore ABC.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Tuple


@dataclass(frozen=True)
class HistoryRecord:
    """One completed HTTP request."""

    method: str
    url: str
    request_headers: Dict[str, str]
    request_body: str
    response_status: int
    response_headers: Dict[str, str]
    response_body: str
    duration_ms: int
    environment: str = ""
    project: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class VariableStore(ABC):
    """Persistent variables plus request history."""

    @abstractmethod
    def get_variables(self, project: str, env: str) -> Dict[str, str]:
        ...

    @abstractmethod
    def save_variable(self, project: str, env: str, name: str, value: str) -> None:
        ...

    @abstractmethod
    def save_record(self, record: HistoryRecord) -> int:
        """Append a record and return its 1-based id."""
        ...


class InMemoryVariableStore(VariableStore):
    """Process-local VariableStore guarded by a lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._variables: Dict[Tuple[str, str], Dict[str, str]] = {}
        self._records: List[HistoryRecord] = []

    def get_variables(self, project: str, env: str) -> Dict[str, str]:
        with self._lock:
            return dict(self._variables.get((project, env), {}))

    def save_variable(self, project: str, env: str, name: str, value: str) -> None:
        with self._lock:
            self._variables.setdefault((project, env), {})[name] = value

    def save_record(self, record: HistoryRecord) -> int:
        with self._lock:
            self._records.append(record)
            return len(self._records)

    @property
    def records(self) -> List[HistoryRecord]:
        with self._lock:
            return list(self._records)
