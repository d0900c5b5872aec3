"""
run_context.py - Per-invocation variable store with provenance.

A RunContext is created once per ``kest run``, seeded with ``--var`` values,
and passed explicitly to the runner and executor. Captures write into it;
every variable-chain build reads a copy of it.

Thread Safety:
    All access goes through one lock. Legacy blocks may run on worker
    threads and capture concurrently.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Iterable, Mapping, Optional


class SourceType(str, Enum):
    """Where a run variable came from."""

    CLI = "cli"
    CAPTURE = "capture"
    CONFIG = "config"
    BUILTIN = "builtin"


STEP_STATUS_SUCCESS = "success"
STEP_STATUS_FAILED = "failed"


@dataclass(frozen=True)
class VariableSource:
    """Provenance of the latest write to a variable."""

    value: str
    source_step: str = ""
    step_status: str = STEP_STATUS_SUCCESS
    source_type: SourceType = SourceType.CAPTURE


class RunContext:
    """Thread-safe variable map for a single run."""

    def __init__(self, cli_vars: Optional[Mapping[str, str]] = None):
        self._lock = threading.Lock()
        self._vars: Dict[str, str] = {}
        self._sources: Dict[str, VariableSource] = {}
        for name, value in (cli_vars or {}).items():
            self._vars[name] = value
            self._sources[name] = VariableSource(value=value, source_type=SourceType.CLI)

    def get(self, name: str) -> Optional[str]:
        with self._lock:
            return self._vars.get(name)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._vars

    def set(self, name: str, value: str) -> None:
        self.set_with_source(name, value)

    def set_with_source(
        self,
        name: str,
        value: str,
        step_name: str = "",
        step_status: str = STEP_STATUS_SUCCESS,
        source_type: SourceType = SourceType.CAPTURE,
    ) -> None:
        with self._lock:
            self._vars[name] = value
            self._sources[name] = VariableSource(
                value=value,
                source_step=step_name,
                step_status=step_status,
                source_type=source_type,
            )

    def get_source(self, name: str) -> Optional[VariableSource]:
        with self._lock:
            return self._sources.get(name)

    def mark_step_failed(self, step_name: str) -> None:
        """Flip the status of every variable captured by `step_name`.

        Values are kept; only their provenance changes.
        """
        with self._lock:
            for name, source in self._sources.items():
                if source.source_step == step_name:
                    self._sources[name] = replace(source, step_status=STEP_STATUS_FAILED)

    def all(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._vars)


def parse_cli_vars(entries: Iterable[str]) -> Dict[str, str]:
    """Parse repeated ``--var key=value`` entries.

    Raises:
        ValueError: An entry has no ``=`` or an empty key.
    """
    result: Dict[str, str] = {}
    for entry in entries:
        key, found, value = entry.partition("=")
        key = key.strip()
        if not found or not key:
            raise ValueError(f"invalid --var '{entry}', expected key=value")
        result[key] = value.strip()
    return result
