"""
summary.py - Per-step results and the end-of-run summary table.

Results are appended as steps finish; ``finalize()`` freezes the elapsed
time, after which ``render()`` produces the boxed table printed at the end of
every run.
"""

from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Tuple

BOX_WIDTH = 69
MAX_BODY_LINES = 5


@dataclass
class StepResult:
    """Outcome of one executed step or legacy block."""

    name: str
    method: str = ""
    url: str = ""
    status: int = 0
    duration_ms: int = 0
    success: bool = False
    error: str = ""
    response_body: str = ""
    start_time: datetime = field(default_factory=datetime.now)
    attempts: int = 0


def latency_stats(durations: List[int]) -> Tuple[int, int]:
    """Return (slowest, p95) with p95 at index ``int((n - 1) * 0.95)``."""
    if not durations:
        return 0, 0
    ordered = sorted(durations)
    index = min(max(int((len(ordered) - 1) * 0.95), 0), len(ordered) - 1)
    return ordered[-1], ordered[index]


def truncate(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    if max_len <= 3:
        return text[:max_len]
    return text[: max_len - 3] + "..."


def pretty_json(text: str) -> str:
    try:
        return json.dumps(json.loads(text), indent=2, ensure_ascii=False)
    except ValueError:
        return text


def _row(content: str) -> str:
    return f"│ {content.ljust(BOX_WIDTH - 2)} │"


class RunSummary:
    """Ordered step results plus aggregate counts.

    Thread Safety:
        add_result may be called from worker threads.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.results: List[StepResult] = []
        self.skipped: List[str] = []
        self.started = time.perf_counter()
        self.elapsed_ms: Optional[int] = None

    def add_result(self, result: StepResult) -> None:
        with self._lock:
            self.results.append(result)

    def add_skipped(self, name: str) -> None:
        with self._lock:
            self.skipped.append(name)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def passed(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return self.total - self.passed

    @property
    def total_time_ms(self) -> int:
        return sum(r.duration_ms for r in self.results)

    @property
    def all_passed(self) -> bool:
        return self.failed == 0

    def latency_stats(self) -> Tuple[int, int]:
        return latency_stats([r.duration_ms for r in self.results])

    def finalize(self) -> "RunSummary":
        if self.elapsed_ms is None:
            self.elapsed_ms = int((time.perf_counter() - self.started) * 1000)
        return self

    def render(self) -> str:
        self.finalize()
        border = "─" * BOX_WIDTH
        lines = [
            f"╭{border}╮",
            _row("TEST SUMMARY".center(BOX_WIDTH - 2).rstrip()),
            f"├{border}┤",
        ]

        for result in self.results:
            mark = "✓" if result.success else "✗"
            lines.append(
                _row(
                    f"{mark} {result.start_time:%H:%M:%S} [{result.method}] "
                    f"{truncate(result.url or result.name, 30):<30} {result.duration_ms:6d}ms"
                )
            )
            if result.error:
                first_line = result.error.splitlines()[0]
                lines.append(_row(f"    Error: {truncate(first_line, 54)}"))
                if result.response_body:
                    body_lines = pretty_json(result.response_body).split("\n")
                    if len(body_lines) > MAX_BODY_LINES:
                        body_lines = body_lines[:MAX_BODY_LINES] + ["..."]
                    lines.append(_row("    Response Body Sample:"))
                    for body_line in body_lines:
                        lines.append(_row(f"      {truncate(body_line, 60)}"))

        slowest, p95 = self.latency_stats()
        lines.append(f"├{border}┤")
        lines.append(
            _row(
                f"Total: {self.total}  │  Passed: {self.passed}  │  "
                f"Failed: {self.failed}  │  Time: {self.total_time_ms}ms"
            )
        )
        lines.append(_row(f"Elapsed: {self.elapsed_ms}ms"))
        if self.results:
            lines.append(_row(f"Slowest: {slowest}ms  │  P95: {p95}ms"))
        if self.skipped:
            lines.append(_row(f"Skipped: {len(self.skipped)} ({truncate(', '.join(self.skipped), 50)})"))
        lines.append(f"╰{border}╯")

        if self.failed:
            lines.append(f"\n✗ {self.failed} test(s) failed")
        else:
            lines.append("\n✓ All tests passed!")
        return "\n".join(lines)
