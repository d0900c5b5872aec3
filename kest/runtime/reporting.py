"""
reporting.py - User-facing run output.

Diagnostics go through ``logging``; this module prints what a user running
``kest run`` expects to read: step headers, assertion lines, captures,
step outcomes and the summary table.

A quiet reporter prints nothing. Parallel legacy workers use one so their
output does not interleave.
"""

from __future__ import annotations

import sys
from typing import Mapping, Optional, TextIO

from kest.variable.assertions import AssertionResult

from .run_context import RunContext
from .summary import RunSummary, StepResult


class ConsoleReporter:
    """Writes run progress to a text stream (stdout by default)."""

    def __init__(self, stream: Optional[TextIO] = None, quiet: bool = False, verbose: bool = False):
        self.stream = stream if stream is not None else sys.stdout
        self.quiet = quiet
        self.verbose = verbose

    def quieted(self) -> "ConsoleReporter":
        return ConsoleReporter(self.stream, quiet=True, verbose=self.verbose)

    def _print(self, text: str = "") -> None:
        if not self.quiet:
            print(text, file=self.stream)

    # -------------------------------------------------------------------------
    # Run level
    # -------------------------------------------------------------------------

    def run_started(self, count: int, source: str, mode: str) -> None:
        self._print(f"\nRunning {count} step(s) from {source}")
        self._print(f"Mode: {mode}")

    def notice(self, message: str) -> None:
        self._print(f"! {message}")

    def mermaid(self, diagram: str) -> None:
        self._print("\nMermaid (flowchart):")
        self._print(diagram)

    def fail_fast_stop(self, step_name: str, reason: str, skipped: int) -> None:
        self._print("\n! Stopping execution (--fail-fast enabled)")
        self._print(f"  Failed step: {step_name}")
        if reason:
            self._print(f"  Reason: {reason}")
        if skipped:
            self._print(f"  Skipped {skipped} remaining step(s)")

    def summary(self, summary: RunSummary) -> None:
        self._print()
        self._print(summary.render())

    # -------------------------------------------------------------------------
    # Step level
    # -------------------------------------------------------------------------

    def step_started(self, name: str, detail: str, line: int) -> None:
        suffix = f" (line {line})" if line else ""
        self._print(f"\n> {name} {detail}{suffix}".rstrip())

    def waiting(self, name: str, wait_ms: int) -> None:
        self._print(f"  waiting {wait_ms}ms before {name}")

    def command(self, command: str) -> None:
        self._print(f"  $ {command}")

    def retry(self, attempt: int, retries: int, wait_ms: int) -> None:
        self._print(f"  retry attempt {attempt}/{retries} (waiting {wait_ms}ms)")

    def captured(self, name: str, value: str) -> None:
        self._print(f"  Captured: {name} = {value}")

    def capture_missing(self, name: str) -> None:
        self._print(f"  ! Capture '{name}' produced no value")

    def assertion(self, assertion: str, result: AssertionResult) -> None:
        if result.passed:
            self._print(f"  ✓ {assertion}")
            return
        self._print(f"  ✗ Assertion Failed: {assertion}")
        self._print("    " + result.diagnostic.replace("\n", "\n    "))

    def output(self, label: str, text: str) -> None:
        if self.verbose and text:
            self._print(f"  {label}: {text}")

    def step_finished(self, result: StepResult) -> None:
        if result.success:
            target = f"{result.method} {result.url}".strip()
            status = f" -> {result.status}" if result.method != "EXEC" else ""
            self._print(f"  ✓ {target}{status} ({result.duration_ms}ms)")
        else:
            self._print(f"  ✗ {result.name}: {result.error}")

    def variables(self, chain: Mapping[str, str], run_context: RunContext) -> None:
        """Print the variable chain with the origin of each value."""
        if not chain:
            return
        self._print("\nVariable Resolution:")
        for name in sorted(chain):
            value = chain[name]
            source = run_context.get_source(name)
            origin = source.source_type.value if source else "config/store"
            if source and source.source_step:
                origin = f"{origin} from {source.source_step}"
            display = value if len(value) <= 50 else value[:50] + "..."
            self._print(f'  {{{{{name}}}}} -> "{display}" (from: {origin})')
