"""
captures.py - Extract values from step output into variables.

Capture expressions are ``name = query`` or ``name : query``. For HTTP steps
the query is a JSON path into the response body (an optional ``body.``
prefix is ignored). For exec steps it is one of:

    $stdout     the whole (trimmed) stdout
    $line.N     line N of stdout, 0-indexed and trimmed
    <path>      JSON path into stdout
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from kest.variable.jsonpath import MISSING, normalize_json_path, query_body, to_string

from .run_context import RunContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CaptureOutcome:
    """One processed capture. `value` is None when it did not resolve."""

    name: str
    query: str
    value: Optional[str]

    @property
    def resolved(self) -> bool:
        return self.value is not None


def parse_capture_expr(expr: str) -> Optional[Tuple[str, str]]:
    """Split into (name, query); ``=`` wins over ``:``. None if malformed."""
    sep = "=" if "=" in expr or ":" not in expr else ":"
    name, found, query = expr.partition(sep)
    if not found:
        return None
    return name.strip(), query.strip()


def resolve_http_capture(body: str, query: str) -> Optional[str]:
    if query.startswith("body."):
        query = query[5:]
    value = query_body(body, normalize_json_path(query))
    if value is MISSING:
        return None
    return to_string(value)


def resolve_exec_capture(output: str, query: str) -> str:
    """Return the captured text, or "" when nothing matched."""
    if query == "$stdout":
        return output
    if query.startswith("$line."):
        index = query[len("$line."):]
        lines = output.split("\n")
        if not index.isdigit() or int(index) >= len(lines):
            return ""
        return lines[int(index)].strip()
    return resolve_http_capture(output, query) or ""


def _record(
    outcomes: List[CaptureOutcome],
    expr: str,
    value: Optional[str],
    run_context: RunContext,
    step_name: str,
) -> None:
    parsed = parse_capture_expr(expr)
    if parsed is None or not parsed[0]:
        logger.warning("Ignoring malformed capture '%s' in step %s", expr, step_name)
        return
    name, query = parsed
    if value is None:
        logger.warning("Capture '%s' in step %s did not resolve (%s)", name, step_name, query)
    else:
        run_context.set_with_source(name, value, step_name=step_name)
        logger.debug("Captured %s = %s", name, value)
    outcomes.append(CaptureOutcome(name=name, query=query, value=value))


def apply_http_captures(
    captures: List[str], body: str, run_context: RunContext, step_name: str
) -> List[CaptureOutcome]:
    outcomes: List[CaptureOutcome] = []
    for expr in captures:
        parsed = parse_capture_expr(expr)
        value = resolve_http_capture(body, parsed[1]) if parsed else None
        _record(outcomes, expr, value, run_context, step_name)
    return outcomes


def apply_exec_captures(
    captures: List[str], output: str, run_context: RunContext, step_name: str
) -> List[CaptureOutcome]:
    outcomes: List[CaptureOutcome] = []
    for expr in captures:
        parsed = parse_capture_expr(expr)
        value = resolve_exec_capture(output, parsed[1]) if parsed else ""
        _record(outcomes, expr, value or None, run_context, step_name)
    return outcomes
