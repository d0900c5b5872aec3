"""
kest.runtime - Executing flow documents.

Package Structure:
    run_context.py  - RunContext, VariableSource, --var parsing
    captures.py     - Capture expressions for HTTP bodies and exec stdout
    transport.py    - HttpTransport / ExecTransport and their defaults
    store.py        - VariableStore, InMemoryVariableStore, HistoryRecord
    executor.py     - RequestExecutor (one step at a time)
    runner.py       - FlowRunner (ordering, scheduling, fail-fast)
    summary.py      - StepResult, RunSummary
    reporting.py    - ConsoleReporter
"""

from .captures import parse_capture_expr, resolve_exec_capture, resolve_http_capture
from .executor import RequestExecutor
from .reporting import ConsoleReporter
from .run_context import RunContext, SourceType, VariableSource, parse_cli_vars
from .runner import FlowRunner, RunOptions, RunState, StepState
from .store import HistoryRecord, InMemoryVariableStore, VariableStore
from .summary import RunSummary, StepResult, latency_stats
from .transport import (
    ExecOutput,
    ExecTransport,
    HttpRequest,
    HttpResponse,
    HttpTransport,
    HttpxTransport,
    ShellExecTransport,
)

__all__ = [
    "ConsoleReporter",
    "ExecOutput",
    "ExecTransport",
    "FlowRunner",
    "HistoryRecord",
    "HttpRequest",
    "HttpResponse",
    "HttpTransport",
    "HttpxTransport",
    "InMemoryVariableStore",
    "RequestExecutor",
    "RunContext",
    "RunOptions",
    "RunState",
    "RunSummary",
    "ShellExecTransport",
    "SourceType",
    "StepResult",
    "StepState",
    "VariableSource",
    "VariableStore",
    "latency_stats",
    "parse_capture_expr",
    "parse_cli_vars",
    "resolve_exec_capture",
    "resolve_http_capture",
]
