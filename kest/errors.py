# kest/errors.py
"""Error types for the flow engine.

Parse and dependency problems are recovered where they happen (the parser
records a warning, the orderer falls back to document order). Step-level
errors are raised inside the executor and converted into failed step results
by the runner; they never escape a run.
"""

from __future__ import annotations

from typing import List, Optional, Sequence


class KestError(Exception):
    """Base error with optional source line metadata."""

    def __init__(self, message: str, line: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.line = line

    def __str__(self) -> str:
        return self.message


class ConfigError(KestError):
    """Configuration file could not be read or parsed."""


class FlowParseError(KestError):
    """A request section or scenario line could not be parsed."""


class VariableError(KestError):
    """Strict interpolation found variables with no value."""

    def __init__(self, missing: Sequence[str]):
        self.missing: List[str] = list(missing)
        super().__init__(
            "required variables not provided: " + ", ".join(self.missing)
        )


# =============================================================================
# Step-level failures
# =============================================================================


class StepError(KestError):
    """Base class for failures recorded against a single step."""


class InvalidStepError(StepError):
    """Step definition is incomplete (no METHOD/URL, no command)."""


class TransportError(StepError):
    """The HTTP transport failed before a response was received."""


class DurationBudgetError(StepError):
    """The response arrived but took longer than the step's max-duration."""

    def __init__(self, duration_ms: int, budget_ms: int):
        self.duration_ms = duration_ms
        self.budget_ms = budget_ms
        super().__init__(
            f"duration assertion failed: {duration_ms}ms > {budget_ms}ms"
        )


class ExecError(StepError):
    """Shell command exited with an error."""

    def __init__(self, message: str, stderr: str = "", returncode: Optional[int] = None):
        super().__init__(message)
        self.stderr = stderr
        self.returncode = returncode


class ExecTimeoutError(StepError):
    """Shell command overran its deadline and was killed."""

    def __init__(self, timeout_s: float):
        self.timeout_s = timeout_s
        super().__init__(f"exec timed out after {_format_seconds(timeout_s)}s")


def _format_seconds(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return f"{value:g}"
