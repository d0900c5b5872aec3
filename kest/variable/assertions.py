"""
assertions.py - Assertion expression evaluator.

An assertion is one line checked against a response's status, duration and
body. Forms, tried in this order:

    body.token not exists
    body.id exists
    body.tags contains "cli"           (element match when the path is an array)
    body.name startsWith "Al"
    body.name endsWith "ce"
    body.items length >= 3              (array / string / object size)
    status == 200                       (==, !=, >=, <=, >, <; bare = means ==)
    duration < 500ms
    body.email matches ^.+@example\\.com$

The left key is ``status``, ``duration``, ``body`` (raw body text) or a JSON
path (with or without a ``body.`` prefix). The right side is interpolated,
unquoted, and evaluated when it is simple arithmetic (``10 * 2 + 1``).
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, List, Mapping, Optional, Tuple

from .interpolate import interpolate
from .jsonpath import MISSING, decode_body, format_number, normalize_json_path, query, to_string

SPACED_OPERATORS = ("==", "!=", ">=", "<=", ">", "<", "matches")
BARE_OPERATORS = ("==", "!=", ">=", "<=", ">", "<")
ORDERING_OPERATORS = (">", ">=", "<", "<=")

_NUMBER_RE = re.compile(r"^[+-]?(\d+(\.\d+)?|\.\d+)$")
_LEADING_OPERATOR_RE = re.compile(r"^(==|!=|>=|<=|>|<|=)\s*(.*)$", re.DOTALL)


@dataclass(frozen=True)
class AssertionResult:
    """Outcome of one assertion. `diagnostic` is empty on success."""

    passed: bool
    diagnostic: str = ""

    def __bool__(self) -> bool:
        return self.passed


_PASS = AssertionResult(True)


def _fail(message: str) -> AssertionResult:
    return AssertionResult(False, message)


def _mismatch(key: str, op: str, expected: str, actual: str) -> AssertionResult:
    return _fail(f"{key} mismatch\n  Expected: {op} {expected}\n  Actual:   {actual}")


# =============================================================================
# Right-hand side helpers
# =============================================================================


def eval_numeric_expr(expr: str) -> Optional[Decimal]:
    """Evaluate ``N (+|-|*|/) N ...`` strictly left to right.

    Returns None when `expr` is not such an expression or divides by zero.
    """
    parts = expr.replace('"', "").replace("'", "").split()
    if not parts or len(parts) % 2 == 0:
        return None
    if not _NUMBER_RE.match(parts[0]):
        return None
    result = Decimal(parts[0])
    for op, operand in zip(parts[1::2], parts[2::2]):
        if not _NUMBER_RE.match(operand):
            return None
        value = Decimal(operand)
        if op == "+":
            result += value
        elif op == "-":
            result -= value
        elif op == "*":
            result *= value
        elif op == "/":
            if value == 0:
                return None
            result /= value
        else:
            return None
    return result


def canonical_decimal(value: Decimal) -> str:
    return format_number(float(value))


def _prepare_expected(raw: str, variables: Mapping[str, str]) -> str:
    return interpolate(raw.strip(), variables).strip("\"'")


# =============================================================================
# Left-hand side resolution
# =============================================================================


class _Subject:
    """The response being checked; decodes the body at most once."""

    def __init__(self, status: int, body: str, duration_ms: int):
        self.status = status
        self.body = body
        self.duration_ms = duration_ms
        self._document: Any = None
        self._decoded = False

    @property
    def document(self) -> Any:
        if not self._decoded:
            self._document = decode_body(self.body)
            self._decoded = True
        return self._document

    def lookup(self, path: str) -> Any:
        if self.document is MISSING:
            return MISSING
        return query(self.document, path)

    def resolve(self, key: str) -> Tuple[str, Any]:
        """Return (display key, value or MISSING) for a left-hand key."""
        if key == "status":
            return key, self.status
        if key == "duration":
            return key, self.duration_ms
        if key == "body":
            return key, self.body
        path = normalize_json_path(key[5:] if key.startswith("body.") else key)
        return path, self.lookup(path)


def _path_of(key: str) -> str:
    return normalize_json_path(key[5:] if key.startswith("body.") else key)


# =============================================================================
# Comparison
# =============================================================================


def compare(key: str, op: str, expected: str, actual: str) -> AssertionResult:
    """Apply `op` to the actual and expected strings."""
    number = eval_numeric_expr(expected)
    if number is not None:
        expected = canonical_decimal(number)

    if op == "==":
        if actual == expected:
            return _PASS
    elif op == "!=":
        if actual != expected:
            return _PASS
    elif op == "matches":
        try:
            if re.search(expected, actual):
                return _PASS
        except re.error:
            return _fail(f"invalid regex: {expected}")
    elif op in ORDERING_OPERATORS:
        try:
            left, right = float(actual), float(expected)
        except ValueError:
            return _mismatch(key, op, expected, actual)
        if (
            (op == ">" and left > right)
            or (op == ">=" and left >= right)
            or (op == "<" and left < right)
            or (op == "<=" and left <= right)
        ):
            return _PASS
    return _mismatch(key, op, expected, actual)


def _split_binary(assertion: str) -> Optional[Tuple[str, str, str]]:
    for op in SPACED_OPERATORS:
        token = f" {op} "
        if token in assertion:
            left, right = assertion.split(token, 1)
            return left, op, right
    for op in BARE_OPERATORS:
        if op in assertion:
            left, right = assertion.split(op, 1)
            return left, op, right
    if "=" in assertion:
        left, right = assertion.split("=", 1)
        return left, "==", right
    return None


def _size_of(value: Any) -> int:
    if isinstance(value, (list, dict, str)):
        return len(value)
    return len(to_string(value))


# =============================================================================
# Entry point
# =============================================================================


def evaluate_assertion(
    status: int,
    body: str,
    duration_ms: int,
    variables: Optional[Mapping[str, str]],
    assertion: str,
) -> AssertionResult:
    """Evaluate one assertion line against a response."""
    variables = variables or {}
    subject = _Subject(status, body, duration_ms)
    assertion = assertion.strip()

    if assertion.endswith(" not exists"):
        path = _path_of(assertion[: -len(" not exists")].strip())
        if subject.lookup(path) is MISSING:
            return _PASS
        return _fail(f"body path exists: {path}")

    if assertion.endswith(" exists"):
        path = _path_of(assertion[: -len(" exists")].strip())
        if subject.lookup(path) is not MISSING:
            return _PASS
        return _fail(f"body path does not exist: {path}")

    for op in ("contains", "startsWith", "endsWith"):
        token = f" {op} "
        if token not in assertion:
            continue
        left, right = assertion.split(token, 1)
        key, value = subject.resolve(left.strip())
        if value is MISSING:
            return _fail(f"body path not found: {key}")
        expected = _prepare_expected(right, variables)
        if op == "contains" and isinstance(value, list):
            passed = any(to_string(item) == expected for item in value)
        else:
            actual = to_string(value)
            if op == "contains":
                passed = expected in actual
            elif op == "startsWith":
                passed = actual.startswith(expected)
            else:
                passed = actual.endswith(expected)
        if passed:
            return _PASS
        return _mismatch(key, op, expected, to_string(value))

    if " length " in assertion:
        left, remainder = assertion.split(" length ", 1)
        key, value = subject.resolve(left.strip())
        if value is MISSING:
            return _fail(f"body path not found: {key}")
        match = _LEADING_OPERATOR_RE.match(remainder.strip())
        if not match:
            return _fail(f"invalid assertion format: {assertion}")
        op = "==" if match.group(1) == "=" else match.group(1)
        expected = _prepare_expected(match.group(2), variables)
        return compare(f"{key} length", op, expected, str(_size_of(value)))

    split = _split_binary(assertion)
    if split is None:
        return _fail(f"invalid assertion format: {assertion}")
    left, op, right = split
    key, value = subject.resolve(left.strip())
    if value is MISSING:
        return _fail(f"body path not found: {key}")
    expected = _prepare_expected(right, variables)
    if key == "duration" and expected.endswith("ms"):
        expected = expected[:-2].strip()
    return compare(key, op, expected, to_string(value))


def evaluate_assertions(
    status: int,
    body: str,
    duration_ms: int,
    variables: Optional[Mapping[str, str]],
    assertions: List[str],
) -> List[Tuple[str, AssertionResult]]:
    """Evaluate every assertion; results keep input order."""
    return [
        (assertion, evaluate_assertion(status, body, duration_ms, variables, assertion))
        for assertion in assertions
    ]
