"""
kest.variable - Template interpolation, JSON paths and assertions.

Package Structure:
    builtins.py     - $randomInt, $uuid, $env.NAME and friends
    interpolate.py  - {{name}} substitution in best-effort/warning/strict modes
    jsonpath.py     - Dot-path queries and gjson-style stringification
    assertions.py   - Assertion expression evaluator
"""

from .assertions import AssertionResult, evaluate_assertion, evaluate_assertions
from .builtins import BuiltinRegistry, RandomSource, is_builtin, resolve_builtin
from .interpolate import (
    extract_placeholders,
    interpolate,
    interpolate_strict,
    interpolate_with_warnings,
    required_placeholders,
)
from .jsonpath import MISSING, normalize_json_path, query, query_body, to_string

__all__ = [
    "MISSING",
    "AssertionResult",
    "BuiltinRegistry",
    "RandomSource",
    "evaluate_assertion",
    "evaluate_assertions",
    "extract_placeholders",
    "interpolate",
    "interpolate_strict",
    "interpolate_with_warnings",
    "is_builtin",
    "normalize_json_path",
    "query",
    "query_body",
    "required_placeholders",
    "resolve_builtin",
    "to_string",
]
