"""
interpolate.py - ``{{name}}`` template substitution.

Placeholders:
    {{name}}                       value of `name`
    {{ name }}                     whitespace around the name is ignored
    {{name | default: "literal"}}  literal when `name` has no value

Each occurrence resolves in order: built-in variable, variable map, default
literal. Anything still unresolved is handled per mode:

    interpolate                 leave the placeholder verbatim
    interpolate_with_warnings   leave it verbatim and report the name
    interpolate_strict          raise VariableError listing every missing name
"""

from __future__ import annotations

import re
from typing import List, Mapping, Optional, Tuple

from kest.errors import VariableError

from .builtins import DEFAULT_BUILTINS, BuiltinRegistry

PLACEHOLDER_RE = re.compile(
    r'\{\{([^|{}]+?)(?:\s*\|\s*default:\s*\\?"([^}]*?)\\?"\s*)?\}\}'
)


def _unescape_default(value: str) -> str:
    return value.replace('\\"', '"').replace("\\\\", "\\")


def _substitute(
    text: str,
    variables: Mapping[str, str],
    builtins: Optional[BuiltinRegistry],
) -> Tuple[str, List[str]]:
    registry = builtins or DEFAULT_BUILTINS
    unresolved: List[str] = []

    def replace(match: "re.Match[str]") -> str:
        name = match.group(1).strip()
        if not name:
            return match.group(0)
        if registry.is_builtin(name):
            return registry.resolve(name)
        if name in variables:
            return str(variables[name])
        default = match.group(2)
        if default is not None:
            return _unescape_default(default)
        unresolved.append(name)
        return match.group(0)

    return PLACEHOLDER_RE.sub(replace, text), unresolved


def interpolate(
    text: str,
    variables: Mapping[str, str],
    builtins: Optional[BuiltinRegistry] = None,
) -> str:
    """Best-effort substitution; unresolved placeholders stay as written."""
    result, _ = _substitute(text, variables, builtins)
    return result


def interpolate_with_warnings(
    text: str,
    variables: Mapping[str, str],
    builtins: Optional[BuiltinRegistry] = None,
) -> Tuple[str, List[str]]:
    """Best-effort substitution plus one unresolved name per occurrence."""
    return _substitute(text, variables, builtins)


def interpolate_strict(
    text: str,
    variables: Mapping[str, str],
    builtins: Optional[BuiltinRegistry] = None,
) -> str:
    """Substitute or raise.

    Raises:
        VariableError: Any placeholder has no built-in, value or default.
            Each missing name is listed once, in first-appearance order.
    """
    result, unresolved = _substitute(text, variables, builtins)
    if unresolved:
        raise VariableError(list(dict.fromkeys(unresolved)))
    return result


def extract_placeholders(text: str) -> List[str]:
    """Names referenced by placeholders, de-duplicated, first-seen order."""
    names = (match.group(1).strip() for match in PLACEHOLDER_RE.finditer(text))
    return list(dict.fromkeys(name for name in names if name))


def required_placeholders(
    text: str, builtins: Optional[BuiltinRegistry] = None
) -> List[str]:
    """Names that must come from variables: no default and not a built-in."""
    registry = builtins or DEFAULT_BUILTINS
    names: List[str] = []
    for match in PLACEHOLDER_RE.finditer(text):
        name = match.group(1).strip()
        if not name or match.group(2) is not None or registry.is_builtin(name):
            continue
        if name not in names:
            names.append(name)
    return names
