"""
jsonpath.py - Dot-path queries over decoded JSON.

Path syntax (a gjson subset):
    data.user.name     object keys
    items.0.id         array index
    items.#            array length
    a\\.b               literal dot inside a key

Paths are normalized first: ``items[0]`` -> ``items.0``, repeated dots are
collapsed, and a leading ``.`` or ``$.`` is removed.

Values are rendered to strings the way gjson does: strings raw, numbers in
canonical decimal form, booleans ``true``/``false``, null as ``""``, arrays
and objects as compact JSON.
"""

from __future__ import annotations

import json
import re
from decimal import Decimal
from typing import Any, List

MISSING = object()

_BRACKET_INDEX_RE = re.compile(r"\[(\d+)\]")
_REPEATED_DOTS_RE = re.compile(r"\.{2,}")


def normalize_json_path(path: str) -> str:
    path = path.strip()
    path = _BRACKET_INDEX_RE.sub(r".\1", path)
    path = _REPEATED_DOTS_RE.sub(".", path)
    if path.startswith("$."):
        path = path[2:]
    elif path == "$":
        path = ""
    return path.lstrip(".")


def split_path(path: str) -> List[str]:
    """Split on unescaped dots; ``\\.`` becomes a literal dot."""
    parts: List[str] = []
    current: List[str] = []
    chars = iter(path)
    for ch in chars:
        if ch == "\\":
            nxt = next(chars, "")
            current.append(nxt)
        elif ch == ".":
            parts.append("".join(current))
            current = []
        else:
            current.append(ch)
    parts.append("".join(current))
    return parts


def query(document: Any, path: str) -> Any:
    """Return the value at `path` in `document`, or MISSING."""
    path = normalize_json_path(path)
    if not path:
        return document
    current = document
    for part in split_path(path):
        if isinstance(current, dict):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, list):
            if part == "#":
                current = len(current)
            elif part.isdigit() and int(part) < len(current):
                current = current[int(part)]
            else:
                return MISSING
        else:
            return MISSING
    return current


def decode_body(body: str) -> Any:
    """Decode a response body; invalid JSON yields MISSING."""
    try:
        return json.loads(body)
    except (TypeError, ValueError):
        return MISSING


def query_body(body: str, path: str) -> Any:
    document = decode_body(body)
    if document is MISSING:
        return MISSING
    return query(document, path)


def format_number(value: float) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if value != value or value in (float("inf"), float("-inf")):
        return repr(value)
    if float(value).is_integer():
        return str(int(value))
    return format(Decimal(repr(value)), "f")


def to_string(value: Any) -> str:
    """Render a JSON value as a string."""
    if value is MISSING or value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return format_number(value)
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
