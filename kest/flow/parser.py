"""
parser.py - Second-pass classifier turning fenced blocks into a FlowDoc.

Block classification:
    flow  -> metadata if every non-blank, non-comment line is an @directive,
             otherwise the whole block is a legacy request block
    step  -> FlowStep
    edge  -> FlowEdge (kept only when both @from and @to are present)
    kest, http, json -> legacy request block
    anything else -> ignored

Step block layout:

    @id login                  <- directive phase (leading @lines, blanks, #comments)
    @retry 2
    POST /api/login            <- request section (or shell command for @type exec)
    Content-Type: application/json

    {"user": "admin"}
    [Captures]
    token = data.token
    [Asserts]
    status == 200

The directive phase ends at the first line that is not blank, a comment or an
@directive. An @line after that point is request content.

Usage:
    from kest.flow.parser import parse_flow_document

    doc, legacy = parse_flow_document(markdown_text)
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from kest.errors import FlowParseError

from .markdown import parse_flow_markdown
from .types import (
    STEP_TYPE_EXEC,
    STEP_TYPE_HTTP,
    STEP_TYPES,
    ExecSpec,
    FlowBlock,
    FlowDoc,
    FlowEdge,
    FlowMeta,
    FlowStep,
    HttpRequestSpec,
    LegacyBlock,
)

logger = logging.getLogger(__name__)

CAPTURES_MARKER = "[Captures]"
ASSERTS_MARKER = "[Asserts]"
QUERIES_MARKER = "[Queries]"
HEADERS_MARKER = "[Headers]"

LEGACY_KINDS = ("kest", "http", "json")


# =============================================================================
# Directive helpers
# =============================================================================


def parse_directive(line: str) -> Tuple[str, str]:
    """Split ``@key value...`` into (lower-cased key, trimmed value)."""
    trimmed = line.strip()
    if trimmed.startswith("@"):
        trimmed = trimmed[1:].strip()
    parts = trimmed.split(None, 1)
    if not parts:
        return "", ""
    key = parts[0].lower()
    value = parts[1].strip() if len(parts) > 1 else ""
    return key, value


def parse_inline_kv(value: str, key: str) -> str:
    """Find ``key=value`` or ``key:value`` among whitespace-separated tokens."""
    key = key.strip().lower()
    for token in value.split():
        for sep in ("=", ":"):
            name, found, val = token.partition(sep)
            if found and name.strip().lower() == key:
                return val.strip()
    return ""


def split_csv(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def parse_int(value: str) -> int:
    """Parse the leading run of digits; ``"1500ms"`` -> 1500, junk -> 0."""
    digits = ""
    for ch in value.strip():
        if not ch.isdigit():
            break
        digits += ch
    return int(digits) if digits else 0


def split_arguments(text: str) -> List[str]:
    """Whitespace split that keeps single- or double-quoted runs together."""
    args: List[str] = []
    current: List[str] = []
    quote: Optional[str] = None
    has_token = False

    for ch in text:
        if quote is not None:
            if ch == quote:
                quote = None
            else:
                current.append(ch)
        elif ch in ("'", '"'):
            quote = ch
            has_token = True
        elif ch in (" ", "\t"):
            if current or has_token:
                args.append("".join(current))
                current = []
                has_token = False
        else:
            current.append(ch)

    if current or has_token:
        args.append("".join(current))
    return args


def _is_comment(trimmed: str) -> bool:
    return trimmed.startswith("#")


# =============================================================================
# Flow metadata
# =============================================================================


def is_flow_meta_block(raw: str) -> bool:
    """A flow block is metadata only if every content line is a directive."""
    for line in raw.split("\n"):
        trimmed = line.strip()
        if not trimmed or _is_comment(trimmed):
            continue
        if not trimmed.startswith("@"):
            return False
    return True


def parse_flow_meta(raw: str) -> FlowMeta:
    meta = FlowMeta()
    headers: Dict[str, str] = {}
    for line in raw.split("\n"):
        trimmed = line.strip()
        if not trimmed.startswith("@"):
            continue
        key, value = parse_directive(trimmed)
        if key == "flow":
            meta.id = parse_inline_kv(value, "id") or value
        elif key == "name":
            meta.name = value
        elif key == "version":
            meta.version = value
        elif key == "env":
            meta.env = value
        elif key == "tags":
            meta.tags = frozenset(split_csv(value))
        elif key == "header":
            name, found, header_value = value.partition(":")
            if found and name.strip():
                headers[name.strip()] = header_value.strip()
    meta.default_headers = headers
    return meta


# =============================================================================
# Request / exec sections
# =============================================================================


def _normalize_query(entry: str) -> str:
    name, found, value = entry.partition("=")
    if not found:
        return entry
    return f"{name.strip()}={value.strip()}"


def parse_request_block(raw: str) -> HttpRequestSpec:
    """Parse a request section: ``METHOD URL``, headers, blank line, body.

    Also understands ``[Queries]``, ``[Headers]``, ``[Captures]`` and
    ``[Asserts]`` sub-sections.

    Raises:
        FlowParseError: If there is no request line or it lacks a URL.
    """
    lines = raw.split("\n")
    index = 0
    while index < len(lines) and (not lines[index].strip() or _is_comment(lines[index].strip())):
        index += 1
    if index >= len(lines):
        raise FlowParseError("empty block")

    first_line = lines[index].strip()
    parts = split_arguments(first_line)
    if len(parts) < 2:
        raise FlowParseError(f"invalid request line: {first_line}")

    spec = HttpRequestSpec(method=parts[0].upper(), url=parts[1])
    section = "headers"
    body_lines: List[str] = []

    for line in lines[index + 1:]:
        trimmed = line.strip()

        if trimmed == CAPTURES_MARKER:
            section = "captures"
            continue
        if trimmed == ASSERTS_MARKER:
            section = "asserts"
            continue
        if trimmed == QUERIES_MARKER:
            section = "queries"
            continue
        if trimmed == HEADERS_MARKER:
            section = "headers"
            continue

        if section in ("headers", "queries"):
            if not trimmed:
                section = "body"
                continue
            if _is_comment(trimmed):
                continue
            if section == "queries":
                spec.queries.append(_normalize_query(trimmed))
                continue
            if trimmed.startswith(("{", "[")) or ":" not in trimmed:
                section = "body"
                body_lines.append(line)
                continue
            spec.headers.append(trimmed)
        elif section == "body":
            body_lines.append(line)
        elif trimmed and not _is_comment(trimmed):
            if section == "captures":
                spec.captures.append(trimmed)
            else:
                spec.asserts.append(trimmed)

    spec.body = "\n".join(body_lines).strip()
    return spec


def strip_capture_comment(entry: str) -> str:
    return entry.split("#", 1)[0].strip()


def parse_exec_block(raw: str) -> ExecSpec:
    """Parse an exec section: command lines, optionally followed by [Captures]."""
    spec = ExecSpec()
    command_lines: List[str] = []
    in_captures = False

    for line in raw.split("\n"):
        trimmed = line.strip()
        if trimmed == CAPTURES_MARKER:
            in_captures = True
            continue
        if not in_captures:
            command_lines.append(line)
        elif trimmed and not _is_comment(trimmed):
            spec.captures.append(strip_capture_comment(trimmed))

    spec.command = "\n".join(command_lines).strip()
    return spec


# =============================================================================
# Steps and edges
# =============================================================================


def _apply_step_directive(
    step: FlowStep, key: str, value: str, line: int, warnings: List[str]
) -> None:
    if key == "id":
        step.id = value
    elif key == "name":
        step.name = value
    elif key == "type":
        step.type = value.lower()
    elif key == "retry":
        step.retry = parse_int(value)
    elif key == "retry-wait":
        step.retry_wait_ms = parse_int(value)
    elif key == "max-duration":
        step.max_duration_ms = parse_int(value)
    elif key == "wait":
        step.wait_ms = parse_int(value)
    elif key == "timeout":
        step.timeout_ms = parse_int(value)
    elif key == "poll-timeout":
        step.poll_timeout_ms = parse_int(value)
    elif key == "poll-interval":
        step.poll_interval_ms = parse_int(value)
    elif key == "on-fail":
        _warn(warnings, f"@on-fail is not yet implemented (line {line}), ignoring")
        step.on_fail = value


def _warn(warnings: List[str], message: str) -> None:
    logger.warning(message)
    warnings.append(message)


def parse_flow_step(block: FlowBlock, warnings: Optional[List[str]] = None) -> FlowStep:
    """Parse a ``step`` block. Problems are appended to `warnings`."""
    if warnings is None:
        warnings = []
    step = FlowStep(line=block.line, raw=block.raw)
    request_lines: List[str] = []
    capture_lines: List[str] = []
    assert_lines: List[str] = []
    directive_phase = True
    section = "request"

    for line in block.raw.split("\n"):
        trimmed = line.strip()
        if directive_phase:
            if not trimmed or _is_comment(trimmed):
                continue
            if trimmed.startswith("@"):
                key, value = parse_directive(trimmed)
                _apply_step_directive(step, key, value, block.line, warnings)
                continue
            directive_phase = False

        if trimmed == CAPTURES_MARKER:
            section = "captures"
            continue
        if trimmed == ASSERTS_MARKER:
            section = "asserts"
            continue

        if section == "request":
            request_lines.append(line)
        elif trimmed and not _is_comment(trimmed):
            (capture_lines if section == "captures" else assert_lines).append(trimmed)

    if not step.type:
        step.type = STEP_TYPE_HTTP
    elif step.type not in STEP_TYPES:
        _warn(
            warnings,
            f"unknown step type '{step.type}' at line {block.line}, treating as http",
        )
        step.type = STEP_TYPE_HTTP

    request_raw = "\n".join(request_lines).strip()
    if step.type == STEP_TYPE_EXEC:
        step.exec_spec = parse_exec_block(request_raw)
        step.exec_spec.captures.extend(strip_capture_comment(c) for c in capture_lines)
        step.exec_spec.asserts.extend(assert_lines)
        return step

    if request_raw:
        try:
            step.request = parse_request_block(request_raw)
        except FlowParseError as exc:
            _warn(warnings, f"step at line {block.line}: {exc}")
    step.request.captures.extend(capture_lines)
    step.request.asserts.extend(assert_lines)
    return step


def parse_flow_edge(block: FlowBlock) -> FlowEdge:
    values = {"from": "", "to": "", "on": ""}
    for line in block.raw.split("\n"):
        trimmed = line.strip()
        if not trimmed.startswith("@"):
            continue
        key, value = parse_directive(trimmed)
        if key in values:
            values[key] = value
    return FlowEdge(
        from_id=values["from"], to_id=values["to"], on=values["on"], line=block.line
    )


def ensure_step_ids(steps: List[FlowStep]) -> List[FlowStep]:
    """Assign ``step-<n>`` (1-based document position) to steps without an id."""
    for position, step in enumerate(steps, start=1):
        if not step.id:
            step.id = f"step-{position}"
    return steps


# =============================================================================
# Document
# =============================================================================


def parse_flow_document(content: str) -> Tuple[FlowDoc, List[LegacyBlock]]:
    """Parse Markdown into a FlowDoc and the legacy blocks it contains.

    Args:
        content: Raw Markdown text.

    Returns:
        Tuple of (FlowDoc, legacy blocks in document order).
    """
    meta = FlowMeta()
    steps: List[FlowStep] = []
    edges: List[FlowEdge] = []
    legacy: List[LegacyBlock] = []
    warnings: List[str] = []

    for block in parse_flow_markdown(content):
        if block.kind == "flow":
            if is_flow_meta_block(block.raw):
                meta = meta.merge(parse_flow_meta(block.raw))
            else:
                legacy.append(LegacyBlock(line=block.line, raw=block.raw))
        elif block.kind == "step":
            steps.append(parse_flow_step(block, warnings))
        elif block.kind == "edge":
            edge = parse_flow_edge(block)
            if edge.from_id and edge.to_id:
                edges.append(edge)
            else:
                logger.debug("Dropping incomplete edge at line %d", block.line)
        elif block.kind in LEGACY_KINDS:
            legacy.append(LegacyBlock(line=block.line, raw=block.raw))

    doc = FlowDoc(
        meta=meta,
        steps=tuple(ensure_step_ids(steps)),
        edges=tuple(edges),
        warnings=tuple(warnings),
    )
    return doc, legacy
