"""
types.py - Data model for parsed flow documents.

A flow document is Markdown with fenced ``flow``, ``step`` and ``edge``
blocks. Parsing produces a FlowDoc (metadata, steps, edges) plus a list of
LegacyBlocks that run without flow semantics.

Mutability:
    FlowMeta and FlowStep are filled in by the parser and must be treated as
    read-only afterwards. FlowDoc itself is frozen and holds tuples.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Tuple

STEP_TYPE_HTTP = "http"
STEP_TYPE_EXEC = "exec"
STEP_TYPES = (STEP_TYPE_HTTP, STEP_TYPE_EXEC)


@dataclass(frozen=True)
class FlowBlock:
    """A fenced block found by the Markdown lexer.

    Attributes:
        kind: First word of the fence info string, lower-cased.
        info: Remainder of the info string (ignored by the parser).
        line: 1-based line number of the opening fence.
        raw: Block content without the fences.
    """

    kind: str
    info: str
    line: int
    raw: str


@dataclass(frozen=True)
class LegacyBlock:
    """A request that runs without flow/edge semantics.

    Attributes:
        line: Source line number.
        raw: Block text, or a single scenario line.
        is_block: True for Markdown blocks, False for `.kest` lines.
    """

    line: int
    raw: str
    is_block: bool = True


@dataclass
class FlowMeta:
    """Flow-level metadata from ``flow`` blocks."""

    id: str = ""
    name: str = ""
    version: str = ""
    env: str = ""
    tags: FrozenSet[str] = frozenset()
    default_headers: Dict[str, str] = field(default_factory=dict)

    def merge(self, other: "FlowMeta") -> "FlowMeta":
        """Return a copy with every non-empty field of `other` applied."""
        headers = dict(self.default_headers)
        headers.update(other.default_headers)
        return FlowMeta(
            id=other.id or self.id,
            name=other.name or self.name,
            version=other.version or self.version,
            env=other.env or self.env,
            tags=other.tags or self.tags,
            default_headers=headers,
        )


@dataclass
class HttpRequestSpec:
    """HTTP request section of a step or legacy block.

    Headers are kept as raw ``Name: value`` lines and queries as ``key=value``
    entries so they can be interpolated before being split.
    """

    method: str = ""
    url: str = ""
    headers: List[str] = field(default_factory=list)
    queries: List[str] = field(default_factory=list)
    body: str = ""
    captures: List[str] = field(default_factory=list)
    asserts: List[str] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return bool(self.method and self.url)


@dataclass
class ExecSpec:
    """Shell command section of an ``@type exec`` step."""

    command: str = ""
    captures: List[str] = field(default_factory=list)
    asserts: List[str] = field(default_factory=list)


@dataclass
class FlowStep:
    """A single executable step.

    Attributes:
        id: Unique step id (auto-assigned ``step-<n>`` when omitted).
        name: Display name; falls back to id.
        type: ``http`` or ``exec``.
        retry: Extra attempts after the first failure.
        retry_wait_ms: Fixed delay between attempts.
        max_duration_ms: Response time budget; also the HTTP timeout.
        wait_ms: Delay before the step starts.
        poll_timeout_ms: Re-issue the request until asserts pass or this elapses.
        poll_interval_ms: Delay between poll attempts.
        timeout_ms: Exec deadline for this step (overrides the run default).
        on_fail: Parsed and kept; not acted upon.
        line: Line number of the opening fence.
        raw: Block text.
    """

    id: str = ""
    name: str = ""
    type: str = STEP_TYPE_HTTP
    retry: int = 0
    retry_wait_ms: int = 0
    max_duration_ms: int = 0
    wait_ms: int = 0
    poll_timeout_ms: int = 0
    poll_interval_ms: int = 0
    timeout_ms: int = 0
    on_fail: str = ""
    line: int = 0
    raw: str = ""
    request: HttpRequestSpec = field(default_factory=HttpRequestSpec)
    exec_spec: ExecSpec = field(default_factory=ExecSpec)

    @property
    def display_name(self) -> str:
        return self.name or self.id or "step"

    @property
    def is_exec(self) -> bool:
        return self.type == STEP_TYPE_EXEC

    @property
    def captures(self) -> List[str]:
        return self.exec_spec.captures if self.is_exec else self.request.captures

    @property
    def asserts(self) -> List[str]:
        return self.exec_spec.asserts if self.is_exec else self.request.asserts


@dataclass(frozen=True)
class FlowEdge:
    """Ordering dependency between two steps. `on` is informational only."""

    from_id: str
    to_id: str
    on: str = ""
    line: int = 0


@dataclass(frozen=True)
class FlowDoc:
    """A parsed flow document."""

    meta: FlowMeta = field(default_factory=FlowMeta)
    steps: Tuple[FlowStep, ...] = ()
    edges: Tuple[FlowEdge, ...] = ()
    warnings: Tuple[str, ...] = ()

    @property
    def is_flow(self) -> bool:
        """True when the document declares any flow semantics."""
        return bool(self.steps or self.edges or self.meta.id)

    def step_by_id(self, step_id: str) -> Optional[FlowStep]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None
