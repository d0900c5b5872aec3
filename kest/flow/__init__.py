"""
kest.flow - Flow document parsing and ordering.

Package Structure:
    types.py     - FlowDoc, FlowMeta, FlowStep, FlowEdge, LegacyBlock
    markdown.py  - Fenced block lexer
    parser.py    - Block classifier, step/edge/request parsing
    scenario.py  - Single-line `.kest` scenario files
    ordering.py  - Dependency ordering with document-order fallback
    mermaid.py   - Mermaid flowchart rendering

Usage:
    from kest.flow import parse_flow_document, order_flow_steps

    doc, legacy = parse_flow_document(text)
    for step in order_flow_steps(doc):
        ...
"""

# =============================================================================
# Public API: Types
# =============================================================================
from .types import (
    STEP_TYPE_EXEC,
    STEP_TYPE_HTTP,
    ExecSpec,
    FlowBlock,
    FlowDoc,
    FlowEdge,
    FlowMeta,
    FlowStep,
    HttpRequestSpec,
    LegacyBlock,
)

# =============================================================================
# Public API: Parsing
# =============================================================================
from .markdown import parse_flow_markdown
from .parser import (
    parse_directive,
    parse_exec_block,
    parse_flow_document,
    parse_inline_kv,
    parse_int,
    parse_request_block,
    split_arguments,
)
from .scenario import ScenarioRequest, load_scenario_lines, parse_scenario_line

# =============================================================================
# Public API: Ordering and rendering
# =============================================================================
from .ordering import order_flow_steps
from .mermaid import flow_to_mermaid

__all__ = [
    "STEP_TYPE_EXEC",
    "STEP_TYPE_HTTP",
    "ExecSpec",
    "FlowBlock",
    "FlowDoc",
    "FlowEdge",
    "FlowMeta",
    "FlowStep",
    "HttpRequestSpec",
    "LegacyBlock",
    "ScenarioRequest",
    "flow_to_mermaid",
    "load_scenario_lines",
    "order_flow_steps",
    "parse_directive",
    "parse_exec_block",
    "parse_flow_document",
    "parse_flow_markdown",
    "parse_inline_kv",
    "parse_int",
    "parse_request_block",
    "parse_scenario_line",
    "split_arguments",
]
