"""
markdown.py - First-pass lexer for flow documents.

Extracts fenced code blocks from Markdown. Classification into metadata,
steps, edges and legacy requests happens in parser.py.

Both backtick (```) and tilde (~~~) fences are recognised. The block kind is
the first word of the info string; anything after it is ignored:

    ```step title="Login"     -> kind "step"
    ~~~flow                   -> kind "flow"
"""

from __future__ import annotations

import logging
from typing import List, Optional

from .types import FlowBlock

logger = logging.getLogger(__name__)

_FENCES = ("```", "~~~")


def _opening_fence(trimmed: str) -> Optional[str]:
    for fence in _FENCES:
        if trimmed.startswith(fence):
            return fence
    return None


def parse_flow_markdown(content: str) -> List[FlowBlock]:
    """Split Markdown into fenced blocks.

    Args:
        content: Raw document text.

    Returns:
        Blocks in document order. Blocks without an info string get kind "".
        An unterminated block at end of input is dropped.
    """
    blocks: List[FlowBlock] = []
    fence: Optional[str] = None
    kind = ""
    info = ""
    start_line = 0
    body: List[str] = []

    for line_num, line in enumerate(content.splitlines(), start=1):
        trimmed = line.strip()

        if fence is None:
            opening = _opening_fence(trimmed)
            if opening is None:
                continue
            fence = opening
            words = trimmed[len(opening):].strip().split(None, 1)
            kind = words[0].lower() if words else ""
            info = words[1] if len(words) > 1 else ""
            start_line = line_num
            body = []
            continue

        if trimmed.startswith(fence):
            blocks.append(
                FlowBlock(kind=kind, info=info, line=start_line, raw="\n".join(body))
            )
            fence = None
            continue

        body.append(line)

    if fence is not None:
        logger.warning(
            "Unterminated %r block starting at line %d was ignored", kind, start_line
        )

    return blocks
