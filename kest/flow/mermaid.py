"""
mermaid.py - Render a FlowDoc as a Mermaid flowchart.

    flowchart TD
      login["Login"]
      profile["Get profile"]
      login -->|success| profile
"""

from __future__ import annotations

from typing import List

from .types import FlowDoc


def _label(text: str) -> str:
    return text.replace('"', "#quot;")


def flow_to_mermaid(doc: FlowDoc) -> str:
    lines: List[str] = ["flowchart TD"]
    for step in doc.steps:
        lines.append(f'  {step.id}["{_label(step.display_name)}"]')
    for edge in doc.edges:
        if edge.on:
            lines.append(f"  {edge.from_id} -->|{_label(edge.on)}| {edge.to_id}")
        else:
            lines.append(f"  {edge.from_id} --> {edge.to_id}")
    return "\n".join(lines)
