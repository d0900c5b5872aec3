"""
ordering.py - Dependency ordering for flow steps.

Edges are ordering constraints only. Steps are sorted with Kahn's algorithm;
among ready steps the one earliest in the document runs first, so a document
with no constraints between two steps keeps their written order.

If the edges cannot be satisfied (a cycle, or an edge naming a step that
does not exist) the steps are returned in document order. A partial order is
never returned.
"""

from __future__ import annotations

import heapq
import logging
from typing import Dict, List

from .types import FlowDoc, FlowStep

logger = logging.getLogger(__name__)


def order_flow_steps(doc: FlowDoc) -> List[FlowStep]:
    """Return the steps of `doc` in execution order."""
    steps = list(doc.steps)
    if not doc.edges:
        return steps

    index_of: Dict[str, int] = {}
    for index, step in enumerate(steps):
        index_of.setdefault(step.id, index)

    for edge in doc.edges:
        if edge.from_id not in index_of or edge.to_id not in index_of:
            logger.warning(
                "Edge %s -> %s (line %d) names an unknown step; "
                "falling back to document order",
                edge.from_id,
                edge.to_id,
                edge.line,
            )
            return steps

    in_degree: Dict[str, int] = {step.id: 0 for step in steps}
    successors: Dict[str, List[str]] = {step.id: [] for step in steps}
    for edge in doc.edges:
        successors.setdefault(edge.from_id, []).append(edge.to_id)
        in_degree[edge.to_id] = in_degree.get(edge.to_id, 0) + 1
        in_degree.setdefault(edge.from_id, 0)

    ready = [index_of[step_id] for step_id, degree in in_degree.items()
             if degree == 0 and step_id in index_of]
    heapq.heapify(ready)

    ordered: List[FlowStep] = []
    while ready:
        step = steps[heapq.heappop(ready)]
        ordered.append(step)
        for next_id in successors.get(step.id, []):
            in_degree[next_id] -= 1
            if in_degree[next_id] == 0 and next_id in index_of:
                heapq.heappush(ready, index_of[next_id])

    if len(ordered) != len(steps):
        logger.warning(
            "Flow edges could not be satisfied (%d of %d steps ordered); "
            "falling back to document order",
            len(ordered),
            len(steps),
        )
        return steps
    return ordered
