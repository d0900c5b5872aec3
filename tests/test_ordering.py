"""Tests for ordering.py and mermaid.py - step ordering and flowchart output."""

from __future__ import annotations

import logging

from kest.flow.mermaid import flow_to_mermaid
from kest.flow.ordering import order_flow_steps
from kest.flow.types import FlowDoc, FlowEdge, FlowStep


def make_doc(step_ids, edges=()):
    return FlowDoc(
        steps=tuple(FlowStep(id=step_id) for step_id in step_ids),
        edges=tuple(FlowEdge(from_id=a, to_id=b) for a, b in edges),
    )


def ids(steps):
    return [step.id for step in steps]


class TestOrderFlowSteps:
    """Tests for order_flow_steps."""

    def test_no_edges_keeps_document_order(self):
        assert ids(order_flow_steps(make_doc(["c", "a", "b"]))) == ["c", "a", "b"]

    def test_edges_move_dependents_after_dependencies(self):
        doc = make_doc(["profile", "orders", "login"], [("login", "profile"), ("login", "orders")])
        assert ids(order_flow_steps(doc)) == ["login", "profile", "orders"]

    def test_unconstrained_steps_keep_relative_order(self):
        doc = make_doc(["a", "b", "c"], [("c", "a")])
        assert ids(order_flow_steps(doc)) == ["b", "c", "a"]

    def test_chain(self):
        doc = make_doc(["d", "c", "b", "a"], [("a", "b"), ("b", "c"), ("c", "d")])
        assert ids(order_flow_steps(doc)) == ["a", "b", "c", "d"]

    def test_every_edge_is_respected(self):
        edges = [("a", "d"), ("b", "d"), ("d", "e"), ("c", "e")]
        ordered = ids(order_flow_steps(make_doc(["e", "d", "c", "b", "a"], edges)))
        for before, after in edges:
            assert ordered.index(before) < ordered.index(after)

    def test_cycle_falls_back_to_document_order(self, caplog):
        doc = make_doc(["a", "b", "c"], [("a", "b"), ("b", "a")])
        with caplog.at_level(logging.WARNING, logger="kest.flow.ordering"):
            assert ids(order_flow_steps(doc)) == ["a", "b", "c"]
        assert "falling back to document order" in caplog.text

    def test_unknown_step_falls_back_to_document_order(self, caplog):
        doc = make_doc(["b", "a"], [("a", "ghost")])
        with caplog.at_level(logging.WARNING, logger="kest.flow.ordering"):
            assert ids(order_flow_steps(doc)) == ["b", "a"]
        assert "unknown step" in caplog.text

    def test_result_is_a_permutation(self):
        doc = make_doc(["x", "y", "z"], [("z", "x")])
        assert sorted(ids(order_flow_steps(doc))) == ["x", "y", "z"]


class TestFlowToMermaid:
    """Tests for flow_to_mermaid."""

    def test_nodes_and_edges(self):
        doc = FlowDoc(
            steps=(FlowStep(id="login", name='Say "hi"'), FlowStep(id="profile")),
            edges=(
                FlowEdge(from_id="login", to_id="profile", on="success"),
                FlowEdge(from_id="profile", to_id="login"),
            ),
        )
        assert flow_to_mermaid(doc).split("\n") == [
            "flowchart TD",
            '  login["Say #quot;hi#quot;"]',
            '  profile["profile"]',
            "  login -->|success| profile",
            "  profile --> login",
        ]

    def test_empty_doc(self):
        assert flow_to_mermaid(FlowDoc()) == "flowchart TD"
