from __future__ import annotations

from casegen_pipeline.gating import build_gating_graph, classify_visibility, dangling_references
from casegen_pipeline.models import UnlockAction

from support import item


def test_design_example_graph_and_visibility() -> None:
    graph = build_gating_graph([item("DOC-1"), item("DOC-2", requires=["EVD-1"]), item("EVD-1")])

    assert [node.id for node in graph.nodes] == ["DOC-1", "DOC-2", "EVD-1"]
    unlocks = [(edge.source, edge.target) for edge in graph.edges if edge.relationship == "unlocks"]
    requires = [(edge.source, edge.target) for edge in graph.edges if edge.relationship == "requires"]
    assert unlocks == [("EVD-1", "DOC-2")]
    assert requires == [("DOC-2", "EVD-1")]
    assert graph.has_cycles is False
    assert graph.cycle_descriptions == []

    visibility = classify_visibility(graph)
    assert visibility.always_visible == ["DOC-1", "EVD-1"]
    assert visibility.hidden_until_unlocked == ["DOC-2"]
    assert visibility.gated_visible == []


def test_two_node_cycle_is_detected_and_described() -> None:
    graph = build_gating_graph([item("A", requires=["B"]), item("B", requires=["A"])])

    assert graph.has_cycles is True
    assert len(graph.cycle_descriptions) == 1
    description = graph.cycle_descriptions[0]
    assert "A" in description and "B" in description
    assert description == "A -> B -> A"


def test_acyclic_graph_of_same_size_has_no_cycles() -> None:
    graph = build_gating_graph([item("A", requires=["B"]), item("B")])
    assert graph.has_cycles is False


def test_three_node_cycle_is_reported_once() -> None:
    graph = build_gating_graph(
        [item("A", requires=["B"]), item("B", requires=["C"]), item("C", requires=["A"])]
    )
    assert graph.cycle_descriptions == ["A -> B -> C -> A"]


def test_self_requirement_is_a_cycle() -> None:
    graph = build_gating_graph([item("A", requires=["A"])])
    assert graph.has_cycles is True
    assert graph.cycle_descriptions == ["A -> A"]


def test_unknown_required_ids_produce_no_edges() -> None:
    items = [item("DOC-1", requires=["GHOST", "DOC-2"]), item("DOC-2")]
    graph = build_gating_graph(items)

    node_ids = {node.id for node in graph.nodes}
    assert all(edge.source in node_ids and edge.target in node_ids for edge in graph.edges)
    assert graph.nodes[0].required_ids == ["DOC-2"]
    assert dangling_references(items) == [("DOC-1", "GHOST")]


def test_gated_visible_tier() -> None:
    graph = build_gating_graph(
        [
            item("REPORT"),
            item("CCTV", kind="media", requires=[], action=UnlockAction.MANUAL_UNLOCK),
            item("LOG", requires=["REPORT"], action=UnlockAction.ROLE_REQUIRED),
            item("LAB", requires=["LOG"], action=UnlockAction.ROLE_REQUIRED),
        ]
    )
    visibility = classify_visibility(graph)

    assert visibility.always_visible == ["REPORT"]
    assert visibility.gated_visible == ["CCTV", "LOG"]
    assert visibility.hidden_until_unlocked == ["LAB"]


def test_visibility_is_deterministic() -> None:
    items = [item("X", requires=["Y"]), item("Y"), item("Z", requires=["X"])]
    first = classify_visibility(build_gating_graph(items))
    second = classify_visibility(build_gating_graph(list(items)))
    assert first == second


def test_rule_on_an_ungated_item_still_adds_edges() -> None:
    graph = build_gating_graph([item("DOC-1", requires=["EVD-1"], gated=False), item("EVD-1")])

    assert [(edge.source, edge.target, edge.relationship) for edge in graph.edges] == [
        ("DOC-1", "EVD-1", "requires"),
        ("EVD-1", "DOC-1", "unlocks"),
    ]
    assert graph.nodes[0].unlock_action is None
    assert classify_visibility(graph).always_visible == ["DOC-1", "EVD-1"]

    looped = build_gating_graph([item("A", requires=["B"], gated=False), item("B", requires=["A"])])
    assert looped.cycle_descriptions == ["A -> B -> A"]
    assert dangling_references([item("A", requires=["GHOST"], gated=False)]) == [("A", "GHOST")]
