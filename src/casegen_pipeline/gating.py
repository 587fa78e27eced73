"""Gating graph: which artifacts unlock which, cycle detection, visibility tiers."""

from __future__ import annotations

from typing import Iterable

from .models import GatingEdge, GatingGraph, GatingNode, NormalizedItem, UnlockAction, Visibility

_WHITE, _GRAY, _BLACK = 0, 1, 2


def build_gating_graph(items: Iterable[NormalizedItem]) -> GatingGraph:
    """Build the dependency graph over *items* (documents first, then media).

    Any item whose gating rule names other ids gets a ``requires`` edge to each
    of them and the mirrored ``unlocks`` edge back, whether or not the item is
    itself gated. Required ids that are not in the bundle produce no
    edge; see ``dangling_references``.
    """
    ordered = list(items)
    known = {item.id for item in ordered}
    nodes: list[GatingNode] = []
    edges: list[GatingEdge] = []

    for item in ordered:
        required = [rid for rid in dict.fromkeys(item.required_ids) if rid in known]
        nodes.append(
            GatingNode(
                id=item.id,
                type=item.kind,
                gated=item.gated,
                unlock_action=item.gating_rule.action if item.gated and item.gating_rule else None,
                required_ids=required,
            )
        )
        for required_id in required:
            edges.append(GatingEdge(source=item.id, target=required_id, relationship="requires"))
            edges.append(GatingEdge(source=required_id, target=item.id, relationship="unlocks"))

    cycles = detect_cycles(nodes, edges)
    return GatingGraph(
        nodes=nodes,
        edges=edges,
        has_cycles=bool(cycles),
        cycle_descriptions=[" -> ".join(cycle) for cycle in cycles],
    )


def dangling_references(items: Iterable[NormalizedItem]) -> list[tuple[str, str]]:
    """Return ``(item_id, missing_id)`` for every gating requirement that names an unknown id."""
    ordered = list(items)
    known = {item.id for item in ordered}
    return [(item.id, rid) for item in ordered for rid in item.required_ids if rid not in known]


def detect_cycles(nodes: list[GatingNode], edges: list[GatingEdge]) -> list[list[str]]:
    """Find cycles over ``requires`` edges with a depth-first search.

    Each back-edge found yields one closed path (``[A, B, A]``). Rotations of
    the same cycle are reported once.
    """
    adjacency: dict[str, list[str]] = {node.id: [] for node in nodes}
    for edge in edges:
        if edge.relationship == "requires" and edge.source in adjacency:
            adjacency[edge.source].append(edge.target)

    color = {node_id: _WHITE for node_id in adjacency}
    cycles: list[list[str]] = []
    seen: set[tuple[str, ...]] = set()

    for root in adjacency:
        if color[root] != _WHITE:
            continue
        color[root] = _GRAY
        path = [root]
        stack = [(root, iter(adjacency[root]))]
        while stack:
            node, neighbours = stack[-1]
            nxt = next(neighbours, None)
            if nxt is None:
                color[node] = _BLACK
                stack.pop()
                path.pop()
                continue
            if color[nxt] == _GRAY:
                loop = path[path.index(nxt):]
                key = _rotation_key(loop)
                if key not in seen:
                    seen.add(key)
                    cycles.append([*loop, nxt])
            elif color[nxt] == _WHITE:
                color[nxt] = _GRAY
                path.append(nxt)
                stack.append((nxt, iter(adjacency[nxt])))
    return cycles


def _rotation_key(loop: list[str]) -> tuple[str, ...]:
    start = loop.index(min(loop))
    return tuple(loop[start:] + loop[:start])


def classify_visibility(graph: GatingGraph) -> Visibility:
    """Assign every node to exactly one visibility tier.

    - not gated: always visible
    - gated with no requirements, or role-gated on always-visible artifacts:
      listed but locked (gated visible)
    - anything else: hidden until unlocked
    """
    always: list[str] = []
    gated_visible: list[str] = []
    hidden: list[str] = []
    always_ids = {node.id for node in graph.nodes if not node.gated}

    for node in graph.nodes:
        if not node.gated:
            always.append(node.id)
        elif not node.required_ids:
            gated_visible.append(node.id)
        elif node.unlock_action == UnlockAction.ROLE_REQUIRED and all(
            rid in always_ids for rid in node.required_ids
        ):
            gated_visible.append(node.id)
        else:
            hidden.append(node.id)
    return Visibility(always_visible=always, gated_visible=gated_visible, hidden_until_unlocked=hidden)
