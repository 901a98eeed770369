# medgraph/services/layout.py
"""
Condition-centered radial layout.

Condition nodes sit on a short horizontal row through the canvas center and
every other node is spread clockwise around a circle starting from the top.
The result depends only on the node list (types and order), so re-running it
on the same graph reproduces the same coordinates.
"""
import math

from medgraph.models.graph import GraphNode, KnowledgeGraph, NodeType

CENTER_X = 400.0
CENTER_Y = 300.0
CONDITION_SPACING = 50.0
MIN_RADIUS = 180.0
BASE_RADIUS = 120.0
RADIUS_PER_NODE = 10.0


def ring_radius(other_count: int, condition_count: int = 0) -> float:
    """Radius of the outer ring; never decreases as either count grows."""
    radius = max(MIN_RADIUS, BASE_RADIUS + RADIUS_PER_NODE * other_count)
    if condition_count > 1:
        # Keep the ring outside the condition row.
        half_span = (condition_count - 1) * CONDITION_SPACING / 2
        radius = max(radius, half_span + CONDITION_SPACING)
    return radius


def layout_positions(
    nodes: list[GraphNode],
    center: tuple[float, float] = (CENTER_X, CENTER_Y),
) -> list[tuple[float, float]]:
    """Positions for ``nodes``, index-aligned with the input list."""
    cx, cy = center
    conditions = [i for i, node in enumerate(nodes) if node.type == NodeType.CONDITION]
    others = [i for i, node in enumerate(nodes) if node.type != NodeType.CONDITION]

    positions: list[tuple[float, float]] = [center] * len(nodes)

    if len(conditions) == 1:
        positions[conditions[0]] = (cx, cy)
    elif conditions:
        total_width = (len(conditions) - 1) * CONDITION_SPACING
        for rank, index in enumerate(conditions):
            positions[index] = (cx - total_width / 2 + rank * CONDITION_SPACING, cy)

    if others:
        radius = ring_radius(len(others), len(conditions))
        count = len(others)
        for rank, index in enumerate(others):
            angle = (rank / count) * 2 * math.pi - math.pi / 2
            positions[index] = (cx + radius * math.cos(angle), cy + radius * math.sin(angle))

    return positions


def apply_radial_layout(
    nodes: list[GraphNode],
    center: tuple[float, float] = (CENTER_X, CENTER_Y),
) -> list[GraphNode]:
    """Return copies of ``nodes`` in their original order with ``x``/``y`` assigned."""
    if not nodes:
        return []
    positions = layout_positions(nodes, center)
    return [
        node.model_copy(update={"x": float(x), "y": float(y)})
        for node, (x, y) in zip(nodes, positions)
    ]


def layout_graph(graph: KnowledgeGraph) -> KnowledgeGraph:
    return KnowledgeGraph(nodes=apply_radial_layout(graph.nodes), edges=list(graph.edges))
