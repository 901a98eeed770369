# medgraph/services/graph_merge.py
"""
Deduplicating merge of extracted fragments into a patient's accumulated graph.

Nodes are keyed by their lower-cased label and edges by the lower-cased
``source-target-label`` triple. The first occurrence of a key wins and is
never updated by later fragments.
"""
import logging
from typing import Any

from pydantic import ValidationError

from medgraph.models.graph import GraphEdge, GraphNode, KnowledgeGraph

logger = logging.getLogger(__name__)


def node_key(node: GraphNode) -> str:
    return node.label.lower()


def edge_key(edge: GraphEdge) -> str:
    return f"{edge.source}-{edge.target}-{edge.label}".lower()


def coerce_fragment(payload: Any) -> KnowledgeGraph:
    """
    Validate a raw extraction payload into a graph.

    A payload that is not an object, or whose ``nodes``/``edges`` are missing or
    not lists, becomes an empty graph. Individual items that fail validation
    are dropped.
    """
    if isinstance(payload, KnowledgeGraph):
        return KnowledgeGraph(nodes=list(payload.nodes), edges=list(payload.edges))
    if not isinstance(payload, dict):
        logger.warning("Discarding malformed fragment of type %s", type(payload).__name__)
        return KnowledgeGraph()

    raw_nodes = payload.get("nodes")
    raw_edges = payload.get("edges")
    if not isinstance(raw_nodes, list) or not isinstance(raw_edges, list):
        logger.warning("Fragment is missing a nodes or edges array; treating it as empty.")
        return KnowledgeGraph()

    nodes = _validate_items(GraphNode, raw_nodes)
    edges = _validate_items(GraphEdge, raw_edges)
    return KnowledgeGraph(nodes=nodes, edges=edges)


def _validate_items(model, items: list) -> list:
    valid = []
    for item in items:
        try:
            valid.append(model.model_validate(item))
        except ValidationError as exc:
            logger.debug("Dropping invalid %s: %s", model.__name__, exc)
    if len(valid) < len(items):
        logger.warning("Dropped %d invalid %s item(s) from fragment.", len(items) - len(valid), model.__name__)
    return valid


def merge_graphs(existing: KnowledgeGraph | None, incoming: Any) -> KnowledgeGraph:
    """
    Merge ``incoming`` into ``existing`` and return a new graph.

    Existing nodes and edges come first, followed by the admitted incoming ones
    in their original order. Duplicates inside ``incoming`` collapse too.
    Edges of an incoming node dropped as a label duplicate are re-pointed at
    the surviving node, and an incoming node whose id is already taken by a
    different label gets a suffixed id.
    """
    fragment = coerce_fragment(incoming)
    base = existing or KnowledgeGraph()

    nodes = list(base.nodes)
    edges = list(base.edges)
    id_by_label = {node_key(node): node.id for node in nodes}
    taken_ids = {node.id for node in nodes}
    seen_edges = {edge_key(edge) for edge in edges}

    # Fragment-local id -> id of the node that represents it in the merged graph.
    id_map: dict[str, str] = {}
    for node in fragment.nodes:
        key = node_key(node)
        if key in id_by_label:
            id_map.setdefault(node.id, id_by_label[key])
            continue

        new_id = _unique_id(node.id, taken_ids)
        id_map.setdefault(node.id, new_id)
        admitted = node if new_id == node.id else node.model_copy(update={"id": new_id})
        nodes.append(admitted)
        id_by_label[key] = new_id
        taken_ids.add(new_id)

    for edge in fragment.edges:
        source = id_map.get(edge.source, edge.source)
        target = id_map.get(edge.target, edge.target)
        if source != edge.source or target != edge.target:
            edge = edge.model_copy(update={"source": source, "target": target})
        key = edge_key(edge)
        if key in seen_edges:
            continue
        edges.append(edge)
        seen_edges.add(key)

    return with_connections(KnowledgeGraph(nodes=nodes, edges=edges))


def fold_fragments(existing: KnowledgeGraph | None, fragments: list[Any]) -> KnowledgeGraph:
    """Sequentially merge fragments, each against the result of the previous merge."""
    graph = existing or KnowledgeGraph()
    for fragment in fragments:
        graph = merge_graphs(graph, fragment)
    return graph


def _unique_id(candidate: str, taken: set[str]) -> str:
    if candidate not in taken:
        return candidate
    suffix = 2
    while f"{candidate}_{suffix}" in taken:
        suffix += 1
    return f"{candidate}_{suffix}"


def with_connections(graph: KnowledgeGraph) -> KnowledgeGraph:
    """Recompute every node's ``connections`` from the edges that resolve to known nodes."""
    known = {node.id for node in graph.nodes}
    neighbors: dict[str, list[str]] = {node_id: [] for node_id in known}
    for edge in graph.edges:
        if edge.source not in known or edge.target not in known or edge.source == edge.target:
            continue
        if edge.target not in neighbors[edge.source]:
            neighbors[edge.source].append(edge.target)
        if edge.source not in neighbors[edge.target]:
            neighbors[edge.target].append(edge.source)

    nodes = [
        node if node.connections == neighbors[node.id]
        else node.model_copy(update={"connections": neighbors[node.id]})
        for node in graph.nodes
    ]
    return KnowledgeGraph(nodes=nodes, edges=list(graph.edges))


def resolved_edges(graph: KnowledgeGraph) -> list[GraphEdge]:
    """Edges whose endpoints both exist; dangling edges are left out of rendering."""
    known = {node.id for node in graph.nodes}
    return [edge for edge in graph.edges if edge.source in known and edge.target in known]
