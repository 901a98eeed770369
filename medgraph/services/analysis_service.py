# medgraph/services/analysis_service.py
import json
import logging
import re
from collections import Counter
from typing import Any

from pydantic import ValidationError

from medgraph.models.analysis import GraphAnalysisResponse, ICD10Code, NodeAnalysisResponse, StructuredAnalysis
from medgraph.models.graph import GraphEdge, GraphNode, NodeType
from medgraph.services.ai_service import AIService

logger = logging.getLogger(__name__)

# Letter (U is reserved), two digits or digit + A/B, optional dotted extension.
ICD10_RE = re.compile(r"\b([A-TV-Z][0-9][0-9AB](?:\.[0-9A-TV-Z]{1,4})?)\b")

_SUMMARY_SECTIONS = [
    ("Patient Information", NodeType.PATIENT, True),
    ("Conditions", NodeType.CONDITION, True),
    ("Medications", NodeType.MEDICATION, True),
    ("Symptoms", NodeType.SYMPTOM, False),
    ("Procedures", NodeType.PROCEDURE, True),
]


def extract_icd10_codes(text: str) -> list[str]:
    """ICD-10 codes mentioned in free text, in order of first appearance."""
    seen: list[str] = []
    for code in ICD10_RE.findall(text or ""):
        if code not in seen:
            seen.append(code)
    return seen


def _data_json(node: GraphNode) -> str:
    return json.dumps(node.data or {}, ensure_ascii=False)


def build_node_context(node: GraphNode, all_nodes: list[GraphNode], all_edges: list[GraphEdge]) -> str:
    connected = [n for n in all_nodes if n.id in node.connections]
    related = [e for e in all_edges if e.source == node.id or e.target == node.id]

    lines = [
        f"Node: {node.label}",
        f"Type: {node.type}",
        f"Data: {_data_json(node)}",
        "",
        "Connected to:",
        *[f"- {n.label} ({n.type})" for n in connected],
        "",
        "Relationships:",
        *[f"- {e.label or 'connected to'}" for e in related],
    ]
    return "\n".join(lines)


def build_graph_summary(nodes: list[GraphNode], edges: list[GraphEdge]) -> str:
    by_id = {n.id: n for n in nodes}
    type_counts = Counter(n.type for n in nodes)

    lines = [
        f"Total Nodes: {len(nodes)}",
        f"Total Relationships: {len(edges)}",
        "",
        "Nodes by Type:",
        *[f"- {node_type}: {count}" for node_type, count in type_counts.items()],
    ]
    for title, node_type, with_data in _SUMMARY_SECTIONS:
        lines += ["", f"{title}:"]
        lines += [
            f"- {n.label}: {_data_json(n)}" if with_data else f"- {n.label}"
            for n in nodes if n.type == node_type
        ]

    lines += ["", "Key Relationships:"]
    for edge in edges:
        source = by_id.get(edge.source)
        target = by_id.get(edge.target)
        if source is None or target is None:
            continue
        lines.append(f"- {source.label} {edge.label or '→'} {target.label}")
    return "\n".join(lines)


def fallback_analysis(content: str) -> StructuredAnalysis:
    """Structure built from unstructured model text."""
    return StructuredAnalysis(
        patient_summary=content[:200],
        key_insights=[content] if content else [],
        icd10_codes=[ICD10Code(code=code) for code in extract_icd10_codes(content)],
        diagnosis_summary=content,
    )


def coerce_structured_analysis(payload: Any, raw_text: str) -> StructuredAnalysis:
    if isinstance(payload, dict):
        try:
            return StructuredAnalysis.model_validate(payload)
        except ValidationError as exc:
            logger.warning("Structured analysis failed validation, using text fallback: %s", exc)
    return fallback_analysis(raw_text)


class AnalysisService:
    def __init__(self, ai_service: AIService):
        self.ai_service = ai_service

    async def analyze_node(
        self, node: GraphNode, all_nodes: list[GraphNode], all_edges: list[GraphEdge]
    ) -> NodeAnalysisResponse:
        logger.info("Analyzing node: %s", node.label)
        context = build_node_context(node, all_nodes, all_edges)
        analysis = await self.ai_service.analyze_node(context)
        return NodeAnalysisResponse(analysis=analysis, icd10_codes=extract_icd10_codes(analysis))

    async def analyze_graph(self, nodes: list[GraphNode], edges: list[GraphEdge]) -> GraphAnalysisResponse:
        logger.info("Analyzing full knowledge graph: %d nodes", len(nodes))
        raw_text, payload = await self.ai_service.analyze_graph(build_graph_summary(nodes, edges))
        structured = coerce_structured_analysis(payload, raw_text)
        return GraphAnalysisResponse(
            analysis=structured.model_dump_json(by_alias=True),
            structured=structured,
        )
