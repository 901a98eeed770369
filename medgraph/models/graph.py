# medgraph/models/graph.py
import json
from enum import Enum
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

GRAPH_SCHEMA_VERSION = 1

Primitive = Union[str, int, float, bool, None]


class NodeType(str, Enum):
    PATIENT = "patient"
    CONDITION = "condition"
    MEDICATION = "medication"
    PROCEDURE = "procedure"
    SYMPTOM = "symptom"


class GraphNode(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    id: str
    label: str
    type: NodeType
    x: float = 0.0
    y: float = 0.0
    connections: list[str] = Field(default_factory=list)
    data: dict[str, Primitive] = Field(default_factory=dict)

    @field_validator("id", "label")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("x", "y", mode="before")
    @classmethod
    def _coerce_coordinate(cls, value: Any) -> Any:
        # Model-supplied positions are discarded by the layout engine anyway.
        return 0.0 if value is None else value

    @field_validator("connections", mode="before")
    @classmethod
    def _coerce_connections(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, list):
            return [str(item) for item in value if item is not None]
        return value

    @field_validator("data", mode="before")
    @classmethod
    def _flatten_data(cls, value: Any) -> Any:
        """Nested values are JSON-encoded so the bag stays a flat str -> primitive map."""
        if value is None:
            return {}
        if not isinstance(value, dict):
            return value
        flattened: dict[str, Primitive] = {}
        for key, item in value.items():
            if isinstance(item, (dict, list, tuple)):
                flattened[str(key)] = json.dumps(item, ensure_ascii=False)
            else:
                flattened[str(key)] = item
        return flattened


class GraphEdge(BaseModel):
    source: str
    target: str
    label: str = ""
    strength: float = 0.5

    @field_validator("label", mode="before")
    @classmethod
    def _coerce_label(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("strength", mode="before")
    @classmethod
    def _clamp_strength(cls, value: Any) -> Any:
        if value is None:
            return 0.5
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return min(1.0, max(0.0, float(value)))
        return value


class KnowledgeGraph(BaseModel):
    """A set of nodes and edges: a per-file fragment or a patient's accumulated graph."""
    nodes: list[GraphNode] = Field(default_factory=list)
    edges: list[GraphEdge] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.nodes


class Fragment(KnowledgeGraph):
    """Graph extracted from a single accepted file."""
    status: Literal["accepted"] = "accepted"


class RejectionKind(str, Enum):
    NON_MEDICAL = "non_medical"
    TRANSIENT_FAILURE = "transient_failure"
    RATE_LIMITED = "rate_limited"
    QUOTA_EXHAUSTED = "quota_exhausted"


class Rejected(BaseModel):
    """A file the extraction adapter refused; it never reaches the accumulator."""
    model_config = ConfigDict(use_enum_values=True)

    status: Literal["rejected"] = "rejected"
    reason: str
    kind: RejectionKind

    @property
    def retryable(self) -> bool:
        return self.kind in (RejectionKind.TRANSIENT_FAILURE.value, RejectionKind.RATE_LIMITED.value)


ExtractionResult = Union[Fragment, Rejected]
