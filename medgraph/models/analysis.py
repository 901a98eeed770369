# medgraph/models/analysis.py
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from medgraph.models.graph import GraphEdge, GraphNode

LEVELS = ("High", "Medium", "Low")
URGENCIES = ("Urgent", "Routine", "Follow-up")


def _pick(value: Any, choices: tuple[str, ...], default: str) -> str:
    """Case-insensitive match against ``choices``; anything unrecognised becomes ``default``."""
    if isinstance(value, str):
        wanted = value.strip().lower().replace("_", "-").replace(" ", "-")
        for choice in choices:
            if choice.lower() == wanted:
                return choice
    return default


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ICD10Code(CamelModel):
    code: str
    description: str = ""


class TreatmentRecommendation(CamelModel):
    title: str
    description: str
    priority: Literal["High", "Medium", "Low"] = "Medium"

    @field_validator("priority", mode="before")
    @classmethod
    def _normalize_priority(cls, value: Any) -> str:
        return _pick(value, LEVELS, "Medium")


class RiskFactor(CamelModel):
    title: str
    description: str
    severity: Literal["High", "Medium", "Low"] = "Medium"

    @field_validator("severity", mode="before")
    @classmethod
    def _normalize_severity(cls, value: Any) -> str:
        return _pick(value, LEVELS, "Medium")


class SuggestedTest(CamelModel):
    name: str
    reason: str
    urgency: Literal["Urgent", "Routine", "Follow-up"] = "Routine"

    @field_validator("urgency", mode="before")
    @classmethod
    def _normalize_urgency(cls, value: Any) -> str:
        return _pick(value, URGENCIES, "Routine")


class StructuredAnalysis(CamelModel):
    patient_summary: str = ""
    key_insights: list[str] = Field(default_factory=list)
    treatment_recommendations: list[TreatmentRecommendation] = Field(default_factory=list)
    risk_factors: list[RiskFactor] = Field(default_factory=list)
    suggested_tests: list[SuggestedTest] = Field(default_factory=list)
    icd10_codes: list[ICD10Code] = Field(default_factory=list, alias="icd10Codes")
    diagnosis_summary: str = ""
    medication_analysis: str = ""


class NodeAnalysisRequest(CamelModel):
    node: GraphNode
    all_nodes: list[GraphNode] = Field(default_factory=list)
    all_edges: list[GraphEdge] = Field(default_factory=list)


class NodeAnalysisResponse(CamelModel):
    analysis: str
    icd10_codes: list[str] = Field(default_factory=list, alias="icd10Codes")


class GraphAnalysisRequest(CamelModel):
    nodes: list[GraphNode] = Field(default_factory=list)
    edges: list[GraphEdge] = Field(default_factory=list)


class GraphAnalysisResponse(CamelModel):
    analysis: str
    structured: StructuredAnalysis | None = None
