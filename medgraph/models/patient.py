# medgraph/models/patient.py
from datetime import datetime
from typing import Literal
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from medgraph.models.analysis import ICD10Code
from medgraph.models.graph import GraphEdge, GraphNode, RejectionKind


class PatientCreate(BaseModel):
    name: str = Field(min_length=1)
    age: str = Field(min_length=1)

    @field_validator("name", "age")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value


class Patient(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    pid: str
    name: str
    age: str
    created_at: datetime


class PatientFile(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    file_name: str
    file_size: int
    file_type: str
    file_path: str
    created_at: datetime


class GraphRecord(BaseModel):
    """The persisted, per-patient knowledge graph row."""
    nodes: list[GraphNode] = Field(default_factory=list)
    edges: list[GraphEdge] = Field(default_factory=list)
    icd10_codes: list[ICD10Code] = Field(default_factory=list)
    graph_analysis: str | None = None
    schema_version: int = 1
    updated_at: datetime | None = None


FileStatus = Literal["valid", "invalid", "cancelled"]


class FileOutcome(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, use_enum_values=True)

    file_id: str
    file_name: str
    status: FileStatus
    node_count: int = 0
    reason: str | None = None
    kind: RejectionKind | None = None
    stored: bool = False


class BatchReport(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    total: int
    valid: int
    invalid: int
    cancelled: int
    files: list[FileOutcome]
    nodes: list[GraphNode]
    edges: list[GraphEdge]
