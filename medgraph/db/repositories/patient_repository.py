# medgraph/db/repositories/patient_repository.py
import json
from datetime import datetime, timezone
from uuid import UUID

from neo4j import AsyncDriver

from medgraph.models.analysis import ICD10Code
from medgraph.models.graph import GRAPH_SCHEMA_VERSION, KnowledgeGraph
from medgraph.models.patient import GraphRecord, Patient, PatientFile


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class PatientRepository:
    """
    Patients, their uploaded file records and their knowledge graph record.

    (:Patient)-[:HAS_FILE]->(:PatientFile)
    (:Patient)-[:HAS_GRAPH]->(:KnowledgeGraph)
    """

    def __init__(self, driver: AsyncDriver):
        self.driver = driver

    async def create_patient(self, patient: Patient) -> Patient:
        query = """
        CREATE (p:Patient {id: $id, pid: $pid, name: $name, age: $age, created_at: $created_at})
        RETURN p
        """
        async with self.driver.session() as session:
            result = await session.run(query, {
                "id": str(patient.id),
                "pid": patient.pid,
                "name": patient.name,
                "age": patient.age,
                "created_at": patient.created_at.isoformat(),
            })
            record = await result.single()
            return Patient.model_validate(dict(record["p"]))

    async def pid_exists(self, pid: str) -> bool:
        query = "MATCH (p:Patient {pid: $pid}) RETURN count(p) > 0 AS exists"
        async with self.driver.session() as session:
            result = await session.run(query, {"pid": pid})
            record = await result.single()
            return bool(record and record["exists"])

    async def get_patient_by_pid(self, pid: str) -> Patient | None:
        query = "MATCH (p:Patient {pid: $pid}) RETURN p"
        async with self.driver.session() as session:
            result = await session.run(query, {"pid": pid})
            record = await result.single()
            return Patient.model_validate(dict(record["p"])) if record else None

    async def list_patients(self) -> list[Patient]:
        query = "MATCH (p:Patient) RETURN p ORDER BY p.created_at DESC"
        async with self.driver.session() as session:
            result = await session.run(query)
            records = [record async for record in result]
            return [Patient.model_validate(dict(record["p"])) for record in records]

    async def delete_patient(self, pid: str) -> bool:
        """Deletes the patient together with its file records and graph record."""
        query = """
        MATCH (p:Patient {pid: $pid})
        OPTIONAL MATCH (p)-[:HAS_FILE|HAS_GRAPH]->(child)
        DETACH DELETE child, p
        """
        async with self.driver.session() as session:
            result = await session.run(query, {"pid": pid})
            summary = await result.consume()
            return summary.counters.nodes_deleted > 0

    async def add_file(self, pid: str, patient_file: PatientFile) -> PatientFile | None:
        query = """
        MATCH (p:Patient {pid: $pid})
        CREATE (p)-[:HAS_FILE]->(f:PatientFile {
            id: $id,
            file_name: $file_name,
            file_size: $file_size,
            file_type: $file_type,
            file_path: $file_path,
            created_at: $created_at
        })
        RETURN f
        """
        async with self.driver.session() as session:
            result = await session.run(query, {
                "pid": pid,
                "id": str(patient_file.id),
                "file_name": patient_file.file_name,
                "file_size": patient_file.file_size,
                "file_type": patient_file.file_type,
                "file_path": patient_file.file_path,
                "created_at": patient_file.created_at.isoformat(),
            })
            record = await result.single()
            return PatientFile.model_validate(dict(record["f"])) if record else None

    async def list_files(self, pid: str) -> list[PatientFile]:
        query = """
        MATCH (:Patient {pid: $pid})-[:HAS_FILE]->(f:PatientFile)
        RETURN f ORDER BY f.created_at
        """
        async with self.driver.session() as session:
            result = await session.run(query, {"pid": pid})
            records = [record async for record in result]
            return [PatientFile.model_validate(dict(record["f"])) for record in records]

    async def delete_file(self, pid: str, file_id: UUID) -> PatientFile | None:
        """Deletes a file record and returns it so the caller can remove the stored object."""
        query = """
        MATCH (:Patient {pid: $pid})-[:HAS_FILE]->(f:PatientFile {id: $file_id})
        WITH f, properties(f) AS props
        DETACH DELETE f
        RETURN props
        """
        async with self.driver.session() as session:
            result = await session.run(query, {"pid": pid, "file_id": str(file_id)})
            record = await result.single()
            return PatientFile.model_validate(dict(record["props"])) if record else None

    async def get_graph(self, pid: str) -> GraphRecord | None:
        query = "MATCH (:Patient {pid: $pid})-[:HAS_GRAPH]->(g:KnowledgeGraph) RETURN g"
        async with self.driver.session() as session:
            result = await session.run(query, {"pid": pid})
            record = await result.single()
            if not record:
                return None
            props = dict(record["g"])
            return GraphRecord(
                nodes=json.loads(props.get("nodes") or "[]"),
                edges=json.loads(props.get("edges") or "[]"),
                icd10_codes=json.loads(props.get("icd10_codes") or "[]"),
                graph_analysis=props.get("graph_analysis"),
                schema_version=props.get("schema_version", GRAPH_SCHEMA_VERSION),
                updated_at=props.get("updated_at"),
            )

    async def upsert_graph(self, pid: str, graph: KnowledgeGraph) -> bool:
        query = """
        MATCH (p:Patient {pid: $pid})
        MERGE (p)-[:HAS_GRAPH]->(g:KnowledgeGraph)
        ON CREATE SET g.created_at = $now
        SET g.nodes = $nodes,
            g.edges = $edges,
            g.schema_version = $schema_version,
            g.updated_at = $now
        RETURN count(g) AS written
        """
        async with self.driver.session() as session:
            result = await session.run(query, {
                "pid": pid,
                "nodes": json.dumps([node.model_dump(mode="json") for node in graph.nodes]),
                "edges": json.dumps([edge.model_dump(mode="json") for edge in graph.edges]),
                "schema_version": GRAPH_SCHEMA_VERSION,
                "now": _now(),
            })
            record = await result.single()
            return bool(record and record["written"])

    async def update_analysis(self, pid: str, icd10_codes: list[ICD10Code], graph_analysis: str) -> bool:
        query = """
        MATCH (p:Patient {pid: $pid})
        MERGE (p)-[:HAS_GRAPH]->(g:KnowledgeGraph)
        ON CREATE SET g.created_at = $now, g.nodes = '[]', g.edges = '[]',
                      g.schema_version = $schema_version
        SET g.icd10_codes = $icd10_codes,
            g.graph_analysis = $graph_analysis,
            g.updated_at = $now
        RETURN count(g) AS written
        """
        async with self.driver.session() as session:
            result = await session.run(query, {
                "pid": pid,
                "icd10_codes": json.dumps([code.model_dump() for code in icd10_codes]),
                "graph_analysis": graph_analysis,
                "schema_version": GRAPH_SCHEMA_VERSION,
                "now": _now(),
            })
            record = await result.single()
            return bool(record and record["written"])
