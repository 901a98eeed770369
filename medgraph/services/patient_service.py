# medgraph/services/patient_service.py
import asyncio
import logging
import random
import re
from datetime import datetime, timezone
from uuid import UUID, uuid4

from neo4j import AsyncDriver
from neo4j.exceptions import DriverError, Neo4jError, ServiceUnavailable, SessionExpired

from medgraph.core.exceptions import PatientNotFoundException, PersistenceFailure
from medgraph.db.repositories.patient_repository import PatientRepository
from medgraph.models.analysis import ICD10Code
from medgraph.models.graph import KnowledgeGraph
from medgraph.models.patient import GraphRecord, Patient, PatientCreate, PatientFile
from medgraph.services.storage_service import StorageService

logger = logging.getLogger(__name__)

MAX_PID_ATTEMPTS = 5
_WHITESPACE_RE = re.compile(r"\s+")


def generate_pid(name: str, age: str, rng: random.Random | None = None) -> str:
    """First three letters of the name (padded with X), two-digit age, random 4-digit suffix."""
    rng = rng or random
    prefix = _WHITESPACE_RE.sub("", name)[:3].upper().ljust(3, "X")
    age_part = age.strip().rjust(2, "0")
    return f"{prefix}{age_part}{rng.randint(1000, 9999)}"


class PatientService:
    def __init__(self, driver: AsyncDriver, storage: StorageService | None = None):
        self.repo = PatientRepository(driver)
        self.storage = storage or StorageService()

    async def create_patient(self, patient_data: PatientCreate) -> Patient:
        for _ in range(MAX_PID_ATTEMPTS):
            pid = generate_pid(patient_data.name, patient_data.age)
            if not await self._with_retry(self.repo.pid_exists, pid):
                break
        else:
            raise PersistenceFailure("Could not allocate a unique patient identifier.")

        patient = Patient(
            pid=pid,
            name=patient_data.name,
            age=patient_data.age,
            created_at=datetime.now(timezone.utc),
        )
        created = await self._with_retry(self.repo.create_patient, patient)
        logger.info("Registered patient %s", created.pid)
        return created

    async def get_patient(self, pid: str) -> Patient:
        patient = await self._with_retry(self.repo.get_patient_by_pid, pid)
        if patient is None:
            raise PatientNotFoundException(f"Patient {pid} not found.")
        return patient

    async def list_patients(self, search: str | None = None) -> list[Patient]:
        patients = await self._with_retry(self.repo.list_patients)
        if not search:
            return patients
        query = search.strip().lower()
        return [
            p for p in patients
            if query in p.name.lower() or query in p.pid.lower() or query in p.age.lower()
        ]

    async def delete_patient(self, pid: str) -> None:
        """Removes stored files first, then the patient with its file and graph records."""
        files = await self._with_retry(self.repo.list_files, pid)
        if files:
            try:
                await self.storage.remove([f.file_path for f in files])
            except PersistenceFailure as exc:
                logger.error("Failed to remove stored files for %s: %s", pid, exc.message)
        if not await self._with_retry(self.repo.delete_patient, pid):
            raise PatientNotFoundException(f"Patient {pid} not found.")
        logger.info("Deleted patient %s and %d file(s)", pid, len(files))

    async def store_file(
        self, pid: str, file_name: str, mime_type: str, data: bytes, file_id: str | None = None
    ) -> PatientFile:
        """Uploads raw bytes and records the file. Raises ``PersistenceFailure`` on any write error."""
        object_path = self.storage.object_path(pid, file_name)
        await self.storage.upload(object_path, data, content_type=mime_type)
        patient_file = PatientFile(
            id=UUID(file_id) if file_id else uuid4(),
            file_name=file_name,
            file_size=len(data),
            file_type=mime_type,
            file_path=object_path,
            created_at=datetime.now(timezone.utc),
        )
        try:
            stored = await self._with_retry(self.repo.add_file, pid, patient_file)
        except (Neo4jError, DriverError) as exc:
            raise PersistenceFailure(f"Failed to record {file_name}: {exc}") from exc
        if stored is None:
            raise PatientNotFoundException(f"Patient {pid} not found.")
        return stored

    async def list_files(self, pid: str) -> list[PatientFile]:
        return await self._with_retry(self.repo.list_files, pid)

    async def delete_file(self, pid: str, file_id: UUID) -> bool:
        """Removes a file record and its stored object. Raises ``PersistenceFailure`` on any write error."""
        try:
            removed = await self._with_retry(self.repo.delete_file, pid, file_id)
        except (Neo4jError, DriverError) as exc:
            raise PersistenceFailure(f"Failed to remove file {file_id}: {exc}") from exc
        if removed is None:
            return False
        await self.storage.remove([removed.file_path])
        return True

    async def load_graph(self, pid: str) -> KnowledgeGraph | None:
        record = await self.get_graph_record(pid)
        if record is None:
            return None
        return KnowledgeGraph(nodes=record.nodes, edges=record.edges)

    async def get_graph_record(self, pid: str) -> GraphRecord | None:
        return await self._with_retry(self.repo.get_graph, pid)

    async def save_graph(self, pid: str, graph: KnowledgeGraph) -> None:
        try:
            written = await self._with_retry(self.repo.upsert_graph, pid, graph)
        except (Neo4jError, DriverError) as exc:
            raise PersistenceFailure(f"Failed to save graph for {pid}: {exc}") from exc
        if not written:
            raise PersistenceFailure(f"Failed to save graph for {pid}: patient missing.")

    async def save_analysis(self, pid: str, icd10_codes: list[ICD10Code], graph_analysis: str) -> None:
        try:
            written = await self._with_retry(self.repo.update_analysis, pid, icd10_codes, graph_analysis)
        except (Neo4jError, DriverError) as exc:
            raise PersistenceFailure(f"Failed to save analysis for {pid}: {exc}") from exc
        if not written:
            raise PatientNotFoundException(f"Patient {pid} not found.")

    async def _with_retry(self, func, *args, retries: int = 3, delay: float = 0.5, **kwargs):
        for attempt in range(retries):
            try:
                return await func(*args, **kwargs)
            except (SessionExpired, ServiceUnavailable):
                if attempt + 1 == retries:
                    raise
                await asyncio.sleep(delay * (attempt + 1))
