# medgraph/services/upload_service.py
import asyncio
import logging
from dataclasses import dataclass, field
from uuid import UUID, uuid4

from medgraph.core.exceptions import PatientNotFoundException, PersistenceFailure, QuotaExhausted
from medgraph.models.graph import ExtractionResult, Fragment, KnowledgeGraph, RejectionKind
from medgraph.models.patient import BatchReport, FileOutcome
from medgraph.services.accumulator import AccumulatorRegistry, GraphAccumulator
from medgraph.services.extraction_service import ExtractionService
from medgraph.services.graph_merge import resolved_edges
from medgraph.services.patient_service import PatientService

logger = logging.getLogger(__name__)


@dataclass
class PendingUpload:
    file_name: str
    mime_type: str
    data: bytes
    file_id: str = field(default_factory=lambda: str(uuid4()))


class GraphSessionService:
    """Opens patient sessions and serves their accumulated graphs."""

    def __init__(self, patient_service: PatientService, registry: AccumulatorRegistry):
        self.patient_service = patient_service
        self.registry = registry

    async def open_session(self, pid: str) -> GraphAccumulator:
        await self.patient_service.get_patient(pid)
        return await self.registry.get(pid, self.patient_service.load_graph)

    async def current_graph(self, pid: str) -> KnowledgeGraph:
        """The patient's laid-out graph without dangling edges."""
        accumulator = await self.open_session(pid)
        graph = accumulator.snapshot()
        return KnowledgeGraph(nodes=graph.nodes, edges=resolved_edges(graph))

    async def cancel_file(self, pid: str, file_id: str) -> bool:
        """
        Cancels a pending file and removes any stored copy. Returns False when
        the file is neither pending nor stored.
        """
        accumulator = self.registry.peek(pid)
        cancelled = accumulator.cancel(file_id) if accumulator else False
        try:
            record_id = UUID(file_id)
        except ValueError:
            return cancelled
        removed = await self.patient_service.delete_file(pid, record_id)
        return cancelled or removed

    async def reset_quota(self, pid: str) -> None:
        await self.patient_service.get_patient(pid)
        accumulator = self.registry.peek(pid)
        if accumulator is not None:
            accumulator.quota_exhausted = False

    def close(self, pid: str) -> None:
        self.registry.drop(pid)


class UploadService:
    """
    Runs a batch of uploaded files for one patient.

    Extraction calls and storage writes for every file start at once. Results
    are merged strictly in upload order through the patient's accumulator, so
    the same batch always yields the same graph. A failing file never stops
    its siblings.
    """

    def __init__(self, extraction_service: ExtractionService, sessions: GraphSessionService):
        self.extraction_service = extraction_service
        self.sessions = sessions
        self.patient_service = sessions.patient_service

    async def process_batch(self, pid: str, uploads: list[PendingUpload]) -> BatchReport:
        accumulator = await self.sessions.open_session(pid)
        if accumulator.quota_exhausted:
            raise QuotaExhausted()

        for upload in uploads:
            accumulator.register(upload.file_id)

        storage_tasks = [asyncio.create_task(self._store(accumulator, upload)) for upload in uploads]
        extraction_tasks = [asyncio.create_task(self._extract(accumulator, upload)) for upload in uploads]

        outcomes: list[FileOutcome] = []
        try:
            for upload, task in zip(uploads, extraction_tasks):
                result = await task
                outcomes.append(await self._apply(accumulator, upload, result))
            stored = await asyncio.gather(*storage_tasks)
        finally:
            for upload in uploads:
                accumulator.finish(upload.file_id)

        for outcome, was_stored in zip(outcomes, stored):
            outcome.stored = was_stored

        graph = accumulator.snapshot()
        report = BatchReport(
            total=len(outcomes),
            valid=sum(1 for o in outcomes if o.status == "valid"),
            invalid=sum(1 for o in outcomes if o.status == "invalid"),
            cancelled=sum(1 for o in outcomes if o.status == "cancelled"),
            files=outcomes,
            nodes=graph.nodes,
            edges=resolved_edges(graph),
        )
        logger.info(
            "Batch for %s done: %d valid, %d invalid, %d cancelled, %d nodes",
            pid, report.valid, report.invalid, report.cancelled, len(graph.nodes),
        )
        return report

    async def _extract(self, accumulator: GraphAccumulator, upload: PendingUpload) -> ExtractionResult | None:
        if accumulator.is_cancelled(upload.file_id):
            return None
        return await self.extraction_service.extract(upload.data, upload.mime_type, upload.file_name)

    async def _apply(
        self, accumulator: GraphAccumulator, upload: PendingUpload, result: ExtractionResult | None
    ) -> FileOutcome:
        outcome = FileOutcome(file_id=upload.file_id, file_name=upload.file_name, status="invalid")
        # Cancelled files keep their flag until the batch ends so a late storage write is undone.
        if result is None or accumulator.is_cancelled(upload.file_id):
            outcome.status = "cancelled"
            return outcome

        if not isinstance(result, Fragment):
            accumulator.finish(upload.file_id)
            outcome.reason = result.reason
            outcome.kind = result.kind
            if result.kind == RejectionKind.QUOTA_EXHAUSTED:
                accumulator.quota_exhausted = True
            return outcome

        async def persist(graph: KnowledgeGraph) -> None:
            await self.patient_service.save_graph(accumulator.pid, graph)

        merged, _ = await accumulator.apply(upload.file_id, result, persist)
        if not merged:
            outcome.status = "cancelled"
            return outcome
        accumulator.finish(upload.file_id)
        outcome.status = "valid"
        outcome.node_count = len(result.nodes)
        return outcome

    async def _store(self, accumulator: GraphAccumulator, upload: PendingUpload) -> bool:
        try:
            stored = await self.patient_service.store_file(
                accumulator.pid, upload.file_name, upload.mime_type, upload.data, file_id=upload.file_id
            )
        except (PersistenceFailure, PatientNotFoundException) as exc:
            logger.error("File storage error for %s: %s", upload.file_name, exc.message)
            return False
        if accumulator.is_cancelled(upload.file_id):
            try:
                await self.patient_service.delete_file(accumulator.pid, stored.id)
            except PersistenceFailure as exc:
                logger.error("Failed to remove cancelled file %s: %s", upload.file_name, exc.message)
            return False
        return True
