import asyncio
from datetime import datetime, timezone
from uuid import UUID

import pytest

from medgraph.core.exceptions import PatientNotFoundException, PersistenceFailure, QuotaExhausted
from medgraph.models.graph import Fragment, KnowledgeGraph, Rejected
from medgraph.models.patient import PatientFile
from medgraph.services.accumulator import AccumulatorRegistry
from medgraph.services.upload_service import GraphSessionService, PendingUpload, UploadService

PID = "JAN457777"


class StubPatientService:
    def __init__(self, stored_graph: KnowledgeGraph | None = None):
        self.stored_graph = stored_graph
        self.files: dict[str, PatientFile] = {}
        self.saved: list[KnowledgeGraph] = []
        self.fail_saves = False
        self.fail_store: set[str] = set()
        self.fail_delete = False
        self.store_gates: dict[str, asyncio.Event] = {}

    async def get_patient(self, pid):
        if pid != PID:
            raise PatientNotFoundException(f"Patient {pid} not found.")

    async def load_graph(self, pid):
        return self.stored_graph

    async def store_file(self, pid, file_name, mime_type, data, file_id=None):
        gate = self.store_gates.get(file_name)
        if gate is not None:
            await gate.wait()
        if file_name in self.fail_store:
            raise PersistenceFailure(f"Failed to store {file_name}: bucket offline")
        record = PatientFile(
            id=UUID(file_id),
            file_name=file_name,
            file_size=len(data),
            file_type=mime_type,
            file_path=f"{pid}/{file_name}",
            created_at=datetime.now(timezone.utc),
        )
        self.files[file_id] = record
        return record

    async def delete_file(self, pid, file_id):
        if self.fail_delete and str(file_id) in self.files:
            raise PersistenceFailure("Failed to remove file: neo4j down")
        return self.files.pop(str(file_id), None) is not None

    async def save_graph(self, pid, graph):
        if self.fail_saves:
            raise PersistenceFailure("database offline")
        self.saved.append(graph)


class StubExtractionService:
    """Returns a canned result per file name, optionally waiting on an event first."""

    def __init__(self, results, gates=None):
        self.results = results
        self.gates = gates or {}
        self.calls: list[str] = []

    async def extract(self, data, mime_type, file_name=""):
        self.calls.append(file_name)
        gate = self.gates.get(file_name)
        if gate is not None:
            await gate.wait()
        return self.results[file_name]


def fragment(*labels):
    return Fragment(nodes=[{"id": label.lower(), "label": label, "type": "condition"} for label in labels])


def upload(name):
    return PendingUpload(file_name=name, mime_type="text/plain", data=name.encode())


def build(results, gates=None, patients=None):
    patients = patients or StubPatientService()
    sessions = GraphSessionService(patients, AccumulatorRegistry())
    return UploadService(StubExtractionService(results, gates), sessions), sessions, patients


@pytest.mark.asyncio
async def test_batch_merges_valid_files_and_reports_rejections():
    service, _, patients = build({
        "a.txt": fragment("Asthma"),
        "b.txt": Rejected(reason="Non-medical data detected.", kind="non_medical"),
        "c.txt": fragment("asthma", "Eczema"),
    })

    report = await service.process_batch(PID, [upload("a.txt"), upload("b.txt"), upload("c.txt")])

    assert (report.total, report.valid, report.invalid, report.cancelled) == (3, 2, 1, 0)
    assert [n.label for n in report.nodes] == ["Asthma", "Eczema"]
    assert [f.status for f in report.files] == ["valid", "invalid", "valid"]
    assert report.files[1].kind == "non_medical"
    assert all(f.stored for f in report.files)
    assert len(patients.saved) == 2


@pytest.mark.asyncio
async def test_results_merge_in_upload_order_even_when_finishing_out_of_order():
    slow = asyncio.Event()
    service, _, _ = build(
        {"first.txt": fragment("Diabetes"), "second.txt": fragment("Hypertension")},
        gates={"first.txt": slow},
    )

    batch = asyncio.create_task(service.process_batch(PID, [upload("first.txt"), upload("second.txt")]))
    await asyncio.sleep(0.01)
    slow.set()
    report = await batch

    assert [n.label for n in report.nodes] == ["Diabetes", "Hypertension"]


@pytest.mark.asyncio
async def test_cancelled_file_is_not_merged_and_its_copy_is_removed():
    gate = asyncio.Event()
    service, sessions, patients = build(
        {"keep.txt": fragment("Asthma"), "drop.txt": fragment("Eczema")},
        gates={"drop.txt": gate},
    )
    uploads = [upload("keep.txt"), upload("drop.txt")]

    batch = asyncio.create_task(service.process_batch(PID, uploads))
    await asyncio.sleep(0.01)
    assert await sessions.cancel_file(PID, uploads[1].file_id) is True
    gate.set()
    report = await batch

    assert [f.status for f in report.files] == ["valid", "cancelled"]
    assert [n.label for n in report.nodes] == ["Asthma"]
    assert uploads[1].file_id not in patients.files
    assert uploads[0].file_id in patients.files


@pytest.mark.asyncio
async def test_quota_exhaustion_blocks_further_batches_until_reset():
    service, sessions, _ = build({
        "a.txt": Rejected(reason="Payment required.", kind="quota_exhausted"),
        "b.txt": fragment("Asthma"),
    })

    report = await service.process_batch(PID, [upload("a.txt")])
    assert report.files[0].kind == "quota_exhausted"

    with pytest.raises(QuotaExhausted):
        await service.process_batch(PID, [upload("b.txt")])

    await sessions.reset_quota(PID)
    report = await service.process_batch(PID, [upload("b.txt")])
    assert report.valid == 1


@pytest.mark.asyncio
async def test_persistence_failure_keeps_graph_in_memory():
    patients = StubPatientService()
    patients.fail_saves = True
    service, sessions, _ = build({"a.txt": fragment("Asthma")}, patients=patients)

    report = await service.process_batch(PID, [upload("a.txt")])

    assert report.valid == 1
    graph = await sessions.current_graph(PID)
    assert [n.label for n in graph.nodes] == ["Asthma"]


@pytest.mark.asyncio
async def test_session_starts_from_stored_graph():
    stored = KnowledgeGraph(nodes=[{"id": "asthma", "label": "Asthma", "type": "condition"}])
    service, _, _ = build({"a.txt": fragment("ASTHMA", "Eczema")}, patients=StubPatientService(stored))

    report = await service.process_batch(PID, [upload("a.txt")])

    assert [n.label for n in report.nodes] == ["Asthma", "Eczema"]


@pytest.mark.asyncio
async def test_unknown_patient_is_rejected():
    service, _, _ = build({})

    with pytest.raises(PatientNotFoundException):
        await service.process_batch("NOPE001234", [upload("a.txt")])


@pytest.mark.asyncio
async def test_cancelling_unknown_file_returns_false():
    _, sessions, _ = build({})

    assert await sessions.cancel_file(PID, "not-a-uuid") is False


@pytest.mark.asyncio
async def test_failed_removal_of_late_stored_cancelled_file_does_not_abort_batch():
    patients = StubPatientService()
    patients.fail_delete = True
    store_gate = asyncio.Event()
    patients.store_gates["drop.txt"] = store_gate
    extract_gate = asyncio.Event()
    service, sessions, _ = build(
        {"keep.txt": fragment("Asthma"), "drop.txt": fragment("Eczema")},
        gates={"drop.txt": extract_gate},
        patients=patients,
    )
    uploads = [upload("keep.txt"), upload("drop.txt")]

    batch = asyncio.create_task(service.process_batch(PID, uploads))
    await asyncio.sleep(0.01)
    assert await sessions.cancel_file(PID, uploads[1].file_id) is True
    store_gate.set()
    extract_gate.set()
    report = await batch

    assert (report.valid, report.cancelled) == (1, 1)
    assert [n.label for n in report.nodes] == ["Asthma"]
    assert [f.stored for f in report.files] == [True, False]


@pytest.mark.asyncio
async def test_storage_failure_keeps_merged_graph_and_flags_only_that_file():
    patients = StubPatientService()
    patients.fail_store = {"b.txt"}
    service, sessions, _ = build(
        {"a.txt": fragment("Asthma"), "b.txt": fragment("Eczema"), "c.txt": fragment("Psoriasis")},
        patients=patients,
    )

    report = await service.process_batch(PID, [upload("a.txt"), upload("b.txt"), upload("c.txt")])

    assert [f.status for f in report.files] == ["valid", "valid", "valid"]
    assert [f.stored for f in report.files] == [True, False, True]
    assert [n.label for n in report.nodes] == ["Asthma", "Eczema", "Psoriasis"]
    graph = await sessions.current_graph(PID)
    assert len(graph.nodes) == 3


@pytest.mark.asyncio
async def test_reset_quota_for_unknown_patient_raises():
    _, sessions, _ = build({})

    with pytest.raises(PatientNotFoundException):
        await sessions.reset_quota("NOPE001234")
