# medgraph/api/router.py
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, Response, UploadFile, status
from fastapi.responses import JSONResponse
from neo4j import AsyncDriver

from medgraph.core.config import settings
from medgraph.core.limiter import limiter
from medgraph.db.driver import get_db_driver
from medgraph.models.analysis import (
    GraphAnalysisRequest,
    GraphAnalysisResponse,
    NodeAnalysisRequest,
    NodeAnalysisResponse,
)
from medgraph.models.graph import Fragment, KnowledgeGraph, NodeType, RejectionKind
from medgraph.models.patient import BatchReport, GraphRecord, Patient, PatientCreate, PatientFile
from medgraph.services.accumulator import AccumulatorRegistry
from medgraph.services.ai_service import AIService
from medgraph.services.analysis_service import AnalysisService
from medgraph.services.extraction_service import ExtractionService
from medgraph.services.patient_service import PatientService
from medgraph.services.storage_service import StorageService
from medgraph.services.upload_service import GraphSessionService, PendingUpload, UploadService

router = APIRouter()

_REJECTION_STATUS = {
    RejectionKind.NON_MEDICAL: status.HTTP_400_BAD_REQUEST,
    RejectionKind.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    RejectionKind.QUOTA_EXHAUSTED: status.HTTP_402_PAYMENT_REQUIRED,
    RejectionKind.TRANSIENT_FAILURE: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

_ai_service: AIService | None = None
_storage_service: StorageService | None = None


def get_ai_service() -> AIService:
    global _ai_service
    if _ai_service is None:
        if not settings.GEMINI_API_KEY:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="GEMINI_API_KEY not configured",
            )
        _ai_service = AIService(api_key=settings.GEMINI_API_KEY)
    return _ai_service

def get_storage_service() -> StorageService:
    global _storage_service
    if _storage_service is None:
        _storage_service = StorageService()
    return _storage_service

def get_registry(request: Request) -> AccumulatorRegistry:
    return request.app.state.registry

def get_extraction_service(ai_service: AIService = Depends(get_ai_service)) -> ExtractionService:
    return ExtractionService(ai_service)

def get_analysis_service(ai_service: AIService = Depends(get_ai_service)) -> AnalysisService:
    return AnalysisService(ai_service)

def get_patient_service(
    driver: AsyncDriver = Depends(get_db_driver),
    storage: StorageService = Depends(get_storage_service),
) -> PatientService:
    return PatientService(driver, storage)

def get_session_service(
    patient_service: PatientService = Depends(get_patient_service),
    registry: AccumulatorRegistry = Depends(get_registry),
) -> GraphSessionService:
    return GraphSessionService(patient_service, registry)

def get_upload_service(
    extraction_service: ExtractionService = Depends(get_extraction_service),
    sessions: GraphSessionService = Depends(get_session_service),
) -> UploadService:
    return UploadService(extraction_service, sessions)


# --- Stateless AI endpoints ---

@router.post("/extract-knowledge", tags=["AI"])
@limiter.limit("30/minute")
async def extract_knowledge(
    request: Request,
    file: UploadFile = File(...),
    service: ExtractionService = Depends(get_extraction_service),
):
    """Classifies and extracts one file; returns a laid-out fragment or an error payload."""
    data = await file.read()
    result = await service.extract(data, file.content_type or "", file.filename or "")
    if isinstance(result, Fragment):
        return KnowledgeGraph(nodes=result.nodes, edges=result.edges).model_dump(mode="json")

    content = {"error": result.reason, "kind": result.kind}
    if result.kind == RejectionKind.NON_MEDICAL:
        content["isMedical"] = False
    return JSONResponse(status_code=_REJECTION_STATUS[RejectionKind(result.kind)], content=content)

@router.post("/analyze-node", response_model=NodeAnalysisResponse, tags=["AI"])
@limiter.limit("30/minute")
async def analyze_node(
    request: Request,
    payload: NodeAnalysisRequest,
    service: AnalysisService = Depends(get_analysis_service),
):
    return await service.analyze_node(payload.node, payload.all_nodes, payload.all_edges)

@router.post("/analyze-graph", response_model=GraphAnalysisResponse, tags=["AI"])
@limiter.limit("15/minute")
async def analyze_graph(
    request: Request,
    payload: GraphAnalysisRequest,
    service: AnalysisService = Depends(get_analysis_service),
):
    return await service.analyze_graph(payload.nodes, payload.edges)


# --- Patients ---

@router.post("/patients", status_code=status.HTTP_201_CREATED, response_model=Patient, tags=["Patients"])
@limiter.limit("30/minute")
async def create_patient(
    request: Request,
    patient_data: PatientCreate,
    service: PatientService = Depends(get_patient_service),
):
    return await service.create_patient(patient_data)

@router.get("/patients", response_model=list[Patient], tags=["Patients"])
async def list_patients(
    search: str | None = None,
    service: PatientService = Depends(get_patient_service),
):
    return await service.list_patients(search)

@router.get("/patients/{pid}", response_model=Patient, tags=["Patients"])
async def get_patient(pid: str, service: PatientService = Depends(get_patient_service)):
    return await service.get_patient(pid)

@router.delete("/patients/{pid}", status_code=status.HTTP_204_NO_CONTENT, tags=["Patients"])
@limiter.limit("10/minute")
async def delete_patient(
    request: Request,
    pid: str,
    service: PatientService = Depends(get_patient_service),
    sessions: GraphSessionService = Depends(get_session_service),
):
    """Deletes the patient, its stored files and its knowledge graph."""
    await service.delete_patient(pid)
    sessions.close(pid)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# --- Files ---

@router.post("/patients/{pid}/files", response_model=BatchReport, tags=["Files"])
@limiter.limit("10/minute")
async def upload_files(
    request: Request,
    pid: str,
    files: list[UploadFile] = File(...),
    file_ids: list[UUID] | None = Form(None),
    service: UploadService = Depends(get_upload_service),
):
    """
    Stores each file and merges every accepted extraction into the patient's
    graph, in upload order. Clients may send ``file_ids`` (one per file, UUIDs)
    so they can cancel a file while the batch is still running.
    """
    if file_ids and len(file_ids) != len(files):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="file_ids must match files.")
    uploads = []
    for index, upload in enumerate(files):
        pending = PendingUpload(
            file_name=upload.filename or "upload",
            mime_type=upload.content_type or "application/octet-stream",
            data=await upload.read(),
        )
        if file_ids:
            pending.file_id = str(file_ids[index])
        uploads.append(pending)
    return await service.process_batch(pid, uploads)

@router.get("/patients/{pid}/files", response_model=list[PatientFile], tags=["Files"])
async def list_files(pid: str, service: PatientService = Depends(get_patient_service)):
    await service.get_patient(pid)
    return await service.list_files(pid)

@router.delete("/patients/{pid}/files/{file_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Files"])
async def remove_file(
    pid: str,
    file_id: str,
    service: GraphSessionService = Depends(get_session_service),
):
    """Cancels a file still being extracted and removes any stored copy."""
    if not await service.cancel_file(pid, file_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)

@router.post("/patients/{pid}/extraction/reset", status_code=status.HTTP_204_NO_CONTENT, tags=["Files"])
async def reset_extraction(pid: str, service: GraphSessionService = Depends(get_session_service)):
    """Re-enables extraction after the AI quota has been topped up."""
    await service.reset_quota(pid)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# --- Graph ---

@router.get("/patients/{pid}/graph", response_model=KnowledgeGraph, tags=["Graph"])
async def get_patient_graph(
    pid: str,
    search: str | None = None,
    node_type: NodeType | None = Query(None, alias="type"),
    service: GraphSessionService = Depends(get_session_service),
):
    graph = await service.current_graph(pid)
    if not search and node_type is None:
        return graph
    query = (search or "").lower()
    nodes = [
        node for node in graph.nodes
        if query in node.label.lower() and (node_type is None or node.type == node_type)
    ]
    visible = {node.id for node in nodes}
    edges = [e for e in graph.edges if e.source in visible and e.target in visible]
    return KnowledgeGraph(nodes=nodes, edges=edges)

@router.get("/patients/{pid}/graph/record", response_model=GraphRecord, tags=["Graph"])
async def get_graph_record(pid: str, service: PatientService = Depends(get_patient_service)):
    await service.get_patient(pid)
    record = await service.get_graph_record(pid)
    return record or GraphRecord()

@router.post("/patients/{pid}/graph/analyze", response_model=GraphAnalysisResponse, tags=["Graph"])
@limiter.limit("10/minute")
async def analyze_patient_graph(
    request: Request,
    pid: str,
    sessions: GraphSessionService = Depends(get_session_service),
    analysis_service: AnalysisService = Depends(get_analysis_service),
):
    """Runs a full-graph analysis and stores its ICD-10 codes and text with the patient's graph."""
    graph = await sessions.current_graph(pid)
    result = await analysis_service.analyze_graph(graph.nodes, graph.edges)
    icd10_codes = result.structured.icd10_codes if result.structured else []
    await sessions.patient_service.save_analysis(pid, icd10_codes, result.analysis)
    return result
