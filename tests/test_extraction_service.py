import pytest

from medgraph.core.exceptions import ExtractionTransientFailure, QuotaExhausted, RateLimited
from medgraph.models.graph import Fragment, Rejected
from medgraph.services.extraction_service import ExtractionService, prepare_document
from medgraph.services.layout import CENTER_X, CENTER_Y


class StubAIService:
    def __init__(self, is_medical=True, payload=None, error: Exception | None = None):
        self.is_medical = is_medical
        self.payload = payload
        self.error = error
        self.extract_calls = 0

    async def classify_medical(self, document):
        return self.is_medical

    async def extract_graph(self, document):
        self.extract_calls += 1
        if self.error:
            raise self.error
        return self.payload


PAYLOAD = {
    "nodes": [
        {"id": "c1", "label": "Asthma", "type": "condition", "x": 10, "y": 10},
        {"id": "m1", "label": "Albuterol", "type": "Medication", "data": {"dose": {"mg": 90}}},
        {"id": "m2", "label": "albuterol", "type": "medication"},
    ],
    "edges": [{"source": "m1", "target": "c1", "label": "treats"}],
}


def test_prepare_document_decodes_text():
    assert prepare_document("Diagnosis: asthma".encode(), "text/plain") == "Diagnosis: asthma"


def test_prepare_document_replaces_undecodable_bytes():
    assert prepare_document(b"BP \xff high", "text/csv") == "BP \ufffd high"


def test_prepare_document_keeps_images_binary():
    part = prepare_document(b"\x89PNG", "image/png")
    assert part.inline_data.mime_type == "image/png"
    assert part.inline_data.data == b"\x89PNG"


@pytest.mark.asyncio
async def test_medical_file_yields_laid_out_fragment():
    service = ExtractionService(StubAIService(payload=PAYLOAD))

    result = await service.extract(b"Asthma, treated with albuterol", "text/plain", "notes.txt")

    assert isinstance(result, Fragment)
    assert [n.label for n in result.nodes] == ["Asthma", "Albuterol"]
    assert result.nodes[1].type == "medication"
    assert result.nodes[1].data == {"dose": '{"mg": 90}'}
    assert (result.nodes[0].x, result.nodes[0].y) == (CENTER_X, CENTER_Y)
    assert len(result.edges) == 1


@pytest.mark.asyncio
async def test_non_medical_file_is_rejected_before_extraction():
    ai = StubAIService(is_medical=False, payload=PAYLOAD)
    service = ExtractionService(ai)

    result = await service.extract(b"Grocery list: eggs, milk", "text/plain", "groceries.txt")

    assert isinstance(result, Rejected)
    assert result.kind == "non_medical"
    assert result.retryable is False
    assert ai.extract_calls == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error, kind, retryable",
    [
        (RateLimited(), "rate_limited", True),
        (QuotaExhausted(), "quota_exhausted", False),
        (ExtractionTransientFailure("timeout"), "transient_failure", True),
    ],
)
async def test_gateway_failures_become_rejections(error, kind, retryable):
    service = ExtractionService(StubAIService(error=error))

    result = await service.extract(b"Diagnosis: asthma", "text/plain")

    assert isinstance(result, Rejected)
    assert result.kind == kind
    assert result.retryable is retryable
    assert result.reason == error.message


@pytest.mark.asyncio
async def test_malformed_payload_yields_empty_fragment():
    service = ExtractionService(StubAIService(payload=["not", "a", "graph"]))

    result = await service.extract(b"Diagnosis: asthma", "text/plain")

    assert isinstance(result, Fragment)
    assert result.is_empty()
