# medgraph/services/extraction_service.py
import logging

from google.genai import types

from medgraph.core.exceptions import ContentRejected, ExtractionError
from medgraph.models.graph import ExtractionResult, Fragment, Rejected
from medgraph.services.ai_service import AIService, Document
from medgraph.services.graph_merge import coerce_fragment, merge_graphs
from medgraph.services.layout import apply_radial_layout

logger = logging.getLogger(__name__)

BINARY_MIME_PREFIXES = ("image/", "application/pdf")


def prepare_document(data: bytes, mime_type: str) -> Document:
    """Images and PDFs go to the model inline; everything else is read as text."""
    mime_type = (mime_type or "").lower()
    if mime_type.startswith(BINARY_MIME_PREFIXES):
        return types.Part.from_bytes(data=data, mime_type=mime_type)
    return data.decode("utf-8", errors="replace")


class ExtractionService:
    """
    Turns one uploaded file into a graph fragment.

    The file is first classified as medical or not; only accepted content is
    sent for extraction. Every failure comes back as ``Rejected`` with a kind
    the caller can use to tell retryable failures from permanent ones.
    """

    def __init__(self, ai_service: AIService):
        self.ai_service = ai_service

    async def extract(self, data: bytes, mime_type: str, file_name: str = "") -> ExtractionResult:
        logger.info("Processing file: %s, type: %s, size: %d", file_name, mime_type, len(data))
        document = prepare_document(data, mime_type)

        try:
            if not await self.ai_service.classify_medical(document):
                raise ContentRejected()
            payload = await self.ai_service.extract_graph(document)
        except ExtractionError as exc:
            logger.warning("Rejected %s (%s): %s", file_name or "file", exc.kind, exc.message)
            return Rejected(reason=exc.message, kind=exc.kind)

        # Fold the fragment onto nothing so duplicates inside it collapse.
        graph = merge_graphs(None, coerce_fragment(payload))
        fragment = Fragment(nodes=apply_radial_layout(graph.nodes), edges=graph.edges)
        logger.info(
            "Extracted %d nodes and %d edges from %s",
            len(fragment.nodes), len(fragment.edges), file_name or "file",
        )
        return fragment
