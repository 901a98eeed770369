# medgraph/services/ai_service.py
import asyncio
import logging
import re
from typing import Any, Union

from google.genai import errors as genai_errors
from google.genai import types
import google.genai as genai

from medgraph.core.config import settings
from medgraph.core.exceptions import (
    ExtractionTransientFailure,
    QuotaExhausted,
    RateLimited,
)
from medgraph.core.prompts import (
    ANALYSIS_SYSTEM_INSTRUCTION,
    ANALYZE_GRAPH_PROMPT,
    ANALYZE_NODE_PROMPT,
    CLASSIFY_MEDIA_PROMPT,
    CLASSIFY_TEXT_PROMPT,
    EXTRACT_GRAPH_PROMPT,
)
from medgraph.services.ai_response_parser import parse_model_json

logger = logging.getLogger(__name__)

# Either decoded text or an inline binary part (images, PDFs).
Document = Union[str, types.Part]

_WORD_RE = re.compile(r"[a-z]+")


def is_affirmative(answer: str) -> bool:
    """True only when the classifier's answer starts with 'yes'; anything else is a rejection."""
    words = _WORD_RE.findall((answer or "").lower())
    return bool(words) and words[0] == "yes"


class AIService:
    def __init__(self, api_key: str, model: str | None = None):
        self.client = genai.Client(api_key=api_key)
        self.model = model or settings.GEMINI_MODEL

    async def classify_medical(self, document: Document) -> bool:
        if isinstance(document, str):
            contents: Any = CLASSIFY_TEXT_PROMPT.format(content=document)
        else:
            contents = [CLASSIFY_MEDIA_PROMPT, document]

        response = await self._generate(contents)
        answer = getattr(response, "text", "") or ""
        logger.info("Medical classification answer: %r", answer.strip()[:40])
        return is_affirmative(answer)

    async def extract_graph(self, document: Document) -> Any:
        """Ask the model for a ``{nodes, edges}`` payload and return it parsed but unvalidated."""
        if isinstance(document, str):
            prompt = EXTRACT_GRAPH_PROMPT.format(
                source="this medical data", content=f"\n{document}\n"
            )
            contents: Any = prompt
        else:
            prompt = EXTRACT_GRAPH_PROMPT.format(source="this medical file", content="")
            contents = [prompt, document]

        config = types.GenerateContentConfig(response_mime_type="application/json")
        response = await self._generate(contents, config)
        raw_text = self._extract_structured_text(response)
        if not raw_text:
            raise ExtractionTransientFailure("No structured response from AI")
        try:
            return parse_model_json(raw_text)
        except ValueError as exc:
            raise ExtractionTransientFailure(f"Unreadable extraction response: {exc}") from exc

    async def analyze_node(self, context: str) -> str:
        config = types.GenerateContentConfig(system_instruction=ANALYSIS_SYSTEM_INSTRUCTION)
        response = await self._generate(ANALYZE_NODE_PROMPT.format(context=context), config)
        return getattr(response, "text", "") or ""

    async def analyze_graph(self, summary: str) -> tuple[str, Any | None]:
        """Returns the raw model text and its parsed JSON payload, or ``None`` if it did not parse."""
        config = types.GenerateContentConfig(
            system_instruction=ANALYSIS_SYSTEM_INSTRUCTION,
            response_mime_type="application/json",
        )
        response = await self._generate(ANALYZE_GRAPH_PROMPT.format(summary=summary), config)
        raw_text = self._extract_structured_text(response)
        try:
            return raw_text, parse_model_json(raw_text)
        except ValueError as exc:
            logger.warning("Graph analysis was not valid JSON, falling back to text: %s", exc)
            return raw_text, None

    async def _generate(self, contents: Any, config: types.GenerateContentConfig | None = None):
        try:
            return await asyncio.to_thread(
                self.client.models.generate_content,
                model=self.model,
                contents=contents,
                config=config,
            )
        except genai_errors.APIError as e:
            logger.error("AI gateway error: %s %s", e.code, e.message)
            if e.code == 429:
                raise RateLimited() from e
            if e.code == 402:
                raise QuotaExhausted() from e
            raise ExtractionTransientFailure(f"AI gateway error: {e.code}") from e
        except Exception as e:
            logger.error("An unexpected error occurred with the Gemini API: %s", e)
            raise ExtractionTransientFailure(str(e) or "AI gateway unreachable") from e

    @staticmethod
    def _part_text(part: Any) -> str:
        text_part = getattr(part, "text", None)
        if text_part:
            return text_part
        inline_data = getattr(part, "inline_data", None)
        data = getattr(inline_data, "data", None) if inline_data else None
        if isinstance(data, bytes):
            return data.decode("utf-8")
        return str(data) if data else ""

    @staticmethod
    def _extract_structured_text(response: Any) -> str:
        """
        Pull the JSON (or plain text) payload out of an SDK response, skipping
        thought-signature parts and falling back to ``response.text``.
        """
        if response is None:
            return ""

        candidates = getattr(response, "candidates", None) or []
        for candidate in candidates:
            parts = getattr(getattr(candidate, "content", None), "parts", None) or []
            for part in parts:
                inline_data = getattr(part, "inline_data", None)
                mime_type = (
                    getattr(part, "mime_type", None)
                    or getattr(inline_data, "mime_type", None)
                    or ""
                ).lower()
                if mime_type.startswith("application/x-thought"):
                    logger.debug("Skipping thought-signature part in candidate.")
                    continue
                if mime_type.startswith("application/json") or mime_type.startswith("text/"):
                    text = AIService._part_text(part)
                    if text:
                        return text

        return getattr(response, "text", "") or ""
