# medgraph/services/ai_response_parser.py
import logging
import re
from json import JSONDecodeError, JSONDecoder
from typing import Any, Callable, Iterator

logger = logging.getLogger(__name__)

_FENCED_RE = re.compile(r"^```[a-zA-Z]*\s*(.*?)\s*```$", re.DOTALL)
_DANGLING_COMMA_RE = re.compile(r",(\s*[}\]])")
_BAD_ESCAPE_RE = re.compile(r'\\(?=[^"\\/bfnrtu])')

# Reasoning metadata some Gemini responses attach next to the payload.
_THOUGHT_KEYS = frozenset({"thought", "thoughts", "thought_signature", "thought-signature", "thoughtSignature"})

_DECODERS = (JSONDecoder(), JSONDecoder(strict=False))


def _unfence(text: str) -> str:
    text = text.strip().lstrip("\ufeff")
    fenced = _FENCED_RE.match(text)
    return fenced.group(1) if fenced else text


def _object_span(text: str) -> str:
    """The outermost ``{...}`` span, or the text unchanged when there is none."""
    start, end = text.find("{"), text.rfind("}")
    return text[start:end + 1] if 0 <= start < end else text


def _repairs() -> list[Callable[[str], str]]:
    """Progressively more invasive rewrites, each applied on top of the previous one."""
    return [
        _object_span,
        lambda text: _DANGLING_COMMA_RE.sub(r"\1", text),
        lambda text: _BAD_ESCAPE_RE.sub(r"\\\\", text),
    ]


def _candidates(text: str) -> Iterator[str]:
    seen: set[str] = set()
    current = text.replace("\u2028", "\\u2028").replace("\u2029", "\\u2029")
    for repair in [lambda value: value, *_repairs()]:
        current = repair(current).strip()
        if current and current not in seen:
            seen.add(current)
            yield current


def _strip_thoughts(payload: Any) -> Any:
    if isinstance(payload, list):
        return [_strip_thoughts(item) for item in payload]
    if isinstance(payload, dict):
        return {key: _strip_thoughts(value) for key, value in payload.items() if key not in _THOUGHT_KEYS}
    return payload


def parse_model_json(raw_text: str) -> Any:
    """
    Parse the JSON a model returned, repairing the usual damage first:
    markdown fences, a byte-order mark, prose around the object, trailing
    commas and backslashes that are not valid JSON escapes.

    Raises ``JSONDecodeError`` when no repair produces valid JSON.
    """
    text = _unfence(raw_text or "")
    if not text:
        raise JSONDecodeError("AI response payload is empty", raw_text or "", 0)

    error: JSONDecodeError | None = None
    for candidate in _candidates(text):
        for decoder in _DECODERS:
            try:
                return _strip_thoughts(decoder.decode(candidate))
            except JSONDecodeError as exc:
                error = exc

    logger.error("Failed to parse AI response after sanitization attempts: %s", error)
    raise error or JSONDecodeError("Unable to parse AI response", raw_text, 0)
