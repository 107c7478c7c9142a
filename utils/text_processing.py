# utils/text_processing.py
"""Text helpers: model-response cleanup, JSON extraction and word counts."""

from __future__ import annotations

import json
import re
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

_THINK_TAGS = (
    "think",
    "thought",
    "thinking",
    "reasoning",
    "rationale",
    "reflection",
    "internal_monologue",
)

_LEADING_BOILERPLATE = (
    r"^\s*(Okay,\s*)?(Sure,\s*)?(Here's|Here is)\s+(the|your)\s+[\w\s]+?:\s*",
    r"^\s*Certainly! Here is the text:\s*",
    r"^\s*(?:Output|Result|Response|Answer)\s*:\s*",
)

_TRAILING_BOILERPLATE = (
    r"\s*Let me know if you (need|have) any(thing else| other questions| further revisions| adjustments)\b.*?\.?[^\w\n]*$",
    r"\s*I hope this (meets your expectations|helps|is what you were looking for)\b.*?\.?[^\w\n]*$",
    r"\s*Feel free to ask for (adjustments|anything else)\b.*?\.?[^\w\n]*$",
)

_FENCE_RE = re.compile(r"```(?:[a-zA-Z0-9_-]+)?\s*(.*?)\s*```", flags=re.DOTALL)
_WORD_RE = re.compile(r"\S+")


def clean_model_response(text: str) -> str:
    """Strip reasoning tags, code fences and chat boilerplate from model output."""
    if not isinstance(text, str):
        logger.warning(
            "clean_model_response received non-string input", input_type=type(text).__name__
        )
        return ""

    cleaned = text
    for tag_name in _THINK_TAGS:
        cleaned = re.sub(
            rf"<\s*{tag_name}\s*>.*?<\s*/\s*{tag_name}\s*>",
            "",
            cleaned,
            flags=re.DOTALL | re.IGNORECASE,
        )
        cleaned = re.sub(rf"<\s*/?\s*{tag_name}\s*/?\s*>", "", cleaned, flags=re.IGNORECASE)

    cleaned = _FENCE_RE.sub(r"\1", cleaned).strip()

    for pattern in _LEADING_BOILERPLATE:
        while True:
            new_text = re.sub(
                pattern, "", cleaned, count=1, flags=re.IGNORECASE | re.MULTILINE
            ).strip()
            if new_text == cleaned:
                break
            cleaned = new_text
    for pattern in _TRAILING_BOILERPLATE:
        cleaned = re.sub(
            pattern, "", cleaned, count=1, flags=re.IGNORECASE | re.MULTILINE
        ).strip()

    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned.strip())
    if len(cleaned) < len(text):
        logger.debug(
            "Cleaned model response", before=len(text), after=len(cleaned)
        )
    return cleaned


def _balanced_span(text: str, start: int) -> str | None:
    """Return the bracket-balanced substring starting at ``start``."""
    opening = text[start]
    closing = "}" if opening == "{" else "]"
    depth = 0
    in_string = False
    escaped = False
    for idx in range(start, len(text)):
        char = text[idx]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == opening:
            depth += 1
        elif char == closing:
            depth -= 1
            if depth == 0:
                return text[start : idx + 1]
    return None


def extract_json_payload(text: str) -> dict[str, Any] | list[Any] | None:
    """Parse the first JSON object or array found in ``text``.

    Returns ``None`` when no parseable JSON is present. Never raises.
    """
    if not text or not text.strip():
        return None
    stripped = text.strip()
    try:
        parsed = json.loads(stripped)
        if isinstance(parsed, dict | list):
            return parsed
    except json.JSONDecodeError:
        pass

    for match in re.finditer(r"[\[{]", stripped):
        candidate = _balanced_span(stripped, match.start())
        if candidate is None:
            continue
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict | list):
            return parsed
    logger.debug("No JSON payload found in text", preview=stripped[:120])
    return None


def count_words(text: str | None) -> int:
    """Whitespace-delimited word count."""
    if not text:
        return 0
    return len(_WORD_RE.findall(text))


def preview(text: str, limit: int = 80) -> str:
    """Single-line preview for log messages."""
    flat = text.replace("\n", " ").strip()
    return flat if len(flat) <= limit else flat[:limit] + "..."


def split_paragraphs(text: str) -> list[str]:
    return [p.strip() for p in re.split(r"\n\s*\n", text or "") if p.strip()]
