# utils/tokens.py
"""Token counting with tiktoken, falling back to a chars-per-token estimate."""

from __future__ import annotations

import functools

import structlog
import tiktoken

from config import settings

logger = structlog.get_logger(__name__)


@functools.lru_cache(maxsize=settings.TOKENIZER_CACHE_SIZE)
def _get_tokenizer(model_name: str) -> tiktoken.Encoding | None:
    """Model-specific encoding, then the default encoding, else ``None``."""
    try:
        try:
            return tiktoken.encoding_for_model(model_name)
        except KeyError:
            logger.debug(
                "No direct tiktoken encoding for model. Using default.",
                model_name=model_name,
                encoding=settings.TIKTOKEN_DEFAULT_ENCODING,
            )
        return tiktoken.get_encoding(settings.TIKTOKEN_DEFAULT_ENCODING)
    except (KeyError, ValueError, OSError) as e:
        # OSError: the encoding file could not be fetched
        logger.warning(
            "Default tiktoken encoding unavailable. Using character heuristic.",
            model_name=model_name,
            error=str(e),
        )
        return None


def count_tokens(text: str, model_name: str) -> int:
    """Number of tokens in ``text`` for ``model_name``."""
    if not text:
        return 0
    encoder = _get_tokenizer(model_name)
    if encoder:
        return len(encoder.encode(text, allowed_special="all"))
    return int(len(text) / settings.FALLBACK_CHARS_PER_TOKEN)


def truncate_text_by_tokens(
    text: str,
    model_name: str,
    max_tokens: int,
    truncation_marker: str = "\n... (truncated)",
) -> str:
    """Truncate ``text`` to ``max_tokens``, appending ``truncation_marker`` if cut."""
    if not text:
        return ""

    encoder = _get_tokenizer(model_name)
    if not encoder:
        max_chars = int(max_tokens * settings.FALLBACK_CHARS_PER_TOKEN)
        if len(text) <= max_chars:
            return text
        keep = max(max_chars - len(truncation_marker), 0)
        return text[:keep] + truncation_marker

    tokens = encoder.encode(text, allowed_special="all")
    if len(tokens) <= max_tokens:
        return text

    marker_len = len(encoder.encode(truncation_marker, allowed_special="all"))
    keep = max_tokens - marker_len
    marker = truncation_marker
    if keep <= 0:
        keep = max_tokens
        marker = ""
    return encoder.decode(tokens[:keep]) + marker
