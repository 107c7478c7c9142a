# utils/__init__.py
"""General utility functions for StoryLoom."""

from .logging import setup_logging
from .similarity import batch_cosine_similarity, cosine_similarity, rank_by_similarity
from .text_processing import (
    clean_model_response,
    count_words,
    extract_json_payload,
    preview,
    split_paragraphs,
)
from .tokens import count_tokens, truncate_text_by_tokens

__all__ = [
    "setup_logging",
    "batch_cosine_similarity",
    "cosine_similarity",
    "rank_by_similarity",
    "clean_model_response",
    "count_words",
    "extract_json_payload",
    "preview",
    "split_paragraphs",
    "count_tokens",
    "truncate_text_by_tokens",
]
