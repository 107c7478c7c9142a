"""Chapter memory and author styles: summaries, embeddings and retrieval."""

from .author_styles import (
    AuthorStyleLibrary,
    analyze_author_style,
    augment_prompt_with_author_style,
    select_text_examples,
)
from .memory_store import (
    MemoryStore,
    augment_prompt_with_memory,
    project_context_for,
    summary_from_outline,
)

__all__ = [
    "AuthorStyleLibrary",
    "analyze_author_style",
    "augment_prompt_with_author_style",
    "select_text_examples",
    "MemoryStore",
    "augment_prompt_with_memory",
    "project_context_for",
    "summary_from_outline",
]
