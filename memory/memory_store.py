# memory/memory_store.py
"""Retrieval-augmented chapter memory.

Each finished chapter is stored as a structured summary plus an embedding of
its text. Generation calls retrieve the summaries most similar to the prompt
and append them as a continuity block.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

import numpy as np
import structlog

from config import settings
from core.embeddings import EmbeddingProvider
from data_access.summary_repository import SummaryRepository
from models.memory_models import ChapterSummary, ScoredSummary, StructuredSummary
from models.workflow_models import ChapterOutline, NovelBlueprint, utc_now
from prompt_renderer import render_prompt
from utils.similarity import rank_by_similarity

logger = structlog.get_logger(__name__)


class MemoryStore:
    """Write and similarity-retrieval over chapter summaries."""

    def __init__(
        self,
        repository: SummaryRepository,
        embedder: EmbeddingProvider,
        default_limit: int = settings.MEMORY_RETRIEVAL_LIMIT,
    ) -> None:
        self.repository = repository
        self.embedder = embedder
        self.default_limit = default_limit

    async def record_chapter_summary(
        self,
        project_id: str,
        chapter_number: int,
        chapter_text: str,
        structured_summary: StructuredSummary | Mapping[str, Any],
    ) -> ChapterSummary:
        """Embed ``chapter_text`` and upsert the summary for this chapter."""
        if not isinstance(structured_summary, StructuredSummary):
            structured_summary = StructuredSummary.model_validate(structured_summary)
        embed_source = chapter_text if chapter_text.strip() else structured_summary.synopsis
        embedding = await self.embedder.embed(embed_source)
        now = utc_now()
        record = ChapterSummary(
            project_id=project_id,
            chapter_number=chapter_number,
            summary=structured_summary,
            embedding=np.asarray(embedding, dtype=np.float32).tolist(),
            created_at=now,
            updated_at=now,
        )
        stored = await self.repository.upsert(record)
        logger.info(
            "Recorded chapter summary",
            project_id=project_id,
            chapter_number=chapter_number,
        )
        return stored

    async def retrieve_scored(
        self, project_id: str, query_text: str, limit: int | None = None
    ) -> list[ScoredSummary]:
        """Top ``limit`` summaries by cosine similarity, ties by newest chapter."""
        limit = self.default_limit if limit is None else limit
        if limit <= 0:
            return []
        if not query_text or not query_text.strip():
            logger.debug("Skipping chapter memory retrieval for a blank query", project_id=project_id)
            return []
        summaries = await self.repository.list_for_project(project_id)
        if not summaries:
            return []

        query = np.asarray(await self.embedder.embed(query_text), dtype=np.float32)
        usable = [s for s in summaries if len(s.embedding) == query.shape[0]]
        if len(usable) < len(summaries):
            logger.warning(
                "Skipping summaries with mismatched embedding dimension",
                project_id=project_id,
                skipped=len(summaries) - len(usable),
                expected_dim=int(query.shape[0]),
            )
        ranked = rank_by_similarity(
            query,
            usable,
            [s.embedding for s in usable],
            [s.chapter_number for s in usable],
            limit,
        )
        return [ScoredSummary(summary=s, score=score) for s, score in ranked]

    async def retrieve_relevant(
        self, project_id: str, query_text: str, limit: int | None = None
    ) -> list[ChapterSummary]:
        scored = await self.retrieve_scored(project_id, query_text, limit)
        logger.debug(
            "Retrieved chapter memory",
            project_id=project_id,
            chapters=[item.summary.chapter_number for item in scored],
        )
        return [item.summary for item in scored]

    async def delete_project(self, project_id: str) -> int:
        return await self.repository.delete_project(project_id)


def augment_prompt_with_memory(
    base_prompt: str,
    project_context: Mapping[str, Any] | None,
    summaries: Sequence[ChapterSummary],
) -> str:
    """Append project context and retrieved summaries, in the order given."""
    block = render_prompt(
        "memory_block.j2",
        {"project_context": project_context or None, "summaries": list(summaries)},
    )
    return base_prompt + block


def project_context_for(blueprint: NovelBlueprint | None) -> dict[str, Any]:
    """Compact project-level context used in the memory block."""
    if blueprint is None:
        return {}
    overview = blueprint.structure.overview
    return {
        "title": overview.title or blueprint.idea.title,
        "genre": overview.genre or blueprint.idea.genre,
        "themes": overview.themes or blueprint.themes.primary,
        "characters": [c.name for c in blueprint.structure.characters],
        "chapterCount": len(blueprint.structure.chapters),
    }


def summary_from_outline(
    outline: ChapterOutline | None,
    synopsis: str,
    blueprint: NovelBlueprint | None = None,
) -> StructuredSummary:
    """Deterministic summary built from the chapter plan."""
    if outline is None:
        return StructuredSummary(synopsis=synopsis)
    characters = outline.characters_involved
    if blueprint is not None:
        characters = [blueprint.character_name(ref) for ref in characters]
    return StructuredSummary(
        characters=list(characters),
        plot_points=list(outline.key_events),
        stylistic_traits=[t for t in (outline.emotional_tone, outline.pacing) if t],
        spatial_temporal_details=list(outline.cultural_elements),
        main_themes=list(outline.themes),
        synopsis=synopsis or outline.synopsis,
    )
