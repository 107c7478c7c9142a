"""Chapter summaries kept by the retrieval memory."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .workflow_models import utc_now


class StructuredSummary(BaseModel):
    """Open-ended digest of one chapter.

    Each collection accepts arbitrary items (strings or objects) because
    summarizers describe characters and settings in whatever shape suits them.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow"
    )

    characters: list[Any] = Field(default_factory=list)
    plot_points: list[Any] = Field(default_factory=list)
    stylistic_traits: list[Any] = Field(default_factory=list)
    spatial_temporal_details: list[Any] = Field(default_factory=list)
    main_themes: list[Any] = Field(default_factory=list)
    synopsis: str = ""

    def is_empty(self) -> bool:
        return not (
            self.characters
            or self.plot_points
            or self.stylistic_traits
            or self.spatial_temporal_details
            or self.main_themes
        )


class ChapterSummary(BaseModel):
    """Stored summary plus embedding, unique per (project_id, chapter_number)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    project_id: str
    chapter_number: int = Field(..., ge=1)
    summary: StructuredSummary = Field(default_factory=StructuredSummary)
    embedding: list[float] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def key(self) -> tuple[str, int]:
        return (self.project_id, self.chapter_number)


class ScoredSummary(BaseModel):
    """Retrieval hit: a summary and its similarity to the query."""

    summary: ChapterSummary
    score: float


class AuthorStyleAnalysis(BaseModel):
    """Style traits of one author, each a short human-readable description."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    sentence_structure: str = ""
    vocabulary_richness: str = ""
    rhetorical_devices_density: str = ""
    dialogue_style: str = ""
    narrative_tone: str = ""
    pacing: str = ""


class AuthorStyle(BaseModel):
    """Reusable style reference, unique per author name (case-insensitive)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    author_name: str = Field(..., min_length=1)
    style_analysis: AuthorStyleAnalysis = Field(default_factory=AuthorStyleAnalysis)
    text_examples: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def key(self) -> str:
        return author_key(self.author_name)


def author_key(author_name: str) -> str:
    """Lookup key for an author: whitespace-collapsed and case-folded."""
    return " ".join(author_name.split()).casefold()
