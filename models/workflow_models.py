# models/workflow_models.py
"""Stage artifacts produced and consumed by the writing workflow.

Providers return loosely shaped JSON in camelCase; every artifact accepts both
camelCase and snake_case keys and tolerates extra fields so a partially
conforming response still validates.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

UNKNOWN_AUTHOR = "Unknown author"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Stage(IntEnum):
    """Ordered workflow stages."""

    SOURCE_ANALYSIS = 1
    IDEA_LAB = 2
    BLUEPRINT_BUILDER = 3
    CHAPTER_GENERATION = 4
    INTERACTIVE_EDITING = 5
    FINAL_REVIEW = 6

    @property
    def label(self) -> str:
        return self.name.replace("_", " ").title()


class GenerationMode(str, Enum):
    """Chapter batch execution modes.

    ``PARALLEL`` trades continuity for speed: a chapter only sees predecessors
    that were already generated when the batch started.
    """

    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    SELECTIVE = "selective"


class ChapterStatus(str, Enum):
    DRAFT = "draft"
    REVIEWED = "reviewed"
    EDITED = "edited"
    FINAL = "final"


Priority = Literal["high", "medium", "low"]


class ArtifactModel(BaseModel):
    """Base model for stage artifacts."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )


# --- Stage 1 ---


class StyleProfile(ArtifactModel):
    vocabulary: str = ""
    sentence_structure: str = ""
    tone_profile: str = ""
    narrative_perspective: str = ""
    dialogue_style: str = ""
    descriptive_level: str = ""
    cultural_context: list[str] = Field(default_factory=list)
    rhetorical_devices: list[str] = Field(default_factory=list)
    pacing: str = ""
    characterization: str = ""

    def summary(self) -> str:
        """Short description used as the style reference in prompts."""
        parts = [self.tone_profile, self.narrative_perspective, self.vocabulary]
        return ", ".join(p for p in parts if p)


class CharacterRelationship(ArtifactModel):
    character: str = ""
    relationship: str = ""
    description: str = ""


class CharacterDevelopment(ArtifactModel):
    chapter: int = 0
    event: str = ""
    growth: str = ""


class CharacterProfile(ArtifactModel):
    id: str = ""
    name: str
    role: str = ""
    age: int | None = None
    description: str = ""
    background: str = ""
    personality: list[str] = Field(default_factory=list)
    motivations: list[str] = Field(default_factory=list)
    relationships: list[CharacterRelationship] = Field(default_factory=list)
    development: list[CharacterDevelopment] = Field(default_factory=list)
    voice: str = ""
    dialogue_style: str = ""

    def growth_in_chapter(self, chapter_number: int) -> str | None:
        for dev in self.development:
            if dev.chapter == chapter_number:
                return dev.growth
        return None


class SourceAnalysisScores(ArtifactModel):
    complexity: int = 0
    innovation: int = 0
    authenticity: int = 0
    readability: int = 0


class SourceAnalysis(ArtifactModel):
    title: str
    author: str = UNKNOWN_AUTHOR
    content: str = ""
    upload_date: datetime = Field(default_factory=utc_now)
    word_count: int = 0
    chapter_count: int = 0
    style_profile: StyleProfile = Field(default_factory=StyleProfile)
    plot_blueprint: dict[str, Any] = Field(default_factory=dict)
    characters: list[CharacterProfile] = Field(default_factory=list)
    lorebook: list[dict[str, Any]] = Field(default_factory=list)
    themes: list[str] = Field(default_factory=list)
    cultural_elements: list[str] = Field(default_factory=list)
    analysis: SourceAnalysisScores = Field(default_factory=SourceAnalysisScores)


# --- Stage 2 ---


class IdeaRating(ArtifactModel):
    originality: int = 0
    appeal: int = 0
    feasibility: int = 0
    cultural_relevance: int = 0


class GeneratedIdea(ArtifactModel):
    id: str
    title: str
    genre: str = ""
    setting: str = ""
    timeframe: str = ""
    main_character: str = ""
    conflict: str = ""
    theme: str = ""
    synopsis: str = ""
    unique_elements: list[str] = Field(default_factory=list)
    cultural_context: str = ""
    estimated_chapters: int = 0
    target_audience: str = ""
    description: str = ""
    rating: IdeaRating = Field(default_factory=IdeaRating)
    selected: bool = False


# --- Stage 3 ---


class BlueprintOverview(ArtifactModel):
    title: str = ""
    genre: str = ""
    target_length: int = 0
    chapter_count: int = 0
    estimated_words: int = 0
    themes: list[str] = Field(default_factory=list)
    tone: str = ""
    setting: str = ""
    timeframe: str = ""
    description: str = ""


class PlotPoint(ArtifactModel):
    type: str = ""
    chapter: int = 0
    description: str = ""
    significance: str = ""


class Climax(ArtifactModel):
    chapter: int = 0
    description: str = ""


class PlotStructure(ArtifactModel):
    act_structure: str = ""
    plot_points: list[PlotPoint] = Field(default_factory=list)
    pacing: str = ""
    climax: Climax = Field(default_factory=Climax)
    resolution: str = ""


class ChapterOutline(ArtifactModel):
    id: str = ""
    number: int = Field(..., ge=1)
    title: str = ""
    synopsis: str = ""
    key_events: list[str] = Field(default_factory=list)
    characters_involved: list[str] = Field(default_factory=list)
    emotional_tone: str = ""
    pacing: str = ""
    cultural_elements: list[str] = Field(default_factory=list)
    themes: list[str] = Field(default_factory=list)
    plot_advancement: str = ""
    word_target: int = 3000


class BlueprintStructure(ArtifactModel):
    overview: BlueprintOverview = Field(default_factory=BlueprintOverview)
    plot_structure: PlotStructure = Field(default_factory=PlotStructure)
    characters: list[CharacterProfile] = Field(default_factory=list)
    chapters: list[ChapterOutline] = Field(default_factory=list)


class SymbolEntry(ArtifactModel):
    symbol: str = ""
    meaning: str = ""
    chapters: list[int] = Field(default_factory=list)


class MotifEntry(ArtifactModel):
    motif: str = ""
    description: str = ""
    significance: str = ""


class BlueprintThemes(ArtifactModel):
    primary: list[str] = Field(default_factory=list)
    secondary: list[str] = Field(default_factory=list)
    symbols: list[SymbolEntry] = Field(default_factory=list)
    motifs: list[MotifEntry] = Field(default_factory=list)


class NovelBlueprint(ArtifactModel):
    idea: GeneratedIdea
    structure: BlueprintStructure = Field(default_factory=BlueprintStructure)
    themes: BlueprintThemes = Field(default_factory=BlueprintThemes)

    def chapter_outline(self, number: int) -> ChapterOutline | None:
        for outline in self.structure.chapters:
            if outline.number == number:
                return outline
        return None

    def chapter_numbers(self) -> list[int]:
        return sorted(outline.number for outline in self.structure.chapters)

    def character_name(self, ref: str) -> str:
        """Resolve a character id to its display name; unknown refs pass through."""
        for character in self.structure.characters:
            if character.id and character.id == ref:
                return character.name
        return ref


# --- Stage 4/5 ---


class ChapterQuality(ArtifactModel):
    style_consistency: int = Field(0, ge=0, le=100)
    character_consistency: int = Field(0, ge=0, le=100)
    plot_consistency: int = Field(0, ge=0, le=100)
    cultural_authenticity: int = Field(0, ge=0, le=100)
    overall: int = Field(0, ge=0, le=100)


class ChapterMetrics(ArtifactModel):
    readability: int = Field(0, ge=0, le=100)
    engagement: int = Field(0, ge=0, le=100)
    coherence: int = Field(0, ge=0, le=100)
    innovation: int = Field(0, ge=0, le=100)


class FeedbackEntry(ArtifactModel):
    type: Literal["suggestion", "error", "improvement"] = "suggestion"
    category: str
    description: str
    priority: Priority = "medium"


class GeneratedChapter(ArtifactModel):
    id: str
    number: int = Field(..., ge=1)
    title: str = ""
    content: str = ""
    synopsis: str = ""
    word_count: int = 0
    quality: ChapterQuality = Field(default_factory=ChapterQuality)
    status: ChapterStatus = ChapterStatus.DRAFT
    metrics: ChapterMetrics = Field(default_factory=ChapterMetrics)
    feedback: list[FeedbackEntry] = Field(default_factory=list)
    last_modified: datetime = Field(default_factory=utc_now)
    generated_by: str | None = None


class GenerationProgress(ArtifactModel):
    current_chapter: int = 0
    total_chapters: int = 0
    is_generating: bool = False
    generation_mode: GenerationMode = GenerationMode.SEQUENTIAL

    def as_tuple(self) -> tuple[int, int, bool]:
        return (self.current_chapter, self.total_chapters, self.is_generating)


class EditorSettings(ArtifactModel):
    auto_save: bool = True
    spell_check: bool = True
    grammar_check: bool = True
    style_check: bool = True
    consistency_check: bool = True


# --- Stage 6 ---


class ExportFormat(str, Enum):
    TXT = "txt"
    MARKDOWN = "md"
    DOCX = "docx"
    PDF = "pdf"


class ExportSettings(ArtifactModel):
    format: ExportFormat = ExportFormat.TXT
    include_metadata: bool = True
    include_analysis: bool = False
    custom_styling: bool = False


class Recommendation(ArtifactModel):
    category: str
    description: str
    priority: Priority = "medium"


class QualityReport(ArtifactModel):
    overall_quality: int = 0
    strengths: list[str] = Field(default_factory=list)
    improvements: list[str] = Field(default_factory=list)
    recommendations: list[Recommendation] = Field(default_factory=list)


class ProjectStatistics(ArtifactModel):
    total_words: int = 0
    average_quality: int = 0
    completion_rate: int = 0
    chapter_count: int = 0


class FinalProjectMetadata(ArtifactModel):
    id: str
    name: str
    description: str = ""
    created_at: datetime = Field(default_factory=utc_now)
    last_modified: datetime = Field(default_factory=utc_now)
    current_stage: int = Stage.FINAL_REVIEW
    statistics: ProjectStatistics = Field(default_factory=ProjectStatistics)


class FinalProject(ArtifactModel):
    metadata: FinalProjectMetadata
    export_settings: ExportSettings = Field(default_factory=ExportSettings)
    quality_report: QualityReport = Field(default_factory=QualityReport)
