"""Central package for StoryLoom data models."""

from .gateway_models import (
    AdapterOutput,
    AttemptRecord,
    GatewayRequest,
    GatewayResponse,
    GenerationOptions,
    GenerationOutcome,
    ModelDescriptor,
    ProviderConfig,
    ProviderFamily,
    RawResult,
    StructuredResult,
)
from .memory_models import ChapterSummary, ScoredSummary, StructuredSummary
from .project_models import ProjectListing, ProjectSnapshot
from .workflow_models import (
    ChapterMetrics,
    ChapterOutline,
    ChapterQuality,
    ChapterStatus,
    CharacterProfile,
    EditorSettings,
    ExportFormat,
    ExportSettings,
    FeedbackEntry,
    FinalProject,
    GeneratedChapter,
    GeneratedIdea,
    GenerationMode,
    GenerationProgress,
    NovelBlueprint,
    QualityReport,
    SourceAnalysis,
    Stage,
    StyleProfile,
)

__all__ = [
    "AdapterOutput",
    "AttemptRecord",
    "GatewayRequest",
    "GatewayResponse",
    "GenerationOptions",
    "GenerationOutcome",
    "ModelDescriptor",
    "ProviderConfig",
    "ProviderFamily",
    "RawResult",
    "StructuredResult",
    "ChapterSummary",
    "ScoredSummary",
    "StructuredSummary",
    "ProjectListing",
    "ProjectSnapshot",
    "ChapterMetrics",
    "ChapterOutline",
    "ChapterQuality",
    "ChapterStatus",
    "CharacterProfile",
    "EditorSettings",
    "ExportFormat",
    "ExportSettings",
    "FeedbackEntry",
    "FinalProject",
    "GeneratedChapter",
    "GeneratedIdea",
    "GenerationMode",
    "GenerationProgress",
    "NovelBlueprint",
    "QualityReport",
    "SourceAnalysis",
    "Stage",
    "StyleProfile",
]
