# orchestration/models.py
"""Shared dataclasses for orchestration services."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from models.workflow_models import FeedbackEntry, GeneratedChapter, GenerationMode

BatchEventKind = Literal[
    "started",
    "chapter_completed",
    "chapter_failed",
    "chapter_skipped",
    "cancelled",
    "finished",
]


@dataclass
class BatchEvent:
    """Progress notification emitted while a chapter batch runs."""

    kind: BatchEventKind
    completed: int
    total: int
    chapter_number: int | None = None
    message: str = ""

    @property
    def is_warning(self) -> bool:
        return self.kind in ("chapter_failed", "chapter_skipped", "cancelled")


@dataclass
class ChapterFailure:
    """A chapter that did not complete, with the reason."""

    chapter_number: int
    error: str
    error_type: str


@dataclass
class BatchResult:
    """Outcome of one chapter batch."""

    mode: GenerationMode
    requested: list[int]
    completed: list[GeneratedChapter] = field(default_factory=list)
    failures: list[ChapterFailure] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    cancelled: bool = False

    @property
    def completed_numbers(self) -> list[int]:
        return sorted(c.number for c in self.completed)

    @property
    def failed_numbers(self) -> list[int]:
        return sorted(f.chapter_number for f in self.failures)

    @property
    def succeeded(self) -> bool:
        return not self.failures and not self.skipped and not self.cancelled


@dataclass
class EditorToolResult:
    """Result of an advisory editing tool call.

    ``success`` is False when the model call failed; the chapter is left as it
    was and ``message`` explains why.
    """

    tool: str
    chapter_number: int
    success: bool
    text: str | None = None
    changes: list[Any] = field(default_factory=list)
    feedback: list[FeedbackEntry] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    message: str = ""
    model_id: str | None = None
