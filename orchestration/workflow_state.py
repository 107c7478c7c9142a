# orchestration/workflow_state.py
"""The project workflow state and its transitions.

All mutation goes through the named methods below; each checks its own
preconditions and raises instead of silently ignoring an invalid change.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

import structlog
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from config import settings
from core.errors import (
    ChapterNotFoundError,
    StageValidationError,
    TransitionError,
)
from models.workflow_models import (
    ChapterOutline,
    ChapterStatus,
    CharacterProfile,
    EditorSettings,
    FeedbackEntry,
    FinalProject,
    GeneratedChapter,
    GeneratedIdea,
    GenerationMode,
    GenerationProgress,
    IdeaRating,
    NovelBlueprint,
    SourceAnalysis,
    Stage,
    utc_now,
)

logger = structlog.get_logger(__name__)

BLUEPRINT_SECTIONS = ("overview", "plot_structure", "themes")


def merged_model(model: BaseModel, updates: dict[str, Any], **fixed: Any) -> Any:
    """Copy of ``model`` with ``updates`` applied and re-validated.

    Update keys may be field names or camelCase aliases.
    """
    fields = type(model).model_fields
    data = model.model_dump(by_alias=True)
    for key, value in {**updates, **fixed}.items():
        field = fields.get(key)
        data[(field.alias or key) if field else key] = value
    return type(model).model_validate(data)


def default_stage_models() -> dict[int, str]:
    return {int(stage): settings.DEFAULT_MODEL_ID for stage in Stage}


class WorkflowState(BaseModel):
    """Aggregate state of one project's writing workflow."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )

    project_id: str | None = None
    project_name: str = "Untitled project"
    project_description: str = ""
    entry_point: Literal["full", "fresh"] = "full"
    current_stage: Stage = Stage.SOURCE_ANALYSIS
    source_analysis: SourceAnalysis | None = None
    generated_ideas: list[GeneratedIdea] = Field(default_factory=list)
    blueprint: NovelBlueprint | None = None
    chapters: list[GeneratedChapter] = Field(default_factory=list)
    current_chapter_number: int | None = None
    final_project: FinalProject | None = None
    progress: GenerationProgress = Field(default_factory=GenerationProgress)
    selected_models: dict[int, str] = Field(default_factory=default_stage_models)
    credentials: dict[str, str] = Field(default_factory=dict, exclude=True, repr=False)
    prompt_templates: dict[str, str] = Field(default_factory=dict)
    editor_settings: EditorSettings = Field(default_factory=EditorSettings)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    # --- Queries ---

    @property
    def selected_idea(self) -> GeneratedIdea | None:
        for idea in self.generated_ideas:
            if idea.selected:
                return idea
        return None

    def chapter(self, number: int) -> GeneratedChapter:
        for chapter in self.chapters:
            if chapter.number == number:
                return chapter
        raise ChapterNotFoundError(number)

    def has_chapter(self, number: int) -> bool:
        return any(c.number == number for c in self.chapters)

    def previous_chapter(self, number: int) -> GeneratedChapter | None:
        """Closest generated chapter before ``number``."""
        earlier = [c for c in self.chapters if c.number < number]
        return max(earlier, key=lambda c: c.number) if earlier else None

    def model_for_stage(self, stage: Stage | int) -> str:
        return self.selected_models.get(int(stage), settings.DEFAULT_MODEL_ID)

    def is_stage_complete(self, stage: Stage | int) -> bool:
        """Completion predicate, evaluated against current artifacts."""
        stage = Stage(stage)
        if stage is Stage.SOURCE_ANALYSIS:
            return self.source_analysis is not None
        if stage is Stage.IDEA_LAB:
            return self.selected_idea is not None
        if stage is Stage.BLUEPRINT_BUILDER:
            return self.blueprint is not None and bool(self.blueprint.structure.chapters)
        if stage in (Stage.CHAPTER_GENERATION, Stage.INTERACTIVE_EDITING):
            return bool(self.chapters)
        return self.final_project is not None

    def _touch(self) -> None:
        self.updated_at = utc_now()

    def ensure_mutable(self, action: str) -> None:
        if self.current_stage is Stage.FINAL_REVIEW:
            raise TransitionError(
                Stage.FINAL_REVIEW,
                Stage.FINAL_REVIEW,
                f"'{action}' is not allowed after final review; start a new project",
            )

    # --- Stage navigation ---

    def start_fresh(self) -> None:
        """Begin at the idea lab with no reference material."""
        if self.source_analysis is not None or self.generated_ideas:
            raise TransitionError(
                self.current_stage, Stage.IDEA_LAB, "project already has artifacts"
            )
        self.entry_point = "fresh"
        self.current_stage = Stage.IDEA_LAB
        self._touch()

    def advance(self) -> Stage:
        """Move to the next stage if the current one is complete."""
        current = self.current_stage
        if current is Stage.FINAL_REVIEW:
            raise TransitionError(current, current, "final review is terminal")
        target = Stage(current + 1)
        if not self.is_stage_complete(current):
            raise TransitionError(current, target, _INCOMPLETE_REASONS[current])
        self.current_stage = target
        self._touch()
        logger.info("Advanced workflow stage", from_stage=int(current), to_stage=int(target))
        return target

    def go_to(self, stage: Stage | int) -> Stage:
        """Jump back to an earlier stage, or forward through completed ones."""
        target = Stage(stage)
        current = self.current_stage
        if current is Stage.FINAL_REVIEW and target is not current:
            raise TransitionError(current, target, "final review is terminal")
        if target is Stage.SOURCE_ANALYSIS and self.entry_point == "fresh":
            raise TransitionError(current, target, "project was started without a source")
        if target > current:
            for step in range(current, target):
                if not self.is_stage_complete(step):
                    raise TransitionError(current, target, _INCOMPLETE_REASONS[Stage(step)])
        self.current_stage = target
        self._touch()
        return target

    # --- Stage 1 ---

    def set_source_analysis(self, analysis: SourceAnalysis) -> None:
        self.ensure_mutable("set_source_analysis")
        if self.entry_point == "fresh":
            raise StageValidationError(
                Stage.SOURCE_ANALYSIS, "project was started without a source"
            )
        self.source_analysis = analysis
        self._touch()

    # --- Stage 2 ---

    def set_ideas(self, ideas: list[GeneratedIdea]) -> None:
        self.ensure_mutable("set_ideas")
        seen: set[str] = set()
        for idea in ideas:
            if idea.id in seen:
                raise StageValidationError(Stage.IDEA_LAB, f"Duplicate idea id '{idea.id}'")
            seen.add(idea.id)
        self.generated_ideas = [idea.model_copy(update={"selected": False}) for idea in ideas]
        self._touch()

    def _idea(self, idea_id: str) -> GeneratedIdea:
        for idea in self.generated_ideas:
            if idea.id == idea_id:
                return idea
        raise StageValidationError(Stage.IDEA_LAB, f"Unknown idea '{idea_id}'")

    def select_idea(self, idea_id: str) -> GeneratedIdea:
        """Mark exactly one idea as selected."""
        self.ensure_mutable("select_idea")
        chosen = self._idea(idea_id)
        for idea in self.generated_ideas:
            idea.selected = idea is chosen
        self._touch()
        return chosen

    def clear_selection(self) -> None:
        self.ensure_mutable("clear_selection")
        for idea in self.generated_ideas:
            idea.selected = False
        self._touch()

    def rate_idea(self, idea_id: str, rating: IdeaRating) -> GeneratedIdea:
        self.ensure_mutable("rate_idea")
        idea = self._idea(idea_id)
        idea.rating = rating
        self._touch()
        return idea

    def clear_ideas(self) -> None:
        self.ensure_mutable("clear_ideas")
        self.generated_ideas = []
        self._touch()

    # --- Stage 3 ---

    def set_blueprint(self, blueprint: NovelBlueprint) -> None:
        self.ensure_mutable("set_blueprint")
        if self.selected_idea is None:
            raise StageValidationError(
                Stage.BLUEPRINT_BUILDER, "Select an idea before building a blueprint"
            )
        if not blueprint.structure.chapters or not blueprint.structure.characters:
            raise StageValidationError(
                Stage.BLUEPRINT_BUILDER, "Blueprint must contain chapters and characters"
            )
        numbers = [c.number for c in blueprint.structure.chapters]
        if len(numbers) != len(set(numbers)):
            raise StageValidationError(
                Stage.BLUEPRINT_BUILDER, "Blueprint chapter numbers must be unique"
            )
        blueprint.structure.chapters.sort(key=lambda c: c.number)
        self.blueprint = blueprint
        self._touch()

    def _require_blueprint(self) -> NovelBlueprint:
        if self.blueprint is None:
            raise StageValidationError(Stage.BLUEPRINT_BUILDER, "No blueprint exists yet")
        return self.blueprint

    def update_blueprint_section(self, section: str, data: dict[str, Any]) -> None:
        self.ensure_mutable("update_blueprint_section")
        blueprint = self._require_blueprint()
        if section not in BLUEPRINT_SECTIONS:
            raise StageValidationError(
                Stage.BLUEPRINT_BUILDER, f"Unknown blueprint section '{section}'"
            )
        owner = blueprint if section == "themes" else blueprint.structure
        current = getattr(owner, section)
        merged = merged_model(current, data)
        setattr(owner, section, merged)
        self._touch()

    def add_blueprint_chapter(self, outline: ChapterOutline) -> None:
        self.ensure_mutable("add_blueprint_chapter")
        blueprint = self._require_blueprint()
        if blueprint.chapter_outline(outline.number) is not None:
            raise StageValidationError(
                Stage.BLUEPRINT_BUILDER, f"Chapter {outline.number} already planned"
            )
        blueprint.structure.chapters.append(outline)
        blueprint.structure.chapters.sort(key=lambda c: c.number)
        self._touch()

    def update_blueprint_chapter(self, number: int, updates: dict[str, Any]) -> ChapterOutline:
        self.ensure_mutable("update_blueprint_chapter")
        blueprint = self._require_blueprint()
        outline = blueprint.chapter_outline(number)
        if outline is None:
            raise ChapterNotFoundError(number)
        updated = merged_model(outline, updates, number=number)
        chapters = blueprint.structure.chapters
        chapters[chapters.index(outline)] = updated
        self._touch()
        return updated

    def remove_blueprint_chapter(self, number: int) -> None:
        self.ensure_mutable("remove_blueprint_chapter")
        blueprint = self._require_blueprint()
        outline = blueprint.chapter_outline(number)
        if outline is None:
            raise ChapterNotFoundError(number)
        blueprint.structure.chapters.remove(outline)
        self._touch()

    def _character_index(self, character_id: str) -> int:
        blueprint = self._require_blueprint()
        for idx, character in enumerate(blueprint.structure.characters):
            if character.id == character_id:
                return idx
        raise StageValidationError(
            Stage.BLUEPRINT_BUILDER, f"Unknown character '{character_id}'"
        )

    def add_character(self, character: CharacterProfile) -> None:
        self.ensure_mutable("add_character")
        blueprint = self._require_blueprint()
        if not character.id:
            character.id = f"char-{len(blueprint.structure.characters) + 1}"
        if any(c.id == character.id for c in blueprint.structure.characters):
            raise StageValidationError(
                Stage.BLUEPRINT_BUILDER, f"Character '{character.id}' already exists"
            )
        blueprint.structure.characters.append(character)
        self._touch()

    def update_character(self, character_id: str, updates: dict[str, Any]) -> CharacterProfile:
        self.ensure_mutable("update_character")
        idx = self._character_index(character_id)
        characters = self._require_blueprint().structure.characters
        updated = merged_model(characters[idx], updates, id=character_id)
        characters[idx] = updated
        self._touch()
        return updated

    def remove_character(self, character_id: str) -> None:
        self.ensure_mutable("remove_character")
        idx = self._character_index(character_id)
        del self._require_blueprint().structure.characters[idx]
        self._touch()

    # --- Stage 4 ---

    def begin_generation(self, total: int, mode: GenerationMode) -> None:
        self.progress = GenerationProgress(
            current_chapter=0,
            total_chapters=total,
            is_generating=True,
            generation_mode=mode,
        )
        self._touch()

    def record_progress(self, completed: int) -> None:
        if completed > self.progress.total_chapters:
            raise StageValidationError(
                Stage.CHAPTER_GENERATION, "Progress cannot exceed the batch size"
            )
        self.progress.current_chapter = completed

    def end_generation(self) -> None:
        self.progress.is_generating = False
        self._touch()

    def upsert_chapter(self, chapter: GeneratedChapter) -> None:
        """Add a chapter or replace the one with the same number."""
        self.ensure_mutable("upsert_chapter")
        blueprint = self._require_blueprint()
        if blueprint.chapter_outline(chapter.number) is None:
            raise StageValidationError(
                Stage.CHAPTER_GENERATION, f"Chapter {chapter.number} is not in the blueprint"
            )
        self.chapters = [c for c in self.chapters if c.number != chapter.number]
        self.chapters.append(chapter)
        self.chapters.sort(key=lambda c: c.number)
        self._touch()

    # --- Stage 5 ---

    def open_chapter(self, number: int) -> GeneratedChapter:
        chapter = self.chapter(number)
        self.current_chapter_number = number
        return chapter

    def update_chapter(self, number: int, updates: dict[str, Any]) -> GeneratedChapter:
        self.ensure_mutable("update_chapter")
        chapter = self.chapter(number)
        updated = merged_model(chapter, updates, number=number, last_modified=utc_now())
        self.chapters[self.chapters.index(chapter)] = updated
        self._touch()
        return updated

    def set_chapter_status(self, number: int, status: ChapterStatus) -> GeneratedChapter:
        return self.update_chapter(number, {"status": ChapterStatus(status)})

    def add_feedback(self, number: int, entries: list[FeedbackEntry]) -> GeneratedChapter:
        self.ensure_mutable("add_feedback")
        chapter = self.chapter(number)
        chapter.feedback.extend(entries)
        chapter.last_modified = utc_now()
        self._touch()
        return chapter

    # --- Stage 6 ---

    def set_final_project(self, final_project: FinalProject) -> None:
        if not self.chapters:
            raise StageValidationError(
                Stage.FINAL_REVIEW, "No chapters exist yet; generate chapters first"
            )
        self.final_project = final_project
        self._touch()

    # --- Settings ---

    def select_model(self, stage: Stage | int, model_id: str) -> None:
        self.selected_models[int(Stage(stage))] = model_id
        self._touch()

    def set_credential(self, model_id: str, credential: str | None) -> None:
        if credential:
            self.credentials[model_id] = credential
        else:
            self.credentials.pop(model_id, None)

    def set_prompt_template(self, task_id: str, template: str | None) -> None:
        if template and template.strip():
            self.prompt_templates[task_id] = template
        else:
            self.prompt_templates.pop(task_id, None)
        self._touch()

    def set_editor_settings(self, **updates: Any) -> EditorSettings:
        self.editor_settings = self.editor_settings.model_copy(update=updates)
        self._touch()
        return self.editor_settings

    # --- Lifecycle ---

    def fresh_copy(self) -> WorkflowState:
        """New empty workflow keeping credentials and prompt overrides."""
        return WorkflowState(
            credentials=dict(self.credentials),
            prompt_templates=dict(self.prompt_templates),
        )

    def to_snapshot_state(self) -> dict[str, Any]:
        """Serialized state for persistence (credentials are never written)."""
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_snapshot_state(cls, data: dict[str, Any]) -> WorkflowState:
        return cls.model_validate(data)


_INCOMPLETE_REASONS: dict[Stage, str] = {
    Stage.SOURCE_ANALYSIS: "source analysis has not been completed",
    Stage.IDEA_LAB: "no idea has been selected",
    Stage.BLUEPRINT_BUILDER: "no blueprint with chapters exists",
    Stage.CHAPTER_GENERATION: "no chapters have been generated",
    Stage.INTERACTIVE_EDITING: "no chapters exist to review",
    Stage.FINAL_REVIEW: "final review is terminal",
}
