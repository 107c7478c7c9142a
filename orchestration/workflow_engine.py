# orchestration/workflow_engine.py
"""Stage operations for one project.

``WorkflowEngine`` runs the model-backed steps of each stage against a
``WorkflowState`` and applies their results through the state's transition
methods. Operations that call a model hold the engine lock for their whole
duration; starting a second one meanwhile raises ``WorkflowBusyError``.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from collections.abc import AsyncIterator, Mapping
from pathlib import Path
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

from config import EXPORTS_DIR, settings
from core.errors import (
    AllModelsFailedError,
    ConfigurationError,
    StageValidationError,
    WorkflowBusyError,
)
from core.model_gateway import ModelGateway
from data_access.project_repository import new_project_id
from memory import (
    AuthorStyleLibrary,
    MemoryStore,
    augment_prompt_with_author_style,
    augment_prompt_with_memory,
    project_context_for,
    summary_from_outline,
)
from models.gateway_models import GenerationOptions, GenerationOutcome, StructuredResult
from models.memory_models import StructuredSummary
from models.workflow_models import (
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
    FinalProjectMetadata,
    GeneratedChapter,
    GeneratedIdea,
    IdeaRating,
    NovelBlueprint,
    UNKNOWN_AUTHOR,
    SourceAnalysis,
    Stage,
)
from orchestration.models import EditorToolResult
from orchestration.quality import build_quality_report, project_statistics, score_chapter
from orchestration.workflow_state import WorkflowState
from prompt_renderer import (
    TASK_IDS,
    fill_template,
    load_task_template,
    render_prompt,
    with_json_variants,
)
from utils.text_processing import count_words
from utils.tokens import truncate_text_by_tokens

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

WORDS_PER_SOURCE_CHAPTER = 5000
DEFAULT_IDEA_COUNT = 3
DEFAULT_BLUEPRINT_CHAPTERS = 10
NO_STYLE_REFERENCE = "No reference style; write in a clear, vivid contemporary voice"
FIRST_CHAPTER_CONTEXT = "This is the opening chapter of the novel."
MISSING_PREVIOUS_CONTEXT = "No summary of the previous chapter is available."
RETRIEVED_CONTEXT_PLACEHOLDER = "RETRIEVED_CONTEXT"
CHAPTER_OUTPUT_FORMAT = (
    'Return a JSON object {"chapterContent": "<full chapter prose>", '
    '"synopsis": "<one-paragraph synopsis>"}. Respond with JSON only.'
)


def _payload(outcome: GenerationOutcome) -> dict[str, Any]:
    """Structured object from an outcome, or an empty dict."""
    if isinstance(outcome.result, StructuredResult) and isinstance(outcome.result.data, dict):
        return outcome.result.data
    return {}


def _validated_list(model_cls: type[ModelT], items: Any, what: str) -> list[ModelT]:
    """Validate each item, dropping the ones that do not fit."""
    if not isinstance(items, list):
        return []
    valid: list[ModelT] = []
    for item in items:
        try:
            valid.append(model_cls.model_validate(item))
        except ValidationError as e:
            logger.warning("Dropping malformed item from model output", item_type=what, error=str(e))
    return valid


def _optional_model(model_cls: type[ModelT], data: Any) -> ModelT | None:
    if not isinstance(data, dict):
        return None
    try:
        return model_cls.model_validate(data)
    except ValidationError as e:
        logger.warning("Ignoring malformed section of model output", section=model_cls.__name__, error=str(e))
        return None


class WorkflowEngine:
    """Model-backed stage operations over one ``WorkflowState``."""

    def __init__(
        self,
        gateway: ModelGateway,
        memory: MemoryStore,
        state: WorkflowState | None = None,
        *,
        author_styles: AuthorStyleLibrary | None = None,
        draft_project_id: str | None = None,
    ) -> None:
        self.gateway = gateway
        self.memory = memory
        self.author_styles = author_styles
        self.state = state or WorkflowState()
        self.draft_project_id = draft_project_id or new_project_id()
        self._lock = asyncio.Lock()
        self._running: str | None = None

    # --- Concurrency guard ---

    @property
    def is_busy(self) -> bool:
        return self._lock.locked()

    @property
    def project_key(self) -> str:
        """Id under which chapter memory is stored."""
        return self.state.project_id or self.draft_project_id

    @contextlib.asynccontextmanager
    async def exclusive(self, operation: str) -> AsyncIterator[None]:
        """Hold the workflow for ``operation`` or fail if it is already held."""
        if self._lock.locked():
            raise WorkflowBusyError(operation, self._running)
        async with self._lock:
            self._running = operation
            try:
                yield
            finally:
                self._running = None

    def _ensure_idle(self, operation: str) -> None:
        if self._lock.locked():
            raise WorkflowBusyError(operation, self._running)

    # --- Model calls ---

    async def _call(
        self,
        task_id: str,
        stage: Stage,
        variables: Mapping[str, Any],
        *,
        action: str | None = None,
        context_block: str = "",
    ) -> GenerationOutcome:
        template = load_task_template(task_id, self.state.prompt_templates)
        filled = {**with_json_variants(variables), RETRIEVED_CONTEXT_PLACEHOLDER: context_block}
        prompt = fill_template(template, filled)
        if context_block and f"[{RETRIEVED_CONTEXT_PLACEHOLDER}]" not in template:
            # Custom templates without the placeholder get the context at the end
            prompt += context_block
        model_id = self.state.model_for_stage(stage)
        return await self.gateway.generate(
            model_id,
            self.state.credentials.get(model_id),
            prompt,
            GenerationOptions(
                temperature=settings.TEMPERATURE_DEFAULT,
                top_p=settings.LLM_TOP_P,
                max_output_tokens=settings.MAX_GENERATION_TOKENS,
            ),
            action=action or task_id,
            credentials=self.state.credentials,
        )

    def _style_summary(self) -> str:
        source = self.state.source_analysis
        if source is None:
            return NO_STYLE_REFERENCE
        return source.style_profile.summary() or NO_STYLE_REFERENCE

    # --- Stage navigation ---

    def start_fresh(self) -> None:
        self._ensure_idle("start_fresh")
        self.state.start_fresh()

    def advance(self) -> Stage:
        self._ensure_idle("advance")
        return self.state.advance()

    def go_to(self, stage: Stage | int) -> Stage:
        self._ensure_idle("go_to")
        return self.state.go_to(stage)

    # --- Stage 1: source analysis ---

    async def analyze_source(
        self, title: str, text: str, author: str | None = None
    ) -> SourceAnalysis:
        """Analyse reference text and store the resulting style profile."""
        async with self.exclusive("analyze_source"):
            self.state.ensure_mutable("analyze_source")
            if self.state.entry_point == "fresh":
                raise StageValidationError(
                    Stage.SOURCE_ANALYSIS, "project was started without a source"
                )
            words = count_words(text)
            if words < settings.MIN_SOURCE_WORD_COUNT:
                raise StageValidationError(
                    Stage.SOURCE_ANALYSIS,
                    f"Source text has {words} words; at least "
                    f"{settings.MIN_SOURCE_WORD_COUNT} are required",
                )

            outcome = await self._call(
                "analyze_source",
                Stage.SOURCE_ANALYSIS,
                {
                    "SOURCE_TITLE": title,
                    "WORD_COUNT": words,
                    "SOURCE_TEXT": text[: settings.SOURCE_PREVIEW_CHARS],
                },
            )
            payload = _payload(outcome)
            fixed = {
                "title": payload.get("title") or title,
                "content": text,
                "wordCount": words,
                "chapterCount": payload.get("chapterCount")
                or max(1, round(words / WORDS_PER_SOURCE_CHAPTER)),
            }
            if author:
                fixed["author"] = author
            try:
                analysis = SourceAnalysis.model_validate({**payload, **fixed})
            except ValidationError as e:
                logger.warning("Source analysis response was malformed; using defaults", error=str(e))
                analysis = SourceAnalysis.model_validate(fixed)
            if self._has_known_author(analysis):
                await self.author_styles.analyze_and_store(
                    analysis.author, text, analysis.style_profile
                )
            self.state.set_source_analysis(analysis)
            logger.info(
                "Source analysed",
                title=analysis.title,
                word_count=words,
                model_id=outcome.model_id,
            )
            return analysis

    # --- Stage 2: idea lab ---

    async def generate_ideas(
        self, direction: str = "", count: int = DEFAULT_IDEA_COUNT
    ) -> list[GeneratedIdea]:
        """Generate candidate ideas, replacing any existing ones."""
        async with self.exclusive("generate_ideas"):
            self.state.ensure_mutable("generate_ideas")
            source = self.state.source_analysis
            outcome = await self._call(
                "generate_idea",
                Stage.IDEA_LAB,
                {
                    "STYLE_PROFILE_SUMMARY": self._style_summary(),
                    "SOURCE_THEMES": source.themes if source else "none specified",
                    "SOURCE_CULTURAL_ELEMENTS": source.cultural_elements if source else "none specified",
                    "USER_DIRECTION": direction or "none",
                    "IDEA_COUNT": count,
                },
            )
            result = outcome.result
            raw_ideas: Any = result.data if isinstance(result, StructuredResult) else None
            if isinstance(raw_ideas, dict):
                raw_ideas = raw_ideas.get("ideas", [])
            if isinstance(raw_ideas, list):
                for idx, item in enumerate(raw_ideas, start=1):
                    if isinstance(item, dict) and not item.get("id"):
                        item["id"] = f"idea-{idx}"
            ideas = _validated_list(GeneratedIdea, raw_ideas, "idea")
            if not ideas:
                raise StageValidationError(Stage.IDEA_LAB, "The model returned no usable ideas")
            self.state.set_ideas(ideas)
            logger.info("Ideas generated", count=len(ideas), model_id=outcome.model_id)
            return self.state.generated_ideas

    def select_idea(self, idea_id: str) -> GeneratedIdea:
        self._ensure_idle("select_idea")
        return self.state.select_idea(idea_id)

    def clear_selection(self) -> None:
        self._ensure_idle("clear_selection")
        self.state.clear_selection()

    def rate_idea(self, idea_id: str, rating: IdeaRating | Mapping[str, int]) -> GeneratedIdea:
        self._ensure_idle("rate_idea")
        if not isinstance(rating, IdeaRating):
            rating = IdeaRating.model_validate(rating)
        return self.state.rate_idea(idea_id, rating)

    def clear_ideas(self) -> None:
        self._ensure_idle("clear_ideas")
        self.state.clear_ideas()

    # --- Stage 3: blueprint ---

    async def build_blueprint(self, chapter_count: int | None = None) -> NovelBlueprint:
        """Generate the full blueprint for the selected idea."""
        async with self.exclusive("build_blueprint"):
            self.state.ensure_mutable("build_blueprint")
            idea = self.state.selected_idea
            if idea is None:
                raise StageValidationError(
                    Stage.BLUEPRINT_BUILDER, "Select an idea before building a blueprint"
                )
            target_chapters = chapter_count or idea.estimated_chapters or DEFAULT_BLUEPRINT_CHAPTERS
            outcome = await self._call(
                "build_blueprint",
                Stage.BLUEPRINT_BUILDER,
                {
                    "IDEA_TITLE": idea.title,
                    "IDEA_GENRE": idea.genre,
                    "IDEA_SETTING": idea.setting,
                    "IDEA_TIMEFRAME": idea.timeframe,
                    "IDEA_MAIN_CHARACTER": idea.main_character,
                    "IDEA_CONFLICT": idea.conflict,
                    "IDEA_THEME": idea.theme,
                    "IDEA_SYNOPSIS": idea.synopsis,
                    "CHAPTER_COUNT": target_chapters,
                    "STYLE_PROFILE_SUMMARY": self._style_summary(),
                },
            )
            payload = _payload(outcome)
            structure = payload.get("structure")
            if not isinstance(structure, dict) or not structure.get("chapters") or not structure.get("characters"):
                raise StageValidationError(
                    Stage.BLUEPRINT_BUILDER,
                    "Blueprint response is missing chapters or characters",
                )
            try:
                blueprint = NovelBlueprint.model_validate(
                    {**payload, "idea": idea.model_dump(by_alias=True)}
                )
            except ValidationError as e:
                raise StageValidationError(
                    Stage.BLUEPRINT_BUILDER, f"Blueprint response is malformed: {e}"
                ) from e
            for outline in blueprint.structure.chapters:
                outline.id = outline.id or f"chapter-{outline.number}"
            for idx, character in enumerate(blueprint.structure.characters, start=1):
                character.id = character.id or f"char-{idx}"
            self.state.set_blueprint(blueprint)
            logger.info(
                "Blueprint built",
                chapters=len(blueprint.structure.chapters),
                characters=len(blueprint.structure.characters),
                model_id=outcome.model_id,
            )
            return blueprint

    def update_blueprint_section(self, section: str, data: dict[str, Any]) -> None:
        self._ensure_idle("update_blueprint_section")
        self.state.update_blueprint_section(section, data)

    def add_blueprint_chapter(self, outline: ChapterOutline | Mapping[str, Any]) -> ChapterOutline:
        self._ensure_idle("add_blueprint_chapter")
        if not isinstance(outline, ChapterOutline):
            outline = ChapterOutline.model_validate(outline)
        outline.id = outline.id or f"chapter-{outline.number}"
        self.state.add_blueprint_chapter(outline)
        return outline

    def update_blueprint_chapter(self, number: int, updates: dict[str, Any]) -> ChapterOutline:
        self._ensure_idle("update_blueprint_chapter")
        return self.state.update_blueprint_chapter(number, updates)

    def remove_blueprint_chapter(self, number: int) -> None:
        self._ensure_idle("remove_blueprint_chapter")
        self.state.remove_blueprint_chapter(number)

    def add_character(self, character: CharacterProfile | Mapping[str, Any]) -> CharacterProfile:
        self._ensure_idle("add_character")
        if not isinstance(character, CharacterProfile):
            character = CharacterProfile.model_validate(character)
        self.state.add_character(character)
        return character

    def update_character(self, character_id: str, updates: dict[str, Any]) -> CharacterProfile:
        self._ensure_idle("update_character")
        return self.state.update_character(character_id, updates)

    def remove_character(self, character_id: str) -> None:
        self._ensure_idle("remove_character")
        self.state.remove_character(character_id)

    # --- Stage 4: chapters ---

    def _require_blueprint(self) -> NovelBlueprint:
        if self.state.blueprint is None:
            raise StageValidationError(
                Stage.CHAPTER_GENERATION, "Build a blueprint before generating chapters"
            )
        return self.state.blueprint

    def _require_outline(self, number: int) -> ChapterOutline:
        outline = self._require_blueprint().chapter_outline(number)
        if outline is None:
            raise StageValidationError(
                Stage.CHAPTER_GENERATION, f"Chapter {number} is not in the blueprint"
            )
        return outline

    def chapter_prompt_variables(
        self,
        outline: ChapterOutline,
        previous_synopses: Mapping[int, str] | None = None,
    ) -> dict[str, Any]:
        """Template variables for generating ``outline``'s chapter.

        ``previous_synopses`` pins the chapter context to a snapshot; without it
        the current chapter list is read.
        """
        blueprint = self._require_blueprint()
        number = outline.number
        if previous_synopses is None:
            previous_synopses = {c.number: c.synopsis for c in self.state.chapters}
        if number == 1:
            previous = FIRST_CHAPTER_CONTEXT
        else:
            previous = previous_synopses.get(number - 1) or MISSING_PREVIOUS_CONTEXT

        arcs = "; ".join(
            f"{c.name}: {c.growth_in_chapter(number) or 'no specific development in this chapter'}"
            for c in blueprint.structure.characters
        )
        subplots = "; ".join(
            f"{p.type or 'plot point'} (chapter {p.chapter}): {p.description}"
            for p in blueprint.structure.plot_structure.plot_points
            if p.chapter <= number and p.description
        )
        themes: list[str] = list(blueprint.themes.primary)
        for earlier in blueprint.structure.chapters:
            if earlier.number > number:
                break
            themes.extend(t for t in earlier.themes if t not in themes)

        overview = blueprint.structure.overview
        return {
            "CHAPTER_NUMBER": number,
            "NOVEL_TITLE": overview.title or blueprint.idea.title,
            "CHAPTER_TITLE": outline.title,
            "CHAPTER_SYNOPSIS": outline.synopsis,
            "CHAPTER_KEY_EVENTS": outline.key_events,
            "CHAPTER_CHARACTERS_INVOLVED": [
                blueprint.character_name(ref) for ref in outline.characters_involved
            ],
            "CHAPTER_EMOTIONAL_TONE": outline.emotional_tone,
            "CHAPTER_PACING": outline.pacing,
            "CHAPTER_PLOT_ADVANCEMENT": outline.plot_advancement,
            "CHAPTER_WORD_TARGET": outline.word_target,
            "SOURCE_STYLE_PROFILE_SUMMARY": self._style_summary(),
            "CHAPTER_CULTURAL_ELEMENTS": outline.cultural_elements,
            "NOVEL_GLOBAL_SUMMARY": overview.description or blueprint.idea.synopsis,
            "PREVIOUS_CHAPTER_SUMMARY": previous,
            "CHARACTER_ARC_PROGRESSION_FOR_THIS_CHAPTER": arcs or "no tracked character arcs",
            "ACTIVE_SUBPLOTS_STATUS": subplots or "no active subplots yet",
            "CUMULATIVE_THEMES_DEVELOPMENT": themes or "no themes established yet",
            "OUTPUT_FORMAT_REQUIREMENTS": CHAPTER_OUTPUT_FORMAT,
        }

    async def _memory_block(self, outline: ChapterOutline) -> str:
        blueprint = self._require_blueprint()
        query = " ".join([outline.title, outline.synopsis, *outline.key_events]).strip()
        limit = self.memory.default_limit
        # One extra hit so excluding this chapter's own summary still leaves ``limit``
        retrieved = await self.memory.retrieve_relevant(
            self.project_key, query or f"Chapter {outline.number}", limit + 1
        )
        summaries = [s for s in retrieved if s.chapter_number != outline.number][:limit]
        block = augment_prompt_with_memory("", project_context_for(blueprint), summaries)
        return truncate_text_by_tokens(
            block,
            self.state.model_for_stage(Stage.CHAPTER_GENERATION),
            settings.MEMORY_CONTEXT_MAX_TOKENS,
        )

    def _has_known_author(self, source: SourceAnalysis | None) -> bool:
        if self.author_styles is None or source is None:
            return False
        return bool(source.author.strip()) and source.author != UNKNOWN_AUTHOR

    async def _author_style_block(self) -> str:
        source = self.state.source_analysis
        if not self._has_known_author(source):
            return ""
        return augment_prompt_with_author_style("", await self.author_styles.get(source.author))

    async def generate_chapter(self, number: int) -> GeneratedChapter:
        """Generate one chapter, replacing any existing chapter with that number."""
        async with self.exclusive("generate_chapter"):
            return await self.generate_chapter_unit(number)

    async def regenerate_chapter(self, number: int) -> GeneratedChapter:
        """Generate a chapter again; the existing one is replaced in place."""
        async with self.exclusive("regenerate_chapter"):
            self.state.chapter(number)
            return await self.generate_chapter_unit(number)

    async def generate_chapter_unit(
        self,
        number: int,
        previous_synopses: Mapping[int, str] | None = None,
    ) -> GeneratedChapter:
        """Single-chapter generation without taking the workflow lock.

        Callers must already hold the lock (see ``exclusive``). The chapter
        summary is written to memory before the chapter is added to the state,
        so an abandoned unit never leaves a chapter without its summary.
        """
        self.state.ensure_mutable("generate_chapter")
        blueprint = self._require_blueprint()
        outline = self._require_outline(number)
        variables = self.chapter_prompt_variables(outline, previous_synopses)
        context_block = await self._author_style_block() + await self._memory_block(outline)
        outcome = await self._call(
            "generate_chapter",
            Stage.CHAPTER_GENERATION,
            variables,
            context_block=context_block,
        )

        payload = _payload(outcome)
        content = (
            payload.get("chapterContent")
            or payload.get("generatedContent")
            or payload.get("content")
            or ("" if outcome.is_structured else outcome.result.text)
        )
        if not isinstance(content, str) or not content.strip():
            raise StageValidationError(
                Stage.CHAPTER_GENERATION,
                f"Model {outcome.model_id} returned no content for chapter {number}",
            )
        synopsis = payload.get("synopsis") if isinstance(payload.get("synopsis"), str) else ""
        synopsis = synopsis or outline.synopsis

        quality = _optional_model(ChapterQuality, payload.get("quality"))
        metrics = _optional_model(ChapterMetrics, payload.get("metrics"))
        if quality is None or metrics is None:
            scored_quality, scored_metrics = score_chapter(content, outline, blueprint)
            quality = quality or scored_quality
            metrics = metrics or scored_metrics

        chapter = GeneratedChapter(
            id=f"generated-chapter-{number}",
            number=number,
            title=outline.title or f"Chapter {number}",
            content=content.strip(),
            synopsis=synopsis,
            word_count=count_words(content),
            quality=quality,
            metrics=metrics,
            status=ChapterStatus.DRAFT,
            generated_by=outcome.model_id,
        )
        await self._remember_chapter(chapter, outline)
        self.state.upsert_chapter(chapter)
        logger.info(
            "Chapter generated",
            chapter_number=number,
            word_count=chapter.word_count,
            model_id=outcome.model_id,
            fallback=outcome.used_fallback,
        )
        return chapter

    async def _summarize(self, chapter: GeneratedChapter, outline: ChapterOutline) -> StructuredSummary:
        blueprint = self._require_blueprint()
        fallback = summary_from_outline(outline, chapter.synopsis, blueprint)
        if not settings.SUMMARIZE_CHAPTERS_WITH_MODEL:
            return fallback
        try:
            outcome = await self._call(
                "summarize_chapter",
                Stage.CHAPTER_GENERATION,
                {
                    "CHAPTER_NUMBER": chapter.number,
                    "CHAPTER_TITLE": chapter.title,
                    "CHAPTER_CONTENT": chapter.content,
                    "CHAPTER_CHARACTERS": fallback.characters,
                    "CHAPTER_KEY_EVENTS": fallback.plot_points,
                    "CHAPTER_EMOTIONAL_TONE": outline.emotional_tone,
                    "CHAPTER_THEMES": fallback.main_themes,
                    "CHAPTER_SYNOPSIS": chapter.synopsis,
                },
            )
        except AllModelsFailedError as e:
            logger.warning(
                "Chapter summary generation failed; using the chapter outline",
                chapter_number=chapter.number,
                error=str(e),
            )
            return fallback
        summary = _optional_model(StructuredSummary, _payload(outcome))
        if summary is None or summary.is_empty():
            logger.warning(
                "Chapter summary response unusable; using the chapter outline",
                chapter_number=chapter.number,
            )
            return fallback
        if not summary.synopsis:
            summary.synopsis = chapter.synopsis
        return summary

    async def _remember_chapter(self, chapter: GeneratedChapter, outline: ChapterOutline) -> None:
        summary = await self._summarize(chapter, outline)
        await self.memory.record_chapter_summary(
            self.project_key, chapter.number, chapter.content, summary
        )

    # --- Stage 5: interactive editing ---

    def open_chapter_for_editing(self, number: int) -> GeneratedChapter:
        return self.state.open_chapter(number)

    def update_chapter(self, number: int, **updates: Any) -> GeneratedChapter:
        self._ensure_idle("update_chapter")
        if "content" in updates and "word_count" not in updates and "wordCount" not in updates:
            updates["word_count"] = count_words(updates["content"])
        return self.state.update_chapter(number, updates)

    def edit_chapter_content(self, number: int, text: str) -> GeneratedChapter:
        """Replace a chapter's text and mark it edited."""
        return self.update_chapter(number, content=text, status=ChapterStatus.EDITED)

    def set_chapter_status(self, number: int, status: ChapterStatus | str) -> GeneratedChapter:
        self._ensure_idle("set_chapter_status")
        return self.state.set_chapter_status(number, ChapterStatus(status))

    def add_feedback(
        self, number: int, entries: list[FeedbackEntry | Mapping[str, Any]]
    ) -> GeneratedChapter:
        self._ensure_idle("add_feedback")
        validated = [
            e if isinstance(e, FeedbackEntry) else FeedbackEntry.model_validate(e)
            for e in entries
        ]
        return self.state.add_feedback(number, validated)

    async def _editor_tool(
        self,
        tool: str,
        number: int,
        variables: Mapping[str, Any],
    ) -> tuple[EditorToolResult, dict[str, Any]]:
        """Run an editing task; model failures become an unsuccessful result."""
        try:
            outcome = await self._call(tool, Stage.INTERACTIVE_EDITING, variables)
        except (AllModelsFailedError, ConfigurationError) as e:
            logger.warning("Editing tool failed", tool=tool, chapter_number=number, error=str(e))
            return EditorToolResult(tool=tool, chapter_number=number, success=False, message=str(e)), {}
        payload = _payload(outcome)
        result = EditorToolResult(
            tool=tool,
            chapter_number=number,
            success=True,
            data=payload,
            model_id=outcome.model_id,
        )
        if not payload:
            result.text = outcome.result.text
            result.message = "Model response was not structured"
        return result, payload

    def _append_feedback(self, result: EditorToolResult, entries: list[FeedbackEntry]) -> None:
        if entries:
            self.state.add_feedback(result.chapter_number, entries)
        result.feedback = entries

    async def analyze_chapter(self, number: int) -> EditorToolResult:
        """Score a chapter and record the editor's feedback."""
        async with self.exclusive("analyze_chapter"):
            chapter = self.state.chapter(number)
            result, payload = await self._editor_tool(
                "analyze_text",
                number,
                {
                    "CHAPTER_NUMBER": number,
                    "CHAPTER_TITLE": chapter.title,
                    "STYLE_PROFILE_SUMMARY": self._style_summary(),
                    "CHAPTER_CONTENT": chapter.content,
                },
            )
            if not result.success:
                return result
            quality = _optional_model(ChapterQuality, payload.get("quality"))
            metrics = _optional_model(ChapterMetrics, payload.get("metrics"))
            if quality is None or metrics is None:
                outline = self.state.blueprint.chapter_outline(number) if self.state.blueprint else None
                scored_quality, scored_metrics = score_chapter(chapter.content, outline, self.state.blueprint)
                quality = quality or scored_quality
                metrics = metrics or scored_metrics
            self.state.update_chapter(number, {"quality": quality, "metrics": metrics})
            self._append_feedback(
                result, _validated_list(FeedbackEntry, payload.get("feedback"), "feedback")
            )
            return result

    async def enhance_text(
        self, number: int, instructions: str = "", selection: str | None = None
    ) -> EditorToolResult:
        """Suggest an improved version of a chapter or a selection from it.

        The suggestion is returned, not applied; use ``edit_chapter_content``
        to accept it.
        """
        async with self.exclusive("enhance_text"):
            chapter = self.state.chapter(number)
            result, payload = await self._editor_tool(
                "enhance_text",
                number,
                {
                    "INSTRUCTIONS": instructions or "Improve clarity, rhythm and imagery.",
                    "STYLE_PROFILE_SUMMARY": self._style_summary(),
                    "TEXT": selection or chapter.content,
                },
            )
            if result.success and payload:
                result.text = payload.get("enhancedText") or selection or chapter.content
                result.changes = list(payload.get("changes") or [])
                self._append_feedback(
                    result,
                    [
                        FeedbackEntry(type="improvement", category="enhancement", description=str(c), priority="low")
                        for c in result.changes
                    ],
                )
            return result

    async def enhance_dialogue(self, number: int, selection: str | None = None) -> EditorToolResult:
        async with self.exclusive("enhance_dialogue"):
            chapter = self.state.chapter(number)
            characters = self.state.blueprint.structure.characters if self.state.blueprint else []
            voices = "; ".join(
                f"{c.name}: {c.voice or 'unspecified voice'}"
                + (f" ({c.dialogue_style})" if c.dialogue_style else "")
                for c in characters
            )
            result, payload = await self._editor_tool(
                "enhance_dialogue",
                number,
                {
                    "CHARACTER_VOICES": voices or "no character voices defined",
                    "TEXT": selection or chapter.content,
                },
            )
            if result.success and payload:
                result.text = payload.get("enhancedText") or selection or chapter.content
                result.changes = list(payload.get("changes") or [])
                self._append_feedback(
                    result,
                    [
                        FeedbackEntry(type="suggestion", category="dialogue", description=str(c), priority="low")
                        for c in result.changes
                    ],
                )
            return result

    async def grammar_style_check(self, number: int, selection: str | None = None) -> EditorToolResult:
        async with self.exclusive("grammar_style_check"):
            chapter = self.state.chapter(number)
            editor = self.state.editor_settings
            if not (editor.grammar_check or editor.spell_check or editor.style_check):
                return EditorToolResult(
                    tool="grammar_style_check",
                    chapter_number=number,
                    success=True,
                    message="Grammar, spelling and style checks are disabled",
                )
            result, payload = await self._editor_tool(
                "grammar_style_check",
                number,
                {
                    "STYLE_PROFILE_SUMMARY": self._style_summary(),
                    "TEXT": selection or chapter.content,
                },
            )
            if result.success and payload:
                result.text = payload.get("correctedText") or selection or chapter.content
                result.changes = [c for c in payload.get("corrections") or [] if isinstance(c, dict)]
                entries = []
                for correction in result.changes:
                    original = correction.get("original", "")
                    suggestion = correction.get("suggestion", "")
                    reason = correction.get("reason", "")
                    entries.append(
                        FeedbackEntry(
                            type="error",
                            category="grammar",
                            description=f"'{original}' -> '{suggestion}'" + (f": {reason}" if reason else ""),
                            priority="medium",
                        )
                    )
                self._append_feedback(result, entries)
            return result

    async def check_consistency(self, number: int) -> EditorToolResult:
        """Check a chapter against the rest of the manuscript."""
        async with self.exclusive("check_consistency"):
            chapter = self.state.chapter(number)
            if not self.state.editor_settings.consistency_check:
                return EditorToolResult(
                    tool="check_consistency",
                    chapter_number=number,
                    success=True,
                    message="Consistency checks are disabled",
                )
            characters = self.state.blueprint.structure.characters if self.state.blueprint else []
            roster = [f"{c.name} ({c.role})" if c.role else c.name for c in characters]
            others = "\n".join(
                f"Chapter {c.number} ({c.title}): {c.synopsis}"
                for c in self.state.chapters
                if c.number != number
            )
            result, payload = await self._editor_tool(
                "check_consistency",
                number,
                {
                    "CHAPTER_NUMBER": number,
                    "CHAPTER_TITLE": chapter.title,
                    "CHARACTER_ROSTER": roster or "no characters defined",
                    "OTHER_CHAPTERS_SUMMARY": truncate_text_by_tokens(
                        others,
                        self.state.model_for_stage(Stage.INTERACTIVE_EDITING),
                        settings.MEMORY_CONTEXT_MAX_TOKENS,
                    )
                    or "no other chapters yet",
                    "CHAPTER_CONTENT": chapter.content,
                },
            )
            if result.success and payload:
                issues = [i for i in payload.get("issues") or [] if isinstance(i, dict)]
                result.changes = issues
                self._append_feedback(
                    result,
                    _validated_list(
                        FeedbackEntry,
                        [
                            {
                                "type": "error",
                                "category": i.get("category") or "consistency",
                                "description": i.get("description") or "",
                                "priority": i.get("priority") or "medium",
                            }
                            for i in issues
                        ],
                        "consistency issue",
                    ),
                )
            return result

    # --- Stage 6: final review ---

    def build_final_project(
        self,
        export_settings: ExportSettings | Mapping[str, Any] | None = None,
        *,
        name: str | None = None,
        description: str | None = None,
    ) -> FinalProject:
        """Aggregate statistics and the quality report for the manuscript."""
        self._ensure_idle("build_final_project")
        if export_settings is None:
            export_settings = ExportSettings()
        elif not isinstance(export_settings, ExportSettings):
            export_settings = ExportSettings.model_validate(export_settings)
        chapters = self.state.chapters
        if not chapters:
            raise StageValidationError(
                Stage.FINAL_REVIEW, "No chapters exist yet; generate chapters first"
            )
        blueprint = self.state.blueprint
        planned = len(blueprint.structure.chapters) if blueprint else len(chapters)
        title = name or (
            (blueprint.structure.overview.title or blueprint.idea.title) if blueprint else ""
        )
        final_project = FinalProject(
            metadata=FinalProjectMetadata(
                id=self.project_key,
                name=title or self.state.project_name,
                description=description
                or (blueprint.idea.synopsis if blueprint else self.state.project_description),
                created_at=self.state.created_at,
                statistics=project_statistics(chapters, planned),
            ),
            export_settings=export_settings,
            quality_report=build_quality_report(chapters),
        )
        self.state.set_final_project(final_project)
        logger.info(
            "Final project built",
            chapters=len(chapters),
            overall_quality=final_project.quality_report.overall_quality,
        )
        return final_project

    def export_manuscript(self, fmt: ExportFormat | str | None = None) -> str:
        """Render the manuscript as markdown or plain text."""
        final_project = self.state.final_project
        if final_project is None:
            final_project = self.build_final_project()
        export_format = ExportFormat(fmt) if fmt else final_project.export_settings.format
        if export_format not in (ExportFormat.TXT, ExportFormat.MARKDOWN):
            raise ConfigurationError(
                f"Export format '{export_format.value}' is not supported; use 'txt' or 'md'"
            )
        blueprint = self.state.blueprint
        export_settings = final_project.export_settings
        return render_prompt(
            f"manuscript.{export_format.value}.j2",
            {
                "title": final_project.metadata.name,
                "genre": (
                    (blueprint.structure.overview.genre or blueprint.idea.genre) if blueprint else ""
                ),
                "description": final_project.metadata.description,
                "include_metadata": export_settings.include_metadata,
                "include_analysis": export_settings.include_analysis,
                "statistics": final_project.metadata.statistics,
                "chapters": self.state.chapters,
                "report": final_project.quality_report,
            },
        )

    async def save_manuscript(
        self, fmt: ExportFormat | str | None = None, directory: str = EXPORTS_DIR
    ) -> Path:
        """Render the manuscript and write it under ``directory``."""
        text = self.export_manuscript(fmt)
        export_format = ExportFormat(fmt) if fmt else self.state.final_project.export_settings.format
        path = Path(directory) / f"{self.project_key}.{export_format.value}"

        def _write() -> None:
            os.makedirs(directory, exist_ok=True)
            path.write_text(text, encoding="utf-8")

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, _write)
        logger.info("Manuscript exported", path=str(path), format=export_format.value)
        return path

    # --- Settings and lifecycle ---

    def select_model(self, stage: Stage | int, model_id: str) -> None:
        self._ensure_idle("select_model")
        self.gateway.descriptor(model_id)
        self.state.select_model(stage, model_id)

    def set_credential(self, model_id: str, credential: str | None) -> None:
        self.gateway.descriptor(model_id)
        self.state.set_credential(model_id, credential)

    def set_prompt_template(self, task_id: str, template: str | None) -> None:
        if task_id not in TASK_IDS:
            raise ConfigurationError(f"Unknown prompt task '{task_id}'")
        self.state.set_prompt_template(task_id, template)

    def set_editor_settings(self, **updates: Any) -> EditorSettings:
        return self.state.set_editor_settings(**updates)

    def reset(self) -> WorkflowState:
        """Start a new project, keeping credentials and prompt overrides."""
        self._ensure_idle("reset")
        self.state = self.state.fresh_copy()
        self.draft_project_id = new_project_id()
        logger.info("Workflow reset")
        return self.state

    def load_state(self, state: WorkflowState) -> None:
        self._ensure_idle("load_state")
        credentials = self.state.credentials
        self.state = state
        for model_id, key in credentials.items():
            self.state.credentials.setdefault(model_id, key)
        if state.project_id:
            self.draft_project_id = state.project_id
