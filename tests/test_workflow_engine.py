import json

import pytest

from conftest import (
    ScriptedGateway,
    failing_responder,
    make_engine,
    make_state_with_blueprint,
    story_responder,
)
from core.errors import (
    AllModelsFailedError,
    ChapterNotFoundError,
    ConfigurationError,
    StageValidationError,
    TransitionError,
    UnconfiguredModelError,
    WorkflowBusyError,
)
from core.embeddings import HashingEmbeddingProvider
from core.model_gateway import ModelGateway
from data_access.summary_repository import InMemorySummaryRepository
from memory import MemoryStore
from models.workflow_models import (
    ChapterStatus,
    GeneratedChapter,
    GenerationMode,
    Stage,
)
from orchestration.job_coordinator import JobCoordinator
from orchestration.workflow_engine import (
    FIRST_CHAPTER_CONTEXT,
    MISSING_PREVIOUS_CONTEXT,
    WorkflowEngine,
)
from orchestration.workflow_state import WorkflowState

SOURCE_TEXT = "The tide came in slowly over the stones. " * 15


def editor_responder(prompt: str) -> str:
    """Replies to the interactive editing tasks."""
    if prompt.startswith("Review chapter"):
        return json.dumps(
            {
                "quality": {
                    "styleConsistency": 91,
                    "characterConsistency": 88,
                    "plotConsistency": 90,
                    "culturalAuthenticity": 86,
                    "overall": 89,
                },
                "metrics": {"readability": 80, "engagement": 75, "coherence": 85, "innovation": 70},
                "feedback": [
                    {"type": "suggestion", "category": "pacing", "description": "Slow the ending.", "priority": "high"}
                ],
            }
        )
    if prompt.startswith("Improve the following passage"):
        return json.dumps({"enhancedText": "A brighter harbour.", "changes": ["sharper imagery"]})
    if prompt.startswith("Rewrite the dialogue"):
        return json.dumps({"enhancedText": '"Come," Mira said.', "changes": ["distinct voice for Mira"]})
    if prompt.startswith("Proofread"):
        return json.dumps(
            {
                "correctedText": "Mira walks the harbour.",
                "corrections": [{"original": "teh", "suggestion": "the", "reason": "typo"}],
            }
        )
    if prompt.startswith("Check chapter"):
        return json.dumps(
            {
                "consistent": False,
                "issues": [
                    {"category": "character", "description": "Mira's eyes change colour", "priority": "high"}
                ],
            }
        )
    return story_responder(prompt)


def _chapter(number: int, content: str = "Mira walks the harbour at dawn.") -> GeneratedChapter:
    return GeneratedChapter(
        id=f"generated-chapter-{number}",
        number=number,
        title=f"Part {number}",
        content=content,
        synopsis=f"Existing synopsis {number}",
        word_count=len(content.split()),
    )


def _editing_engine(responder=editor_responder):
    gateway = ScriptedGateway({"stub": responder})
    state = make_state_with_blueprint(2)
    state.upsert_chapter(_chapter(1))
    state.upsert_chapter(_chapter(2, "Tomas waits by the lighthouse."))
    return gateway, make_engine(gateway, state)


@pytest.mark.asyncio
async def test_full_workflow_offline_with_default_model(tmp_path):
    engine = make_engine(ModelGateway(default_credentials={}), WorkflowState(project_name="Tides"))

    analysis = await engine.analyze_source("Harbour Notes", SOURCE_TEXT)
    assert analysis.title == "Harbour Notes"
    assert analysis.word_count == 120
    assert analysis.content == SOURCE_TEXT
    assert engine.advance() is Stage.IDEA_LAB

    ideas = await engine.generate_ideas(direction="coastal")
    assert [i.id for i in ideas] == ["idea-1", "idea-2"]
    engine.select_idea("idea-1")
    assert engine.advance() is Stage.BLUEPRINT_BUILDER

    blueprint = await engine.build_blueprint()
    assert blueprint.chapter_numbers() == [1, 2, 3]
    assert [c.id for c in blueprint.structure.characters] == ["char-1", "char-2"]
    assert blueprint.idea.id == "idea-1"
    assert engine.advance() is Stage.CHAPTER_GENERATION

    result = await JobCoordinator(engine, sequential_delay=0).run(GenerationMode.SEQUENTIAL)
    assert result.succeeded
    assert result.completed_numbers == [1, 2, 3]
    assert engine.state.progress.as_tuple() == (3, 3, False)
    first = engine.state.chapter(1)
    assert first.content.startswith("Chapter 1: Beginnings")
    assert first.generated_by == "default-model"
    assert first.word_count > 0
    assert len(await engine.memory.repository.list_for_project("project-test")) == 3
    assert engine.advance() is Stage.INTERACTIVE_EDITING

    review = await engine.analyze_chapter(1)
    assert review.success
    assert engine.state.chapter(1).quality.overall == 79
    assert len(engine.state.chapter(1).feedback) == 1

    final_project = engine.build_final_project({"format": "md"})
    assert final_project.metadata.statistics.chapter_count == 3
    assert engine.advance() is Stage.FINAL_REVIEW

    path = await engine.save_manuscript(directory=str(tmp_path))
    assert path.name == "project-test.md"
    assert "## Chapter 3: Tides" in path.read_text(encoding="utf-8")

    assert engine.gateway.accountant.get_action_total("generate_chapter") > 0


@pytest.mark.asyncio
async def test_chapter_prompts_carry_previous_synopsis(story_engine, story_gateway):
    for number in (1, 2, 3):
        await story_engine.generate_chapter(number)

    prompts = story_gateway.chapter_prompts()
    assert FIRST_CHAPTER_CONTEXT in prompts[1]
    assert "Previous chapter: Generated synopsis for chapter 1" in prompts[2]
    assert "Previous chapter: Generated synopsis for chapter 2" in prompts[3]
    assert "Chapter 1 Summary:" in prompts[2]
    assert [c.number for c in story_engine.state.chapters] == [1, 2, 3]


@pytest.mark.asyncio
async def test_missing_previous_chapter_is_stated(story_engine, story_gateway):
    await story_engine.generate_chapter(3)
    assert MISSING_PREVIOUS_CONTEXT in story_gateway.chapter_prompts()[3]


@pytest.mark.asyncio
async def test_generated_chapter_is_scored_and_remembered(story_engine):
    chapter = await story_engine.generate_chapter(1)
    assert chapter.synopsis == "Generated synopsis for chapter 1"
    assert chapter.status is ChapterStatus.DRAFT
    assert chapter.word_count == 140
    assert chapter.quality.character_consistency == 100
    assert 0 < chapter.quality.overall <= 100

    stored = await story_engine.memory.repository.get("project-test", 1)
    assert stored.summary.synopsis == "Summary of chapter 1"
    assert stored.summary.characters == ["Mira"]


@pytest.mark.asyncio
async def test_summary_failure_falls_back_to_outline():
    def responder(prompt: str) -> str:
        if prompt.startswith("Summarize chapter"):
            raise ValueError("summary service down")
        return story_responder(prompt)

    gateway = ScriptedGateway({"stub": responder})
    engine = make_engine(gateway, make_state_with_blueprint(1))
    await engine.generate_chapter(1)

    stored = await engine.memory.repository.get("project-test", 1)
    assert stored.summary.plot_points == ["harbour event 1"]
    assert stored.summary.characters == ["Mira"]
    assert stored.summary.synopsis == "Generated synopsis for chapter 1"


@pytest.mark.asyncio
async def test_regenerate_replaces_chapter_in_place(story_engine):
    with pytest.raises(ChapterNotFoundError):
        await story_engine.regenerate_chapter(2)
    await story_engine.generate_chapter(1)
    story_engine.edit_chapter_content(1, "Hand edited.")
    again = await story_engine.regenerate_chapter(1)
    assert len(story_engine.state.chapters) == 1
    assert story_engine.state.chapter(1).content == again.content
    assert again.status is ChapterStatus.DRAFT


@pytest.mark.asyncio
async def test_chapter_outside_blueprint_is_rejected(story_engine, story_gateway):
    with pytest.raises(StageValidationError):
        await story_engine.generate_chapter(9)
    assert story_gateway.prompts == []


@pytest.mark.asyncio
async def test_model_failure_propagates_and_leaves_state():
    gateway = ScriptedGateway({"stub": failing_responder})
    engine = make_engine(gateway, make_state_with_blueprint(1))

    with pytest.raises(AllModelsFailedError):
        await engine.generate_chapter(1)
    assert engine.state.chapters == []
    assert await engine.memory.repository.list_for_project("project-test") == []


@pytest.mark.asyncio
async def test_short_source_rejected_before_any_call(story_gateway):
    engine = make_engine(story_gateway, WorkflowState())
    with pytest.raises(StageValidationError):
        await engine.analyze_source("Tiny", "Too short to analyse.")
    assert story_gateway.prompts == []
    assert engine.state.source_analysis is None


@pytest.mark.asyncio
async def test_fresh_project_cannot_analyse_source(story_gateway):
    engine = make_engine(story_gateway, WorkflowState())
    engine.start_fresh()
    with pytest.raises(StageValidationError):
        await engine.analyze_source("Ref", SOURCE_TEXT)


@pytest.mark.asyncio
async def test_blueprint_requires_selected_idea(story_gateway):
    engine = make_engine(story_gateway, WorkflowState())
    with pytest.raises(StageValidationError):
        await engine.build_blueprint()
    assert story_gateway.prompts == []


@pytest.mark.asyncio
async def test_ideas_without_usable_entries_raise(story_gateway):
    engine = make_engine(story_gateway, WorkflowState())
    engine.state.select_model(Stage.IDEA_LAB, "stub")
    with pytest.raises(StageValidationError):
        await engine.generate_ideas()
    assert engine.state.generated_ideas == []


@pytest.mark.asyncio
async def test_second_operation_while_busy_is_rejected(story_engine, story_gateway):
    async with story_engine.exclusive("hold"):
        assert story_engine.is_busy
        with pytest.raises(WorkflowBusyError) as excinfo:
            await story_engine.generate_chapter(1)
        assert excinfo.value.running == "hold"
        with pytest.raises(WorkflowBusyError):
            story_engine.advance()
        with pytest.raises(WorkflowBusyError):
            story_engine.select_model(Stage.IDEA_LAB, "stub")
    assert not story_engine.is_busy
    assert story_gateway.prompts == []


@pytest.mark.asyncio
async def test_analyze_chapter_applies_scores_and_feedback():
    _, engine = _editing_engine()
    result = await engine.analyze_chapter(1)
    assert result.success
    assert result.model_id == "stub"
    chapter = engine.state.chapter(1)
    assert chapter.quality.overall == 89
    assert chapter.metrics.coherence == 85
    assert [f.category for f in chapter.feedback] == ["pacing"]


@pytest.mark.asyncio
async def test_enhancements_are_suggested_not_applied():
    _, engine = _editing_engine()
    text_result = await engine.enhance_text(1, "brighter")
    assert text_result.text == "A brighter harbour."
    assert text_result.changes == ["sharper imagery"]
    assert engine.state.chapter(1).content == "Mira walks the harbour at dawn."

    dialogue = await engine.enhance_dialogue(1)
    assert dialogue.text == '"Come," Mira said.'
    categories = [f.category for f in engine.state.chapter(1).feedback]
    assert categories == ["enhancement", "dialogue"]

    engine.edit_chapter_content(1, text_result.text)
    edited = engine.state.chapter(1)
    assert edited.content == "A brighter harbour."
    assert edited.status is ChapterStatus.EDITED
    assert edited.word_count == 3


@pytest.mark.asyncio
async def test_grammar_and_consistency_checks_record_feedback():
    gateway, engine = _editing_engine()
    grammar = await engine.grammar_style_check(1)
    assert grammar.text == "Mira walks the harbour."
    assert grammar.feedback[0].description == "'teh' -> 'the': typo"

    consistency = await engine.check_consistency(1)
    assert consistency.feedback[0].priority == "high"
    assert "Chapter 2 (Part 2): Existing synopsis 2" in gateway.prompts[-1]
    assert len(engine.state.chapter(1).feedback) == 2


@pytest.mark.asyncio
async def test_disabled_checks_skip_the_model():
    gateway, engine = _editing_engine()
    engine.set_editor_settings(
        grammar_check=False, spell_check=False, style_check=False, consistency_check=False
    )
    assert (await engine.grammar_style_check(1)).success
    assert (await engine.check_consistency(1)).success
    assert gateway.prompts == []


@pytest.mark.asyncio
async def test_editing_tool_failure_is_reported_not_raised():
    _, engine = _editing_engine(failing_responder)
    before = engine.state.chapter(1).model_copy(deep=True)
    result = await engine.analyze_chapter(1)
    assert result.success is False
    assert "stub" in result.message
    assert engine.state.chapter(1) == before

    enhanced = await engine.enhance_text(2)
    assert enhanced.success is False


@pytest.mark.asyncio
async def test_editing_unknown_chapter_raises():
    _, engine = _editing_engine()
    with pytest.raises(ChapterNotFoundError):
        await engine.analyze_chapter(7)


def test_chapter_status_and_feedback_mutators():
    _, engine = _editing_engine()
    assert engine.open_chapter_for_editing(2).number == 2
    assert engine.state.current_chapter_number == 2
    assert engine.set_chapter_status(2, "reviewed").status is ChapterStatus.REVIEWED
    chapter = engine.add_feedback(
        2, [{"type": "suggestion", "category": "tone", "description": "Warmer", "priority": "low"}]
    )
    assert chapter.feedback[0].category == "tone"


def test_export_markdown_and_text():
    _, engine = _editing_engine()
    engine.set_chapter_status(1, ChapterStatus.FINAL)
    final_project = engine.build_final_project(
        {"format": "md", "includeAnalysis": True}, name="Tides"
    )
    assert final_project.metadata.name == "Tides"
    assert final_project.metadata.statistics.chapter_count == 2
    assert final_project.metadata.statistics.completion_rate == 100

    markdown = engine.export_manuscript()
    assert markdown.startswith("# Tides")
    assert "## Chapter 2: Part 2" in markdown
    assert "Tomas waits by the lighthouse." in markdown
    assert "## Quality Report" in markdown

    text = engine.export_manuscript("txt")
    assert text.startswith("TIDES")
    assert "CHAPTER 1: Part 1" in text


def test_export_unsupported_formats_raise():
    _, engine = _editing_engine()
    engine.build_final_project()
    with pytest.raises(ConfigurationError):
        engine.export_manuscript("docx")
    with pytest.raises(ConfigurationError):
        engine.export_manuscript("pdf")


def test_final_project_needs_chapters(story_engine):
    with pytest.raises(StageValidationError):
        story_engine.build_final_project()


@pytest.mark.asyncio
async def test_save_manuscript_writes_file(tmp_path):
    _, engine = _editing_engine()
    path = await engine.save_manuscript("txt", str(tmp_path / "out"))
    assert path.parent == tmp_path / "out"
    assert path.suffix == ".txt"
    assert "CHAPTER 2: Part 2" in path.read_text(encoding="utf-8")


def test_settings_validation(story_engine):
    with pytest.raises(UnconfiguredModelError):
        story_engine.select_model(Stage.IDEA_LAB, "no-such-model")
    with pytest.raises(UnconfiguredModelError):
        story_engine.set_credential("no-such-model", "key")
    with pytest.raises(ConfigurationError):
        story_engine.set_prompt_template("unknown_task", "text")

    story_engine.set_prompt_template("generate_chapter", "Custom [CHAPTER_NUMBER]")
    assert story_engine.state.prompt_templates["generate_chapter"] == "Custom [CHAPTER_NUMBER]"


@pytest.mark.asyncio
async def test_prompt_override_is_used(story_engine, story_gateway):
    story_engine.set_prompt_template(
        "generate_chapter", "You are writing chapter [CHAPTER_NUMBER] briefly."
    )
    await story_engine.generate_chapter(1)
    assert story_gateway.chapter_prompts()[1].startswith("You are writing chapter 1 briefly.")


def test_reset_keeps_credentials_and_new_draft_id(story_engine):
    story_engine.set_credential("stub", "secret")
    old_draft = story_engine.draft_project_id
    state = story_engine.reset()
    assert state.blueprint is None
    assert state.credentials == {"stub": "secret"}
    assert story_engine.draft_project_id != old_draft


def test_load_state_adopts_project_id(story_engine):
    story_engine.set_credential("stub", "secret")
    loaded = make_state_with_blueprint(1)
    loaded.project_id = "saved-1"
    story_engine.load_state(loaded)
    assert story_engine.project_key == "saved-1"
    assert story_engine.state.credentials == {"stub": "secret"}


def test_final_review_blocks_generation_operations(story_engine):
    state = story_engine.state
    state.upsert_chapter(_chapter(1))
    story_engine.build_final_project()
    state.current_stage = Stage.FINAL_REVIEW
    with pytest.raises(TransitionError):
        story_engine.edit_chapter_content(1, "late")


@pytest.mark.asyncio
async def test_memory_context_precedes_example_response(story_engine, story_gateway):
    await story_engine.generate_chapter(1)
    await story_engine.generate_chapter(2)

    prompt = story_gateway.chapter_prompts()[2]
    assert "[RETRIEVED_CONTEXT]" not in prompt
    assert prompt.index("Project Context:") < prompt.index("EXAMPLE RESPONSE:")
    assert prompt.index("Chapter 1 Summary:") < prompt.index("EXAMPLE RESPONSE:")


@pytest.mark.asyncio
async def test_custom_template_without_context_slot_gets_context_appended(
    story_engine, story_gateway
):
    await story_engine.generate_chapter(1)
    story_engine.set_prompt_template(
        "generate_chapter", "You are writing chapter [CHAPTER_NUMBER] briefly."
    )
    await story_engine.generate_chapter(2)

    prompt = story_gateway.chapter_prompts()[2]
    assert prompt.startswith("You are writing chapter 2 briefly.\n\nProject Context:")
    assert "Chapter 1 Summary:" in prompt


@pytest.mark.asyncio
async def test_regenerated_chapter_keeps_full_memory_context():
    gateway = ScriptedGateway({"stub": story_responder})
    engine = make_engine(gateway, make_state_with_blueprint(4))
    engine.memory.default_limit = 3
    for number in (1, 2, 3, 4):
        await engine.generate_chapter(number)

    await engine.regenerate_chapter(4)

    prompt = gateway.chapter_prompts()[4]
    for number in (1, 2, 3):
        assert f"Chapter {number} Summary:" in prompt
    assert "Chapter 4 Summary:" not in prompt


class _NonBlankEmbedder(HashingEmbeddingProvider):
    """Rejects blank text the way remote embedding services do."""

    def __init__(self):
        super().__init__(dimension=64)
        self.texts: list[str] = []

    async def embed(self, text: str):
        if not text.strip():
            raise ValueError("Cannot embed empty text")
        self.texts.append(text)
        return await super().embed(text)


@pytest.mark.asyncio
async def test_bare_outline_uses_chapter_number_as_memory_query():
    gateway = ScriptedGateway({"stub": story_responder})
    embedder = _NonBlankEmbedder()
    engine = WorkflowEngine(
        gateway,
        MemoryStore(InMemorySummaryRepository(), embedder),
        make_state_with_blueprint(1),
        draft_project_id="project-test",
    )
    await engine.generate_chapter(1)
    engine.add_blueprint_chapter({"number": 2})

    chapter = await engine.generate_chapter(2)

    assert chapter.number == 2
    assert "Chapter 2" in embedder.texts
    assert "Chapter 1 Summary:" in gateway.chapter_prompts()[2]
