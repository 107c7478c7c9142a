# tests/conftest.py
import json
import os
import re
import sys
from collections.abc import Callable

import pytest

# Ensure repository root is on PYTHONPATH for tests
repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if repo_root not in sys.path:
    sys.path.insert(0, repo_root)

# Tests never use real provider keys
for _key in ("OPENAI_API_KEY", "ANTHROPIC_API_KEY", "GEMINI_API_KEY", "MODEL_CATALOG_FILE"):
    os.environ.pop(_key, None)
os.environ.setdefault("ENABLE_RICH_PROGRESS", "false")

from core.adapters import ModelAdapter  # noqa: E402
from core.embeddings import HashingEmbeddingProvider  # noqa: E402
from core.errors import ProviderError  # noqa: E402
from core.model_gateway import ModelGateway  # noqa: E402
from data_access.author_style_repository import InMemoryAuthorStyleRepository  # noqa: E402
from data_access.summary_repository import InMemorySummaryRepository  # noqa: E402
from memory import AuthorStyleLibrary, MemoryStore  # noqa: E402
from models.gateway_models import (  # noqa: E402
    AdapterOutput,
    GenerationOptions,
    ModelDescriptor,
    ProviderFamily,
)
from models.workflow_models import (  # noqa: E402
    BlueprintStructure,
    ChapterOutline,
    CharacterDevelopment,
    CharacterProfile,
    GeneratedIdea,
    NovelBlueprint,
)
from orchestration.workflow_engine import WorkflowEngine  # noqa: E402
from orchestration.workflow_state import WorkflowState  # noqa: E402

_CHAPTER_RE = re.compile(r"You are writing chapter (\d+)")
_SUMMARY_RE = re.compile(r"Summarize chapter (\d+)")

USAGE = {"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2}


@pytest.fixture(autouse=True)
def _offline_tokenizer(monkeypatch):
    """Token counting falls back to the character heuristic (no downloads)."""
    import utils.tokens

    monkeypatch.setattr(utils.tokens, "_get_tokenizer", lambda *_a, **_k: None)


class ScriptedAdapter(ModelAdapter):
    """Adapter whose reply is computed by ``responder(prompt)``; records prompts."""

    def __init__(
        self,
        descriptor: ModelDescriptor,
        credential: str | None,
        responder: Callable[[str], str],
    ):
        super().__init__(descriptor, credential)
        self.responder = responder
        self.prompts: list[str] = []

    @property
    def credential(self) -> str | None:
        return self._credential

    async def generate(self, prompt: str, options: GenerationOptions) -> AdapterOutput:
        self.prompts.append(prompt)
        return AdapterOutput(text=self.responder(prompt), usage=USAGE)


def failing_responder(prompt: str) -> str:
    raise ProviderError("stub", "provider unavailable")


def story_responder(prompt: str) -> str:
    """Replies like a provider for chapter and summary prompts."""
    summary = _SUMMARY_RE.search(prompt)
    if summary:
        number = summary.group(1)
        return json.dumps(
            {
                "characters": ["Mira"],
                "plotPoints": [f"event of chapter {number}"],
                "stylisticTraits": ["quiet"],
                "spatialTemporalDetails": ["harbour"],
                "mainThemes": ["memory"],
                "synopsis": f"Summary of chapter {number}",
            }
        )
    chapter = _CHAPTER_RE.search(prompt)
    if chapter:
        number = chapter.group(1)
        return json.dumps(
            {
                "chapterContent": f"Mira walks the harbour in chapter {number}. " * 20,
                "synopsis": f"Generated synopsis for chapter {number}",
            }
        )
    return json.dumps({"text": "ok"})


def descriptor(model_id: str, family: ProviderFamily = ProviderFamily.LOCAL) -> ModelDescriptor:
    return ModelDescriptor(id=model_id, name=model_id, family=family)


class ScriptedGateway(ModelGateway):
    """``ModelGateway`` whose adapters are ``ScriptedAdapter`` instances."""

    def __init__(
        self,
        responders: dict[str, Callable[[str], str]],
        fallback_chains: dict[str, list[str]] | None = None,
        families: dict[str, ProviderFamily] | None = None,
    ):
        families = families or {}
        self.adapters: list[ScriptedAdapter] = []

        def factory(desc: ModelDescriptor, credential: str | None) -> ScriptedAdapter:
            adapter = ScriptedAdapter(desc, credential, responders[desc.id])
            self.adapters.append(adapter)
            return adapter

        super().__init__(
            {m: descriptor(m, families.get(m, ProviderFamily.LOCAL)) for m in responders},
            fallback_chains or {},
            adapter_factory=factory,
            default_credentials={},
        )

    @property
    def prompts(self) -> list[str]:
        return [p for adapter in self.adapters for p in adapter.prompts]

    def chapter_prompts(self) -> dict[int, str]:
        found: dict[int, str] = {}
        for prompt in self.prompts:
            match = _CHAPTER_RE.search(prompt)
            if match:
                found[int(match.group(1))] = prompt
        return found


def make_blueprint(chapters: int = 3) -> NovelBlueprint:
    idea = GeneratedIdea(
        id="idea-1",
        title="The Cartographer's Daughter",
        genre="literary fiction",
        synopsis="A daughter finishes her father's map.",
        selected=True,
    )
    return NovelBlueprint(
        idea=idea,
        structure=BlueprintStructure(
            characters=[
                CharacterProfile(
                    id="char-1",
                    name="Mira",
                    role="protagonist",
                    voice="measured",
                    development=[CharacterDevelopment(chapter=2, event="loss", growth="accepts grief")],
                ),
            ],
            chapters=[
                ChapterOutline(
                    id=f"chapter-{n}",
                    number=n,
                    title=f"Part {n}",
                    synopsis=f"Outline synopsis {n}",
                    key_events=[f"harbour event {n}"],
                    characters_involved=["char-1"],
                    themes=["memory"],
                    word_target=200,
                )
                for n in range(1, chapters + 1)
            ],
        ),
    )


def make_state_with_blueprint(chapters: int = 3) -> WorkflowState:
    blueprint = make_blueprint(chapters)
    state = WorkflowState()
    state.set_ideas([blueprint.idea])
    state.select_idea(blueprint.idea.id)
    state.set_blueprint(blueprint)
    for stage in range(1, 7):
        state.select_model(stage, "stub")
    return state


def make_engine(
    gateway: ModelGateway,
    state: WorkflowState | None = None,
) -> WorkflowEngine:
    memory = MemoryStore(InMemorySummaryRepository(), HashingEmbeddingProvider(dimension=64))
    return WorkflowEngine(
        gateway,
        memory,
        state,
        author_styles=AuthorStyleLibrary(InMemoryAuthorStyleRepository()),
        draft_project_id="project-test",
    )


@pytest.fixture
def story_gateway() -> ScriptedGateway:
    return ScriptedGateway({"stub": story_responder})


@pytest.fixture
def story_engine(story_gateway) -> WorkflowEngine:
    return make_engine(story_gateway, make_state_with_blueprint())
