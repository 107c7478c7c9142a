import httpx
import numpy as np
import pytest

from core.embeddings import EmbeddingProvider, HashingEmbeddingProvider, OllamaEmbeddingProvider
from core.errors import ConfigurationError
from data_access.summary_repository import InMemorySummaryRepository
from memory import (
    MemoryStore,
    augment_prompt_with_memory,
    project_context_for,
    summary_from_outline,
)
from memory import memory_store
from models.memory_models import ChapterSummary, StructuredSummary

from conftest import make_blueprint


class FixedEmbedder(EmbeddingProvider):
    """Maps known texts to fixed vectors."""

    def __init__(self, vectors: dict[str, list[float]]):
        super().__init__(dimension=len(next(iter(vectors.values()))))
        self.vectors = vectors

    async def embed(self, text: str) -> np.ndarray:
        return np.asarray(self.vectors[text], dtype=np.float32)


def _summary(synopsis: str) -> StructuredSummary:
    return StructuredSummary(characters=["Mira"], plot_points=[synopsis], synopsis=synopsis)


@pytest.mark.asyncio
async def test_record_is_idempotent_per_chapter():
    store = MemoryStore(InMemorySummaryRepository(), HashingEmbeddingProvider(dimension=32))
    first = await store.record_chapter_summary("p1", 1, "The harbour at dawn.", _summary("one"))
    second = await store.record_chapter_summary("p1", 1, "The harbour at dusk.", _summary("two"))

    stored = await store.repository.list_for_project("p1")
    assert len(stored) == 1
    assert stored[0].summary.synopsis == "two"
    assert second.created_at == first.created_at
    assert len(stored[0].embedding) == 32


@pytest.mark.asyncio
async def test_record_accepts_camel_case_mapping():
    store = MemoryStore(InMemorySummaryRepository(), HashingEmbeddingProvider(dimension=16))
    record = await store.record_chapter_summary(
        "p1", 2, "text", {"plotPoints": ["storm"], "mainThemes": ["loss"]}
    )
    assert record.summary.plot_points == ["storm"]
    assert record.summary.main_themes == ["loss"]


@pytest.mark.asyncio
async def test_retrieve_is_scoped_limited_and_sorted():
    embedder = FixedEmbedder(
        {
            "ch1": [1.0, 0.0],
            "ch2": [0.0, 1.0],
            "ch3": [1.0, 1.0],
            "other": [1.0, 0.0],
            "query": [1.0, 0.1],
        }
    )
    store = MemoryStore(InMemorySummaryRepository(), embedder)
    for number, text in ((1, "ch1"), (2, "ch2"), (3, "ch3")):
        await store.record_chapter_summary("p1", number, text, _summary(text))
    await store.record_chapter_summary("p2", 1, "other", _summary("other"))

    scored = await store.retrieve_scored("p1", "query", limit=2)
    assert [s.summary.chapter_number for s in scored] == [1, 3]
    assert scored[0].score >= scored[1].score
    assert all(s.summary.project_id == "p1" for s in scored)

    everything = await store.retrieve_relevant("p1", "query", limit=10)
    assert len(everything) == 3


@pytest.mark.asyncio
async def test_retrieve_ties_prefer_most_recent_chapter():
    embedder = FixedEmbedder({"same": [1.0, 0.0], "query": [1.0, 0.0]})
    store = MemoryStore(InMemorySummaryRepository(), embedder)
    for number in (1, 2, 3):
        await store.record_chapter_summary("p1", number, "same", _summary(str(number)))
    hits = await store.retrieve_relevant("p1", "query", limit=2)
    assert [h.chapter_number for h in hits] == [3, 2]


@pytest.mark.asyncio
async def test_retrieve_empty_cases():
    store = MemoryStore(InMemorySummaryRepository(), HashingEmbeddingProvider(dimension=8))
    assert await store.retrieve_relevant("p1", "anything") == []
    await store.record_chapter_summary("p1", 1, "text", _summary("s"))
    assert await store.retrieve_relevant("p1", "anything", limit=0) == []


@pytest.mark.asyncio
async def test_blank_query_returns_nothing_without_embedding():
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"embedding": [0.5] * 8})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        store = MemoryStore(
            InMemorySummaryRepository(),
            OllamaEmbeddingProvider(8, client=client, retry_delay=0),
        )
        await store.record_chapter_summary("p1", 1, "The harbour at dawn.", _summary("one"))
        assert len(requests) == 1

        assert await store.retrieve_relevant("p1", " ", 3) == []
        assert await store.retrieve_scored("p1", "") == []
    assert len(requests) == 1


@pytest.mark.asyncio
async def test_retrieve_skips_mismatched_dimensions(monkeypatch):
    warnings: list[str] = []
    monkeypatch.setattr(
        memory_store.logger, "warning", lambda msg, **_kw: warnings.append(msg)
    )
    repository = InMemorySummaryRepository()
    await repository.upsert(
        ChapterSummary(project_id="p1", chapter_number=1, embedding=[1.0, 0.0, 0.0])
    )
    store = MemoryStore(repository, HashingEmbeddingProvider(dimension=8))
    await store.record_chapter_summary("p1", 2, "harbour", _summary("s"))

    hits = await store.retrieve_relevant("p1", "harbour")
    assert [h.chapter_number for h in hits] == [2]
    assert warnings


@pytest.mark.asyncio
async def test_delete_project_removes_summaries():
    store = MemoryStore(InMemorySummaryRepository(), HashingEmbeddingProvider(dimension=8))
    await store.record_chapter_summary("p1", 1, "a", _summary("a"))
    await store.record_chapter_summary("p1", 2, "b", _summary("b"))
    assert await store.delete_project("p1") == 2
    assert await store.retrieve_relevant("p1", "a") == []


def test_augment_prompt_with_memory_format():
    summaries = [
        ChapterSummary(
            project_id="p1",
            chapter_number=2,
            summary=StructuredSummary(
                characters=["Mira"],
                plot_points=["finds the map"],
                stylistic_traits=["quiet"],
                spatial_temporal_details=["harbour, dawn"],
                main_themes=["memory"],
            ),
        )
    ]
    prompt = augment_prompt_with_memory("BASE", {"title": "Tides"}, summaries)

    assert prompt.startswith("BASE")
    assert "Project Context:" in prompt
    assert '"title": "Tides"' in prompt
    assert "Previous Chapter Summaries (for consistency):" in prompt
    assert "Chapter 2 Summary:" in prompt
    assert 'Characters: ["Mira"]' in prompt
    assert 'Plot Points: ["finds the map"]' in prompt
    assert 'Main Themes: ["memory"]' in prompt


def test_augment_prompt_without_memory_is_unchanged():
    assert augment_prompt_with_memory("BASE", None, []) == "BASE"


def test_project_context_and_outline_summary():
    blueprint = make_blueprint(2)
    context = project_context_for(blueprint)
    assert context["title"] == "The Cartographer's Daughter"
    assert context["characters"] == ["Mira"]
    assert context["chapterCount"] == 2
    assert project_context_for(None) == {}

    outline = blueprint.chapter_outline(2)
    summary = summary_from_outline(outline, "", blueprint)
    assert summary.characters == ["Mira"]
    assert summary.plot_points == ["harbour event 2"]
    assert summary.synopsis == "Outline synopsis 2"
    assert summary_from_outline(None, "given").synopsis == "given"


@pytest.mark.asyncio
async def test_hashing_embeddings_are_deterministic_and_normalised():
    provider = HashingEmbeddingProvider(dimension=64)
    first = await provider.embed("the tide returns to the harbour")
    second = await provider.embed("the tide returns to the harbour")
    assert np.array_equal(first, second)
    assert float(np.linalg.norm(first)) == pytest.approx(1.0, rel=1e-5)
    assert not np.any(await provider.embed(""))


def test_embedding_dimension_must_be_positive():
    with pytest.raises(ConfigurationError):
        HashingEmbeddingProvider(dimension=0)
