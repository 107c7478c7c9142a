# memory/author_styles.py
"""Author style library.

A source text uploaded under a known author is reduced to a few style traits
and example paragraphs. Chapter prompts for any project based on the same
author then carry those traits as a style reference block.
"""

from __future__ import annotations

import re

import structlog

from config import settings
from data_access.author_style_repository import AuthorStyleRepository
from models.memory_models import AuthorStyle, AuthorStyleAnalysis
from models.workflow_models import StyleProfile
from prompt_renderer import render_prompt
from utils.text_processing import split_paragraphs

logger = structlog.get_logger(__name__)

_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")
_FIGURATIVE_RE = re.compile(r"\b(?:like|as if|as though)\b", re.IGNORECASE)
_DIALOGUE_RE = re.compile(r"[\"“”«»]")

LONG_SENTENCE_WORDS = 20
SHORT_SENTENCE_WORDS = 10
RICH_VOCABULARY_RATIO = 0.5
FIGURATIVE_PER_THOUSAND_WORDS = 5.0
DIALOGUE_DRIVEN_SHARE = 0.3
SLOW_PARAGRAPH_WORDS = 120


def analyze_author_style(text: str, profile: StyleProfile | None = None) -> AuthorStyleAnalysis:
    """Style traits of ``text``.

    Traits the source analysis already described in ``profile`` are used as
    given; the rest are measured from the text itself.
    """
    words = text.split()
    sentences = [s for s in _SENTENCE_SPLIT_RE.split(text.strip()) if s.strip()]
    paragraphs = split_paragraphs(text)

    avg_sentence = len(words) / len(sentences) if sentences else 0.0
    if avg_sentence >= LONG_SENTENCE_WORDS:
        sentence_structure = "long, complex sentences"
    elif avg_sentence <= SHORT_SENTENCE_WORDS:
        sentence_structure = "short, direct sentences"
    else:
        sentence_structure = "varied sentences of moderate length"

    long_words = sum(1 for w in words if len(w) > 3)
    if words and long_words / len(words) > RICH_VOCABULARY_RATIO:
        vocabulary = "rich, literary vocabulary"
    else:
        vocabulary = "plain, everyday vocabulary"

    figurative = len(_FIGURATIVE_RE.findall(text)) * 1000 / max(len(words), 1)
    if figurative >= FIGURATIVE_PER_THOUSAND_WORDS:
        rhetorical = "frequent similes and figurative comparisons"
    else:
        rhetorical = "sparing figurative language"

    with_dialogue = sum(1 for p in paragraphs if _DIALOGUE_RE.search(p))
    if not with_dialogue:
        dialogue = "little or no dialogue"
    elif with_dialogue / len(paragraphs) > DIALOGUE_DRIVEN_SHARE:
        dialogue = "dialogue-driven scenes"
    else:
        dialogue = "occasional dialogue within narration"

    avg_paragraph = len(words) / len(paragraphs) if paragraphs else 0.0
    pacing = "slow and reflective" if avg_paragraph >= SLOW_PARAGRAPH_WORDS else "brisk and forward-moving"

    profile = profile or StyleProfile()
    return AuthorStyleAnalysis(
        sentence_structure=profile.sentence_structure or sentence_structure,
        vocabulary_richness=profile.vocabulary or vocabulary,
        rhetorical_devices_density=", ".join(profile.rhetorical_devices) or rhetorical,
        dialogue_style=profile.dialogue_style or dialogue,
        narrative_tone=profile.tone_profile or "neutral",
        pacing=profile.pacing or pacing,
    )


def select_text_examples(text: str, count: int, max_chars: int) -> list[str]:
    """Up to ``count`` paragraphs spread evenly from the start to the end of ``text``."""
    paragraphs = split_paragraphs(text)
    if count <= 0 or not paragraphs:
        return []
    if len(paragraphs) <= count:
        chosen = paragraphs
    elif count == 1:
        chosen = paragraphs[:1]
    else:
        step = (len(paragraphs) - 1) / (count - 1)
        chosen = [paragraphs[round(i * step)] for i in range(count)]
    return [p if len(p) <= max_chars else p[:max_chars].rstrip() + "..." for p in chosen]


class AuthorStyleLibrary:
    """Analyse, store and look up author styles."""

    def __init__(
        self,
        repository: AuthorStyleRepository,
        example_count: int = settings.AUTHOR_STYLE_EXAMPLE_COUNT,
        example_max_chars: int = settings.AUTHOR_STYLE_EXAMPLE_MAX_CHARS,
    ) -> None:
        self.repository = repository
        self.example_count = example_count
        self.example_max_chars = example_max_chars

    async def analyze_and_store(
        self,
        author_name: str,
        text: str,
        profile: StyleProfile | None = None,
    ) -> AuthorStyle:
        """Analyse ``text`` and store it as ``author_name``'s style, replacing any earlier one."""
        name = " ".join(author_name.split())
        if not name:
            raise ValueError("Author name is required")
        if not text.strip():
            raise ValueError("Cannot analyse the style of an empty text")
        style = AuthorStyle(
            author_name=name,
            style_analysis=analyze_author_style(text, profile),
            text_examples=select_text_examples(text, self.example_count, self.example_max_chars),
        )
        stored = await self.repository.upsert(style)
        logger.info(
            "Author style stored",
            author=stored.author_name,
            examples=len(stored.text_examples),
        )
        return stored

    async def get(self, author_name: str) -> AuthorStyle | None:
        return await self.repository.get(author_name)

    async def list_styles(self) -> list[AuthorStyle]:
        return await self.repository.list_all()


def augment_prompt_with_author_style(base_prompt: str, style: AuthorStyle | None) -> str:
    """Append ``style`` as a style reference block; ``None`` leaves the prompt as is."""
    if style is None:
        return base_prompt
    return base_prompt + render_prompt("author_style_block.j2", {"style": style})
