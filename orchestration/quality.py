# orchestration/quality.py
"""Deterministic chapter scoring and the final quality report.

Used whenever a provider does not return its own scores, so a chapter never
carries an unset quality record.
"""

from __future__ import annotations

import re
from collections.abc import Sequence

import numpy as np

from models.workflow_models import (
    ChapterMetrics,
    ChapterOutline,
    ChapterQuality,
    ChapterStatus,
    GeneratedChapter,
    NovelBlueprint,
    ProjectStatistics,
    QualityReport,
    Recommendation,
)
from utils.text_processing import count_words

_SENTENCE_RE = re.compile(r"[^.!?]+[.!?]*")
_TOKEN_RE = re.compile(r"\w+", re.UNICODE)
_DIALOGUE_RE = re.compile(r"[\"“”«»]")

# (field name, label used in report text)
QUALITY_AXES: tuple[tuple[str, str], ...] = (
    ("style_consistency", "style consistency"),
    ("character_consistency", "character consistency"),
    ("plot_consistency", "plot consistency"),
    ("cultural_authenticity", "cultural authenticity"),
)
STRENGTH_THRESHOLD = 85
WEAK_THRESHOLD = 70


def _clamp(value: float) -> int:
    return int(max(0, min(100, round(value))))


def _coverage(text: str, phrases: Sequence[str]) -> float:
    """Fraction of ``phrases`` whose significant words appear in ``text``."""
    phrases = [p for p in phrases if p and p.strip()]
    if not phrases:
        return 1.0
    tokens = {t.lower() for t in _TOKEN_RE.findall(text)}
    hits = 0
    for phrase in phrases:
        words = [w.lower() for w in _TOKEN_RE.findall(phrase) if len(w) > 3]
        if not words:
            words = [w.lower() for w in _TOKEN_RE.findall(phrase)]
        if words and any(w in tokens for w in words):
            hits += 1
    return hits / len(phrases)


def _sentence_lengths(text: str) -> list[int]:
    return [
        count_words(s) for s in _SENTENCE_RE.findall(text) if count_words(s) > 0
    ]


def score_chapter(
    content: str,
    outline: ChapterOutline | None = None,
    blueprint: NovelBlueprint | None = None,
) -> tuple[ChapterQuality, ChapterMetrics]:
    """Score chapter text against its outline.

    Scores depend only on the inputs, so the same chapter always gets the same
    record.
    """
    words = count_words(content)
    target = outline.word_target if outline and outline.word_target > 0 else 3000
    length_ratio = min(words / target, 1.0) if target else 1.0

    if outline is not None:
        characters = outline.characters_involved
        if blueprint is not None:
            characters = [blueprint.character_name(ref) for ref in characters]
        character_cov = _coverage(content, characters)
        event_cov = _coverage(content, outline.key_events + [outline.title])
        cultural_cov = _coverage(content, outline.cultural_elements)
    else:
        character_cov = event_cov = cultural_cov = 1.0 if words else 0.0

    quality_axes = {
        "style_consistency": 70 + 25 * length_ratio,
        "character_consistency": 70 + 30 * character_cov,
        "plot_consistency": 70 + 30 * event_cov,
        "cultural_authenticity": 80 + 20 * cultural_cov,
    }
    if not words:
        quality_axes = dict.fromkeys(quality_axes, 0)
    quality = ChapterQuality(
        **{name: _clamp(value) for name, value in quality_axes.items()},
        overall=_clamp(np.mean(list(quality_axes.values()))),
    )

    lengths = _sentence_lengths(content)
    avg_sentence = float(np.mean(lengths)) if lengths else 0.0
    tokens = [t.lower() for t in _TOKEN_RE.findall(content)]
    diversity = len(set(tokens)) / len(tokens) if tokens else 0.0
    dialogue_marks = len(_DIALOGUE_RE.findall(content))
    metrics = ChapterMetrics(
        readability=_clamp(100 - min(abs(avg_sentence - 18) * 2, 40)) if lengths else 0,
        engagement=_clamp(70 + min(dialogue_marks, 30)) if words else 0,
        coherence=_clamp((quality.plot_consistency + quality.character_consistency) / 2),
        innovation=_clamp(50 + 50 * diversity) if tokens else 0,
    )
    return quality, metrics


def project_statistics(
    chapters: Sequence[GeneratedChapter], planned_chapters: int
) -> ProjectStatistics:
    total_words = sum(c.word_count for c in chapters)
    average = _clamp(np.mean([c.quality.overall for c in chapters])) if chapters else 0
    completion = _clamp(100 * len(chapters) / planned_chapters) if planned_chapters else 100
    return ProjectStatistics(
        total_words=total_words,
        average_quality=average,
        completion_rate=completion,
        chapter_count=len(chapters),
    )


def build_quality_report(chapters: Sequence[GeneratedChapter]) -> QualityReport:
    """Aggregate chapter scores into strengths, improvements and recommendations."""
    if not chapters:
        return QualityReport()

    overall = _clamp(np.mean([c.quality.overall for c in chapters]))
    strengths: list[str] = []
    improvements: list[str] = []
    recommendations: list[Recommendation] = []
    for axis, label in QUALITY_AXES:
        average = _clamp(np.mean([getattr(c.quality, axis) for c in chapters]))
        if average >= STRENGTH_THRESHOLD:
            strengths.append(f"Strong {label} across chapters (average {average}%)")
            continue
        improvements.append(f"Improve {label} (average {average}%)")
        weakest = min(chapters, key=lambda c: (getattr(c.quality, axis), c.number))
        recommendations.append(
            Recommendation(
                category=label,
                description=(
                    f"Revise chapter {weakest.number}, which scores lowest on {label} "
                    f"({getattr(weakest.quality, axis)}%)"
                ),
                priority="high" if average < WEAK_THRESHOLD else "medium",
            )
        )

    open_feedback = sum(
        1 for c in chapters for entry in c.feedback if entry.priority == "high"
    )
    if open_feedback:
        recommendations.append(
            Recommendation(
                category="editing",
                description=f"Resolve {open_feedback} high-priority feedback item(s)",
                priority="high",
            )
        )
    unfinished = [c.number for c in chapters if c.status is not ChapterStatus.FINAL]
    if unfinished:
        recommendations.append(
            Recommendation(
                category="review",
                description="Mark chapters "
                + ", ".join(str(n) for n in unfinished)
                + " as final after review",
                priority="medium",
            )
        )
    recommendations.append(
        Recommendation(
            category="proofreading",
            description="Do a complete read-through before publishing",
            priority="high",
        )
    )
    return QualityReport(
        overall_quality=overall,
        strengths=strengths,
        improvements=improvements,
        recommendations=recommendations,
    )
