from models.workflow_models import (
    ChapterOutline,
    ChapterQuality,
    ChapterStatus,
    FeedbackEntry,
    GeneratedChapter,
)
from orchestration.quality import build_quality_report, project_statistics, score_chapter

from conftest import make_blueprint


def _chapter(number: int, overall: int, axis: int, **kwargs) -> GeneratedChapter:
    return GeneratedChapter(
        id=f"generated-chapter-{number}",
        number=number,
        word_count=100 * number,
        quality=ChapterQuality(
            style_consistency=axis,
            character_consistency=axis,
            plot_consistency=axis,
            cultural_authenticity=axis,
            overall=overall,
        ),
        **kwargs,
    )


def test_score_chapter_is_deterministic():
    blueprint = make_blueprint(1)
    outline = blueprint.chapter_outline(1)
    text = 'Mira reached the harbour. "Is this the event?" she asked. ' * 5
    first = score_chapter(text, outline, blueprint)
    second = score_chapter(text, outline, blueprint)
    assert first == second


def test_score_chapter_rewards_outline_coverage():
    outline = ChapterOutline(
        number=1,
        title="Storm",
        key_events=["lighthouse collapse"],
        characters_involved=["Mira"],
        word_target=10,
    )
    covered, _ = score_chapter(
        "Mira watched the lighthouse in the storm. It fell.", outline
    )
    missed, _ = score_chapter("Nobody went anywhere at all today. Quiet.", outline)

    assert covered.character_consistency == 100
    assert covered.plot_consistency == 100
    assert missed.character_consistency == 70
    assert missed.plot_consistency == 70
    assert covered.overall > missed.overall


def test_score_chapter_empty_content_scores_zero():
    quality, metrics = score_chapter("")
    assert quality.overall == 0
    assert quality.style_consistency == 0
    assert metrics.readability == 0
    assert metrics.engagement == 0
    assert metrics.innovation == 0


def test_score_chapter_metrics_in_range():
    _, metrics = score_chapter('"Come," she said. "The tide is turning." ' * 3)
    for value in (metrics.readability, metrics.engagement, metrics.coherence, metrics.innovation):
        assert 0 <= value <= 100
    assert metrics.engagement > 70


def test_project_statistics():
    chapters = [_chapter(1, 80, 80), _chapter(2, 90, 90)]
    stats = project_statistics(chapters, planned_chapters=4)
    assert stats.total_words == 300
    assert stats.average_quality == 85
    assert stats.completion_rate == 50
    assert stats.chapter_count == 2

    assert project_statistics([], 0).completion_rate == 100


def test_quality_report_strengths_and_improvements():
    strong = [
        _chapter(1, 90, 90, status=ChapterStatus.FINAL),
        _chapter(2, 88, 88, status=ChapterStatus.FINAL),
    ]
    report = build_quality_report(strong)
    assert report.overall_quality == 89
    assert len(report.strengths) == 4
    assert report.improvements == []
    assert [r.category for r in report.recommendations] == ["proofreading"]

    weak = [_chapter(1, 60, 60), _chapter(2, 80, 75)]
    report = build_quality_report(weak)
    assert report.strengths == []
    assert len(report.improvements) == 4
    revise = [r for r in report.recommendations if r.description.startswith("Revise chapter 1")]
    assert len(revise) == 4
    assert all(r.priority == "high" for r in revise)
    review = [r for r in report.recommendations if r.category == "review"]
    assert review and "1, 2" in review[0].description


def test_quality_report_medium_priority_and_feedback():
    chapters = [
        _chapter(
            1,
            80,
            80,
            status=ChapterStatus.FINAL,
            feedback=[FeedbackEntry(category="plot", description="gap", priority="high")],
        )
    ]
    report = build_quality_report(chapters)
    assert all(
        r.priority == "medium"
        for r in report.recommendations
        if r.description.startswith("Revise")
    )
    editing = [r for r in report.recommendations if r.category == "editing"]
    assert editing and editing[0].description.startswith("Resolve 1 ")


def test_quality_report_for_no_chapters_is_empty():
    report = build_quality_report([])
    assert report.overall_quality == 0
    assert report.recommendations == []
