# tests/orchestration/test_token_accountant.py

from core.usage import TokenUsage
from orchestration.token_accountant import TokenAccountant


def test_record_usage_with_tokenusage():
    tracker = TokenAccountant()
    usage = TokenUsage(prompt_tokens=1, completion_tokens=4, total_tokens=5)
    tracker.record_usage("build_blueprint", usage)
    assert tracker.get_action_total("build_blueprint") == 4
    assert tracker.total.completion_tokens == 4


def test_record_usage_with_dict_and_accumulation():
    tracker = TokenAccountant()
    tracker.record_usage("generate_chapter", {"completion_tokens": 3})
    tracker.record_usage("summarize_chapter", TokenUsage(0, 2, 2))
    tracker.record_usage("generate_chapter", {"completion_tokens": 7})

    assert tracker.get_action_total("generate_chapter") == 10
    assert tracker.get_action_total("summarize_chapter") == 2
    assert tracker.total.completion_tokens == 12


def test_summary_is_sorted_by_action():
    tracker = TokenAccountant()
    tracker.record_usage("summarize_chapter", {"prompt_tokens": 1, "completion_tokens": 1})
    tracker.record_usage("analyze_source", {"prompt_tokens": 2, "completion_tokens": 3})
    summary = tracker.summary()
    assert list(summary) == ["analyze_source", "summarize_chapter"]
    assert summary["analyze_source"] == {
        "prompt_tokens": 2,
        "completion_tokens": 3,
        "total_tokens": 5,
    }


def test_token_usage_from_dict_derives_total():
    assert TokenUsage.from_dict({"prompt_tokens": 2, "completion_tokens": 3}).total_tokens == 5
