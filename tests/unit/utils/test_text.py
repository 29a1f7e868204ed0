"""Text helpers: clamping, dedupe, error summaries, and the history token window."""

from __future__ import annotations

import pytest

from strategy_copilot.constants import ERROR_SUMMARY_MAX_CHARS
from strategy_copilot.utils.text import (
    as_string,
    clamp_number,
    clamp_text,
    collapse_whitespace,
    dedupe_preserving_order,
    estimate_tokens,
    select_history_window,
    summarize_error,
)


def test_as_string_only_accepts_strings() -> None:
    assert as_string("  hi ") == "hi"
    assert as_string(3) == ""
    assert as_string(None) == ""


def test_collapse_whitespace() -> None:
    assert collapse_whitespace(" a \n\t b  ") == "a b"


@pytest.mark.parametrize(
    ("value", "limit", "ellipsis", "expected"),
    [
        ("abcdef", 4, "", "abcd"),
        ("abcdef", 4, "…", "abc…"),
        ("  abc  ", 10, "", "abc"),
        ("abcdef", 1, "...", "a"),
        (42, 5, "", ""),
    ],
)
def test_clamp_text(value: object, limit: int, ellipsis: str, expected: str) -> None:
    assert clamp_text(value, limit, ellipsis=ellipsis) == expected


def test_clamp_text_rejects_negative_limit() -> None:
    with pytest.raises(ValueError):
        clamp_text("x", -1)


@pytest.mark.parametrize(
    ("value", "expected"),
    [(0.5, 0.5), (2, 1.0), (-1, 0.0), (True, None), ("0.3", None), (float("inf"), None)],
)
def test_clamp_number(value: object, expected: float | None) -> None:
    assert clamp_number(value, 0.0, 1.0) == expected


def test_dedupe_is_case_insensitive_and_keeps_first_spelling() -> None:
    items = ["Alpha", "alpha", " beta ", "", "BETA", "gamma"]

    assert dedupe_preserving_order(items) == ["Alpha", "beta", "gamma"]
    assert dedupe_preserving_order(items, limit=2) == ["Alpha", "beta"]


def test_summarize_error_redacts_and_caps() -> None:
    error = RuntimeError("request failed\n  Authorization: Bearer abcdefghijklmnop " + "x" * 400)

    summary = summarize_error(error)

    assert "abcdefghijklmnop" not in summary
    assert "\n" not in summary
    assert len(summary) == ERROR_SUMMARY_MAX_CHARS


def test_summarize_error_fallbacks() -> None:
    assert summarize_error(ValueError()) == "ValueError"
    assert summarize_error(None) == "unknown error"
    assert summarize_error("boom", known_secrets=["boom"]) == "***REDACTED***"


def test_estimate_tokens_counts_wide_characters() -> None:
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2
    assert estimate_tokens("拉新预算") == 4


def test_history_window_is_a_newest_suffix_within_budget() -> None:
    history = [("user", "a" * 40), ("assistant", "b" * 40), ("user", "c" * 8)]

    # 10 + 4 per long message, 2 + 4 for the short one
    assert select_history_window(history, max_tokens=20) == history[1:]
    assert select_history_window(history, max_tokens=6) == history[2:]
    assert select_history_window(history, max_tokens=5) == []
    assert select_history_window(history, max_tokens=100, max_messages=1) == history[2:]
    assert select_history_window(history, max_tokens=0) == []
