"""Intent profile heuristics and clarification questions."""

from __future__ import annotations

import pytest

from strategy_copilot.pipeline.memory import (
    SLOT_QUESTIONS,
    build_intent_profile,
    clarification_questions,
    missing_slots,
    parse_budget_cap,
)


def test_complete_chinese_request_has_no_missing_slots() -> None:
    profile = build_intent_profile("拉新 预算 120 元 周末 新客")

    assert profile.primary_goal == "acquisition"
    assert profile.ambiguous_goal is False
    assert profile.budget_cap == 120
    assert profile.time_window == "WEEKEND"
    assert profile.audience == "NEW_USER"
    assert profile.urgency == "NORMAL"
    assert missing_slots(profile) == []
    assert clarification_questions(profile) == []


def test_competing_goals_are_ambiguous() -> None:
    profile = build_intent_profile("召回沉默老客，同时提升 revenue")

    assert profile.goal_scores["retention"] == 2
    assert profile.goal_scores["revenue"] == 2
    assert profile.ambiguous_goal is True
    assert "goal" in missing_slots(profile)


def test_empty_message_asks_at_most_three_questions() -> None:
    profile = build_intent_profile("   ")

    assert profile.primary_goal == ""
    assert missing_slots(profile) == ["goal", "audience", "time_window", "budget_cap"]
    assert clarification_questions(profile) == [
        SLOT_QUESTIONS["goal"],
        SLOT_QUESTIONS["audience"],
        SLOT_QUESTIONS["time_window"],
    ]
    assert clarification_questions(profile, limit=1) == [SLOT_QUESTIONS["goal"]]


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("预算控制在 800 元", 800),
        ("预算 20", 30),
        ("预算 99999 块", 5000),
        ("500元投放就够了", 500),
        ("no budget mentioned", None),
        ("", None),
    ],
)
def test_budget_cap_is_parsed_and_clamped(text: str, expected: int | None) -> None:
    assert parse_budget_cap(text) == expected


def test_urgency_and_risk_preference() -> None:
    profile = build_intent_profile("URGENT dinner push for VIP members, keep it conservative")

    assert profile.urgency == "HIGH"
    assert profile.time_window == "DINNER"
    assert profile.audience == "MEMBER"
    assert profile.risk_preference == "CONSERVATIVE"
    assert profile.to_dict()["riskPreference"] == "CONSERVATIVE"


def test_immediate_timing_maps_to_today() -> None:
    profile = build_intent_profile("马上给会员发券")

    assert profile.time_window == "TODAY"
    assert profile.urgency == "HIGH"
