"""
strategy-copilot — unit tests for turn domain models

File: tests/unit/domain/test_turn_models.py
Last updated: 2026-10-17

Purpose
- Validate construction-time invariants and the canonical rendering of turn records.

What this test file should cover
- Proposal confidence bounds and spec isolation.
- Additive protocol records: unknown or duplicate keys are rejected.
- camelCase turn rendering with snake_case per-proposal annotations.
"""

from __future__ import annotations

import math

import pytest

from strategy_copilot.constants import ENVELOPE_SCHEMA_VERSION, PROTOCOL_NAME
from strategy_copilot.domain.models import (
    ApprovalDecision,
    Evaluation,
    InvalidCandidate,
    Proposal,
    PublishItem,
    StrategyMeta,
    Turn,
    TurnProtocol,
    TurnStatus,
)


def _proposal(**overrides: object) -> Proposal:
    values: dict[str, object] = {
        "title": "Welcome Boost",
        "rationale": "new users",
        "confidence": 0.8,
        "spec": {"name": "Welcome Boost", "budget": {"cap": 100}},
        "template_id": "acquisition_welcome_gift",
        "template_name": "Welcome Gift",
        "branch_id": "DEFAULT",
        "branch_name": "Default Reward",
        "strategy_meta": StrategyMeta(provider="OPENAI", model="gpt-4o-mini", confidence=0.8),
    }
    values.update(overrides)
    return Proposal(**values)  # type: ignore[arg-type]


@pytest.mark.parametrize("confidence", [-0.01, 1.01, math.inf, math.nan])
def test_proposal_rejects_out_of_range_confidence(confidence: float) -> None:
    with pytest.raises(ValueError):
        _proposal(confidence=confidence)


def test_proposal_copies_spec_on_construction() -> None:
    spec = {"budget": {"cap": 100}}
    proposal = _proposal(spec=spec)

    spec["budget"]["cap"] = 999

    assert proposal.spec["budget"] == {"cap": 100}
    assert proposal.to_dict()["spec"] is not proposal.spec


def test_proposal_annotations_render_snake_case() -> None:
    proposal = (
        _proposal()
        .with_evaluation(Evaluation(score=3.0, reason_codes=["OK"], rank_score=3.0))
        .with_publish(PublishItem(proposal_index=0, ok=True, policy_id="policy_abc"))
    )

    rendered = proposal.to_dict()

    assert rendered["template"] == {"templateId": "acquisition_welcome_gift", "name": "Welcome Gift"}
    assert rendered["branch"] == {"branchId": "DEFAULT", "name": "Default Reward"}
    assert rendered["strategyMeta"]["source"]
    assert rendered["evaluation"]["reason_codes"] == ["OK"]
    assert rendered["evaluation"]["rank_score"] == 3.0
    assert rendered["publish"] == {
        "ok": True,
        "policy_id": "policy_abc",
        "draft_id": None,
        "publish_id": None,
        "error": None,
    }


def test_invalid_candidate_requires_a_reason() -> None:
    with pytest.raises(ValueError):
        InvalidCandidate(template_id="t", branch_id="b", title="x", reason="  ")


def test_protocol_records_are_additive() -> None:
    protocol = TurnProtocol().with_record("critic", {"applied": False})

    with pytest.raises(ValueError, match="already set"):
        protocol.with_record("critic", {"applied": True})
    with pytest.raises(ValueError, match="unknown"):
        protocol.with_record("telemetry", {})


def test_protocol_records_are_isolated_copies() -> None:
    value = {"order": ["a"]}
    protocol = TurnProtocol().with_record("ranking", value)

    value["order"].append("b")
    fetched = protocol.record("ranking")
    assert fetched == {"order": ["a"]}
    assert fetched is not None
    fetched["order"].append("c")

    assert protocol.record("ranking") == {"order": ["a"]}
    assert protocol.record("publish") is None


def test_protocol_rendering_defaults_schema_version() -> None:
    rendered = TurnProtocol().with_record("critic", {"skipped": True}).to_dict()

    assert rendered["name"] == PROTOCOL_NAME
    assert rendered["schemaVersion"] == ENVELOPE_SCHEMA_VERSION
    assert rendered["sourceFormat"] == "text"
    assert rendered["critic"] == {"skipped": True}


def test_turn_rendering_includes_optional_sections_only_when_set() -> None:
    chat = Turn(status=TurnStatus.CHAT_REPLY, assistant_message="hi").to_dict()

    assert chat["status"] == "CHAT_REPLY"
    assert chat["proposal"] is None
    assert "approval" not in chat
    assert "reason" not in chat

    ready = Turn(
        status="PROPOSAL_READY",  # type: ignore[arg-type]
        assistant_message="ok",
        proposals=[_proposal(), _proposal(title="Second")],
        approval=ApprovalDecision(required=False, approved=False, reason="NO_PUBLISH_INTENT"),
    )
    rendered = ready.to_dict()

    assert ready.status is TurnStatus.PROPOSAL_READY
    assert ready.is_ready
    assert rendered["proposal"]["title"] == "Welcome Boost"
    assert [item["title"] for item in rendered["proposals"]] == ["Welcome Boost", "Second"]
    assert rendered["approval"]["source"] == "SKIPPED"


def test_turn_with_record_applies_changes_in_one_step() -> None:
    turn = Turn(status=TurnStatus.PROPOSAL_READY, assistant_message="ok", proposals=[_proposal()])

    updated = turn.with_record("evaluation", {"source": "X"}, assistant_message="changed")

    assert updated.assistant_message == "changed"
    assert updated.protocol.has_record("evaluation")
    assert not turn.protocol.has_record("evaluation")


def test_ready_status_without_proposals_is_not_ready() -> None:
    assert not Turn(status=TurnStatus.PROPOSAL_READY, assistant_message="").is_ready


def test_evaluation_counts_ignore_negative_and_non_numeric_values() -> None:
    evaluation = Evaluation.from_tool_result(
        {"selectedCount": -4, "rejectedCount": "3", "score": math.nan, "blocked": 1}
    )

    assert evaluation.selected_count == 0
    assert evaluation.rejected_count == 0
    assert evaluation.score is None
    assert evaluation.blocked is True
