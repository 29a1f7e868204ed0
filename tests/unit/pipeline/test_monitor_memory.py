"""
strategy-copilot — unit tests for post-publish monitoring and memory facts

File: tests/unit/pipeline/test_monitor_memory.py
Last updated: 2026-10-17

Purpose
- Validate the monitor fallbacks and the fact derivation/merge rules of the memory stage.

What this test file should cover
- SKIPPED when nothing was published; local heuristic without a monitor tool.
- MONITOR_ERROR keeps the heuristic report.
- Fact buckets: derivation, case-insensitive dedupe, per-item clamp, newest-kept cap.
- Memory updater success, failure, non-mapping results, and absence.
- Monitor tools replying with something other than an object.
"""

from __future__ import annotations

import pytest

from strategy_copilot.domain.models import (
    Evaluation,
    MemoryFacts,
    PublishItem,
    Turn,
    TurnStatus,
)
from strategy_copilot.pipeline.memory import (
    MemoryLimits,
    MemoryStageInput,
    build_intent_profile,
    derive_memory_facts,
    merge_memory_facts,
    run_memory_stage,
    summarize_memory,
)
from strategy_copilot.pipeline.monitor import local_monitor_report, run_monitor_stage
from strategy_copilot.pipeline.tools import (
    CallableMemoryUpdater,
    CallableMonitor,
    UnavailableMemoryUpdater,
    UnavailableMonitor,
)

from . import CONTEXT, NonMappingTool, RecordingTool, candidate, proposals_from

PROFILE_TEXT = "拉新 预算 120 元 周末 新客"


def _published_turn(*, risky: bool = True) -> Turn:
    (proposal,) = proposals_from(candidate("Welcome Boost"))
    evaluation = (
        Evaluation(risk_flags=("HIGH_BUDGET",), rejected_count=2) if risky else Evaluation()
    )
    published = proposal.with_evaluation(evaluation).with_publish(
        PublishItem(proposal_index=0, ok=True, policy_id="policy_abc")
    )
    return Turn(
        status=TurnStatus.PROPOSAL_READY,
        assistant_message="Published.",
        proposals=(published,),
    )


async def test_monitor_skips_when_nothing_was_published() -> None:
    (proposal,) = proposals_from(candidate("Draft"))
    turn = Turn(status=TurnStatus.PROPOSAL_READY, assistant_message="x", proposals=(proposal,))
    tool = RecordingTool(result={"alerts": ["never"]})

    result = await run_monitor_stage(turn, context=CONTEXT, monitor=CallableMonitor(tool))

    assert tool.calls == []
    assert result.post_publish_monitor is not None
    assert result.post_publish_monitor.source == "SKIPPED"


async def test_monitor_falls_back_to_local_heuristic() -> None:
    result = await run_monitor_stage(
        _published_turn(), context=CONTEXT, monitor=UnavailableMonitor()
    )

    record = result.protocol.record("post_publish_monitor")
    assert record is not None
    assert record["source"] == "LOCAL_HEURISTIC"
    assert record["alerts"] == [
        "Welcome Boost: risk flags HIGH_BUDGET",
        "Welcome Boost: 2 rejected evaluations",
    ]
    assert record["alertCount"] == 2
    assert record["monitoredCount"] == 1


def test_local_report_without_signals_is_quiet() -> None:
    report = local_monitor_report(_published_turn(risky=False).proposals)

    assert report.alerts == ()
    assert report.summary == "No risk signals across 1 published proposal(s)"


async def test_monitor_failure_keeps_heuristic_report() -> None:
    tool = RecordingTool(error=TimeoutError("monitor timed out"))

    result = await run_monitor_stage(_published_turn(), context=CONTEXT, monitor=CallableMonitor(tool))

    report = result.post_publish_monitor
    assert report is not None
    assert report.source == "MONITOR_ERROR"
    assert report.error == "monitor timed out"
    assert len(report.alerts) == 2


async def test_non_mapping_monitor_result_keeps_heuristic_report() -> None:
    tool = NonMappingTool(reply=["Budget burn high"])

    result = await run_monitor_stage(_published_turn(), context=CONTEXT, monitor=tool)

    assert len(tool.calls) == 1
    assert result.status is TurnStatus.PROPOSAL_READY
    assert [item.title for item in result.proposals] == ["Welcome Boost"]
    report = result.post_publish_monitor
    assert report is not None
    assert report.source == "MONITOR_ERROR"
    assert report.error is not None and "post-publish monitor returned list" in report.error
    assert len(report.alerts) == 2


async def test_monitor_tool_results_are_deduplicated() -> None:
    tool = RecordingTool(
        result={
            "alerts": ["Budget burn high", "budget burn HIGH", "Low redemption"],
            "recommendations": "not-a-list",
            "summary": " watch closely ",
        }
    )

    result = await run_monitor_stage(_published_turn(), context=CONTEXT, monitor=CallableMonitor(tool))

    report = result.post_publish_monitor
    assert report is not None
    assert report.source == "MONITOR"
    assert report.alerts == ("Budget burn high", "Low redemption")
    assert report.recommendations == ()
    assert report.summary == "watch closely"
    assert tool.calls[0]["publishedProposals"][0]["title"] == "Welcome Boost"


def test_derive_facts_covers_profile_and_outcome() -> None:
    turn = _published_turn()
    monitor = local_monitor_report(turn.proposals)

    facts = derive_memory_facts(
        profile=build_intent_profile(PROFILE_TEXT), turn=turn, monitor=monitor
    )

    assert facts.goals == ("goal:acquisition",)
    assert facts.constraints == ("budget_cap:120",)
    assert facts.audience == ("audience:NEW_USER",)
    assert facts.timing == ("time_window:WEEKEND",)
    assert facts.decisions[:3] == (
        "turn_status:PROPOSAL_READY",
        "top_proposal:acquisition_welcome_gift/DEFAULT",
        "published:policy_abc",
    )
    assert any(item.startswith("monitor:") for item in facts.decisions)


def test_merge_dedupes_case_insensitively_and_keeps_newest() -> None:
    limits = MemoryLimits(max_items_per_bucket=2, max_item_length=40)
    existing = MemoryFacts(goals=("goal:A", "goal:b"))
    incoming = MemoryFacts(goals=("goal:a", "goal:c"))

    merged = merge_memory_facts(existing, incoming, limits=limits)

    assert merged.goals == ("goal:b", "goal:c")


def test_merge_clamps_each_item() -> None:
    merged = merge_memory_facts(
        MemoryFacts(),
        MemoryFacts(constraints=("budget_cap:1200",)),
        limits=MemoryLimits(max_item_length=6),
    )

    assert merged.constraints == ("budget",)


@pytest.mark.parametrize("kwargs", [{"max_items_per_bucket": 0}, {"max_item_length": 0}])
def test_memory_limits_reject_non_positive(kwargs: dict[str, int]) -> None:
    with pytest.raises(ValueError):
        MemoryLimits(**kwargs)


def test_memory_facts_bucket_access() -> None:
    facts = MemoryFacts.from_mapping({"goals": ["goal:revenue", "", 3], "unknown": ["x"]})

    assert facts.goals == ("goal:revenue",)
    assert not facts.is_empty()
    assert summarize_memory(facts) == "goals=goal:revenue"
    with pytest.raises(KeyError):
        facts.bucket("unknown")


def _stage_input(existing: MemoryFacts | None = None) -> MemoryStageInput:
    return MemoryStageInput(
        profile=build_intent_profile(PROFILE_TEXT),
        existing=existing or MemoryFacts(),
    )


async def test_memory_stage_without_updater_is_local() -> None:
    result = await run_memory_stage(
        _published_turn(),
        context=CONTEXT,
        updater=UnavailableMemoryUpdater(),
        stage_input=_stage_input(MemoryFacts(goals=("goal:retention",))),
    )

    update = result.memory_update
    assert update is not None
    assert update.source == "LOCAL"
    assert update.persisted is False
    assert update.facts.goals == ("goal:retention", "goal:acquisition")
    record = result.protocol.record("memory_update")
    assert record is not None
    assert "memoryFacts" not in record


async def test_memory_stage_reports_updater_result() -> None:
    tool = RecordingTool(result={"memoryId": "memory_001", "persisted": True})

    result = await run_memory_stage(
        _published_turn(),
        context=CONTEXT,
        updater=CallableMemoryUpdater(tool),
        stage_input=_stage_input(),
    )

    update = result.memory_update
    assert update is not None
    assert (update.source, update.memory_id, update.persisted) == ("MEMORY_TOOL", "memory_001", True)
    payload = tool.calls[0]
    assert payload["status"] == "PROPOSAL_READY"
    assert payload["memoryFacts"]["goals"] == ["goal:acquisition"]
    assert payload["summary"] == update.summary


async def test_memory_stage_updater_failure_keeps_facts() -> None:
    tool = RecordingTool(error=OSError("memory store down"))

    result = await run_memory_stage(
        _published_turn(),
        context=CONTEXT,
        updater=CallableMemoryUpdater(tool),
        stage_input=_stage_input(),
    )

    update = result.memory_update
    assert update is not None
    assert update.source == "MEMORY_ERROR"
    assert update.error == "memory store down"
    assert update.facts.goals == ("goal:acquisition",)


@pytest.mark.parametrize("reply", [None, ["memory_001"]])
async def test_memory_stage_non_mapping_result_keeps_facts(reply: object) -> None:
    tool = NonMappingTool(reply=reply)

    result = await run_memory_stage(
        _published_turn(),
        context=CONTEXT,
        updater=tool,
        stage_input=_stage_input(),
    )

    assert len(tool.calls) == 1
    assert result.status is TurnStatus.PROPOSAL_READY
    assert [item.title for item in result.proposals] == ["Welcome Boost"]
    update = result.memory_update
    assert update is not None
    assert update.source == "MEMORY_ERROR"
    assert update.persisted is False
    assert update.error is not None and "memory updater returned" in update.error
    assert update.facts.goals == ("goal:acquisition",)
