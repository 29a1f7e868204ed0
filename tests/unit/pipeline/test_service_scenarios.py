"""
strategy-copilot — end-to-end turn scenarios over a scripted gateway

File: tests/unit/pipeline/test_service_scenarios.py
Last updated: 2026-10-17

Purpose
- Drive ``StrategyCopilot`` through complete turns without network access.

What this test file should cover
- Chunked streaming with a trailing envelope and the token event contract.
- Downgrades: empty proposal mode, unparseable envelope, exhausted critic loop.
- Tool failures that degrade instead of aborting: evaluator errors, non-mapping results, approval rejection.
- Input validation and gateway failure producing ``AI_UNAVAILABLE``.

Functional requirements
- Offline and deterministic.
"""

from __future__ import annotations

import json

import pytest

from strategy_copilot.domain.models import MemoryFacts, TurnStatus
from strategy_copilot.gateway.base import ProviderServiceError
from strategy_copilot.gateway.scripted import ScriptedGateway
from strategy_copilot.pipeline.critic import CriticConfig
from strategy_copilot.pipeline.service import (
    REASON_MISSING_MERCHANT,
    REASON_MISSING_MESSAGE,
    StrategyCopilot,
    TurnRequest,
)
from strategy_copilot.pipeline.tools import TurnTools, tools_from_callables
from strategy_copilot.pipeline.turn_builder import CLARIFICATION_MESSAGE

from . import (
    MERCHANT_ID,
    SESSION_ID,
    NonMappingTool,
    RecordingTool,
    candidate,
    envelope,
    make_copilot,
)


def _request(message: str = "Please create a welcome gift for new users.", **kwargs: object) -> TurnRequest:
    return TurnRequest(
        merchant_id=kwargs.pop("merchant_id", MERCHANT_ID),  # type: ignore[arg-type]
        session_id=kwargs.pop("session_id", SESSION_ID),  # type: ignore[arg-type]
        user_message=message,
        **kwargs,  # type: ignore[arg-type]
    )


class _FailingStreamGateway(ScriptedGateway):
    async def stream_chat_events(self, messages):  # type: ignore[override]
        self.calls.append(("stream", tuple(messages)))
        raise ProviderServiceError("ECONNRESET upstream disconnected", provider="scripted")
        yield  # pragma: no cover


async def test_chunked_stream_emits_visible_text_and_builds_ready_turn() -> None:
    raw = "Sure thing\n" + json.dumps(
        {"schemaVersion": "x", "proposals": [candidate("Welcome Base")]},
        separators=(",", ":"),
    )
    copilot = make_copilot(ScriptedGateway(stream_text=raw, chunk_size=3))

    stream = copilot.stream_turn(_request())
    events = [event async for event in stream.events()]
    turn = await stream.result()

    assert events[0].type == "start"
    assert events[-1].type == "end"
    assert [event.seq for event in events] == list(range(len(events)))
    assert "".join(event.text for event in events if event.type == "token") == "Sure thing"

    assert turn.status is TurnStatus.PROPOSAL_READY
    assert len(turn.proposals) == 1
    assert turn.assistant_message == "Sure thing"
    payload = turn.to_dict()
    assert payload["protocol"]["sourceFormat"] == "json_envelope"
    assert payload["protocol"]["schemaVersion"] == "x"
    assert payload["protocol"]["plannerEngine"] == "stream_text_json_envelope_v4"
    assert payload["proposal"]["template"]["templateId"] == "acquisition_welcome_gift"
    assert payload["proposal"]["spec"]["merchant_id"] == MERCHANT_ID


async def test_proposal_mode_without_candidates_is_chat_reply() -> None:
    copilot = make_copilot(ScriptedGateway(stream_text=envelope("Nothing concrete yet.", [])))

    turn = await copilot.run_turn(_request())

    assert turn.status is TurnStatus.CHAT_REPLY
    assert turn.proposals == ()
    assert turn.assistant_message == "Nothing concrete yet."


async def test_plain_text_response_is_chat_reply() -> None:
    copilot = make_copilot(ScriptedGateway(stream_text="Could you share your budget first?"))

    turn = await copilot.run_turn(_request())

    assert turn.status is TurnStatus.CHAT_REPLY
    assert turn.assistant_message == "Could you share your budget first?"
    assert turn.protocol.source_format == "text"
    assert turn.protocol.parse_error is False


async def test_unparseable_envelope_downgrades_to_chat_reply() -> None:
    raw = 'Here is a draft.\n{"schemaVersion":"2026-02-27","proposals":[{"title":'
    copilot = make_copilot(ScriptedGateway(stream_text=raw))

    turn = await copilot.run_turn(_request())

    assert turn.status is TurnStatus.CHAT_REPLY
    assert turn.assistant_message == "Here is a draft."
    assert turn.protocol.parse_error is True
    assert turn.protocol.source_format == "invalid_json"


async def test_evaluator_failure_blocks_every_proposal_without_failing_turn() -> None:
    raw = envelope("Two options.", [candidate("Option A"), candidate("Option B", branch_id="CHANNEL")])
    evaluator = RecordingTool(error=RuntimeError("evaluator exploded"))
    copilot = make_copilot(ScriptedGateway(stream_text=raw))

    turn = await copilot.run_turn(_request(tools=tools_from_callables(evaluate=evaluator)))

    assert turn.status is TurnStatus.PROPOSAL_READY
    assert len(turn.proposals) == 2
    assert len(evaluator.calls) == 1
    for proposal in turn.to_dict()["proposals"]:
        assert proposal["evaluation"]["blocked"] is True
        assert proposal["evaluation"]["risk_flags"] == ["EVALUATION_ERROR"]
    evaluation = turn.protocol.record("evaluation")
    assert evaluation is not None
    assert evaluation["source"] == "TOOL_ERROR"
    assert evaluation["error"] == "evaluator exploded"


async def test_non_mapping_tool_results_degrade_without_losing_proposals() -> None:
    raw = envelope("Two options.", [candidate("Option A"), candidate("Option B", branch_id="CHANNEL")])
    evaluator = NonMappingTool(reply=None)
    memory_updater = NonMappingTool(reply=["memory_001"])
    copilot = make_copilot(ScriptedGateway(stream_text=raw))

    turn = await copilot.run_turn(
        _request(tools=TurnTools(evaluator=evaluator, memory_updater=memory_updater))
    )

    assert turn.status is TurnStatus.PROPOSAL_READY
    assert len(turn.proposals) == 2
    assert len(evaluator.calls) == 1
    assert len(memory_updater.calls) == 1
    evaluation = turn.protocol.record("evaluation")
    assert evaluation is not None and evaluation["source"] == "TOOL_ERROR"
    assert turn.memory_update is not None
    assert turn.memory_update.source == "MEMORY_ERROR"


async def test_rejected_approval_skips_publish_and_explains_why() -> None:
    raw = envelope("Ready to publish.", [candidate("Publish Me")])
    validator = RecordingTool(result={"approved": False, "reason": "TOKEN_EXPIRED", "source": "TEST"})
    publisher = RecordingTool(result={"source": "TEST_PUBLISH", "published": []})
    copilot = make_copilot(ScriptedGateway(stream_text=raw))

    turn = await copilot.run_turn(
        _request(
            publish_intent=True,
            approval_token="approval_token_bad",
            tools=tools_from_callables(validate_approval=validator, publish=publisher),
        )
    )

    assert turn.status is TurnStatus.PROPOSAL_READY
    assert publisher.calls == []
    publish = turn.protocol.record("publish")
    assert publish is not None
    assert publish["source"] == "SKIPPED"
    assert publish["publishedCount"] == 0
    assert "approval" in turn.assistant_message.lower()
    approval = turn.protocol.record("approval")
    assert approval is not None
    assert approval["approved"] is False


async def test_critic_exhaustion_with_persistent_violations_asks_for_clarification() -> None:
    illegal = {"name": "Bad", "governance": {"approval_required": False}}
    raw = envelope("Draft created.", [candidate("Bad Draft", patch=illegal)])
    revision = {
        "assistantMessage": "Still drafting.",
        "proposals": [candidate("Still Bad", patch=illegal)],
    }
    gateway = ScriptedGateway(stream_text=raw, structured_replies=[revision, revision])
    copilot = make_copilot(gateway, critic=CriticConfig(enabled=True, max_rounds=2))

    turn = await copilot.run_turn(_request("help me"))

    assert turn.status is TurnStatus.CHAT_REPLY
    assert turn.proposals == ()
    assert turn.reason == "CLARIFICATION_REQUIRED"
    assert turn.assistant_message.startswith(CLARIFICATION_MESSAGE)
    assert [name for name, _ in gateway.calls] == [
        "stream",
        "strategy_revise_output",
        "strategy_revise_output",
    ]
    critic = turn.protocol.record("critic")
    assert critic is not None
    assert critic["applied"] is False
    assert critic["round"] == 2
    assert turn.validation_issues[0].violations[0].path == "policyPatch.governance"


async def test_missing_identity_fields_yield_unavailable_turn() -> None:
    gateway = ScriptedGateway(stream_text="unused")
    copilot = make_copilot(gateway)

    no_merchant = await copilot.run_turn(_request(merchant_id="  "))
    no_message = await copilot.run_turn(_request("   "))

    assert no_merchant.status is TurnStatus.AI_UNAVAILABLE
    assert no_merchant.reason == REASON_MISSING_MERCHANT
    assert no_message.reason == REASON_MISSING_MESSAGE
    assert gateway.calls == []


async def test_stream_failure_before_any_token_is_unavailable_with_start_and_end() -> None:
    copilot = make_copilot(_FailingStreamGateway())

    stream = copilot.stream_turn(_request())
    events = [event.type async for event in stream.events()]
    turn = await stream.result()

    assert events == ["start", "end"]
    assert turn.status is TurnStatus.AI_UNAVAILABLE
    assert turn.reason is not None
    assert "ECONNRESET" in turn.reason
    assert turn.memory_update is None


async def test_memory_stage_merges_existing_facts() -> None:
    raw = envelope("Draft ready.", [candidate("Welcome Base")])
    memory = RecordingTool(result={"source": "TEST_MEMORY", "persisted": True, "memoryId": "mem_9"})
    copilot = make_copilot(ScriptedGateway(stream_text=raw))

    turn = await copilot.run_turn(
        _request(
            "拉新 预算 120 元 周末 新客",
            memory_facts=MemoryFacts(goals=("goal:retention",)),
            tools=tools_from_callables(update_memory=memory),
        )
    )

    assert turn.memory_update is not None
    assert turn.memory_update.memory_id == "mem_9"
    facts = memory.calls[0]["memoryFacts"]
    assert facts["goals"] == ["goal:retention", "goal:acquisition"]
    assert "budget_cap:120" in facts["constraints"]
    assert facts["timing"] == ["time_window:WEEKEND"]
    assert facts["audience"] == ["audience:NEW_USER"]
    record = turn.protocol.record("memory_update")
    assert record is not None
    assert "memoryFacts" not in record


async def test_history_and_memory_reach_the_model_prompt() -> None:
    gateway = ScriptedGateway(stream_text="ok")
    copilot = make_copilot(gateway)

    await copilot.run_turn(
        _request(
            "next step?",
            history=(("user", "earlier question"), ("assistant", "earlier answer")),
            memory_facts=MemoryFacts(constraints=("budget_cap:200",)),
        )
    )

    _, messages = gateway.calls[0]
    contents = [message.content for message in messages]
    assert contents[-1] == "next step?"
    assert "earlier question" in contents
    assert any("budget_cap:200" in content for content in contents)


def test_stream_turn_requires_running_loop() -> None:
    copilot = make_copilot(ScriptedGateway(stream_text="ok"))

    with pytest.raises(RuntimeError):
        copilot.stream_turn(_request())


def test_runtime_info_reports_critic_and_retry_policy() -> None:
    copilot = StrategyCopilot(gateway=ScriptedGateway(), environ={"COPILOT_API_KEY": "k"})

    info = copilot.runtime_info()

    assert info["provider"] == "openai"
    assert info["llmTransport"] == "responses_api"
    assert info["remoteConfigured"] is True
    assert info["criticLoop"] == {
        "enabled": True,
        "maxRounds": 1,
        "minProposals": 2,
        "minConfidence": 0.72,
    }
    assert info["retryPolicy"] == {"maxRetries": 2}
