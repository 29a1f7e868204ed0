"""
strategy-copilot — bounded critic/revise loop

File: src/strategy_copilot/pipeline/critic.py
Last updated: 2026-10-17

Purpose
- Give a ready turn a bounded number of extra model passes to fix patch-validation failures
  and low-quality proposal sets.

What should be included in this file
- ``CriticConfig`` and the entry predicates ``should_run_critic_loop`` / ``needs_critic_loop``.
- Structured-output contracts ``CRITIC_OUTPUT`` and ``REVISE_OUTPUT`` plus their parsers.
- ``run_critic_loop``: the round controller.

Functional requirements
- Pending validation issues produce a local verdict without a model call.
- A failed critic or revise call ends the loop and keeps the last good turn.
- A revision with zero valid candidates becomes the new pending issue set.
- The loop never returns ``PROPOSAL_READY`` with an empty proposal list.
- ``protocol.critic`` is always recorded, including when the loop is skipped.

Non-functional requirements
- At most ``2 * max_rounds`` model calls per turn.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, replace
from typing import Any, Final

import structlog

from strategy_copilot.candidates.pipeline import CandidateBatch
from strategy_copilot.constants import MAX_CRITIC_FOCUS, MAX_CRITIC_ISSUES, MAX_PROPOSAL_CANDIDATES
from strategy_copilot.domain.models import (
    CriticVerdict,
    InvalidCandidate,
    JSONValue,
    Proposal,
    Turn,
    TurnStatus,
)
from strategy_copilot.gateway.base import (
    ChatMessage,
    ModelGateway,
    StructuredOutputDefinition,
    parse_json_loose,
)
from strategy_copilot.pipeline.prompts import build_critic_messages, build_revise_messages
from strategy_copilot.pipeline.tools import TurnContext
from strategy_copilot.pipeline.turn_builder import ensure_not_empty_ready
from strategy_copilot.utils.text import as_string, clamp_text, summarize_error

CandidateRebuilder = Callable[[Sequence[object]], CandidateBatch]

LOCAL_VERDICT_SOURCE: Final[str] = "LOCAL_VALIDATION"
MODEL_VERDICT_SOURCE: Final[str] = "MODEL"
_ISSUE_MAX_CHARS: Final[int] = 240

CRITIC_OUTPUT: Final[StructuredOutputDefinition] = StructuredOutputDefinition(
    name="strategy_critic_output",
    description="Decide whether the current proposals need another revision.",
    json_schema={
        "type": "object",
        "additionalProperties": False,
        "required": ["needRevision", "summary", "issues", "focus"],
        "properties": {
            "needRevision": {"type": "boolean"},
            "summary": {"type": "string"},
            "issues": {"type": "array", "items": {"type": "string"}, "maxItems": MAX_CRITIC_ISSUES},
            "focus": {"type": "array", "items": {"type": "string"}, "maxItems": MAX_CRITIC_FOCUS},
        },
    },
)

REVISE_OUTPUT: Final[StructuredOutputDefinition] = StructuredOutputDefinition(
    name="strategy_revise_output",
    description="Revised proposals that satisfy the critic feedback and patch allow-list.",
    strict=False,
    json_schema={
        "type": "object",
        "additionalProperties": False,
        "required": ["assistantMessage", "proposals"],
        "properties": {
            "assistantMessage": {"type": "string"},
            "proposals": {
                "type": "array",
                "minItems": 1,
                "maxItems": MAX_PROPOSAL_CANDIDATES,
                "items": {
                    "type": "object",
                    "additionalProperties": False,
                    "required": [
                        "templateId",
                        "branchId",
                        "title",
                        "rationale",
                        "confidence",
                        "policyPatch",
                    ],
                    "properties": {
                        "templateId": {"type": "string"},
                        "branchId": {"type": "string"},
                        "title": {"type": "string"},
                        "rationale": {"type": "string"},
                        "confidence": {"type": "number"},
                        "policyPatch": {"type": "object"},
                    },
                },
            },
        },
    },
)


@dataclass(frozen=True, slots=True)
class CriticConfig:
    enabled: bool = True
    max_rounds: int = 1
    min_proposals: int = 2
    min_confidence: float = 0.72

    def __post_init__(self) -> None:
        if self.max_rounds < 0:
            raise ValueError("max_rounds must be >= 0")
        if self.min_proposals < 1:
            raise ValueError("min_proposals must be >= 1")
        if not (0.0 <= self.min_confidence <= 1.0):
            raise ValueError("min_confidence must be within [0, 1]")

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "enabled": self.enabled,
            "maxRounds": self.max_rounds,
            "minProposals": self.min_proposals,
            "minConfidence": self.min_confidence,
        }


@dataclass(frozen=True, slots=True)
class RevisionDraft:
    assistant_message: str
    raw_candidates: tuple[object, ...]


def should_run_critic_loop(turn: Turn, config: CriticConfig) -> bool:
    """Quality trigger: enough proposals to compare, or any proposal below the confidence bar."""

    if len(turn.proposals) >= config.min_proposals:
        return True
    return any(
        proposal.confidence is not None and proposal.confidence < config.min_confidence
        for proposal in turn.proposals
    )


def needs_critic_loop(turn: Turn, config: CriticConfig) -> bool:
    if not config.enabled or config.max_rounds <= 0:
        return False
    if turn.status is not TurnStatus.PROPOSAL_READY:
        return False
    return bool(turn.validation_issues) or should_run_critic_loop(turn, config)


def local_verdict(issues: Iterable[InvalidCandidate]) -> CriticVerdict:
    """Deterministic verdict for pending validation failures."""

    summaries: list[str] = []
    for issue in issues:
        label = issue.title or issue.template_id or "candidate"
        details = "; ".join(f"{item.path} {item.reason}" for item in issue.violations)
        text = f"{label}: {issue.reason}" + (f" ({details})" if details else "")
        summaries.append(clamp_text(text, _ISSUE_MAX_CHARS))
    return CriticVerdict(
        need_revision=True,
        summary="policy patch validation failed",
        issues=tuple(summaries[:MAX_CRITIC_ISSUES]),
        focus=("policyPatch allowlist",),
        source=LOCAL_VERDICT_SOURCE,
    )


def _string_list(value: object, limit: int) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    items = [as_string(item) for item in value]
    return tuple(item for item in items if item)[:limit]


def parse_critic_verdict(value: JSONValue) -> CriticVerdict:
    if not isinstance(value, Mapping):
        raise ValueError("critic output must be a JSON object")
    need_revision = value.get("needRevision")
    if not isinstance(need_revision, bool):
        raise ValueError("critic output needRevision must be a boolean")
    return CriticVerdict(
        need_revision=need_revision,
        summary=as_string(value.get("summary")),
        issues=_string_list(value.get("issues"), MAX_CRITIC_ISSUES),
        focus=_string_list(value.get("focus"), MAX_CRITIC_FOCUS),
        source=MODEL_VERDICT_SOURCE,
    )


def parse_revision(value: JSONValue) -> RevisionDraft:
    if not isinstance(value, Mapping):
        raise ValueError("revise output must be a JSON object")
    proposals = value.get("proposals")
    if not isinstance(proposals, list) or not proposals:
        raise ValueError("revise output must contain at least one proposal")
    return RevisionDraft(
        assistant_message=as_string(value.get("assistantMessage")),
        raw_candidates=tuple(proposals[:MAX_PROPOSAL_CANDIDATES]),
    )


async def _invoke_structured(
    gateway: ModelGateway,
    messages: Sequence[ChatMessage],
    definition: StructuredOutputDefinition,
) -> JSONValue:
    result = await gateway.invoke_chat_with_raw(messages, structured_output=definition)
    if result.parsed is not None:
        return result.parsed
    return parse_json_loose(result.raw_text)


def _proposal_brief(proposal: Proposal) -> dict[str, JSONValue]:
    return {
        "templateId": proposal.template_id,
        "branchId": proposal.branch_id,
        "title": proposal.title,
        "rationale": proposal.rationale,
        "confidence": proposal.confidence,
        "spec": dict(proposal.spec),
    }


async def run_critic_loop(
    turn: Turn,
    *,
    gateway: ModelGateway,
    config: CriticConfig,
    context: TurnContext,
    rebuild: CandidateRebuilder,
    clarification_questions: Sequence[str] = (),
    logger: Any | None = None,
) -> Turn:
    """Run up to ``config.max_rounds`` critic/revise rounds and record ``protocol.critic``."""

    log = logger if logger is not None else structlog.get_logger(__name__)
    if not needs_critic_loop(turn, config):
        skipped = turn.with_record(
            "critic",
            {"applied": False, "round": 0, "maxRounds": config.max_rounds, "skipped": True},
        )
        return ensure_not_empty_ready(skipped, clarification_questions=clarification_questions)

    current = turn
    pending: list[InvalidCandidate] = list(turn.validation_issues)
    applied = False
    rounds_run = 0
    last_verdict: CriticVerdict | None = None
    error: str | None = None
    round_log: list[JSONValue] = []

    for round_number in range(1, config.max_rounds + 1):
        rounds_run = round_number
        if pending:
            verdict = local_verdict(pending)
        else:
            messages = build_critic_messages(
                merchant_id=context.merchant_id,
                session_id=context.session_id,
                round_number=round_number,
                user_message=context.user_message,
                proposals=[_proposal_brief(item) for item in current.proposals],
            )
            try:
                verdict = parse_critic_verdict(await _invoke_structured(gateway, messages, CRITIC_OUTPUT))
            except Exception as exc:  # noqa: BLE001
                error = summarize_error(exc)
                log.warning("critic_call_failed", round=round_number, error=error)
                break
        last_verdict = verdict

        if not verdict.need_revision:
            round_log.append({"round": round_number, "needRevision": False, "source": verdict.source})
            log.info("critic_round_completed", round=round_number, need_revision=False)
            break

        messages = build_revise_messages(
            merchant_id=context.merchant_id,
            session_id=context.session_id,
            round_number=round_number,
            user_message=context.user_message,
            critic_decision=verdict.to_dict(),
            validation_issues=[item.to_dict() for item in pending],
            proposals=[_proposal_brief(item) for item in current.proposals],
        )
        try:
            revision = parse_revision(await _invoke_structured(gateway, messages, REVISE_OUTPUT))
        except Exception as exc:  # noqa: BLE001
            error = summarize_error(exc)
            log.warning("revise_call_failed", round=round_number, error=error)
            break

        batch = rebuild(revision.raw_candidates)
        round_log.append(
            {
                "round": round_number,
                "needRevision": True,
                "source": verdict.source,
                "validCount": len(batch.proposals),
                "invalidCount": len(batch.invalid),
            }
        )
        log.info(
            "critic_round_completed",
            round=round_number,
            need_revision=True,
            verdict_source=verdict.source,
            valid_count=len(batch.proposals),
            invalid_count=len(batch.invalid),
        )

        if not batch.proposals:
            if batch.invalid:
                pending = list(batch.invalid)
                current = replace(current, validation_issues=batch.invalid)
            continue

        applied = True
        pending = list(batch.invalid)
        current = replace(
            current,
            status=TurnStatus.PROPOSAL_READY,
            assistant_message=revision.assistant_message or current.assistant_message,
            proposals=batch.proposals,
            validation_issues=batch.invalid,
        )
        if not pending and not should_run_critic_loop(current, config):
            break

    record: dict[str, JSONValue] = {
        "applied": applied,
        "round": rounds_run,
        "maxRounds": config.max_rounds,
        "skipped": False,
        "rounds": round_log,
    }
    if last_verdict is not None:
        record["verdict"] = last_verdict.to_dict()
    if error is not None:
        record["error"] = error
    recorded = current.with_record("critic", record)
    return ensure_not_empty_ready(recorded, clarification_questions=clarification_questions)


__all__ = [
    "CRITIC_OUTPUT",
    "REVISE_OUTPUT",
    "CandidateRebuilder",
    "CriticConfig",
    "RevisionDraft",
    "local_verdict",
    "needs_critic_loop",
    "parse_critic_verdict",
    "parse_revision",
    "run_critic_loop",
    "should_run_critic_loop",
]
