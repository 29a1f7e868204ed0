"""
strategy-copilot — turn state machine

File: src/strategy_copilot/pipeline/turn_builder.py
Last updated: 2026-10-17

Purpose
- Map a parsed envelope plus candidate results onto one of the three turn states.

What should be included in this file
- ``build_turn``: pure state transition function.
- ``ensure_not_empty_ready``: demotion guard applied before a turn leaves the pipeline.
- ``unavailable_turn``: the ``AI_UNAVAILABLE`` result for rejected input or gateway failure.

Functional requirements
- Parse failure: ``CHAT_REPLY`` with ``parseError`` and no candidates attempted.
- Forced proposal with only invalid candidates: ``PROPOSAL_READY`` with empty proposals and
  an apologetic message.
- Forced proposal with no candidates at all: ``CHAT_REPLY``.
- Any valid candidate: ``PROPOSAL_READY`` with ``proposal`` set to the first element.
- Invalid candidates are always carried in ``validation_issues``.

Non-functional requirements
- No I/O; deterministic.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Final

from strategy_copilot.candidates.pipeline import CandidateBatch
from strategy_copilot.domain.models import SourceFormat, Turn, TurnProtocol, TurnStatus
from strategy_copilot.protocol.envelope import ParsedEnvelope

PROPOSAL_INVALID_MESSAGE: Final[str] = (
    "Sorry, the drafted strategy did not pass policy validation yet. "
    "I am revising it to fit the allowed template fields."
)
EMPTY_CHAT_MESSAGE: Final[str] = "Could you tell me a bit more about what you want to achieve?"
CLARIFICATION_MESSAGE: Final[str] = (
    "I could not produce a valid strategy draft from this request. "
    "Could you clarify a few details so I can try again?"
)


def _protocol_for(envelope: ParsedEnvelope) -> TurnProtocol:
    return TurnProtocol(
        source_format=envelope.source_format,
        schema_version=envelope.schema_version,
        parse_error=envelope.parse_error,
    )


def _ready_message(envelope: ParsedEnvelope, count: int) -> str:
    if envelope.assistant_message:
        return envelope.assistant_message
    noun = "proposal" if count == 1 else "proposals"
    return f"I drafted {count} strategy {noun} for your review."


def build_turn(envelope: ParsedEnvelope, batch: CandidateBatch | None = None) -> Turn:
    """Derive the turn state from an envelope and its candidate batch."""

    protocol = _protocol_for(envelope)
    if envelope.parse_error or envelope.source_format == SourceFormat.INVALID_JSON:
        return Turn(
            status=TurnStatus.CHAT_REPLY,
            assistant_message=envelope.assistant_message or EMPTY_CHAT_MESSAGE,
            protocol=protocol,
        )

    batch = batch or CandidateBatch()
    if batch.proposals:
        return Turn(
            status=TurnStatus.PROPOSAL_READY,
            assistant_message=_ready_message(envelope, len(batch.proposals)),
            proposals=batch.proposals,
            validation_issues=batch.invalid,
            protocol=protocol,
        )

    if envelope.force_proposal and batch.invalid:
        return Turn(
            status=TurnStatus.PROPOSAL_READY,
            assistant_message=PROPOSAL_INVALID_MESSAGE,
            validation_issues=batch.invalid,
            protocol=protocol,
        )

    return Turn(
        status=TurnStatus.CHAT_REPLY,
        assistant_message=envelope.assistant_message or EMPTY_CHAT_MESSAGE,
        validation_issues=batch.invalid,
        protocol=protocol,
    )


def ensure_not_empty_ready(turn: Turn, *, clarification_questions: Sequence[str] = ()) -> Turn:
    """Demote an empty ``PROPOSAL_READY`` turn to a clarification ``CHAT_REPLY``."""

    if turn.status is not TurnStatus.PROPOSAL_READY or turn.proposals:
        return turn
    lines = [CLARIFICATION_MESSAGE]
    lines.extend(f"- {question}" for question in clarification_questions if question)
    return Turn(
        status=TurnStatus.CHAT_REPLY,
        assistant_message="\n".join(lines),
        validation_issues=turn.validation_issues,
        protocol=turn.protocol,
        reason="CLARIFICATION_REQUIRED",
    )


def unavailable_turn(reason: str, *, assistant_message: str = "") -> Turn:
    return Turn(
        status=TurnStatus.AI_UNAVAILABLE,
        assistant_message=assistant_message
        or "The strategy assistant is temporarily unavailable. Please try again shortly.",
        reason=reason or "AI_UNAVAILABLE",
    )


__all__ = [
    "CLARIFICATION_MESSAGE",
    "PROPOSAL_INVALID_MESSAGE",
    "build_turn",
    "ensure_not_empty_ready",
    "unavailable_turn",
]
