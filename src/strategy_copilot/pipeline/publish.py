"""
strategy-copilot — approval and publish stage

File: src/strategy_copilot/pipeline/publish.py
Last updated: 2026-10-17

Purpose
- Validate the caller's approval token and publish ranked proposals when asked to.

What should be included in this file
- ``resolve_approval``: precedence of missing token, missing validator, validator error,
  and validator verdict.
- ``run_publish_stage``: publish call, per-index outcome matching, and protocol records.

Functional requirements
- Approval and publish records exist for every ready turn, skipped or not.
- A rejected approval never reaches the publisher and is mentioned in the assistant message.
- Publisher failure marks every proposal failed with ``PUBLISH_TOOL_ERROR``.
- For duplicate outcomes on one index, the first ``ok=true`` wins.

Non-functional requirements
- The approval token never appears in logs, records, or error summaries.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import replace
from typing import Any, Final

import structlog

from strategy_copilot.domain.models import (
    ApprovalDecision,
    Proposal,
    PublishItem,
    PublishResult,
    Turn,
)
from strategy_copilot.pipeline.tools import (
    ApprovalValidator,
    PolicyPublisher,
    TurnContext,
    require_mapping,
)
from strategy_copilot.utils.text import as_string, summarize_error

APPROVAL_SKIPPED: Final[str] = "SKIPPED"
APPROVAL_MISSING_TOKEN: Final[str] = "MISSING_TOKEN"
APPROVAL_VALIDATOR_MISSING: Final[str] = "VALIDATOR_MISSING"
APPROVAL_VALIDATOR_ERROR: Final[str] = "VALIDATOR_ERROR"

PUBLISH_SKIPPED: Final[str] = "SKIPPED"
PUBLISH_UNAVAILABLE: Final[str] = "UNAVAILABLE"
PUBLISH_TOOL_ERROR: Final[str] = "PUBLISH_TOOL_ERROR"


async def resolve_approval(
    *,
    publish_intent: bool,
    approval_token: str,
    validator: ApprovalValidator,
    context: TurnContext,
    proposals: Sequence[Proposal],
    logger: Any | None = None,
) -> ApprovalDecision:
    log = logger if logger is not None else structlog.get_logger(__name__)
    if not publish_intent:
        return ApprovalDecision(
            required=False, approved=False, reason="NO_PUBLISH_INTENT", source=APPROVAL_SKIPPED
        )

    token = as_string(approval_token)
    if not token:
        return ApprovalDecision(
            required=True,
            approved=False,
            reason=APPROVAL_MISSING_TOKEN,
            source=APPROVAL_MISSING_TOKEN,
        )
    if not validator.available:
        return ApprovalDecision(
            required=True,
            approved=False,
            reason=APPROVAL_VALIDATOR_MISSING,
            source=APPROVAL_VALIDATOR_MISSING,
        )

    payload = {
        **context.base_payload(),
        "approvalToken": token,
        "proposals": [item.to_dict() for item in proposals],
    }
    try:
        result = require_mapping(await validator.validate_approval(payload), "approval validator")
    except Exception as exc:  # noqa: BLE001
        reason = summarize_error(exc, known_secrets=(token,))
        log.warning("approval_validation_failed", error=reason)
        return ApprovalDecision(
            required=True,
            approved=False,
            reason=reason,
            source=APPROVAL_VALIDATOR_ERROR,
        )

    approval_id = as_string(result.get("approvalId") or result.get("approval_id"))
    reason = as_string(result.get("reason"))
    return ApprovalDecision(
        required=True,
        approved=result.get("approved") is True,
        approval_id=approval_id or None,
        reason=reason or None,
        source=as_string(result.get("source")) or "APPROVAL_VALIDATOR",
    )


def _publish_item(raw: Mapping[str, object], index: int) -> PublishItem:
    policy_id = as_string(raw.get("policyId") or raw.get("policy_id")) or None
    draft_id = as_string(raw.get("draftId") or raw.get("draft_id")) or None
    publish_id = as_string(raw.get("publishId") or raw.get("publish_id")) or None
    error = as_string(raw.get("error")) or None
    explicit_ok = raw.get("ok")
    ok = explicit_ok if isinstance(explicit_ok, bool) else bool(policy_id or draft_id) and error is None
    return PublishItem(
        proposal_index=index,
        ok=ok,
        policy_id=policy_id,
        draft_id=draft_id,
        publish_id=publish_id,
        error=error,
    )


def match_publish_items(published: object, count: int) -> tuple[PublishItem, ...]:
    """One item per proposal index; the first successful outcome for an index wins."""

    chosen: dict[int, PublishItem] = {}
    if isinstance(published, list):
        for position, raw in enumerate(published):
            if not isinstance(raw, Mapping):
                continue
            raw_index = raw.get("proposalIndex", raw.get("proposal_index", position))
            if isinstance(raw_index, bool) or not isinstance(raw_index, int):
                continue
            if not 0 <= raw_index < count:
                continue
            item = _publish_item(raw, raw_index)
            existing = chosen.get(raw_index)
            if existing is None or (not existing.ok and item.ok):
                chosen[raw_index] = item
    return tuple(
        chosen.get(index)
        or PublishItem(proposal_index=index, ok=False, error="no publish result reported")
        for index in range(count)
    )


def _with_approval_notice(message: str, decision: ApprovalDecision) -> str:
    notice = f"Publishing requires approval ({decision.reason or 'not approved'}); nothing was published."
    return f"{message}\n\n{notice}" if message else notice


async def run_publish_stage(
    turn: Turn,
    *,
    context: TurnContext,
    publish_intent: bool,
    approval_token: str,
    validator: ApprovalValidator,
    publisher: PolicyPublisher,
    logger: Any | None = None,
) -> Turn:
    """Resolve approval, publish when approved, and annotate proposals with outcomes."""

    if not turn.is_ready:
        return turn
    log = logger if logger is not None else structlog.get_logger(__name__)

    decision = await resolve_approval(
        publish_intent=publish_intent,
        approval_token=approval_token,
        validator=validator,
        context=context,
        proposals=turn.proposals,
        logger=log,
    )
    current = turn.with_record("approval", decision.to_dict(), approval=decision)

    if not publish_intent:
        result = PublishResult(intent=False, source=PUBLISH_SKIPPED)
        return current.with_record("publish", result.to_dict(), publish_result=result)

    if not decision.approved:
        log.info("publish_skipped", reason=decision.reason, approval_source=decision.source)
        result = PublishResult(intent=True, source=PUBLISH_SKIPPED, error=decision.reason)
        return current.with_record(
            "publish",
            result.to_dict(),
            publish_result=result,
            assistant_message=_with_approval_notice(current.assistant_message, decision),
        )

    if not publisher.available:
        result = PublishResult(intent=True, source=PUBLISH_UNAVAILABLE, error="publisher not configured")
        return current.with_record("publish", result.to_dict(), publish_result=result)

    payload = {
        **context.base_payload(),
        "approvalId": decision.approval_id,
        "proposals": [item.to_dict() for item in current.proposals],
    }
    try:
        raw = require_mapping(await publisher.publish_policies(payload), "publisher")
    except Exception as exc:  # noqa: BLE001
        error = summarize_error(exc, known_secrets=(approval_token,) if approval_token else ())
        log.warning("publish_failed", error=error, proposal_count=len(current.proposals))
        items = tuple(
            PublishItem(proposal_index=index, ok=False, error=error)
            for index in range(len(current.proposals))
        )
        result = PublishResult(intent=True, source=PUBLISH_TOOL_ERROR, items=items, error=error)
    else:
        items = match_publish_items(raw.get("published"), len(current.proposals))
        result = PublishResult(
            intent=True,
            source=as_string(raw.get("source")) or "PUBLISHER",
            items=items,
        )

    annotated = tuple(
        proposal.with_publish(item) for proposal, item in zip(current.proposals, result.items)
    )
    log.info(
        "publish_completed",
        source=result.source,
        published_count=result.published_count,
        failed_count=result.failed_count,
    )
    return replace(
        current.with_record("publish", result.to_dict(), publish_result=result),
        proposals=annotated,
    )


__all__ = [
    "APPROVAL_MISSING_TOKEN",
    "APPROVAL_VALIDATOR_ERROR",
    "APPROVAL_VALIDATOR_MISSING",
    "PUBLISH_TOOL_ERROR",
    "match_publish_items",
    "resolve_approval",
    "run_publish_stage",
]
