"""
strategy-copilot — evaluation and ranking stage

File: src/strategy_copilot/pipeline/ranking.py
Last updated: 2026-10-17

Purpose
- Score every proposal through the optional evaluator, order proposals, and build the
  display-ready explain pack.

What should be included in this file
- ``compute_rank_score`` (value/risk/cost formula with evaluator-score override).
- ``rank_proposals``: blocked-last, score-descending, confidence tie-break ordering.
- ``build_explain_pack`` and ``run_evaluation_stage``.

Functional requirements
- Evaluator failure yields a blocked ``EVALUATION_ERROR`` evaluation per proposal.
- Without an evaluator the model order is kept and no explain pack is built.
- ``protocol.evaluation.source`` is the evaluator's source, ``TOOL_ERROR``, or ``UNAVAILABLE``.
- Re-ranking an already ranked list leaves it unchanged.

Non-functional requirements
- Exactly one evaluator call per turn, with the full proposal batch.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import replace
from typing import Any, Final

import structlog

from strategy_copilot.constants import RANKING_STRATEGY
from strategy_copilot.domain.models import Evaluation, JSONValue, Proposal, Turn
from strategy_copilot.pipeline.tools import PolicyEvaluator, TurnContext, require_mapping
from strategy_copilot.utils.text import as_string, summarize_error

SOURCE_TOOL_ERROR: Final[str] = "TOOL_ERROR"
SOURCE_UNAVAILABLE: Final[str] = "UNAVAILABLE"
SOURCE_EVALUATOR_DEFAULT: Final[str] = "EVALUATOR"


def compute_rank_score(proposal: Proposal, evaluation: Evaluation) -> float:
    """Evaluator score when numeric, otherwise the value/risk/cost formula."""

    if evaluation.score is not None:
        return evaluation.score
    midpoint = evaluation.expected_range.midpoint if evaluation.expected_range is not None else 0.0
    confidence = proposal.confidence if proposal.confidence is not None else 0.0
    return (
        midpoint
        + confidence * 10.0
        - 2.0 * len(evaluation.risk_flags)
        - evaluation.rejected_count
        + evaluation.selected_count
        - evaluation.estimated_cost
    )


def _sort_key(proposal: Proposal) -> tuple[bool, float, float]:
    evaluation = proposal.evaluation
    blocked = evaluation.blocked if evaluation is not None else False
    score = evaluation.rank_score if evaluation is not None else 0.0
    confidence = proposal.confidence if proposal.confidence is not None else 0.0
    return (blocked, -score, -confidence)


def rank_proposals(proposals: Sequence[Proposal]) -> tuple[Proposal, ...]:
    return tuple(sorted(proposals, key=_sort_key))


def build_explain_pack(proposals: Sequence[Proposal], *, source: str) -> dict[str, JSONValue]:
    items: list[JSONValue] = []
    for rank, proposal in enumerate(proposals, start=1):
        evaluation = proposal.evaluation or Evaluation()
        items.append(
            {
                "rank": rank,
                "title": proposal.title,
                "templateId": proposal.template_id,
                "branchId": proposal.branch_id,
                "confidence": proposal.confidence,
                "rankScore": evaluation.rank_score,
                "score": evaluation.score,
                "blocked": evaluation.blocked,
                "reasonCodes": list(evaluation.reason_codes),
                "riskFlags": list(evaluation.risk_flags),
                "expectedRange": (
                    None
                    if evaluation.expected_range is None
                    else evaluation.expected_range.to_dict()
                ),
                "estimatedCost": evaluation.estimated_cost,
                "rationale": proposal.rationale,
            }
        )
    return {"source": source, "strategy": RANKING_STRATEGY, "items": items}


def _results_by_index(results: object, count: int) -> dict[int, Mapping[str, object]]:
    mapped: dict[int, Mapping[str, object]] = {}
    if not isinstance(results, list):
        return mapped
    for position, item in enumerate(results):
        if not isinstance(item, Mapping):
            continue
        raw_index = item.get("proposalIndex", item.get("proposal_index", position))
        if isinstance(raw_index, bool) or not isinstance(raw_index, int):
            continue
        if 0 <= raw_index < count and raw_index not in mapped:
            mapped[raw_index] = item
    return mapped


async def run_evaluation_stage(
    turn: Turn,
    *,
    context: TurnContext,
    evaluator: PolicyEvaluator,
    intent_frame: Mapping[str, JSONValue] | None = None,
    logger: Any | None = None,
) -> Turn:
    """Evaluate, score, and rank a ready turn; other turns pass through untouched."""

    if not turn.is_ready:
        return turn
    log = logger if logger is not None else structlog.get_logger(__name__)
    proposals = turn.proposals
    user_id: str | None = None
    error: str | None = None

    if not evaluator.available:
        log.info("evaluation_skipped", source=SOURCE_UNAVAILABLE, proposal_count=len(proposals))
        skipped = turn.with_record(
            "evaluation",
            {
                "source": SOURCE_UNAVAILABLE,
                "userId": None,
                "evaluatedCount": 0,
                "blockedCount": 0,
                "error": None,
            },
        )
        return skipped.with_record(
            "ranking",
            {
                "strategy": RANKING_STRATEGY,
                "applied": False,
                "order": [item.title for item in proposals],
                "topTitle": proposals[0].title,
            },
        )

    payload = {
        **context.base_payload(),
        "proposals": [item.to_dict() for item in proposals],
        "intentFrame": dict(intent_frame or {}),
    }
    try:
        result = require_mapping(
            await evaluator.evaluate_policy_candidates(payload), "evaluator"
        )
    except Exception as exc:  # noqa: BLE001
        error = summarize_error(exc)
        log.warning("evaluation_failed", error=error, proposal_count=len(proposals))
        source = SOURCE_TOOL_ERROR
        evaluations = [Evaluation.evaluation_error(error) for _ in proposals]
    else:
        source = as_string(result.get("source")) or SOURCE_EVALUATOR_DEFAULT
        user_id = as_string(result.get("userId")) or None
        by_index = _results_by_index(result.get("results"), len(proposals))
        evaluations = [
            Evaluation.from_tool_result(by_index[index])
            if index in by_index
            else Evaluation(reason_codes=("NOT_EVALUATED",))
            for index in range(len(proposals))
        ]

    scored = [
        proposal.with_evaluation(
            replace(evaluation, rank_score=compute_rank_score(proposal, evaluation))
        )
        for proposal, evaluation in zip(proposals, evaluations)
    ]
    ranked = rank_proposals(scored)
    explain_pack = build_explain_pack(ranked, source=source)

    log.info(
        "evaluation_completed",
        source=source,
        proposal_count=len(ranked),
        blocked_count=sum(1 for item in ranked if item.evaluation and item.evaluation.blocked),
    )
    evaluation_record: dict[str, JSONValue] = {
        "source": source,
        "userId": user_id,
        "evaluatedCount": len(ranked),
        "blockedCount": sum(1 for item in ranked if item.evaluation and item.evaluation.blocked),
        "error": error,
    }
    ranking_record: dict[str, JSONValue] = {
        "strategy": RANKING_STRATEGY,
        "applied": True,
        "order": [item.title for item in ranked],
        "topTitle": ranked[0].title if ranked else None,
    }
    evaluated = turn.with_record("evaluation", evaluation_record)
    return evaluated.with_record(
        "ranking",
        ranking_record,
        proposals=ranked,
        explain_pack=explain_pack,
    )


__all__ = [
    "build_explain_pack",
    "compute_rank_score",
    "rank_proposals",
    "run_evaluation_stage",
]
