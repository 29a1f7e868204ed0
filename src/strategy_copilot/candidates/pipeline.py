"""
strategy-copilot — candidate normalization pipeline

File: src/strategy_copilot/candidates/pipeline.py
Last updated: 2026-10-17

Purpose
- Turn raw model-proposed candidate objects into validated proposals or invalid-candidate
  records against a ``TemplateCatalog``.

What should be included in this file
- Caller overrides and model identity value objects.
- ``normalize_candidate``: the six-step per-candidate pipeline.
- ``build_candidates``: order-preserving, capped batch processing.

Functional requirements
- Each raw candidate lands exactly once in ``proposals`` or ``invalid``.
- Caller overrides are merged after the model patch and win on scalar conflicts.
- Confidence is clamped to [0, 1] or ``None``; provider names are uppercased.

Non-functional requirements
- A catalog failure for one candidate never aborts the batch.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from strategy_copilot.candidates.catalog import TemplateCatalog
from strategy_copilot.constants import MAX_PROPOSAL_CANDIDATES
from strategy_copilot.domain.models import (
    InvalidCandidate,
    JSONValue,
    PatchViolation,
    Proposal,
    StrategyMeta,
)
from strategy_copilot.utils.text import as_string, clamp_number, summarize_error


@dataclass(frozen=True, slots=True)
class CandidateOverrides:
    """Caller-side defaults and the override patch applied after the model's patch."""

    merchant_id: str
    template_id: str = ""
    branch_id: str = ""
    policy_patch: Mapping[str, JSONValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "policy_patch", dict(self.policy_patch))


@dataclass(frozen=True, slots=True)
class ModelIdentity:
    provider: str
    model: str


@dataclass(frozen=True, slots=True)
class CandidateBatch:
    proposals: tuple[Proposal, ...] = ()
    invalid: tuple[InvalidCandidate, ...] = ()
    processed: int = 0
    dropped: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "proposals", tuple(self.proposals))
        object.__setattr__(self, "invalid", tuple(self.invalid))


def _pick(raw: Mapping[str, object], *keys: str) -> object:
    for key in keys:
        if key in raw:
            return raw[key]
    return None


def normalize_candidate(
    raw: object,
    *,
    catalog: TemplateCatalog,
    overrides: CandidateOverrides,
    identity: ModelIdentity,
) -> Proposal | InvalidCandidate:
    """Resolve, merge, validate, and materialize one raw candidate."""

    if not isinstance(raw, Mapping):
        return InvalidCandidate(
            template_id="",
            branch_id="",
            title="",
            reason="candidate must be a JSON object",
        )

    ai_template_id = as_string(_pick(raw, "templateId", "template_id"))
    ai_branch_id = as_string(_pick(raw, "branchId", "branch_id"))
    raw_title = as_string(_pick(raw, "title"))

    try:
        template, branch = catalog.resolve_template_and_branch(
            ai_template_id=ai_template_id,
            ai_branch_id=ai_branch_id,
            template_id=overrides.template_id,
            branch_id=overrides.branch_id,
        )
    except Exception as exc:  # noqa: BLE001
        return InvalidCandidate(
            template_id=ai_template_id or overrides.template_id,
            branch_id=ai_branch_id or overrides.branch_id,
            title=raw_title,
            reason=summarize_error(exc),
        )

    raw_patch = _pick(raw, "policyPatch", "policy_patch")
    if raw_patch is not None and not isinstance(raw_patch, Mapping):
        return InvalidCandidate(
            template_id=template.template_id,
            branch_id=branch.branch_id,
            title=raw_title,
            reason="policy patch validation failed",
            violations=(PatchViolation(path="policyPatch", reason="expected object"),),
        )
    model_patch: Mapping[str, JSONValue] = raw_patch if isinstance(raw_patch, Mapping) else {}

    try:
        merged_patch = catalog.merge_patch(model_patch, overrides.policy_patch)
        violations = tuple(catalog.validate_policy_patch(template, merged_patch))
    except Exception as exc:  # noqa: BLE001
        return InvalidCandidate(
            template_id=template.template_id,
            branch_id=branch.branch_id,
            title=raw_title,
            reason=summarize_error(exc),
        )
    if violations:
        return InvalidCandidate(
            template_id=template.template_id,
            branch_id=branch.branch_id,
            title=raw_title,
            reason="policy patch validation failed",
            violations=violations,
        )

    try:
        spec = catalog.materialize_spec(
            merchant_id=overrides.merchant_id,
            template=template,
            branch=branch,
            patch=merged_patch,
        )
    except Exception as exc:  # noqa: BLE001
        return InvalidCandidate(
            template_id=template.template_id,
            branch_id=branch.branch_id,
            title=raw_title,
            reason=summarize_error(exc),
        )

    confidence = clamp_number(_pick(raw, "confidence"), 0.0, 1.0)
    rationale = as_string(_pick(raw, "rationale"))
    return Proposal(
        title=raw_title or f"{template.name} - {branch.name} - AI",
        rationale=rationale,
        confidence=confidence,
        spec=spec,
        template_id=template.template_id,
        template_name=template.name,
        branch_id=branch.branch_id,
        branch_name=branch.name,
        strategy_meta=StrategyMeta(
            provider=identity.provider.strip().upper(),
            model=identity.model,
            rationale=rationale,
            confidence=confidence,
        ),
    )


def build_candidates(
    raw_candidates: Iterable[object],
    *,
    catalog: TemplateCatalog,
    overrides: CandidateOverrides,
    identity: ModelIdentity,
    max_candidates: int = MAX_PROPOSAL_CANDIDATES,
) -> CandidateBatch:
    """Normalize up to ``max_candidates`` raw candidates in emission order."""

    if max_candidates <= 0:
        raise ValueError("max_candidates must be > 0")
    items = list(raw_candidates)
    proposals: list[Proposal] = []
    invalid: list[InvalidCandidate] = []
    for raw in items[:max_candidates]:
        outcome = normalize_candidate(raw, catalog=catalog, overrides=overrides, identity=identity)
        if isinstance(outcome, Proposal):
            proposals.append(outcome)
        else:
            invalid.append(outcome)
    processed = min(len(items), max_candidates)
    return CandidateBatch(
        proposals=tuple(proposals),
        invalid=tuple(invalid),
        processed=processed,
        dropped=len(items) - processed,
    )


__all__ = [
    "CandidateBatch",
    "CandidateOverrides",
    "ModelIdentity",
    "build_candidates",
    "normalize_candidate",
]
