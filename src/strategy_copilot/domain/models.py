"""
strategy-copilot — turn domain models

File: src/strategy_copilot/domain/models.py
Last updated: 2026-10-17

Purpose
- Immutable value objects threaded through every stage of a strategy chat turn.

What should be included in this file
- Turn status enum and the Turn record with its protocol sub-records.
- Proposal, invalid-candidate, evaluation, approval, publish, monitor, and memory records.
- Canonical ``to_dict`` rendering for external consumers.

Functional requirements
- Records are never mutated in place; stages derive new values with ``dataclasses.replace``.
- Protocol sub-records are additive: a recorded key can never be overwritten.
- Turn-level keys render in camelCase; per-proposal ``evaluation``/``publish`` annotations
  render in snake_case.

Non-functional requirements
- Validation happens in ``__post_init__`` so invalid values fail at construction.
"""

from __future__ import annotations

import copy
import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Final

from strategy_copilot.constants import (
    ENVELOPE_SCHEMA_VERSION,
    PLANNER_ENGINE,
    PROPOSAL_SOURCE,
    PROTOCOL_NAME,
    PROTOCOL_VERSION,
)

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

PROTOCOL_RECORD_KEYS: Final[tuple[str, ...]] = (
    "critic",
    "evaluation",
    "ranking",
    "approval",
    "publish",
    "post_publish_monitor",
    "memory_update",
)

MEMORY_BUCKETS: Final[tuple[str, ...]] = ("goals", "constraints", "audience", "timing", "decisions")


class TurnStatus(StrEnum):
    AI_UNAVAILABLE = "AI_UNAVAILABLE"
    CHAT_REPLY = "CHAT_REPLY"
    PROPOSAL_READY = "PROPOSAL_READY"


class SourceFormat(StrEnum):
    TEXT = "text"
    ENVELOPE = "json_envelope"
    INVALID_JSON = "invalid_json"


@dataclass(frozen=True, slots=True)
class PatchViolation:
    """One allow-list violation reported by the template catalog."""

    path: str
    reason: str

    def to_dict(self) -> dict[str, JSONValue]:
        return {"path": self.path, "reason": self.reason}


@dataclass(frozen=True, slots=True)
class InvalidCandidate:
    """A raw candidate that failed normalization, kept with its reasons."""

    template_id: str
    branch_id: str
    title: str
    reason: str
    violations: tuple[PatchViolation, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "violations", tuple(self.violations))
        if not self.reason.strip():
            raise ValueError("InvalidCandidate.reason must not be empty")

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "templateId": self.template_id,
            "branchId": self.branch_id,
            "title": self.title,
            "reason": self.reason,
            "violations": [item.to_dict() for item in self.violations],
        }


@dataclass(frozen=True, slots=True)
class StrategyMeta:
    """Provenance of a model-drafted proposal."""

    provider: str
    model: str
    rationale: str = ""
    confidence: float | None = None
    source: str = PROPOSAL_SOURCE

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "source": self.source,
            "provider": self.provider,
            "model": self.model,
            "rationale": self.rationale,
            "confidence": self.confidence,
        }


@dataclass(frozen=True, slots=True)
class ExpectedRange:
    minimum: float
    maximum: float

    @property
    def midpoint(self) -> float:
        return (self.minimum + self.maximum) / 2.0

    def to_dict(self) -> dict[str, JSONValue]:
        return {"min": self.minimum, "max": self.maximum}


@dataclass(frozen=True, slots=True)
class Evaluation:
    """Per-proposal evaluator verdict plus the derived rank score."""

    blocked: bool = False
    score: float | None = None
    reason_codes: tuple[str, ...] = ()
    risk_flags: tuple[str, ...] = ()
    expected_range: ExpectedRange | None = None
    selected_count: int = 0
    rejected_count: int = 0
    estimated_cost: float = 0.0
    decision_id: str | None = None
    error: str | None = None
    rank_score: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "reason_codes", tuple(self.reason_codes))
        object.__setattr__(self, "risk_flags", tuple(self.risk_flags))

    @classmethod
    def from_tool_result(cls, payload: Mapping[str, object]) -> Evaluation:
        """Build from an evaluator result item; snake_case and camelCase keys are accepted."""

        def pick(*keys: str) -> object:
            for key in keys:
                if key in payload:
                    return payload[key]
            return None

        raw_range = pick("expected_range", "expectedRange")
        expected: ExpectedRange | None = None
        if isinstance(raw_range, Mapping):
            low = _finite_or_none(raw_range.get("min"))
            high = _finite_or_none(raw_range.get("max"))
            if low is not None and high is not None:
                expected = ExpectedRange(minimum=low, maximum=high)

        decision_id = pick("decision_id", "decisionId")
        error = pick("error")
        return cls(
            blocked=bool(pick("blocked")),
            score=_finite_or_none(pick("score")),
            reason_codes=_string_tuple(pick("reason_codes", "reasonCodes")),
            risk_flags=_string_tuple(pick("risk_flags", "riskFlags")),
            expected_range=expected,
            selected_count=_non_negative_int(pick("selected_count", "selectedCount")),
            rejected_count=_non_negative_int(pick("rejected_count", "rejectedCount")),
            estimated_cost=_finite_or_none(pick("estimated_cost", "estimatedCost")) or 0.0,
            decision_id=decision_id if isinstance(decision_id, str) and decision_id else None,
            error=error if isinstance(error, str) and error else None,
        )

    @classmethod
    def evaluation_error(cls, error: str) -> Evaluation:
        """Synthetic blocked verdict used when the evaluator call fails."""

        return cls(
            blocked=True,
            reason_codes=("EVALUATION_ERROR",),
            risk_flags=("EVALUATION_ERROR",),
            error=error,
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "blocked": self.blocked,
            "score": self.score,
            "reason_codes": list(self.reason_codes),
            "risk_flags": list(self.risk_flags),
            "expected_range": None if self.expected_range is None else self.expected_range.to_dict(),
            "selected_count": self.selected_count,
            "rejected_count": self.rejected_count,
            "estimated_cost": self.estimated_cost,
            "decision_id": self.decision_id,
            "error": self.error,
            "rank_score": self.rank_score,
        }


@dataclass(frozen=True, slots=True)
class PublishItem:
    """Publish outcome for one proposal index."""

    proposal_index: int
    ok: bool
    policy_id: str | None = None
    draft_id: str | None = None
    publish_id: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "proposalIndex": self.proposal_index,
            "ok": self.ok,
            "policyId": self.policy_id,
            "draftId": self.draft_id,
            "publishId": self.publish_id,
            "error": self.error,
        }

    def to_annotation(self) -> dict[str, JSONValue]:
        """Snake_case shape attached to the proposal itself."""

        return {
            "ok": self.ok,
            "policy_id": self.policy_id,
            "draft_id": self.draft_id,
            "publish_id": self.publish_id,
            "error": self.error,
        }


@dataclass(frozen=True, slots=True)
class Proposal:
    """A validated, fully materialized strategy candidate."""

    title: str
    rationale: str
    confidence: float | None
    spec: Mapping[str, JSONValue]
    template_id: str
    template_name: str
    branch_id: str
    branch_name: str
    strategy_meta: StrategyMeta
    evaluation: Evaluation | None = None
    publish: PublishItem | None = None

    def __post_init__(self) -> None:
        if self.confidence is not None:
            if not math.isfinite(self.confidence) or not (0.0 <= self.confidence <= 1.0):
                raise ValueError("Proposal.confidence must be within [0, 1] or None")
        object.__setattr__(self, "spec", copy.deepcopy(dict(self.spec)))

    def with_evaluation(self, evaluation: Evaluation) -> Proposal:
        return replace(self, evaluation=evaluation)

    def with_publish(self, outcome: PublishItem) -> Proposal:
        return replace(self, publish=outcome)

    def to_dict(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {
            "title": self.title,
            "rationale": self.rationale,
            "confidence": self.confidence,
            "spec": copy.deepcopy(dict(self.spec)),
            "template": {"templateId": self.template_id, "name": self.template_name},
            "branch": {"branchId": self.branch_id, "name": self.branch_name},
            "strategyMeta": self.strategy_meta.to_dict(),
        }
        if self.evaluation is not None:
            payload["evaluation"] = self.evaluation.to_dict()
        if self.publish is not None:
            payload["publish"] = self.publish.to_annotation()
        return payload


@dataclass(frozen=True, slots=True)
class ApprovalDecision:
    required: bool
    approved: bool
    approval_id: str | None = None
    reason: str | None = None
    source: str = "SKIPPED"

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "required": self.required,
            "approved": self.approved,
            "approvalId": self.approval_id,
            "reason": self.reason,
            "source": self.source,
        }


@dataclass(frozen=True, slots=True)
class PublishResult:
    """Batch publish summary; skipped publishes are explicit records."""

    intent: bool
    source: str
    items: tuple[PublishItem, ...] = ()
    error: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "items", tuple(self.items))

    @property
    def published_count(self) -> int:
        return sum(1 for item in self.items if item.ok)

    @property
    def failed_count(self) -> int:
        return sum(1 for item in self.items if not item.ok)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "intent": self.intent,
            "source": self.source,
            "items": [item.to_dict() for item in self.items],
            "publishedCount": self.published_count,
            "failedCount": self.failed_count,
            "error": self.error,
        }


@dataclass(frozen=True, slots=True)
class MonitorReport:
    source: str
    alerts: tuple[str, ...] = ()
    recommendations: tuple[str, ...] = ()
    summary: str = ""
    monitored_count: int = 0
    error: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "alerts", tuple(self.alerts))
        object.__setattr__(self, "recommendations", tuple(self.recommendations))

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "source": self.source,
            "alerts": list(self.alerts),
            "recommendations": list(self.recommendations),
            "summary": self.summary,
            "alertCount": len(self.alerts),
            "monitoredCount": self.monitored_count,
            "error": self.error,
        }


@dataclass(frozen=True, slots=True)
class MemoryFacts:
    """Five fixed fact buckets; merging is append-only."""

    goals: tuple[str, ...] = ()
    constraints: tuple[str, ...] = ()
    audience: tuple[str, ...] = ()
    timing: tuple[str, ...] = ()
    decisions: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        for bucket in MEMORY_BUCKETS:
            object.__setattr__(self, bucket, tuple(getattr(self, bucket)))

    @classmethod
    def from_mapping(cls, payload: Mapping[str, object] | None) -> MemoryFacts:
        if not payload:
            return cls()
        values: dict[str, tuple[str, ...]] = {}
        for bucket in MEMORY_BUCKETS:
            values[bucket] = _string_tuple(payload.get(bucket))
        return cls(**values)

    def bucket(self, name: str) -> tuple[str, ...]:
        if name not in MEMORY_BUCKETS:
            raise KeyError(f"unknown memory bucket {name!r}")
        return tuple(getattr(self, name))

    def is_empty(self) -> bool:
        return not any(getattr(self, bucket) for bucket in MEMORY_BUCKETS)

    def to_dict(self) -> dict[str, JSONValue]:
        return {bucket: list(getattr(self, bucket)) for bucket in MEMORY_BUCKETS}


@dataclass(frozen=True, slots=True)
class MemoryUpdate:
    source: str
    persisted: bool
    facts: MemoryFacts
    summary: str = ""
    memory_id: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "source": self.source,
            "persisted": self.persisted,
            "memoryId": self.memory_id,
            "summary": self.summary,
            "memoryFacts": self.facts.to_dict(),
            "error": self.error,
        }


@dataclass(frozen=True, slots=True)
class CriticVerdict:
    need_revision: bool
    summary: str
    issues: tuple[str, ...] = ()
    focus: tuple[str, ...] = ()
    source: str = "MODEL"

    def __post_init__(self) -> None:
        object.__setattr__(self, "issues", tuple(self.issues))
        object.__setattr__(self, "focus", tuple(self.focus))

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "needRevision": self.need_revision,
            "summary": self.summary,
            "issues": list(self.issues),
            "focus": list(self.focus),
            "source": self.source,
        }


@dataclass(frozen=True, slots=True)
class TurnProtocol:
    """Envelope metadata plus additive stage sub-records."""

    source_format: str = SourceFormat.TEXT
    schema_version: str | None = None
    parse_error: bool = False
    name: str = PROTOCOL_NAME
    version: str = PROTOCOL_VERSION
    planner_engine: str = PLANNER_ENGINE
    records: tuple[tuple[str, dict[str, JSONValue]], ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "records", tuple(self.records))

    def record(self, key: str) -> dict[str, JSONValue] | None:
        for name, value in self.records:
            if name == key:
                return copy.deepcopy(value)
        return None

    def has_record(self, key: str) -> bool:
        return any(name == key for name, _ in self.records)

    def with_record(self, key: str, value: Mapping[str, JSONValue]) -> TurnProtocol:
        if key not in PROTOCOL_RECORD_KEYS:
            raise ValueError(f"unknown protocol record {key!r}")
        if self.has_record(key):
            raise ValueError(f"protocol record {key!r} is already set")
        return replace(self, records=(*self.records, (key, copy.deepcopy(dict(value)))))

    def to_dict(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {
            "name": self.name,
            "version": self.version,
            "sourceFormat": str(self.source_format),
            "schemaVersion": self.schema_version or ENVELOPE_SCHEMA_VERSION,
            "parseError": self.parse_error,
            "plannerEngine": self.planner_engine,
        }
        for key, value in self.records:
            payload[key] = copy.deepcopy(value)
        return payload


@dataclass(frozen=True, slots=True)
class Turn:
    """Complete result of one user message; replaced, never mutated."""

    status: TurnStatus
    assistant_message: str
    proposals: tuple[Proposal, ...] = ()
    validation_issues: tuple[InvalidCandidate, ...] = ()
    protocol: TurnProtocol = field(default_factory=TurnProtocol)
    reason: str | None = None
    explain_pack: Mapping[str, JSONValue] | None = None
    approval: ApprovalDecision | None = None
    publish_result: PublishResult | None = None
    post_publish_monitor: MonitorReport | None = None
    memory_update: MemoryUpdate | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "status", TurnStatus(self.status))
        object.__setattr__(self, "proposals", tuple(self.proposals))
        object.__setattr__(self, "validation_issues", tuple(self.validation_issues))

    @property
    def proposal(self) -> Proposal | None:
        return self.proposals[0] if self.proposals else None

    @property
    def is_ready(self) -> bool:
        return self.status is TurnStatus.PROPOSAL_READY and bool(self.proposals)

    def with_record(self, key: str, value: Mapping[str, JSONValue], **changes: object) -> Turn:
        """Append one protocol sub-record and apply field changes in a single replacement."""

        return replace(self, protocol=self.protocol.with_record(key, value), **changes)

    def to_dict(self) -> dict[str, JSONValue]:
        primary = self.proposal
        payload: dict[str, JSONValue] = {
            "status": str(self.status),
            "assistantMessage": self.assistant_message,
            "proposal": None if primary is None else primary.to_dict(),
            "proposals": [item.to_dict() for item in self.proposals],
            "validationIssues": [item.to_dict() for item in self.validation_issues],
            "protocol": self.protocol.to_dict(),
        }
        if self.reason is not None:
            payload["reason"] = self.reason
        if self.explain_pack is not None:
            payload["explainPack"] = copy.deepcopy(dict(self.explain_pack))
        if self.approval is not None:
            payload["approval"] = self.approval.to_dict()
        if self.publish_result is not None:
            payload["publish"] = self.publish_result.to_dict()
        if self.post_publish_monitor is not None:
            payload["postPublishMonitor"] = self.post_publish_monitor.to_dict()
        if self.memory_update is not None:
            payload["memoryUpdate"] = self.memory_update.to_dict()
        return payload


def _finite_or_none(value: object) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    parsed = float(value)
    return parsed if math.isfinite(parsed) else None


def _non_negative_int(value: object) -> int:
    parsed = _finite_or_none(value)
    if parsed is None or parsed < 0:
        return 0
    return int(parsed)


def _string_tuple(value: object) -> tuple[str, ...]:
    if isinstance(value, str) or not isinstance(value, Iterable):
        return ()
    return tuple(item.strip() for item in value if isinstance(item, str) and item.strip())


__all__ = [
    "MEMORY_BUCKETS",
    "PROTOCOL_RECORD_KEYS",
    "ApprovalDecision",
    "CriticVerdict",
    "Evaluation",
    "ExpectedRange",
    "InvalidCandidate",
    "JSONScalar",
    "JSONValue",
    "MemoryFacts",
    "MemoryUpdate",
    "MonitorReport",
    "PatchViolation",
    "Proposal",
    "PublishItem",
    "PublishResult",
    "SourceFormat",
    "StrategyMeta",
    "Turn",
    "TurnProtocol",
    "TurnStatus",
]
