"""
strategy-copilot — intent profiling and long-lived memory facts

File: src/strategy_copilot/pipeline/memory.py
Last updated: 2026-10-17

Purpose
- Classify the user's free-text intent and fold each turn into five memory fact buckets.

What should be included in this file
- ``build_intent_profile``: keyword/regex heuristics in Chinese and English.
- Clarification slot questions for profiles with missing slots.
- ``derive_memory_facts`` / ``merge_memory_facts`` over the fixed buckets.
- ``run_memory_stage``: optional memory updater call with ``MEMORY_ERROR`` fallback.

Functional requirements
- Facts are deduplicated case-insensitively, clamped per item, and capped per bucket.
- Merging is append-only: existing facts are kept ahead of new ones until the cap
  evicts the oldest.
- Memory facts are derived even when monitoring failed or was skipped.

Non-functional requirements
- Profiling is pure; only ``run_memory_stage`` performs I/O.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Final

import structlog

from strategy_copilot.domain.models import (
    MEMORY_BUCKETS,
    JSONValue,
    MemoryFacts,
    MemoryUpdate,
    MonitorReport,
    Turn,
    TurnStatus,
)
from strategy_copilot.pipeline.tools import MemoryUpdater, TurnContext, require_mapping
from strategy_copilot.utils.text import as_string, clamp_text, dedupe_preserving_order, summarize_error

GOAL_KEYWORDS: Final[Mapping[str, tuple[str, ...]]] = {
    "acquisition": ("拉新", "新客", "首单", "获客", "acquire", "new user"),
    "activation": ("活跃", "会员日", "天气", "高温", "雨天", "签到", "activation"),
    "revenue": ("客单", "收入", "营收", "充值", "支付", "库存", "急售", "revenue"),
    "retention": ("召回", "复购", "沉默", "流失", "回流", "retention", "winback"),
}

TIME_WINDOW_KEYWORDS: Final[tuple[tuple[str, tuple[str, ...]], ...]] = (
    ("TODAY", ("今天", "today", "今晚", "tonight", "立即", "马上", "now")),
    ("TOMORROW", ("明天", "tomorrow", "次日")),
    ("LUNCH", ("午市", "午餐", "中午", "lunch")),
    ("DINNER", ("晚市", "晚餐", "晚上", "dinner")),
    ("WEEKEND", ("周末", "weekend")),
)

AUDIENCE_KEYWORDS: Final[tuple[tuple[str, tuple[str, ...]], ...]] = (
    ("NEW_USER", ("新客", "new user")),
    ("EXISTING_USER", ("老客", "老用户", "regular", "returning")),
    ("MEMBER", ("会员", "member")),
    ("HIGH_VALUE", ("高价值", "vip", "high value")),
)

URGENCY_KEYWORDS: Final[tuple[str, ...]] = (
    "立即", "马上", "尽快", "紧急", "急售", "urgent", "asap", "immediately", "right now",
)

RISK_KEYWORDS: Final[tuple[tuple[str, tuple[str, ...]], ...]] = (
    ("CONSERVATIVE", ("稳健", "保守", "低风险", "控制风险", "conservative", "low risk", "safe")),
    ("AGGRESSIVE", ("激进", "冲量", "大力度", "aggressive", "bold", "maximize")),
)

BUDGET_PATTERNS: Final[tuple[re.Pattern[str], ...]] = (
    re.compile(r"预算(?:控制在|不超过|上限|约|为)?\s*([0-9]{2,5})\s*(?:元|块|rmb|yuan)?", re.IGNORECASE),
    re.compile(r"([0-9]{2,5})\s*(?:元|块)\s*(?:预算|投放|成本)", re.IGNORECASE),
)
BUDGET_MIN: Final[int] = 30
BUDGET_MAX: Final[int] = 5000

SLOT_QUESTIONS: Final[Mapping[str, str]] = {
    "goal": "你这次更想要哪个目标：拉新、召回、提客单还是去库存？",
    "audience": "目标人群是新客、老客、会员还是高价值用户？",
    "time_window": "希望在哪个时段生效：今天/明天/午市/晚市/周末？",
    "budget_cap": "本次活动预算上限希望控制在多少元？",
}
MAX_CLARIFICATION_QUESTIONS: Final[int] = 3


@dataclass(frozen=True, slots=True)
class IntentProfile:
    normalized: str
    primary_goal: str
    goal_scores: Mapping[str, int]
    ambiguous_goal: bool
    budget_cap: int | None
    time_window: str
    audience: str
    urgency: str
    risk_preference: str
    token_count: int

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "primaryGoal": self.primary_goal,
            "goalScores": dict(self.goal_scores),
            "ambiguousGoal": self.ambiguous_goal,
            "budgetCap": self.budget_cap,
            "timeWindow": self.time_window,
            "audience": self.audience,
            "urgency": self.urgency,
            "riskPreference": self.risk_preference,
            "tokenCount": self.token_count,
        }


@dataclass(frozen=True, slots=True)
class MemoryLimits:
    max_items_per_bucket: int = 12
    max_item_length: int = 120

    def __post_init__(self) -> None:
        if self.max_items_per_bucket <= 0:
            raise ValueError("max_items_per_bucket must be > 0")
        if self.max_item_length <= 0:
            raise ValueError("max_item_length must be > 0")


def _includes_any(text: str, keywords: Sequence[str]) -> bool:
    return any(keyword in text for keyword in keywords)


def _first_label(text: str, table: Sequence[tuple[str, tuple[str, ...]]]) -> str:
    for label, keywords in table:
        if _includes_any(text, keywords):
            return label
    return ""


def parse_budget_cap(text: str) -> int | None:
    normalized = as_string(text).lower()
    if not normalized:
        return None
    for pattern in BUDGET_PATTERNS:
        match = pattern.search(normalized)
        if match is None:
            continue
        value = int(match.group(1))
        return min(BUDGET_MAX, max(BUDGET_MIN, value))
    return None


def build_intent_profile(text: str) -> IntentProfile:
    """Heuristic goal/budget/timing/audience profile of one user message."""

    normalized = as_string(text).lower()
    scores = {
        goal: (2 if normalized and _includes_any(normalized, keywords) else 0)
        for goal, keywords in GOAL_KEYWORDS.items()
    }
    ranked = sorted(scores.items(), key=lambda item: item[1], reverse=True)
    top_goal, top_score = ranked[0]
    second_score = ranked[1][1]
    ambiguous = top_score == 0 or (second_score > 0 and top_score - second_score <= 1)

    return IntentProfile(
        normalized=normalized,
        primary_goal=top_goal if top_score > 0 else "",
        goal_scores=scores,
        ambiguous_goal=ambiguous,
        budget_cap=parse_budget_cap(normalized),
        time_window=_first_label(normalized, TIME_WINDOW_KEYWORDS),
        audience=_first_label(normalized, AUDIENCE_KEYWORDS),
        urgency="HIGH" if _includes_any(normalized, URGENCY_KEYWORDS) else "NORMAL",
        risk_preference=_first_label(normalized, RISK_KEYWORDS),
        token_count=len(normalized.split()),
    )


def missing_slots(profile: IntentProfile) -> list[str]:
    slots: list[str] = []
    if not profile.primary_goal or profile.ambiguous_goal:
        slots.append("goal")
    if not profile.audience:
        slots.append("audience")
    if not profile.time_window:
        slots.append("time_window")
    if profile.budget_cap is None:
        slots.append("budget_cap")
    return slots


def clarification_questions(
    profile: IntentProfile, *, limit: int = MAX_CLARIFICATION_QUESTIONS
) -> list[str]:
    return [SLOT_QUESTIONS[slot] for slot in missing_slots(profile)[:limit]]


def _normalize_bucket(items: Sequence[str], limits: MemoryLimits) -> tuple[str, ...]:
    clamped = [clamp_text(item, limits.max_item_length) for item in items]
    deduped = dedupe_preserving_order(clamped)
    return tuple(deduped[-limits.max_items_per_bucket :])


def derive_memory_facts(
    *,
    profile: IntentProfile,
    turn: Turn,
    monitor: MonitorReport | None = None,
    limits: MemoryLimits | None = None,
) -> MemoryFacts:
    """Fold the intent profile, turn outcome, and monitor advice into the fact buckets."""

    limits = limits or MemoryLimits()
    buckets: dict[str, list[str]] = {name: [] for name in MEMORY_BUCKETS}

    if profile.primary_goal:
        buckets["goals"].append(f"goal:{profile.primary_goal}")
    if profile.budget_cap is not None:
        buckets["constraints"].append(f"budget_cap:{profile.budget_cap}")
    if profile.risk_preference:
        buckets["constraints"].append(f"risk_preference:{profile.risk_preference}")
    if profile.audience:
        buckets["audience"].append(f"audience:{profile.audience}")
    if profile.time_window:
        buckets["timing"].append(f"time_window:{profile.time_window}")
    if profile.urgency == "HIGH":
        buckets["timing"].append("urgency:HIGH")

    buckets["decisions"].append(f"turn_status:{turn.status}")
    top = turn.proposal
    if turn.status is TurnStatus.PROPOSAL_READY and top is not None:
        buckets["decisions"].append(f"top_proposal:{top.template_id}/{top.branch_id}")
    for proposal in turn.proposals:
        if proposal.publish is not None and proposal.publish.ok and proposal.publish.policy_id:
            buckets["decisions"].append(f"published:{proposal.publish.policy_id}")
    if monitor is not None:
        buckets["decisions"].extend(f"monitor:{item}" for item in monitor.recommendations)

    return MemoryFacts(**{name: _normalize_bucket(items, limits) for name, items in buckets.items()})


def merge_memory_facts(
    existing: MemoryFacts,
    incoming: MemoryFacts,
    *,
    limits: MemoryLimits | None = None,
) -> MemoryFacts:
    limits = limits or MemoryLimits()
    return MemoryFacts(
        **{
            name: _normalize_bucket([*existing.bucket(name), *incoming.bucket(name)], limits)
            for name in MEMORY_BUCKETS
        }
    )


def summarize_memory(facts: MemoryFacts) -> str:
    parts = [
        f"{name}={', '.join(facts.bucket(name))}" for name in MEMORY_BUCKETS if facts.bucket(name)
    ]
    return "; ".join(parts)


@dataclass(frozen=True, slots=True)
class MemoryStageInput:
    profile: IntentProfile
    existing: MemoryFacts = field(default_factory=MemoryFacts)
    limits: MemoryLimits = field(default_factory=MemoryLimits)


async def run_memory_stage(
    turn: Turn,
    *,
    context: TurnContext,
    updater: MemoryUpdater,
    stage_input: MemoryStageInput,
    logger: Any | None = None,
) -> Turn:
    """Derive and merge facts, then hand them to the memory updater when configured."""

    log = logger if logger is not None else structlog.get_logger(__name__)
    derived = derive_memory_facts(
        profile=stage_input.profile,
        turn=turn,
        monitor=turn.post_publish_monitor,
        limits=stage_input.limits,
    )
    facts = merge_memory_facts(stage_input.existing, derived, limits=stage_input.limits)
    summary = summarize_memory(facts)

    if not updater.available:
        update = MemoryUpdate(source="LOCAL", persisted=False, facts=facts, summary=summary)
    else:
        payload = {
            **context.base_payload(),
            "status": str(turn.status),
            "memoryFacts": facts.to_dict(),
            "summary": summary,
        }
        try:
            result = require_mapping(
                await updater.update_strategy_memory(payload), "memory updater"
            )
        except Exception as exc:  # noqa: BLE001
            error = summarize_error(exc)
            log.warning("memory_update_failed", error=error)
            update = MemoryUpdate(
                source="MEMORY_ERROR",
                persisted=False,
                facts=facts,
                summary=summary,
                error=error,
            )
        else:
            memory_id = as_string(result.get("memoryId") or result.get("memory_id"))
            update = MemoryUpdate(
                source=as_string(result.get("source")) or "MEMORY_TOOL",
                persisted=bool(result.get("persisted")),
                facts=facts,
                summary=as_string(result.get("summary")) or summary,
                memory_id=memory_id or None,
            )

    log.info(
        "memory_update_completed",
        source=update.source,
        persisted=update.persisted,
        fact_count=sum(len(facts.bucket(name)) for name in MEMORY_BUCKETS),
    )
    record = update.to_dict()
    record.pop("memoryFacts", None)
    return turn.with_record("memory_update", record, memory_update=update)


__all__ = [
    "SLOT_QUESTIONS",
    "IntentProfile",
    "MemoryLimits",
    "MemoryStageInput",
    "build_intent_profile",
    "clarification_questions",
    "derive_memory_facts",
    "merge_memory_facts",
    "missing_slots",
    "parse_budget_cap",
    "run_memory_stage",
    "summarize_memory",
]
