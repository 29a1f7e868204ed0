"""Domain model exports for the turn pipeline."""

from strategy_copilot.domain.models import (
    ApprovalDecision,
    CriticVerdict,
    Evaluation,
    ExpectedRange,
    InvalidCandidate,
    MemoryFacts,
    MemoryUpdate,
    MonitorReport,
    PatchViolation,
    Proposal,
    PublishItem,
    PublishResult,
    SourceFormat,
    StrategyMeta,
    Turn,
    TurnProtocol,
    TurnStatus,
)

__all__ = [
    "ApprovalDecision",
    "CriticVerdict",
    "Evaluation",
    "ExpectedRange",
    "InvalidCandidate",
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
