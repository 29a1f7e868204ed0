"""Turn pipeline stages and the orchestrating service."""

from strategy_copilot.pipeline.critic import CriticConfig
from strategy_copilot.pipeline.memory import IntentProfile, MemoryLimits, build_intent_profile
from strategy_copilot.pipeline.service import CopilotSettings, StrategyCopilot, TurnRequest
from strategy_copilot.pipeline.streaming import TurnStream
from strategy_copilot.pipeline.tools import (
    ApprovalValidator,
    MemoryUpdater,
    PolicyEvaluator,
    PolicyPublisher,
    PublishMonitor,
    TurnContext,
    TurnTools,
    tools_from_callables,
)

__all__ = [
    "ApprovalValidator",
    "CopilotSettings",
    "CriticConfig",
    "IntentProfile",
    "MemoryLimits",
    "MemoryUpdater",
    "PolicyEvaluator",
    "PolicyPublisher",
    "PublishMonitor",
    "StrategyCopilot",
    "TurnContext",
    "TurnRequest",
    "TurnStream",
    "TurnTools",
    "build_intent_profile",
    "tools_from_callables",
]
