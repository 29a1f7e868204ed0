"""Model gateway contract, error taxonomy, and bundled implementations."""

from strategy_copilot.gateway.base import (
    BackoffConfig,
    ChatMessage,
    ModelGateway,
    ProviderError,
    RawChatResult,
    StreamEvent,
    StructuredOutputDefinition,
)
from strategy_copilot.gateway.openai_gateway import ModelSettings, OpenAIGateway
from strategy_copilot.gateway.scripted import ScriptedGateway

__all__ = [
    "BackoffConfig",
    "ChatMessage",
    "ModelGateway",
    "ModelSettings",
    "OpenAIGateway",
    "ProviderError",
    "RawChatResult",
    "ScriptedGateway",
    "StreamEvent",
    "StructuredOutputDefinition",
]
