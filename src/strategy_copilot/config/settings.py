"""Build immutable service settings from a validated config mapping."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from strategy_copilot.config.schema import assert_valid_config, default_config, merge_config
from strategy_copilot.gateway.openai_gateway import ModelSettings
from strategy_copilot.observability.logging import LoggingConfig, logging_config_from_mapping
from strategy_copilot.pipeline.critic import CriticConfig
from strategy_copilot.pipeline.memory import MemoryLimits
from strategy_copilot.pipeline.service import CopilotSettings


def settings_from_config(config: Mapping[str, object]) -> CopilotSettings:
    """Partial mappings are layered over the defaults and validated first."""

    validated = assert_valid_config(merge_config(default_config(), config))
    model: dict[str, Any] = validated["model"]
    critic: dict[str, Any] = validated["critic"]
    memory: dict[str, Any] = validated["memory"]
    stream: dict[str, Any] = validated["stream"]
    return CopilotSettings(
        model=ModelSettings(
            provider=model["provider"],
            model=model.get("model"),
            base_url=model.get("base_url"),
            api_key_env=model["api_key_env"],
            timeout_seconds=model["timeout_seconds"],
            max_retries=model["max_retries"],
        ),
        critic=CriticConfig(
            enabled=critic["enabled"],
            max_rounds=critic["max_rounds"],
            min_proposals=critic["min_proposals"],
            min_confidence=critic["min_confidence"],
        ),
        max_candidates=validated["candidates"]["max_candidates"],
        memory=MemoryLimits(
            max_items_per_bucket=memory["max_items_per_bucket"],
            max_item_length=memory["max_item_length"],
        ),
        stream_queue_size=stream["queue_size"],
        max_history_tokens=stream["max_history_tokens"],
    )


def logging_from_config(config: Mapping[str, object]) -> LoggingConfig:
    observability = config.get("observability")
    return logging_config_from_mapping(observability if isinstance(observability, Mapping) else None)


__all__ = ["logging_from_config", "settings_from_config"]
