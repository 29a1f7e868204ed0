"""Config mapping -> immutable service settings."""

from __future__ import annotations

from pathlib import Path

import pytest

from strategy_copilot.config.loader import load_config
from strategy_copilot.config.schema import ConfigValidationError
from strategy_copilot.config.settings import settings_from_config
from strategy_copilot.pipeline.service import CopilotSettings


def test_defaults_produce_default_settings() -> None:
    settings = settings_from_config({})

    assert isinstance(settings, CopilotSettings)
    assert settings.model.provider == "openai"
    assert settings.model.api_key_env == "COPILOT_API_KEY"
    assert settings.model.timeout_seconds == 15.0
    assert settings.critic.enabled is True
    assert settings.critic.max_rounds == 1
    assert settings.critic.min_proposals == 2
    assert settings.critic.min_confidence == 0.72
    assert settings.max_candidates == 12
    assert settings.memory.max_items_per_bucket == 12
    assert settings.memory.max_item_length == 120
    assert settings.stream_queue_size == 64
    assert settings.max_history_tokens == 2400


def test_partial_sections_layer_over_defaults() -> None:
    settings = settings_from_config(
        {
            "model": {"provider": "deepseek", "model": "deepseek-chat"},
            "critic": {"enabled": False},
            "candidates": {"max_candidates": 3},
            "stream": {"queue_size": 8},
        }
    )

    assert settings.model.provider == "deepseek"
    assert settings.model.resolved_model == "deepseek-chat"
    assert settings.critic.enabled is False
    assert settings.critic.max_rounds == 1
    assert settings.max_candidates == 3
    assert settings.stream_queue_size == 8
    assert settings.max_history_tokens == 2400


def test_invalid_values_are_rejected_before_building() -> None:
    with pytest.raises(ConfigValidationError, match="candidates.max_candidates"):
        settings_from_config({"candidates": {"max_candidates": 0}})


def test_loaded_config_round_trips_into_settings(tmp_path: Path) -> None:
    config_path = tmp_path / "copilot.toml"
    config_path.write_text(
        '[model]\nprovider = "openai_compatible"\nbase_url = "https://llm.internal/v1/"\n',
        encoding="utf-8",
    )

    settings = settings_from_config(load_config(config_path, environ={}))

    assert settings.model.provider == "openai_compatible"
    assert settings.model.resolved_base_url == "https://llm.internal/v1"
