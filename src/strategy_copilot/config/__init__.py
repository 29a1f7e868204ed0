"""
strategy-copilot config package public API.

File: src/strategy_copilot/config/__init__.py
Last updated: 2026-10-17

Purpose
- Export config loading/validation entrypoints and public error types.

What should be included in this file
- Public schema constants and validation/report types.
- Loader APIs for effective runtime config and redacted dumps.
- The bridge from validated config to ``CopilotSettings``.

Functional requirements
- Support loading from ``copilot.toml`` + ``COPILOT_`` env overrides.
- Fail fast with clear structured validation/load errors.
"""

from strategy_copilot.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    dump_effective_config,
    load_config,
    normalize_paths,
)
from strategy_copilot.config.schema import (
    DEFAULT_CONFIG,
    ConfigSchemaVersion,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    CopilotConfig,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
    validate_config,
)
from strategy_copilot.config.settings import logging_from_config, settings_from_config

__all__ = [
    "ConfigLoadError",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "CopilotConfig",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "load_config",
    "logging_from_config",
    "merge_config",
    "normalize_paths",
    "redact_config",
    "settings_from_config",
    "validate_config",
]
