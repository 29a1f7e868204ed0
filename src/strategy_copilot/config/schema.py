"""
strategy-copilot — configuration schema and validation.

File: src/strategy_copilot/config/schema.py
Last updated: 2026-10-17

Purpose
- Define authoritative configuration defaults and strict validation rules.

What should be included in this file
- Schema versioning and migration guidance.
- Validation rules for required fields, types, enums, and numeric constraints.
- Deterministic deep-merge helpers.
- Redaction rules for sensitive fields.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Reject unknown keys; reject secret-looking keys with an ``*_env`` hint.

Non-functional requirements
- Keep rules deterministic and easy to audit.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, NotRequired, TypedDict

from strategy_copilot.constants import CONFIG_SCHEMA_VERSION, MAX_PROPOSAL_CANDIDATES
from strategy_copilot.security.redaction import REDACTED_VALUE, is_sensitive_key

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION

PROVIDER_NAMES: Final[tuple[str, ...]] = ("openai", "deepseek", "openai_compatible")
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")
LOG_FORMATS: Final[tuple[str, ...]] = ("json", "console")

_ENV_NAME_PATTERN = re.compile(r"^[A-Z_][A-Z0-9_]*$")

# Config paths that should be normalized relative to config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (("observability", "log_dir"),)


class MetaConfig(TypedDict):
    schema_version: int


class ModelConfig(TypedDict):
    provider: str
    model: NotRequired[str]
    base_url: NotRequired[str]
    api_key_env: str
    timeout_seconds: float
    max_retries: int


class CriticSection(TypedDict):
    enabled: bool
    max_rounds: int
    min_proposals: int
    min_confidence: float


class CandidatesConfig(TypedDict):
    max_candidates: int


class MemoryConfig(TypedDict):
    max_items_per_bucket: int
    max_item_length: int


class StreamConfig(TypedDict):
    queue_size: int
    max_history_tokens: int


class ObservabilityConfig(TypedDict):
    log_level: str
    log_format: str
    log_dir: NotRequired[str]
    redact_secrets: bool


class CopilotConfig(TypedDict):
    meta: MetaConfig
    model: ModelConfig
    critic: CriticSection
    candidates: CandidatesConfig
    memory: MemoryConfig
    stream: StreamConfig
    observability: ObservabilityConfig


DEFAULT_CONFIG: Final[CopilotConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "model": {
        "provider": "openai",
        "api_key_env": "COPILOT_API_KEY",
        "timeout_seconds": 15.0,
        "max_retries": 2,
    },
    "critic": {
        "enabled": True,
        "max_rounds": 1,
        "min_proposals": 2,
        "min_confidence": 0.72,
    },
    "candidates": {"max_candidates": MAX_PROPOSAL_CANDIDATES},
    "memory": {"max_items_per_bucket": 12, "max_item_length": 120},
    "stream": {"queue_size": 64, "max_history_tokens": 2400},
    "observability": {
        "log_level": "INFO",
        "log_format": "json",
        "redact_secrets": True,
    },
}

# Keys without a default that may still be set from env or CLI.
OPTIONAL_STRING_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("model", "model"),
    ("model", "base_url"),
    ("observability", "log_dir"),
)


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def default_config() -> CopilotConfig:
    """Return a deep copy of the built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade copilot.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the strategy-copilot runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, issues)
    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return a redacted representation for logs and the ``config`` CLI command."""

    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config, parent_key=None)
    if isinstance(redacted, dict):
        return redacted
    return {}


_Validator = Callable[[Mapping[str, object], str, _IssueCollector], dict[str, Any]]


def _validate_root(payload: Mapping[str, object], issues: _IssueCollector) -> dict[str, Any]:
    sections: dict[str, _Validator] = {
        "meta": _validate_meta,
        "model": _validate_model,
        "critic": _validate_critic,
        "candidates": _validate_candidates,
        "memory": _validate_memory,
        "stream": _validate_stream,
        "observability": _validate_observability,
    }
    _reject_unknown_keys(payload, set(sections), "", issues)
    _require_keys(payload, set(sections), "", issues)

    out: dict[str, Any] = {}
    for key in sorted(sections):
        raw = payload.get(key)
        if raw is None:
            continue
        section = _as_object(raw, key, issues)
        if section is None:
            continue
        out[key] = sections[key](section, key, issues)
    return out


def _validate_meta(payload: Mapping[str, object], path: str, issues: _IssueCollector) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    _require_keys(payload, {"schema_version"}, path, issues)
    out: dict[str, Any] = {}
    if "schema_version" in payload:
        parsed = _as_int(payload["schema_version"], _join(path, "schema_version"), issues, minimum=1)
        if parsed is not None:
            out["schema_version"] = parsed
            if parsed != ConfigSchemaVersion:
                issues.add(_join(path, "schema_version"), migration_guidance(parsed))
    return out


def _validate_model(payload: Mapping[str, object], path: str, issues: _IssueCollector) -> dict[str, Any]:
    allowed = {"provider", "model", "base_url", "api_key_env", "timeout_seconds", "max_retries"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, {"provider", "api_key_env", "timeout_seconds", "max_retries"}, path, issues)

    out: dict[str, Any] = {}
    if "provider" in payload:
        parsed_provider = _as_enum(
            payload["provider"], _join(path, "provider"), issues, allowed_values=PROVIDER_NAMES
        )
        if parsed_provider is not None:
            out["provider"] = parsed_provider
    for key in ("model", "base_url"):
        if key in payload:
            parsed_text = _as_str(payload[key], _join(path, key), issues)
            if parsed_text is not None:
                out[key] = parsed_text
    if "base_url" in out and not out["base_url"].startswith(("http://", "https://")):
        issues.add(_join(path, "base_url"), "must start with http:// or https://")
    if "api_key_env" in payload:
        parsed_env = _as_env_name(payload["api_key_env"], _join(path, "api_key_env"), issues)
        if parsed_env is not None:
            out["api_key_env"] = parsed_env
    if "timeout_seconds" in payload:
        parsed_timeout = _as_float(
            payload["timeout_seconds"], _join(path, "timeout_seconds"), issues, minimum=0.1
        )
        if parsed_timeout is not None:
            out["timeout_seconds"] = parsed_timeout
    if "max_retries" in payload:
        parsed_retries = _as_int(payload["max_retries"], _join(path, "max_retries"), issues, minimum=0)
        if parsed_retries is not None:
            out["max_retries"] = parsed_retries
    return out


def _validate_critic(payload: Mapping[str, object], path: str, issues: _IssueCollector) -> dict[str, Any]:
    allowed = {"enabled", "max_rounds", "min_proposals", "min_confidence"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "enabled" in payload:
        parsed_enabled = _as_bool(payload["enabled"], _join(path, "enabled"), issues)
        if parsed_enabled is not None:
            out["enabled"] = parsed_enabled
    if "max_rounds" in payload:
        parsed_rounds = _as_int(payload["max_rounds"], _join(path, "max_rounds"), issues, minimum=0)
        if parsed_rounds is not None:
            out["max_rounds"] = parsed_rounds
    if "min_proposals" in payload:
        parsed_min = _as_int(payload["min_proposals"], _join(path, "min_proposals"), issues, minimum=1)
        if parsed_min is not None:
            out["min_proposals"] = parsed_min
    if "min_confidence" in payload:
        parsed_confidence = _as_float(
            payload["min_confidence"], _join(path, "min_confidence"), issues, minimum=0.0
        )
        if parsed_confidence is not None:
            if parsed_confidence > 1.0:
                issues.add(_join(path, "min_confidence"), "must be <= 1.0")
            else:
                out["min_confidence"] = parsed_confidence
    return out


def _validate_candidates(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"max_candidates"}, path, issues)
    _require_keys(payload, {"max_candidates"}, path, issues)
    out: dict[str, Any] = {}
    if "max_candidates" in payload:
        parsed = _as_int(payload["max_candidates"], _join(path, "max_candidates"), issues, minimum=1)
        if parsed is not None:
            if parsed > MAX_PROPOSAL_CANDIDATES:
                issues.add(_join(path, "max_candidates"), f"must be <= {MAX_PROPOSAL_CANDIDATES}")
            else:
                out["max_candidates"] = parsed
    return out


def _validate_memory(payload: Mapping[str, object], path: str, issues: _IssueCollector) -> dict[str, Any]:
    allowed = {"max_items_per_bucket", "max_item_length"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    for key in sorted(allowed):
        if key in payload:
            parsed = _as_int(payload[key], _join(path, key), issues, minimum=1)
            if parsed is not None:
                out[key] = parsed
    return out


def _validate_stream(payload: Mapping[str, object], path: str, issues: _IssueCollector) -> dict[str, Any]:
    allowed = {"queue_size", "max_history_tokens"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    if "queue_size" in payload:
        parsed_queue = _as_int(payload["queue_size"], _join(path, "queue_size"), issues, minimum=1)
        if parsed_queue is not None:
            out["queue_size"] = parsed_queue
    if "max_history_tokens" in payload:
        parsed_tokens = _as_int(
            payload["max_history_tokens"], _join(path, "max_history_tokens"), issues, minimum=0
        )
        if parsed_tokens is not None:
            out["max_history_tokens"] = parsed_tokens
    return out


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"log_level", "log_format", "log_dir", "redact_secrets"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, {"log_level", "log_format", "redact_secrets"}, path, issues)

    out: dict[str, Any] = {}
    if "log_level" in payload:
        parsed_level = _as_enum(
            payload["log_level"], _join(path, "log_level"), issues, allowed_values=LOG_LEVELS
        )
        if parsed_level is not None:
            out["log_level"] = parsed_level
    if "log_format" in payload:
        parsed_format = _as_enum(
            payload["log_format"], _join(path, "log_format"), issues, allowed_values=LOG_FORMATS
        )
        if parsed_format is not None:
            out["log_format"] = parsed_format
    if "log_dir" in payload:
        parsed_dir = _as_path_text(payload["log_dir"], _join(path, "log_dir"), issues)
        if parsed_dir is not None:
            out["log_dir"] = parsed_dir
    if "redact_secrets" in payload:
        parsed_redact = _as_bool(payload["redact_secrets"], _join(path, "redact_secrets"), issues)
        if parsed_redact is not None:
            out["redact_secrets"] = parsed_redact
    return out


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_env_name(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if not _ENV_NAME_PATTERN.fullmatch(parsed):
        issues.add(path, "must be an env var name (example: COPILOT_API_KEY)")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if is_sensitive_key(key):
            issues.add(
                key_path,
                "embedded secret values are forbidden; use an *_env key with an env var name",
            )
        else:
            issues.add(key_path, "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            if isinstance(existing, dict):
                _merge_into(existing, value)
            else:
                nested: dict[str, Any] = {}
                _merge_into(nested, value)
                target[key] = nested
        else:
            target[key] = _deep_copy_value(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: _deep_copy_value(value[key]) for key in sorted(value)}


def _deep_copy_value(value: object) -> Any:
    if isinstance(value, Mapping):
        return {key: _deep_copy_value(item) for key, item in value.items() if isinstance(key, str)}
    if isinstance(value, list):
        return [_deep_copy_value(item) for item in value]
    return copy.deepcopy(value)


def _redact_value(value: object, parent_key: str | None) -> object:
    if isinstance(value, Mapping):
        out: dict[str, object] = {}
        for key in sorted(value):
            if is_sensitive_key(key):
                out[key] = REDACTED_VALUE
            else:
                out[key] = _redact_value(value[key], key)
        return out
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, parent_key) for item in value]
    return value


__all__ = [
    "DEFAULT_CONFIG",
    "LOG_FORMATS",
    "LOG_LEVELS",
    "OPTIONAL_STRING_FIELDS",
    "PATH_FIELDS",
    "PROVIDER_NAMES",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "CopilotConfig",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
