"""
strategy-copilot — security redaction utilities

File: src/strategy_copilot/security/redaction.py
Last updated: 2026-10-17

Purpose
- Redaction rules for log records, error summaries, and tool payload echoes.

What should be included in this file
- Secret text patterns (bearer headers, inline assignments, provider keys, JWTs).
- Key-based deep redaction for nested mappings.
- Exact-value redaction for caller secrets such as approval tokens.

Functional requirements
- Approval tokens and provider keys must never reach logs or turn error fields.

Non-functional requirements
- Deterministic and idempotent for stable inputs.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Final

REDACTED_VALUE: Final[str] = "***REDACTED***"

DEFAULT_SENSITIVE_KEY_DENYLIST: Final[frozenset[str]] = frozenset(
    {
        "access_token",
        "api_key",
        "apikey",
        "approval_token",
        "auth_token",
        "authorization",
        "client_secret",
        "credential",
        "credentials",
        "password",
        "private_key",
        "refresh_token",
        "secret",
        "token",
    }
)

_SENSITIVE_KEY_SUFFIXES: Final[tuple[str, ...]] = (
    "_api_key",
    "_secret",
    "_token",
    "_password",
)

_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True, slots=True)
class _TextRule:
    name: str
    pattern: re.Pattern[str]
    sensitive_group: int | None = None


_TEXT_RULES: Final[tuple[_TextRule, ...]] = (
    _TextRule(
        name="authorization_bearer",
        pattern=re.compile(r"(?i)(\bbearer\s+)([A-Za-z0-9\-._~+/=]{8,})"),
        sensitive_group=2,
    ),
    _TextRule(
        name="explicit_secret_assignment",
        pattern=re.compile(
            r"(?i)(\b(?:password|secret|api[_-]?key|client[_-]?secret|"
            r"access[_-]?token|approval[_-]?token|token)\b\s*[:=]\s*[\"']?)"
            r"([A-Za-z0-9._~+/=-]{6,})"
        ),
        sensitive_group=2,
    ),
    _TextRule(name="openai_api_key", pattern=re.compile(r"\bsk-[A-Za-z0-9_-]{20,255}\b")),
    _TextRule(
        name="jwt",
        pattern=re.compile(r"\beyJ[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}\b"),
    ),
)


def is_sensitive_key(key: str) -> bool:
    """Return whether a mapping key names a secret-bearing field."""

    normalized = _normalize_key(key)
    if normalized.endswith("_env"):
        return False
    if normalized in DEFAULT_SENSITIVE_KEY_DENYLIST:
        return True
    return normalized.endswith(_SENSITIVE_KEY_SUFFIXES)


def redact_text(text: str, *, known_secrets: Iterable[str] = ()) -> str:
    """Redact secret-like spans and any exact ``known_secrets`` occurrences."""

    if not isinstance(text, str):
        raise TypeError(f"text must be a string, got {type(text).__name__}")

    redacted = text
    for secret in sorted({item for item in known_secrets if item}, key=len, reverse=True):
        redacted = redacted.replace(secret, REDACTED_VALUE)
    for rule in _TEXT_RULES:
        redacted = _apply_text_rule(redacted, rule)
    return redacted


def redact_structure(value: object) -> object:
    """Return a deep-redacted copy of nested mappings and sequences."""

    if isinstance(value, Mapping):
        out: dict[str, object] = {}
        for key, item in value.items():
            key_text = str(key)
            if is_sensitive_key(key_text) and item is not None:
                out[key_text] = REDACTED_VALUE
            else:
                out[key_text] = redact_structure(item)
        return out
    if isinstance(value, (list, tuple)):
        return [redact_structure(item) for item in value]
    if isinstance(value, str):
        return redact_text(value)
    return value


def _apply_text_rule(text: str, rule: _TextRule) -> str:
    if rule.sensitive_group is None:
        return rule.pattern.sub(REDACTED_VALUE, text)

    def replace(match: re.Match[str]) -> str:
        start, end = match.span(rule.sensitive_group or 0)
        base = match.start(0)
        whole = match.group(0)
        return whole[: start - base] + REDACTED_VALUE + whole[end - base :]

    return rule.pattern.sub(replace, text)


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


__all__ = [
    "DEFAULT_SENSITIVE_KEY_DENYLIST",
    "REDACTED_VALUE",
    "is_sensitive_key",
    "redact_structure",
    "redact_text",
]
