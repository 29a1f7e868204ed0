"""
strategy-copilot — public security utilities

File: src/strategy_copilot/security/__init__.py
Last updated: 2026-10-17

Purpose
- Secret redaction for logs and error summaries.
"""

from strategy_copilot.security.redaction import (
    REDACTED_VALUE,
    is_sensitive_key,
    redact_structure,
    redact_text,
)

__all__ = ["REDACTED_VALUE", "is_sensitive_key", "redact_structure", "redact_text"]
