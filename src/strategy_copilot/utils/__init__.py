"""Utility exports for text normalization and token budgeting."""

from strategy_copilot.utils.text import (
    as_string,
    clamp_number,
    clamp_text,
    collapse_whitespace,
    dedupe_preserving_order,
    estimate_tokens,
    select_history_window,
    summarize_error,
)

__all__ = [
    "as_string",
    "clamp_number",
    "clamp_text",
    "collapse_whitespace",
    "dedupe_preserving_order",
    "estimate_tokens",
    "select_history_window",
    "summarize_error",
]
