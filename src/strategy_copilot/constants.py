"""Stable constants shared across the turn pipeline."""

from __future__ import annotations

from typing import Final

# Schema versions for persisted and wire contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
ENVELOPE_SCHEMA_VERSION: Final[str] = "2026-02-27"

# Protocol identity stamped onto every turn.
PROTOCOL_NAME: Final[str] = "STRATEGY_CHAT_DECISION"
PROTOCOL_VERSION: Final[str] = "4.0"
PLANNER_ENGINE: Final[str] = "stream_text_json_envelope_v4"
RANKING_STRATEGY: Final[str] = "VALUE_RISK_COST_V1"

# Batch bounds.
MAX_PROPOSAL_CANDIDATES: Final[int] = 12
MAX_CRITIC_ISSUES: Final[int] = 8
MAX_CRITIC_FOCUS: Final[int] = 6

# Error summaries are whitespace-collapsed and capped at this length.
ERROR_SUMMARY_MAX_CHARS: Final[int] = 180

# Provenance tag for model-drafted proposals.
PROPOSAL_SOURCE: Final[str] = "AI_MODEL"

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "ENVELOPE_SCHEMA_VERSION",
    "ERROR_SUMMARY_MAX_CHARS",
    "MAX_CRITIC_FOCUS",
    "MAX_CRITIC_ISSUES",
    "MAX_PROPOSAL_CANDIDATES",
    "PLANNER_ENGINE",
    "PROPOSAL_SOURCE",
    "PROTOCOL_NAME",
    "PROTOCOL_VERSION",
    "RANKING_STRATEGY",
]
