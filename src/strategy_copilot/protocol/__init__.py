"""Decision envelope wire contract and streaming sentinel scanning."""

from strategy_copilot.protocol.envelope import (
    ENVELOPE_MARKERS,
    ParsedEnvelope,
    build_envelope_text,
    find_earliest_marker,
    parse_decision_envelope,
)
from strategy_copilot.protocol.sentinel import SentinelScanner, TokenEvent, scan_stream_events

__all__ = [
    "ENVELOPE_MARKERS",
    "ParsedEnvelope",
    "SentinelScanner",
    "TokenEvent",
    "build_envelope_text",
    "find_earliest_marker",
    "parse_decision_envelope",
    "scan_stream_events",
]
