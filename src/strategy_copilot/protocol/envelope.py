"""
strategy-copilot — decision envelope protocol

File: src/strategy_copilot/protocol/envelope.py
Last updated: 2026-10-17

Purpose
- Wire contract for one model turn: visible text, optionally followed by a start marker and
  exactly one JSON object (the decision envelope).

What should be included in this file
- The fixed marker set and the versioned schema constant.
- Earliest-marker lookup shared with the streaming scanner.
- Envelope parsing into a normalized ``ParsedEnvelope``.

Functional requirements
- ``prefix + decision_text == raw_text`` for every response containing a marker.
- An unparseable decision block downgrades to ``invalid_json`` with ``parse_error=True``;
  the assistant text becomes the prefix, or the full raw text when the prefix is blank.
- ``mode == "PROPOSAL"`` forces candidate-seeking even with zero candidates.
- ``proposals`` (array) wins over the singular ``proposal``.

Non-functional requirements
- Pure and deterministic; no logging, no I/O.
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Final

from strategy_copilot.constants import ENVELOPE_SCHEMA_VERSION
from strategy_copilot.domain.models import JSONValue, SourceFormat
from strategy_copilot.utils.text import as_string

ENVELOPE_MARKERS: Final[tuple[str, ...]] = (
    '\n{"schemaVersion"',
    '\n{"mode"',
    '\n{"assistantMessage"',
    '\n{"proposals"',
)
MAX_MARKER_LENGTH: Final[int] = max(len(marker) for marker in ENVELOPE_MARKERS)

PROPOSAL_MODE: Final[str] = "PROPOSAL"


@dataclass(frozen=True, slots=True)
class ParsedEnvelope:
    """Normalized view of one raw model response."""

    assistant_message: str
    source_format: SourceFormat
    schema_version: str | None
    decision: dict[str, JSONValue] | None
    force_proposal: bool
    raw_candidates: tuple[object, ...]
    parse_error: bool
    prefix: str
    decision_text: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "raw_candidates", tuple(self.raw_candidates))


def find_earliest_marker(
    text: str,
    *,
    start: int = 0,
    markers: Sequence[str] = ENVELOPE_MARKERS,
) -> int:
    """Return the index of the earliest full marker at or after ``start``, or ``-1``."""

    best = -1
    for marker in markers:
        index = text.find(marker, max(0, start))
        if index != -1 and (best == -1 or index < best):
            best = index
    return best


def parse_decision_envelope(
    raw_text: str,
    *,
    markers: Sequence[str] = ENVELOPE_MARKERS,
) -> ParsedEnvelope:
    """Split ``raw_text`` into visible text and decision envelope."""

    text = raw_text if isinstance(raw_text, str) else ""
    marker_index = find_earliest_marker(text, markers=markers)
    if marker_index == -1:
        return ParsedEnvelope(
            assistant_message=text.strip(),
            source_format=SourceFormat.TEXT,
            schema_version=None,
            decision=None,
            force_proposal=False,
            raw_candidates=(),
            parse_error=False,
            prefix=text,
            decision_text="",
        )

    prefix = text[:marker_index]
    decision_text = text[marker_index:]
    try:
        decoded = json.loads(decision_text)
    except json.JSONDecodeError:
        decoded = None

    if not isinstance(decoded, dict):
        return ParsedEnvelope(
            assistant_message=prefix.strip() or text.strip(),
            source_format=SourceFormat.INVALID_JSON,
            schema_version=None,
            decision=None,
            force_proposal=False,
            raw_candidates=(),
            parse_error=True,
            prefix=prefix,
            decision_text=decision_text,
        )

    mode = as_string(decoded.get("mode")).upper()
    return ParsedEnvelope(
        assistant_message=as_string(decoded.get("assistantMessage")) or prefix.strip(),
        source_format=SourceFormat.ENVELOPE,
        schema_version=as_string(decoded.get("schemaVersion")) or None,
        decision=decoded,
        force_proposal=mode == PROPOSAL_MODE,
        raw_candidates=extract_raw_candidates(decoded),
        parse_error=False,
        prefix=prefix,
        decision_text=decision_text,
    )


def extract_raw_candidates(decision: Mapping[str, object]) -> tuple[object, ...]:
    """Return candidates from ``proposals`` or, failing that, the singular ``proposal``."""

    proposals = decision.get("proposals")
    if isinstance(proposals, list):
        return tuple(proposals)
    single = decision.get("proposal")
    if single is not None:
        return (single,)
    return ()


def build_envelope_text(
    assistant_message: str,
    decision: Mapping[str, JSONValue] | None = None,
) -> str:
    """Render a response in envelope form; ``schemaVersion`` leads so the marker matches."""

    if decision is None:
        return assistant_message
    body: dict[str, JSONValue] = {"schemaVersion": ENVELOPE_SCHEMA_VERSION}
    body.update({key: value for key, value in decision.items() if key != "schemaVersion"})
    if "schemaVersion" in decision:
        body["schemaVersion"] = decision["schemaVersion"]
    return assistant_message + "\n" + json.dumps(body, ensure_ascii=False, separators=(",", ":"))


__all__ = [
    "ENVELOPE_MARKERS",
    "ENVELOPE_SCHEMA_VERSION",
    "MAX_MARKER_LENGTH",
    "PROPOSAL_MODE",
    "ParsedEnvelope",
    "build_envelope_text",
    "extract_raw_candidates",
    "find_earliest_marker",
    "parse_decision_envelope",
]
