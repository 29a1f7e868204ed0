"""
strategy-copilot — unit tests for the streaming sentinel scanner

File: tests/unit/protocol/test_sentinel.py
Last updated: 2026-10-17

Purpose
- Validate that display text never contains the decision block, for any chunking.

What this test file should cover
- Chunk-split conservation: emitted text + remainder == full text, for every marker at any position.
- Marker prefixes are held back until disambiguated.
- Upstream stream errors flush buffered text and are recorded.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence

import pytest

from strategy_copilot.gateway.base import StreamEvent
from strategy_copilot.protocol.envelope import ENVELOPE_MARKERS, find_earliest_marker
from strategy_copilot.protocol.sentinel import SentinelScanner, TokenEvent, scan_stream_events

try:
    from hypothesis import HealthCheck, given, settings
    from hypothesis import strategies as st
except ModuleNotFoundError:
    HYPOTHESIS_AVAILABLE = False
else:
    HYPOTHESIS_AVAILABLE = True

WITH_ENVELOPE = 'Here are two ideas.\n{"schemaVersion":"2026-02-27","proposals":[]}'


def _split(text: str, cuts: Sequence[int]) -> list[str]:
    points = sorted({cut % (len(text) + 1) for cut in cuts} | {0, len(text)})
    return [text[start:end] for start, end in zip(points, points[1:]) if end > start]


def _scan(chunks: Sequence[str]) -> tuple[str, SentinelScanner]:
    scanner = SentinelScanner()
    shown = "".join(scanner.feed(chunk) for chunk in chunks) + scanner.finish()
    return shown, scanner


def test_single_chunk_splits_at_marker() -> None:
    shown, scanner = _scan([WITH_ENVELOPE])

    assert shown == "Here are two ideas."
    assert scanner.sentinel_detected
    assert scanner.remainder.startswith('\n{"schemaVersion"')
    assert scanner.marker_index == len("Here are two ideas.")


def test_marker_prefix_is_held_back_until_disambiguated() -> None:
    scanner = SentinelScanner()

    assert scanner.feed("Hello\n{") == "Hello"
    assert scanner.feed('"mo') == ""
    assert scanner.feed("re text") == '\n{"more text'
    assert scanner.finish() == ""
    assert not scanner.sentinel_detected


def test_newline_at_end_is_flushed_on_finish() -> None:
    shown, scanner = _scan(["line one", "\n"])

    assert shown == "line one\n"
    assert scanner.remainder == ""


def test_feed_after_finish_is_rejected() -> None:
    scanner = SentinelScanner()
    scanner.finish()

    with pytest.raises(RuntimeError):
        scanner.feed("late")
    assert scanner.finish() == ""


def test_scanner_requires_a_marker() -> None:
    with pytest.raises(ValueError):
        SentinelScanner(markers=("",))


if HYPOTHESIS_AVAILABLE:

    _FRAGMENTS = st.sampled_from(
        ["a", " ", "}", '"', "\n", "{", "\n{", '\n{"', '\n{"mo', "proposals"]
    )
    _TEXT = st.lists(_FRAGMENTS, max_size=12).map("".join)

    @given(
        before=_TEXT,
        marker=st.sampled_from(ENVELOPE_MARKERS),
        after=_TEXT,
        cuts=st.lists(st.integers(min_value=0, max_value=200), max_size=12),
    )
    @settings(
        max_examples=150,
        derandomize=True,
        deadline=None,
        suppress_health_check=[HealthCheck.too_slow],
    )
    def test_property_chunking_never_changes_the_split(
        before: str, marker: str, after: str, cuts: list[int]
    ) -> None:
        text = before + marker + after
        expected = find_earliest_marker(text)

        shown, scanner = _scan(_split(text, cuts))

        assert 0 <= expected <= len(before)
        assert scanner.marker_index == expected
        assert shown == text[:expected]
        assert shown + scanner.remainder == text
        assert _scan([text])[0] == shown
        assert all(item not in shown for item in ENVELOPE_MARKERS)

else:

    def test_property_chunking_never_changes_the_split() -> None:
        pytest.skip("hypothesis is not installed")


async def _events(texts: Sequence[str], *, error: Exception | None = None) -> AsyncIterator[StreamEvent]:
    yield StreamEvent(type="start")
    for text in texts:
        yield StreamEvent(type="token", text=text)
    if error is not None:
        raise error
    yield StreamEvent(type="end")


async def test_scan_stream_events_yields_display_text_only() -> None:
    scanner = SentinelScanner()

    pieces = [piece async for piece in scan_stream_events(_events(["Hi", " there\n{", '"mode":"CHAT"}']), scanner)]

    assert "".join(pieces) == "Hi there"
    assert scanner.sentinel_detected
    assert scanner.stream_error is None


async def test_stream_error_flushes_buffer_and_records_error() -> None:
    scanner = SentinelScanner()

    pieces = [
        piece
        async for piece in scan_stream_events(
            _events(["partial\n{"], error=ConnectionResetError("ECONNRESET mid-stream")), scanner
        )
    ]

    assert "".join(pieces) == "partial\n{"
    assert scanner.stream_error == "ECONNRESET mid-stream"


def test_token_event_serializes() -> None:
    assert TokenEvent(type="token", seq=3, text="x").to_dict() == {"type": "token", "seq": 3, "text": "x"}
