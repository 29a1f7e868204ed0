"""
strategy-copilot — streaming sentinel scanner

File: src/strategy_copilot/protocol/sentinel.py
Last updated: 2026-10-17

Purpose
- Turn arbitrarily chunked model text into safe-to-display tokens while withholding anything
  that could be the start of an envelope marker.

What should be included in this file
- ``SentinelScanner``: multi-pattern matcher with holdback and bounded rescan lookback.
- ``scan_stream_events``: async adapter from gateway stream events to display tokens.
- ``TokenEvent``: sequenced display event delivered to turn consumers.

Functional requirements
- Emitted text never contains a prefix of an unconfirmed marker occurrence.
- A marker split across chunks is detected in the chunk where it completes.
- ``emitted + remainder == raw`` for every chunking of the same raw text.
- Stream end without a marker flushes the held-back tail; abnormal stream end flushes too.

Non-functional requirements
- Per-chunk work is bounded by chunk length plus ``max marker length - 1`` of lookback.
"""

from __future__ import annotations

from collections.abc import AsyncIterable, AsyncIterator, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

from strategy_copilot.protocol.envelope import ENVELOPE_MARKERS, find_earliest_marker
from strategy_copilot.utils.text import summarize_error

if TYPE_CHECKING:
    from strategy_copilot.gateway.base import StreamEvent

TokenEventType = Literal["start", "token", "end"]


@dataclass(frozen=True, slots=True)
class TokenEvent:
    """Display event with a per-turn monotonically increasing ``seq``."""

    type: TokenEventType
    seq: int
    text: str = ""

    def to_dict(self) -> dict[str, object]:
        return {"type": self.type, "seq": self.seq, "text": self.text}


class SentinelScanner:
    """Incremental scanner over a growing text buffer."""

    def __init__(self, markers: Sequence[str] = ENVELOPE_MARKERS) -> None:
        cleaned = tuple(marker for marker in markers if marker)
        if not cleaned:
            raise ValueError("at least one non-empty marker is required")
        self._markers = cleaned
        self._lookback = max(len(marker) for marker in cleaned) - 1
        self._buffer = ""
        self._yielded_len = 0
        self._scan_pos = 0
        self._marker_index = -1
        self._finished = False
        self.stream_error: str | None = None

    @property
    def text(self) -> str:
        """Everything received so far."""

        return self._buffer

    @property
    def emitted_text(self) -> str:
        return self._buffer[: self._yielded_len]

    @property
    def remainder(self) -> str:
        """Received text that was not emitted; starts at the marker once one is confirmed."""

        return self._buffer[self._yielded_len :]

    @property
    def sentinel_detected(self) -> bool:
        return self._marker_index != -1

    @property
    def marker_index(self) -> int:
        return self._marker_index

    def feed(self, chunk: str) -> str:
        """Consume one chunk and return newly safe text (possibly empty)."""

        if self._finished:
            raise RuntimeError("scanner already finished")
        if not chunk:
            return ""
        self._buffer += chunk
        if self.sentinel_detected:
            return ""

        start = max(0, self._scan_pos - self._lookback)
        found = find_earliest_marker(self._buffer, start=start, markers=self._markers)
        self._scan_pos = len(self._buffer)
        if found != -1:
            self._marker_index = found
            return self._advance(found)

        safe_end = len(self._buffer) - self._holdback_length()
        return self._advance(max(safe_end, self._yielded_len))

    def finish(self) -> str:
        """Mark end of stream; flush the held-back tail when no marker was confirmed."""

        if self._finished:
            return ""
        self._finished = True
        if self.sentinel_detected:
            return ""
        return self._advance(len(self._buffer))

    def _advance(self, end: int) -> str:
        emitted = self._buffer[self._yielded_len : end]
        self._yielded_len = end
        return emitted

    def _holdback_length(self) -> int:
        # Longest buffer suffix that is a strict prefix of some marker.
        limit = min(len(self._buffer), self._lookback)
        for size in range(limit, 0, -1):
            suffix = self._buffer[-size:]
            for marker in self._markers:
                if len(suffix) < len(marker) and marker.startswith(suffix):
                    return size
        return 0


async def scan_stream_events(
    events: AsyncIterable[StreamEvent],
    scanner: SentinelScanner,
) -> AsyncIterator[str]:
    """Yield display-safe text from gateway ``token`` events.

    An exception from the upstream iterator ends the stream: the error summary is kept on
    ``scanner.stream_error`` and buffered text is flushed as if the stream ended normally.
    """

    try:
        async for event in events:
            if event.type != "token" or not event.text:
                continue
            piece = scanner.feed(event.text)
            if piece:
                yield piece
    except Exception as exc:  # noqa: BLE001 - upstream stream failures degrade to a flush.
        scanner.stream_error = summarize_error(exc)
    tail = scanner.finish()
    if tail:
        yield tail


__all__ = ["SentinelScanner", "TokenEvent", "TokenEventType", "scan_stream_events"]
