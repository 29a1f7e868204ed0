"""Deterministic in-process gateway that replays scripted model output."""

from __future__ import annotations

import json
from collections import deque
from collections.abc import AsyncIterator, Iterable, Sequence
from dataclasses import dataclass, field

from strategy_copilot.domain.models import JSONValue
from strategy_copilot.gateway.base import (
    ChatMessage,
    ProviderResponseError,
    RawChatResult,
    StreamEvent,
    StructuredOutputDefinition,
)


@dataclass(slots=True)
class ScriptedGateway:
    """Replays one stream text per turn and queued replies for structured calls.

    Stream text is cut into ``chunk_size`` pieces. Queued replies may be JSON values or
    exceptions; an exhausted queue raises ``ProviderResponseError``.
    """

    stream_text: str = ""
    structured_replies: Iterable[JSONValue | BaseException] = ()
    chunk_size: int = 48
    calls: list[tuple[str, tuple[ChatMessage, ...]]] = field(default_factory=list)
    _replies: deque[JSONValue | BaseException] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be > 0")
        self._replies = deque(self.structured_replies)

    def describe(self) -> dict[str, object]:
        return {
            "provider": "scripted",
            "model": "scripted",
            "baseUrl": "",
            "remoteConfigured": True,
            "llmTransport": "in_process",
        }

    async def invoke_chat_with_raw(
        self,
        messages: Sequence[ChatMessage],
        *,
        structured_output: StructuredOutputDefinition | None = None,
    ) -> RawChatResult:
        name = structured_output.name if structured_output is not None else "chat"
        self.calls.append((name, tuple(messages)))
        if not self._replies:
            raise ProviderResponseError("no scripted reply left", provider="scripted")
        reply = self._replies.popleft()
        if isinstance(reply, BaseException):
            raise reply
        return RawChatResult(parsed=reply, raw_text=json.dumps(reply, ensure_ascii=False))

    async def stream_chat_events(self, messages: Sequence[ChatMessage]) -> AsyncIterator[StreamEvent]:
        self.calls.append(("stream", tuple(messages)))
        yield StreamEvent(type="start")
        for start in range(0, len(self.stream_text), self.chunk_size):
            yield StreamEvent(type="token", text=self.stream_text[start : start + self.chunk_size])
        yield StreamEvent(type="end")


__all__ = ["ScriptedGateway"]
