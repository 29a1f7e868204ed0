"""Offline stand-ins for the OpenAI SDK client surface used by ``OpenAIGateway``."""

from __future__ import annotations

import json
from collections import deque
from collections.abc import AsyncIterator, Iterable
from types import SimpleNamespace
from typing import Final

TEST_BASE_URL: Final[str] = "http://127.0.0.1:11434/v1"

Step = str | dict | list | BaseException


class _CreateEndpoint:
    def __init__(self, client: ScriptedOpenAIClient) -> None:
        self._client = client

    async def create(self, **kwargs: object) -> object:
        return await self._client.handle(kwargs)


class ScriptedOpenAIClient:
    """Replays one step per ``create`` call on either the Responses or Chat Completions API.

    A step is response text, a JSON value (serialized as the text), or an exception to raise.
    Streaming requests receive the text split into ``chunk_size`` deltas.
    """

    def __init__(self, steps: Iterable[Step], *, chunk_size: int = 7) -> None:
        self._steps: deque[Step] = deque(steps)
        self.chunk_size = chunk_size
        self.calls: list[dict[str, object]] = []
        self.responses = _CreateEndpoint(self)
        self.chat = SimpleNamespace(completions=_CreateEndpoint(self))

    async def handle(self, kwargs: dict[str, object]) -> object:
        self.calls.append(dict(kwargs))
        if not self._steps:
            raise AssertionError("unexpected model call")
        step = self._steps.popleft()
        if isinstance(step, BaseException):
            raise step
        text = step if isinstance(step, str) else json.dumps(step)
        responses_api = "input" in kwargs
        if kwargs.get("stream"):
            return self._stream(text, responses_api=responses_api)
        if responses_api:
            return {"output_text": text}
        return {"choices": [{"message": {"content": text}}]}

    async def _stream(self, text: str, *, responses_api: bool) -> AsyncIterator[object]:
        for start in range(0, len(text), self.chunk_size):
            piece = text[start : start + self.chunk_size]
            if responses_api:
                yield {"type": "response.output_text.delta", "delta": piece}
            else:
                yield {"choices": [{"delta": {"content": piece}}]}
        if responses_api:
            yield {"type": "response.completed"}


async def no_sleep(_delay: float) -> None:
    return None


__all__ = ["TEST_BASE_URL", "ScriptedOpenAIClient", "no_sleep"]
