"""
strategy-copilot — model gateway contract and shared utilities

File: src/strategy_copilot/gateway/base.py
Last updated: 2026-10-17

Purpose
- The boundary between the turn pipeline and whatever transport reaches the language model.

What should be included in this file
- Chat message, stream event, structured-output, and raw-result value objects.
- ``ModelGateway`` protocol: one streaming call and one single-shot structured call.
- Error taxonomy with retryability classification.
- Bounded exponential backoff and the shared retry loop.
- Loose JSON extraction for providers without native schema enforcement.

Functional requirements
- Every gateway failure surfaces as a ``ProviderError`` subclass.
- Retries apply only to errors classified retryable.

Non-functional requirements
- New transports plug in without touching pipeline code.
"""

from __future__ import annotations

import asyncio
import json
import random as random_module
import re
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Literal, Protocol, TypeAlias, TypeVar, runtime_checkable

from strategy_copilot.domain.models import JSONValue

SleepFn: TypeAlias = Callable[[float], Awaitable[None]]
RandomFn: TypeAlias = Callable[[], float]

StreamEventType: TypeAlias = Literal["start", "token", "end"]
ChatRole: TypeAlias = Literal["system", "user", "assistant"]

_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class ChatMessage:
    role: ChatRole
    content: str

    def __post_init__(self) -> None:
        if self.role not in ("system", "user", "assistant"):
            raise ValueError(f"unsupported chat role {self.role!r}")
        if not isinstance(self.content, str):
            raise TypeError("ChatMessage.content must be a string")

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True, slots=True)
class StreamEvent:
    """One event of a streamed model response."""

    type: StreamEventType
    text: str = ""


@dataclass(frozen=True, slots=True)
class StructuredOutputDefinition:
    """Schema-constrained output contract requested from the model."""

    name: str
    json_schema: Mapping[str, JSONValue] = field(default_factory=dict)
    strict: bool = True
    description: str | None = None

    def __post_init__(self) -> None:
        name = self.name.strip() if isinstance(self.name, str) else ""
        if not name:
            raise ValueError("StructuredOutputDefinition.name must not be empty")
        object.__setattr__(self, "name", name)
        object.__setattr__(self, "json_schema", dict(self.json_schema))
        object.__setattr__(self, "strict", bool(self.strict))

    def to_dict(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {
            "name": self.name,
            "schema": dict(self.json_schema),
            "strict": self.strict,
        }
        if self.description is not None:
            payload["description"] = self.description
        return payload


@dataclass(frozen=True, slots=True)
class RawChatResult:
    """Single-shot result: the parsed structured value (if any) and the raw text."""

    parsed: JSONValue | None
    raw_text: str


@runtime_checkable
class ModelGateway(Protocol):
    """Transport-agnostic model access used by the turn pipeline."""

    async def invoke_chat_with_raw(
        self,
        messages: Sequence[ChatMessage],
        *,
        structured_output: StructuredOutputDefinition | None = None,
    ) -> RawChatResult:
        """Run one non-streaming call; raise ``ProviderError`` on failure."""

    def stream_chat_events(self, messages: Sequence[ChatMessage]) -> AsyncIterator[StreamEvent]:
        """Stream ``start``/``token``/``end`` events; raise ``ProviderError`` on failure."""


class ProviderError(RuntimeError):
    """Base normalized gateway error with machine-readable fields."""

    def __init__(
        self,
        *,
        provider: str,
        code: str,
        detail: str,
        retryable: bool,
        http_status: int | None = None,
    ) -> None:
        self.provider = provider.strip() or "provider"
        self.code = code
        self.detail = _normalize_detail(detail)
        self.retryable = bool(retryable)
        self.http_status = http_status

        parts = [
            f"provider={self.provider}",
            f"code={self.code}",
            f"retryable={str(self.retryable).lower()}",
        ]
        if self.http_status is not None:
            parts.append(f"http_status={self.http_status}")
        parts.append(f"detail={self.detail}")
        super().__init__(" ".join(parts))


class ProviderUnavailableError(ProviderError):
    """Raised when the SDK or endpoint configuration is unavailable."""

    def __init__(self, detail: str, *, provider: str = "provider") -> None:
        super().__init__(provider=provider, code="unavailable", detail=detail, retryable=False)


class ProviderAuthenticationError(ProviderError):
    def __init__(
        self,
        detail: str,
        *,
        provider: str = "provider",
        http_status: int | None = None,
    ) -> None:
        super().__init__(
            provider=provider,
            code="auth",
            detail=detail,
            retryable=False,
            http_status=http_status,
        )


class ProviderInvalidRequestError(ProviderError):
    def __init__(
        self,
        detail: str,
        *,
        provider: str = "provider",
        http_status: int | None = None,
    ) -> None:
        super().__init__(
            provider=provider,
            code="invalid_request",
            detail=detail,
            retryable=False,
            http_status=http_status,
        )


class ProviderContextLengthError(ProviderError):
    """Prompt exceeds the model context window (not retryable)."""

    def __init__(
        self,
        detail: str,
        *,
        provider: str = "provider",
        http_status: int | None = None,
    ) -> None:
        super().__init__(
            provider=provider,
            code="context_length",
            detail=detail,
            retryable=False,
            http_status=http_status,
        )


class ProviderRateLimitError(ProviderError):
    """Rate-limit responses (retryable)."""

    def __init__(
        self,
        detail: str,
        *,
        provider: str = "provider",
        http_status: int | None = 429,
    ) -> None:
        super().__init__(
            provider=provider,
            code="rate_limit",
            detail=detail,
            retryable=True,
            http_status=http_status,
        )


class ProviderTimeoutError(ProviderError):
    """Timeouts and dropped connections (retryable)."""

    def __init__(self, detail: str, *, provider: str = "provider") -> None:
        super().__init__(provider=provider, code="timeout", detail=detail, retryable=True)


class ProviderServiceError(ProviderError):
    def __init__(
        self,
        detail: str,
        *,
        provider: str = "provider",
        retryable: bool = True,
        http_status: int | None = None,
    ) -> None:
        super().__init__(
            provider=provider,
            code="service",
            detail=detail,
            retryable=retryable,
            http_status=http_status,
        )


class ProviderResponseError(ProviderError):
    """Raised when a response cannot be normalized (e.g. no JSON for a structured call)."""

    def __init__(self, detail: str, *, provider: str = "provider") -> None:
        super().__init__(provider=provider, code="response_invalid", detail=detail, retryable=False)


def is_retryable_error(error: BaseException) -> bool:
    return isinstance(error, ProviderError) and error.retryable


@dataclass(frozen=True, slots=True)
class BackoffConfig:
    """Bounded exponential backoff policy."""

    max_retries: int = 2
    initial_delay_seconds: float = 0.18
    multiplier: float = 2.0
    max_delay_seconds: float = 4.0
    jitter_ratio: float = 0.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.initial_delay_seconds < 0:
            raise ValueError("initial_delay_seconds must be >= 0")
        if self.multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")
        if self.initial_delay_seconds > self.max_delay_seconds:
            raise ValueError("initial_delay_seconds must be <= max_delay_seconds")
        if not (0.0 <= self.jitter_ratio <= 1.0):
            raise ValueError("jitter_ratio must be between 0.0 and 1.0")


def compute_backoff_delay(
    *,
    retry_number: int,
    config: BackoffConfig,
    random_fn: RandomFn = random_module.random,
) -> float:
    """Return the delay before retry N (1-based)."""

    if retry_number <= 0:
        raise ValueError("retry_number must be > 0")

    base_delay = config.initial_delay_seconds * (config.multiplier ** (retry_number - 1))
    bounded_delay = min(base_delay, config.max_delay_seconds)
    if config.jitter_ratio == 0.0:
        return bounded_delay

    max_jitter = bounded_delay * config.jitter_ratio
    jitter = ((random_fn() * 2.0) - 1.0) * max_jitter
    return max(0.0, min(config.max_delay_seconds, bounded_delay + jitter))


_ResultT = TypeVar("_ResultT")
RetryCallback: TypeAlias = Callable[[int, ProviderError, float], None]


async def run_with_retries(
    operation: Callable[[], Awaitable[_ResultT]],
    *,
    map_exception: Callable[[Exception], ProviderError],
    backoff: BackoffConfig,
    sleep: SleepFn = asyncio.sleep,
    random_fn: RandomFn = random_module.random,
    on_retry: RetryCallback | None = None,
) -> _ResultT:
    """Run ``operation`` with bounded retries driven by ``ProviderError.retryable``."""

    retry_count = 0
    while True:
        try:
            return await operation()
        except Exception as exc:  # noqa: BLE001
            mapped = exc if isinstance(exc, ProviderError) else map_exception(exc)
            if not is_retryable_error(mapped) or retry_count >= backoff.max_retries:
                if mapped is exc:
                    raise
                raise mapped from exc

            retry_count += 1
            delay_seconds = compute_backoff_delay(
                retry_number=retry_count,
                config=backoff,
                random_fn=random_fn,
            )
            if on_retry is not None:
                on_retry(retry_count, mapped, delay_seconds)
            await sleep(delay_seconds)


def parse_json_loose(raw: str) -> JSONValue:
    """Parse JSON from model text: direct, fenced block, or outermost braces.

    Raises ``ValueError`` when no JSON document can be recovered.
    """

    text = raw.strip() if isinstance(raw, str) else ""
    if not text:
        raise ValueError("empty model response")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass
    fenced = _FENCED_JSON_RE.search(text)
    if fenced is not None:
        try:
            return json.loads(fenced.group(1))
        except json.JSONDecodeError:
            pass
    first = text.find("{")
    last = text.rfind("}")
    if first >= 0 and last > first:
        try:
            return json.loads(text[first : last + 1])
        except json.JSONDecodeError as exc:
            raise ValueError(f"invalid model response json: {exc.msg}") from exc
    raise ValueError("invalid model response json")


def _normalize_detail(value: object) -> str:
    text = str(value).strip()
    if not text:
        return "unknown error"
    return " ".join(text.split())


__all__ = [
    "BackoffConfig",
    "ChatMessage",
    "ModelGateway",
    "ProviderAuthenticationError",
    "ProviderContextLengthError",
    "ProviderError",
    "ProviderInvalidRequestError",
    "ProviderRateLimitError",
    "ProviderResponseError",
    "ProviderServiceError",
    "ProviderTimeoutError",
    "ProviderUnavailableError",
    "RandomFn",
    "RawChatResult",
    "RetryCallback",
    "SleepFn",
    "StreamEvent",
    "StructuredOutputDefinition",
    "compute_backoff_delay",
    "is_retryable_error",
    "parse_json_loose",
    "run_with_retries",
]
