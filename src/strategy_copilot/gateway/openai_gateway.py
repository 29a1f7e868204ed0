"""
strategy-copilot — OpenAI-compatible model gateway

File: src/strategy_copilot/gateway/openai_gateway.py
Last updated: 2026-10-17

Purpose
- ``ModelGateway`` implementation over the ``openai`` SDK for OpenAI, DeepSeek, and any
  OpenAI-compatible endpoint.

What should be included in this file
- Provider defaults (base URL, model, transport) and provider-name normalization.
- Immutable ``ModelSettings`` value object.
- Lazy optional-SDK client construction with injected-client support for tests.
- Streaming via Responses API deltas or Chat Completions deltas.
- Structured calls via ``json_schema`` formats (``json_object`` for providers without schema
  enforcement).
- Exception mapping onto the provider error taxonomy.

Functional requirements
- Streaming retries only happen before any text has been produced.
- Structured calls without recoverable JSON raise ``ProviderResponseError``.

Non-functional requirements
- Importing this module must not require the ``openai`` package.
"""

from __future__ import annotations

import asyncio
import importlib
import json
import os
import random as random_module
from collections.abc import AsyncIterator, Mapping, Sequence
from dataclasses import dataclass
from typing import Final, Protocol, cast

from strategy_copilot.gateway.base import (
    BackoffConfig,
    ChatMessage,
    ProviderAuthenticationError,
    ProviderContextLengthError,
    ProviderError,
    ProviderInvalidRequestError,
    ProviderRateLimitError,
    ProviderResponseError,
    ProviderServiceError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    RandomFn,
    RawChatResult,
    SleepFn,
    StreamEvent,
    StructuredOutputDefinition,
    compute_backoff_delay,
    is_retryable_error,
    parse_json_loose,
    run_with_retries,
)

DEFAULT_PROVIDER: Final[str] = "openai_compatible"
DEFAULT_TIMEOUT_SECONDS: Final[float] = 15.0
DEFAULT_API_KEY_ENV: Final[str] = "COPILOT_API_KEY"

RESPONSES_TRANSPORT: Final[str] = "responses_api"
CHAT_COMPLETIONS_TRANSPORT: Final[str] = "chat_completions"


@dataclass(frozen=True, slots=True)
class ProviderDefaults:
    base_url: str
    model: str
    transport: str
    structured_output_method: str
    fallback_key_env: str | None


PROVIDER_DEFAULTS: Final[Mapping[str, ProviderDefaults]] = {
    "openai": ProviderDefaults(
        base_url="https://api.openai.com/v1",
        model="gpt-4o-mini",
        transport=RESPONSES_TRANSPORT,
        structured_output_method="jsonSchema",
        fallback_key_env="OPENAI_API_KEY",
    ),
    "deepseek": ProviderDefaults(
        base_url="https://api.deepseek.com/v1",
        model="deepseek-chat",
        transport=CHAT_COMPLETIONS_TRANSPORT,
        structured_output_method="jsonMode",
        fallback_key_env="DEEPSEEK_API_KEY",
    ),
    "openai_compatible": ProviderDefaults(
        base_url="http://127.0.0.1:11434/v1",
        model="qwen2.5:7b-instruct",
        transport=CHAT_COMPLETIONS_TRANSPORT,
        structured_output_method="jsonSchema",
        fallback_key_env=None,
    ),
}


def normalize_provider(value: object) -> str:
    """Map a configured provider name onto a known provider; unknown names fall back."""

    normalized = value.strip().lower() if isinstance(value, str) else ""
    if normalized in PROVIDER_DEFAULTS:
        return normalized
    return DEFAULT_PROVIDER


@dataclass(frozen=True, slots=True)
class ModelSettings:
    """Immutable model endpoint configuration."""

    provider: str = "openai"
    model: str | None = None
    base_url: str | None = None
    api_key_env: str = DEFAULT_API_KEY_ENV
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    max_retries: int = 2

    def __post_init__(self) -> None:
        object.__setattr__(self, "provider", normalize_provider(self.provider))
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")

    @property
    def defaults(self) -> ProviderDefaults:
        return PROVIDER_DEFAULTS[self.provider]

    @property
    def resolved_model(self) -> str:
        return (self.model or "").strip() or self.defaults.model

    @property
    def resolved_base_url(self) -> str:
        return ((self.base_url or "").strip() or self.defaults.base_url).rstrip("/")

    @property
    def transport(self) -> str:
        return self.defaults.transport

    def resolve_api_key(self, environ: Mapping[str, str] | None = None) -> str | None:
        env = os.environ if environ is None else environ
        for name in (self.api_key_env, self.defaults.fallback_key_env):
            if not name:
                continue
            value = env.get(name)
            if value is not None and value.strip():
                return value.strip()
        return None


class _AsyncCreateAPI(Protocol):
    async def create(self, **kwargs: object) -> object: ...


class _ChatAPI(Protocol):
    completions: _AsyncCreateAPI


class _OpenAIClient(Protocol):
    responses: _AsyncCreateAPI
    chat: _ChatAPI


class OpenAIGateway:
    """OpenAI SDK gateway with optional dependency and injected client support."""

    def __init__(
        self,
        settings: ModelSettings | None = None,
        *,
        client: _OpenAIClient | None = None,
        environ: Mapping[str, str] | None = None,
        sleep: SleepFn = asyncio.sleep,
        random_fn: RandomFn = random_module.random,
    ) -> None:
        self.settings = settings if settings is not None else ModelSettings()
        self._client = client
        self._environ = environ
        self._backoff = BackoffConfig(max_retries=self.settings.max_retries)
        self._sleep = sleep
        self._random_fn = random_fn

    @property
    def provider_name(self) -> str:
        return self.settings.provider

    def describe(self) -> dict[str, object]:
        """Runtime description without secrets."""

        return {
            "provider": self.settings.provider,
            "model": self.settings.resolved_model,
            "baseUrl": self.settings.resolved_base_url,
            "remoteConfigured": self._client is not None
            or self.settings.resolve_api_key(self._environ) is not None,
            "llmTransport": self.settings.transport,
            "structuredOutputMethod": self.settings.defaults.structured_output_method,
            "timeoutSeconds": self.settings.timeout_seconds,
        }

    async def invoke_chat_with_raw(
        self,
        messages: Sequence[ChatMessage],
        *,
        structured_output: StructuredOutputDefinition | None = None,
    ) -> RawChatResult:
        payload = self._build_payload(messages, structured_output=structured_output)

        async def operation() -> RawChatResult:
            client = self._ensure_client()
            if self.settings.transport == RESPONSES_TRANSPORT:
                raw = await client.responses.create(**payload)
                text = _extract_responses_text(raw)
            else:
                raw = await client.chat.completions.create(**payload)
                text = _extract_chat_text(raw)
            return self._normalize_result(text, structured=structured_output is not None)

        return await run_with_retries(
            operation,
            map_exception=self._map_exception,
            backoff=self._backoff,
            sleep=self._sleep,
            random_fn=self._random_fn,
        )

    async def stream_chat_events(self, messages: Sequence[ChatMessage]) -> AsyncIterator[StreamEvent]:
        payload = self._build_payload(messages, structured_output=None)
        payload["stream"] = True

        yield StreamEvent(type="start")
        produced = False
        retry_count = 0
        while True:
            try:
                async for piece in self._iter_stream_text(payload):
                    produced = True
                    yield StreamEvent(type="token", text=piece)
                break
            except Exception as exc:  # noqa: BLE001
                mapped = self._map_exception(exc)
                exhausted = retry_count >= self._backoff.max_retries
                if produced or exhausted or not is_retryable_error(mapped):
                    if mapped is exc:
                        raise
                    raise mapped from exc
                retry_count += 1
                await self._sleep(
                    compute_backoff_delay(
                        retry_number=retry_count,
                        config=self._backoff,
                        random_fn=self._random_fn,
                    )
                )
        yield StreamEvent(type="end")

    async def _iter_stream_text(self, payload: dict[str, object]) -> AsyncIterator[str]:
        client = self._ensure_client()
        if self.settings.transport == RESPONSES_TRANSPORT:
            stream = await client.responses.create(**payload)
            async for event in cast("AsyncIterator[object]", stream):
                if _read_value(event, "type") == "response.output_text.delta":
                    delta = _read_value(event, "delta")
                    if isinstance(delta, str) and delta:
                        yield delta
            return

        stream = await client.chat.completions.create(**payload)
        async for chunk in cast("AsyncIterator[object]", stream):
            for choice in _read_sequence(chunk, "choices"):
                content = _read_value(_read_value(choice, "delta"), "content")
                if isinstance(content, str) and content:
                    yield content

    def _build_payload(
        self,
        messages: Sequence[ChatMessage],
        *,
        structured_output: StructuredOutputDefinition | None,
    ) -> dict[str, object]:
        rendered = [message.to_dict() for message in messages]
        payload: dict[str, object] = {"model": self.settings.resolved_model}
        if self.settings.transport == RESPONSES_TRANSPORT:
            payload["input"] = rendered
            if structured_output is not None:
                payload["text"] = {
                    "format": {
                        "type": "json_schema",
                        "name": structured_output.name,
                        "schema": dict(structured_output.json_schema),
                        "strict": structured_output.strict,
                    }
                }
            return payload

        payload["messages"] = rendered
        if structured_output is not None:
            if self.settings.defaults.structured_output_method == "jsonMode":
                schema_hint = json.dumps(
                    dict(structured_output.json_schema), ensure_ascii=False, sort_keys=True
                )
                payload["messages"] = [
                    *rendered,
                    {"role": "system", "content": f"Respond with one JSON object matching: {schema_hint}"},
                ]
                payload["response_format"] = {"type": "json_object"}
            else:
                payload["response_format"] = {
                    "type": "json_schema",
                    "json_schema": {
                        "name": structured_output.name,
                        "schema": dict(structured_output.json_schema),
                        "strict": structured_output.strict,
                    },
                }
        return payload

    def _normalize_result(self, text: str, *, structured: bool) -> RawChatResult:
        if not structured:
            return RawChatResult(parsed=None, raw_text=text)
        try:
            parsed = parse_json_loose(text)
        except ValueError as exc:
            raise ProviderResponseError(str(exc), provider=self.provider_name) from exc
        return RawChatResult(parsed=parsed, raw_text=text)

    def _ensure_client(self) -> _OpenAIClient:
        if self._client is not None:
            return self._client
        self._client = self._create_default_client()
        return self._client

    def _create_default_client(self) -> _OpenAIClient:
        try:
            openai_module = importlib.import_module("openai")
        except ImportError as exc:
            raise ProviderUnavailableError(
                provider=self.provider_name,
                detail="openai SDK is not installed; install strategy-copilot[openai]",
            ) from exc

        async_openai = getattr(openai_module, "AsyncOpenAI", None)
        if async_openai is None:
            raise ProviderUnavailableError(
                provider=self.provider_name,
                detail="openai SDK does not expose AsyncOpenAI",
            )

        api_key = self.settings.resolve_api_key(self._environ)
        if api_key is None:
            if self.settings.defaults.fallback_key_env is not None:
                raise ProviderAuthenticationError(
                    provider=self.provider_name,
                    detail=f"missing API key; set {self.settings.api_key_env}",
                    http_status=401,
                )
            # Local OpenAI-compatible servers ignore the key, the SDK still requires one.
            api_key = "local"

        client = async_openai(
            api_key=api_key,
            base_url=self.settings.resolved_base_url,
            timeout=self.settings.timeout_seconds,
            max_retries=0,
        )
        return cast("_OpenAIClient", client)

    def _map_exception(self, exc: Exception) -> ProviderError:
        if isinstance(exc, ProviderError):
            return exc

        status_code = _read_status_code(exc)
        class_name = exc.__class__.__name__.lower()
        detail = _exception_detail(exc)
        detail_lower = detail.lower()

        if status_code in {401, 403} or "auth" in class_name or "permission" in class_name:
            return ProviderAuthenticationError(
                provider=self.provider_name,
                detail=detail,
                http_status=status_code,
            )

        if status_code == 429 or "ratelimit" in class_name:
            return ProviderRateLimitError(
                provider=self.provider_name,
                detail=detail,
                http_status=status_code,
            )

        if isinstance(exc, (asyncio.TimeoutError, TimeoutError)) or "timeout" in class_name:
            return ProviderTimeoutError(provider=self.provider_name, detail=detail)

        if isinstance(exc, ConnectionError) or any(
            marker in detail_lower
            for marker in ("econnreset", "econnrefused", "connection error", "network error")
        ):
            return ProviderServiceError(provider=self.provider_name, detail=detail, retryable=True)

        if "context_length" in detail_lower or "maximum context length" in detail_lower:
            return ProviderContextLengthError(
                provider=self.provider_name,
                detail=detail,
                http_status=status_code,
            )

        if status_code is not None and status_code in {400, 404, 409, 422}:
            return ProviderInvalidRequestError(
                provider=self.provider_name,
                detail=detail,
                http_status=status_code,
            )

        if "badrequest" in class_name or "invalidrequest" in class_name:
            return ProviderInvalidRequestError(provider=self.provider_name, detail=detail)

        if status_code is not None and status_code >= 500:
            return ProviderServiceError(
                provider=self.provider_name,
                detail=detail,
                retryable=True,
                http_status=status_code,
            )

        if "connection" in class_name or "apierror" in class_name or "server" in class_name:
            return ProviderServiceError(provider=self.provider_name, detail=detail, retryable=True)

        return ProviderServiceError(provider=self.provider_name, detail=detail, retryable=True)


def _extract_responses_text(raw_response: object) -> str:
    direct = _read_value(raw_response, "output_text")
    if isinstance(direct, str) and direct:
        return direct
    parts: list[str] = []
    for output_item in _read_sequence(raw_response, "output"):
        for content_part in _read_sequence(output_item, "content"):
            text = _read_value(content_part, "text")
            if isinstance(text, str):
                parts.append(text)
    return "".join(parts)


def _extract_chat_text(raw_response: object) -> str:
    for choice in _read_sequence(raw_response, "choices"):
        content = _read_value(_read_value(choice, "message"), "content")
        if isinstance(content, str):
            return content
    return ""


def _exception_detail(exc: BaseException) -> str:
    text = str(exc).strip()
    if text:
        return " ".join(text.split())
    return exc.__class__.__name__


def _read_status_code(exc: BaseException) -> int | None:
    for key in ("status_code", "status", "http_status"):
        value = getattr(exc, key, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    if response is not None:
        nested = getattr(response, "status_code", None)
        if isinstance(nested, int):
            return nested
    return None


def _read_value(value: object, key: str, *, default: object | None = None) -> object | None:
    if value is None:
        return default
    if isinstance(value, Mapping):
        return cast("object | None", value.get(key, default))
    return cast("object | None", getattr(value, key, default))


def _read_sequence(value: object, key: str) -> tuple[object, ...]:
    candidate = _read_value(value, key)
    if isinstance(candidate, Sequence) and not isinstance(candidate, (str, bytes, bytearray)):
        return tuple(candidate)
    return ()


__all__ = [
    "CHAT_COMPLETIONS_TRANSPORT",
    "DEFAULT_API_KEY_ENV",
    "DEFAULT_PROVIDER",
    "PROVIDER_DEFAULTS",
    "RESPONSES_TRANSPORT",
    "ModelSettings",
    "OpenAIGateway",
    "ProviderDefaults",
    "normalize_provider",
]
