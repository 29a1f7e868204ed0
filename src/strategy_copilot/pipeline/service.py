"""
strategy-copilot — turn orchestration service

File: src/strategy_copilot/pipeline/service.py
Last updated: 2026-10-17

Purpose
- Run one user message through the fixed stage order and deliver tokens plus the final Turn.

What should be included in this file
- ``TurnRequest``: per-turn input (identity, message, history, overrides, publish intent,
  prior memory facts, and caller tools).
- ``CopilotSettings``: immutable service configuration.
- ``StrategyCopilot``: ``stream_turn``, ``run_turn``, and ``runtime_info``.

Functional requirements
- Stage order: stream + scan, envelope parse, candidates, turn builder, critic loop,
  evaluation and ranking, approval and publish, post-publish monitor, memory.
- Missing identity or message, and a gateway failure before any text arrives, produce an
  ``AI_UNAVAILABLE`` turn; the token stream still emits ``start`` and ``end``.
- No exception escapes a turn; unexpected failures degrade to ``AI_UNAVAILABLE``.

Non-functional requirements
- The service holds no per-turn mutable state; concurrent turns share only immutable settings.
- Every log record of a turn carries the session and merchant correlation fields.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Final

import structlog

from strategy_copilot.candidates.catalog import TemplateCatalog, default_catalog
from strategy_copilot.candidates.pipeline import (
    CandidateOverrides,
    ModelIdentity,
    build_candidates,
)
from strategy_copilot.constants import MAX_PROPOSAL_CANDIDATES, PLANNER_ENGINE
from strategy_copilot.domain.models import JSONValue, MemoryFacts, Turn, TurnStatus
from strategy_copilot.gateway.base import ModelGateway
from strategy_copilot.gateway.openai_gateway import ModelSettings, OpenAIGateway
from strategy_copilot.observability.logging import correlation_scope
from strategy_copilot.pipeline.critic import CriticConfig, run_critic_loop
from strategy_copilot.pipeline.memory import (
    MemoryLimits,
    MemoryStageInput,
    build_intent_profile,
    clarification_questions,
    run_memory_stage,
)
from strategy_copilot.pipeline.monitor import run_monitor_stage
from strategy_copilot.pipeline.prompts import DEFAULT_HISTORY_TOKENS, build_chat_messages
from strategy_copilot.pipeline.publish import run_publish_stage
from strategy_copilot.pipeline.ranking import run_evaluation_stage
from strategy_copilot.pipeline.streaming import DEFAULT_QUEUE_SIZE, TurnStream
from strategy_copilot.pipeline.tools import TurnContext, TurnTools
from strategy_copilot.pipeline.turn_builder import build_turn, unavailable_turn
from strategy_copilot.protocol.envelope import parse_decision_envelope
from strategy_copilot.protocol.sentinel import SentinelScanner, scan_stream_events
from strategy_copilot.utils.text import as_string, summarize_error

REASON_MISSING_MERCHANT: Final[str] = "MERCHANT_ID_REQUIRED"
REASON_MISSING_SESSION: Final[str] = "SESSION_ID_REQUIRED"
REASON_MISSING_MESSAGE: Final[str] = "USER_MESSAGE_REQUIRED"


@dataclass(frozen=True, slots=True)
class TurnRequest:
    """Everything one turn needs from the caller."""

    merchant_id: str
    session_id: str
    user_message: str
    history: Sequence[tuple[str, str]] = ()
    template_id: str = ""
    branch_id: str = ""
    policy_patch: Mapping[str, JSONValue] = field(default_factory=dict)
    publish_intent: bool = False
    approval_token: str = field(default="", repr=False)
    memory_facts: MemoryFacts = field(default_factory=MemoryFacts)
    tools: TurnTools = field(default_factory=TurnTools)

    def __post_init__(self) -> None:
        object.__setattr__(self, "merchant_id", as_string(self.merchant_id))
        object.__setattr__(self, "session_id", as_string(self.session_id))
        object.__setattr__(self, "user_message", as_string(self.user_message))
        object.__setattr__(self, "history", tuple(self.history))
        object.__setattr__(self, "policy_patch", dict(self.policy_patch))
        object.__setattr__(self, "publish_intent", bool(self.publish_intent))

    def missing_field_reason(self) -> str | None:
        if not self.merchant_id:
            return REASON_MISSING_MERCHANT
        if not self.session_id:
            return REASON_MISSING_SESSION
        if not self.user_message:
            return REASON_MISSING_MESSAGE
        return None

    def context(self) -> TurnContext:
        return TurnContext(
            merchant_id=self.merchant_id,
            session_id=self.session_id,
            user_message=self.user_message,
        )


@dataclass(frozen=True, slots=True)
class CopilotSettings:
    """Immutable service configuration; built from config files by ``settings_from_config``."""

    model: ModelSettings = field(default_factory=ModelSettings)
    critic: CriticConfig = field(default_factory=CriticConfig)
    max_candidates: int = MAX_PROPOSAL_CANDIDATES
    memory: MemoryLimits = field(default_factory=MemoryLimits)
    stream_queue_size: int = DEFAULT_QUEUE_SIZE
    max_history_tokens: int = DEFAULT_HISTORY_TOKENS

    def __post_init__(self) -> None:
        if not 0 < self.max_candidates <= MAX_PROPOSAL_CANDIDATES:
            raise ValueError(f"max_candidates must be in [1, {MAX_PROPOSAL_CANDIDATES}]")
        if self.stream_queue_size <= 0:
            raise ValueError("stream_queue_size must be > 0")
        if self.max_history_tokens < 0:
            raise ValueError("max_history_tokens must be >= 0")


class StrategyCopilot:
    """Turn pipeline entrypoint."""

    def __init__(
        self,
        settings: CopilotSettings | None = None,
        *,
        gateway: ModelGateway | None = None,
        catalog: TemplateCatalog | None = None,
        logger: Any | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._settings = settings or CopilotSettings()
        self._environ = os.environ if environ is None else environ
        self._gateway = gateway or OpenAIGateway(self._settings.model, environ=self._environ)
        self._catalog = catalog or default_catalog()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def settings(self) -> CopilotSettings:
        return self._settings

    def runtime_info(self) -> dict[str, JSONValue]:
        model = self._settings.model
        return {
            "provider": model.provider,
            "model": model.resolved_model,
            "baseUrl": model.resolved_base_url,
            "remoteConfigured": model.resolve_api_key(self._environ) is not None,
            "plannerEngine": PLANNER_ENGINE,
            "criticLoop": self._settings.critic.to_dict(),
            "retryPolicy": {"maxRetries": model.max_retries},
            "llmTransport": model.transport,
        }

    def stream_turn(self, request: TurnRequest) -> TurnStream:
        """Start a turn; must be called from a running event loop."""

        stream = TurnStream(queue_size=self._settings.stream_queue_size)
        stream.start(partial(self._produce, request))
        return stream

    async def run_turn(self, request: TurnRequest) -> Turn:
        return await self.stream_turn(request).result()

    async def _produce(self, request: TurnRequest, stream: TurnStream) -> Turn:
        with correlation_scope(session_id=request.session_id, merchant_id=request.merchant_id):
            await stream.emit("start")
            try:
                turn = await self._run_stages(request, stream)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                error = summarize_error(exc, known_secrets=(request.approval_token,))
                self._logger.error("turn_failed", error=error)
                turn = unavailable_turn(error)
            self._logger.info(
                "turn_completed",
                status=str(turn.status),
                proposal_count=len(turn.proposals),
                invalid_count=len(turn.validation_issues),
                reason=turn.reason,
            )
            return turn

    async def _run_stages(self, request: TurnRequest, stream: TurnStream) -> Turn:
        log = self._logger
        missing = request.missing_field_reason()
        if missing is not None:
            log.warning("turn_rejected", reason=missing)
            return unavailable_turn(missing)

        settings = self._settings
        messages = build_chat_messages(
            user_message=request.user_message,
            catalog_listing=_catalog_listing(self._catalog),
            history=request.history,
            memory_facts=None if request.memory_facts.is_empty() else request.memory_facts.to_dict(),
            max_history_tokens=settings.max_history_tokens,
        )

        scanner = SentinelScanner()
        async for piece in scan_stream_events(self._gateway.stream_chat_events(messages), scanner):
            await stream.emit("token", piece)
        if scanner.stream_error is not None:
            log.warning(
                "model_stream_failed",
                error=scanner.stream_error,
                received_chars=len(scanner.text),
            )
            if not scanner.text.strip():
                return unavailable_turn(scanner.stream_error)

        envelope = parse_decision_envelope(scanner.text)
        overrides = CandidateOverrides(
            merchant_id=request.merchant_id,
            template_id=request.template_id,
            branch_id=request.branch_id,
            policy_patch=request.policy_patch,
        )
        identity = ModelIdentity(
            provider=settings.model.provider, model=settings.model.resolved_model
        )
        rebuild = partial(
            build_candidates,
            catalog=self._catalog,
            overrides=overrides,
            identity=identity,
            max_candidates=settings.max_candidates,
        )
        batch = None if envelope.parse_error else rebuild(envelope.raw_candidates)
        if batch is not None and batch.dropped:
            log.info("candidates_truncated", dropped=batch.dropped, processed=batch.processed)
        turn = build_turn(envelope, batch)
        log.info(
            "envelope_parsed",
            source_format=str(envelope.source_format),
            parse_error=envelope.parse_error,
            status=str(turn.status),
            candidate_count=len(envelope.raw_candidates),
        )

        profile = build_intent_profile(request.user_message)
        context = request.context()
        tools = request.tools

        turn = await run_critic_loop(
            turn,
            gateway=self._gateway,
            config=settings.critic,
            context=context,
            rebuild=rebuild,
            clarification_questions=clarification_questions(profile),
            logger=log,
        )
        turn = await run_evaluation_stage(
            turn,
            context=context,
            evaluator=tools.evaluator,
            intent_frame=profile.to_dict(),
            logger=log,
        )
        turn = await run_publish_stage(
            turn,
            context=context,
            publish_intent=request.publish_intent,
            approval_token=request.approval_token,
            validator=tools.approval_validator,
            publisher=tools.publisher,
            logger=log,
        )
        turn = await run_monitor_stage(turn, context=context, monitor=tools.monitor, logger=log)
        if turn.status is TurnStatus.AI_UNAVAILABLE:
            return turn
        return await run_memory_stage(
            turn,
            context=context,
            updater=tools.memory_updater,
            stage_input=MemoryStageInput(
                profile=profile,
                existing=request.memory_facts,
                limits=settings.memory,
            ),
            logger=log,
        )


def _catalog_listing(catalog: TemplateCatalog) -> list[dict[str, JSONValue]]:
    describe = getattr(catalog, "describe", None)
    if not callable(describe):
        return []
    listing = describe()
    return [dict(item) for item in listing if isinstance(item, Mapping)]


__all__ = [
    "REASON_MISSING_MERCHANT",
    "REASON_MISSING_MESSAGE",
    "REASON_MISSING_SESSION",
    "CopilotSettings",
    "StrategyCopilot",
    "TurnRequest",
]
