"""Shared deterministic builders and recording tools for pipeline tests."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Final

from strategy_copilot.candidates.catalog import default_catalog
from strategy_copilot.candidates.pipeline import (
    CandidateOverrides,
    ModelIdentity,
    build_candidates,
)
from strategy_copilot.domain.models import Proposal, Turn, TurnStatus
from strategy_copilot.gateway.scripted import ScriptedGateway
from strategy_copilot.pipeline.critic import CriticConfig
from strategy_copilot.pipeline.service import CopilotSettings, StrategyCopilot
from strategy_copilot.pipeline.tools import TurnContext
from strategy_copilot.protocol.envelope import build_envelope_text

MERCHANT_ID: Final[str] = "m_store_001"
SESSION_ID: Final[str] = "sc_test"
WELCOME_TEMPLATE: Final[str] = "acquisition_welcome_gift"

CONTEXT: Final[TurnContext] = TurnContext(
    merchant_id=MERCHANT_ID,
    session_id=SESSION_ID,
    user_message="Please propose a welcome gift for new users.",
)


def candidate(
    title: str,
    *,
    branch_id: str = "DEFAULT",
    confidence: float | None = 0.8,
    patch: Mapping[str, object] | None = None,
    template_id: str = WELCOME_TEMPLATE,
) -> dict[str, object]:
    """Raw model candidate in the camelCase wire shape."""

    return {
        "templateId": template_id,
        "branchId": branch_id,
        "title": title,
        "rationale": f"{title} rationale",
        "confidence": confidence,
        "policyPatch": dict(patch) if patch is not None else {"name": title},
    }


def envelope(
    message: str,
    proposals: Sequence[Mapping[str, object]] = (),
    *,
    mode: str = "PROPOSAL",
) -> str:
    return build_envelope_text(
        message,
        {"mode": mode, "assistantMessage": message, "proposals": [dict(item) for item in proposals]},
    )


def proposals_from(*raw: Mapping[str, object]) -> tuple[Proposal, ...]:
    batch = build_candidates(
        list(raw),
        catalog=default_catalog(),
        overrides=CandidateOverrides(merchant_id=MERCHANT_ID),
        identity=ModelIdentity(provider="openai", model="test-model"),
    )
    assert not batch.invalid, batch.invalid
    return batch.proposals


def ready_turn(*raw: Mapping[str, object], message: str = "Drafted options.") -> Turn:
    return Turn(
        status=TurnStatus.PROPOSAL_READY,
        assistant_message=message,
        proposals=proposals_from(*raw),
    )


def make_copilot(
    gateway: ScriptedGateway,
    *,
    critic: CriticConfig | None = None,
    **settings: object,
) -> StrategyCopilot:
    return StrategyCopilot(
        CopilotSettings(critic=critic or CriticConfig(enabled=False), **settings),  # type: ignore[arg-type]
        gateway=gateway,
        environ={},
    )


@dataclass(slots=True)
class RecordingTool:
    """Async tool callable that records payloads and replays a result or raises."""

    result: Mapping[str, object] | None = None
    error: BaseException | None = None
    calls: list[dict[str, object]] = field(default_factory=list)

    async def __call__(self, payload: Mapping[str, object]) -> Mapping[str, object]:
        self.calls.append(dict(payload))
        if self.error is not None:
            raise self.error
        return dict(self.result or {})


@dataclass(slots=True)
class NonMappingTool:
    """Implements every tool interface directly and replies with a non-mapping value."""

    reply: object = None
    available: bool = True
    calls: list[dict[str, object]] = field(default_factory=list)

    async def _answer(self, payload: Mapping[str, object]) -> object:
        self.calls.append(dict(payload))
        return self.reply

    async def evaluate_policy_candidates(self, payload: Mapping[str, object]) -> object:
        return await self._answer(payload)

    async def validate_approval(self, payload: Mapping[str, object]) -> object:
        return await self._answer(payload)

    async def publish_policies(self, payload: Mapping[str, object]) -> object:
        return await self._answer(payload)

    async def monitor_published_policies(self, payload: Mapping[str, object]) -> object:
        return await self._answer(payload)

    async def update_strategy_memory(self, payload: Mapping[str, object]) -> object:
        return await self._answer(payload)


__all__ = [
    "CONTEXT",
    "MERCHANT_ID",
    "NonMappingTool",
    "SESSION_ID",
    "WELCOME_TEMPLATE",
    "RecordingTool",
    "candidate",
    "envelope",
    "make_copilot",
    "proposals_from",
    "ready_turn",
]
