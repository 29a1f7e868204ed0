"""
strategy-copilot — caller-supplied tool interfaces

File: src/strategy_copilot/pipeline/tools.py
Last updated: 2026-10-17

Purpose
- Explicit single-method interfaces for the optional collaborators a turn may call:
  evaluator, approval validator, publisher, post-publish monitor, and memory updater.

What should be included in this file
- One ``Protocol`` per tool, each exposing ``available`` and one async method.
- ``Unavailable*`` variants standing in for unconfigured tools.
- Adapters over plain async callables and the ``TurnTools`` bundle.

Functional requirements
- Every bundle slot is always filled; absence is the ``Unavailable*`` variant.
- Calling an unavailable tool raises ``ToolUnavailableError``.
- Stages reject non-mapping results with ``require_mapping`` inside their guarded call.

Non-functional requirements
- Tools receive plain JSON-compatible mappings and return mappings.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Protocol, TypeAlias, runtime_checkable

ToolPayload: TypeAlias = Mapping[str, object]
ToolResult: TypeAlias = Mapping[str, object]
ToolCallable: TypeAlias = Callable[[ToolPayload], Awaitable[ToolResult]]


class ToolUnavailableError(RuntimeError):
    """Raised when an unconfigured tool is invoked."""


class ToolResultError(TypeError):
    """Raised when a tool returns something other than a mapping."""


def require_mapping(result: object, tool_name: str) -> ToolResult:
    if not isinstance(result, Mapping):
        raise ToolResultError(f"{tool_name} returned {type(result).__name__}, expected an object")
    return result


@dataclass(frozen=True, slots=True)
class TurnContext:
    """Identity of the turn shared by every tool payload."""

    merchant_id: str
    session_id: str
    user_message: str

    def base_payload(self) -> dict[str, object]:
        return {
            "merchantId": self.merchant_id,
            "sessionId": self.session_id,
            "userMessage": self.user_message,
        }


@runtime_checkable
class PolicyEvaluator(Protocol):
    available: bool

    async def evaluate_policy_candidates(self, payload: ToolPayload) -> ToolResult:
        """Return ``{source, userId, results[]}`` with one result per proposal index."""


@runtime_checkable
class ApprovalValidator(Protocol):
    available: bool

    async def validate_approval(self, payload: ToolPayload) -> ToolResult:
        """Return ``{approved, approvalId, reason, source}``."""


@runtime_checkable
class PolicyPublisher(Protocol):
    available: bool

    async def publish_policies(self, payload: ToolPayload) -> ToolResult:
        """Return ``{source, published[{proposalIndex, ok, policyId, draftId, publishId, error}]}``."""


@runtime_checkable
class PublishMonitor(Protocol):
    available: bool

    async def monitor_published_policies(self, payload: ToolPayload) -> ToolResult:
        """Return ``{source, alerts[], recommendations[], summary}``."""


@runtime_checkable
class MemoryUpdater(Protocol):
    available: bool

    async def update_strategy_memory(self, payload: ToolPayload) -> ToolResult:
        """Return ``{source, persisted, memoryId, summary}``."""


class _UnavailableTool:
    available = False
    tool_name = "tool"

    def _fail(self) -> ToolUnavailableError:
        return ToolUnavailableError(f"{self.tool_name} is not configured")

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class UnavailableEvaluator(_UnavailableTool):
    tool_name = "evaluator"

    async def evaluate_policy_candidates(self, payload: ToolPayload) -> ToolResult:
        raise self._fail()


class UnavailableApprovalValidator(_UnavailableTool):
    tool_name = "approval validator"

    async def validate_approval(self, payload: ToolPayload) -> ToolResult:
        raise self._fail()


class UnavailablePublisher(_UnavailableTool):
    tool_name = "publisher"

    async def publish_policies(self, payload: ToolPayload) -> ToolResult:
        raise self._fail()


class UnavailableMonitor(_UnavailableTool):
    tool_name = "monitor"

    async def monitor_published_policies(self, payload: ToolPayload) -> ToolResult:
        raise self._fail()


class UnavailableMemoryUpdater(_UnavailableTool):
    tool_name = "memory updater"

    async def update_strategy_memory(self, payload: ToolPayload) -> ToolResult:
        raise self._fail()


@dataclass(frozen=True, slots=True)
class _CallableTool:
    fn: ToolCallable
    available: bool = True

    async def _call(self, payload: ToolPayload) -> ToolResult:
        result = await self.fn(payload)
        return result if isinstance(result, Mapping) else {}


class CallableEvaluator(_CallableTool):
    async def evaluate_policy_candidates(self, payload: ToolPayload) -> ToolResult:
        return await self._call(payload)


class CallableApprovalValidator(_CallableTool):
    async def validate_approval(self, payload: ToolPayload) -> ToolResult:
        return await self._call(payload)


class CallablePublisher(_CallableTool):
    async def publish_policies(self, payload: ToolPayload) -> ToolResult:
        return await self._call(payload)


class CallableMonitor(_CallableTool):
    async def monitor_published_policies(self, payload: ToolPayload) -> ToolResult:
        return await self._call(payload)


class CallableMemoryUpdater(_CallableTool):
    async def update_strategy_memory(self, payload: ToolPayload) -> ToolResult:
        return await self._call(payload)


@dataclass(frozen=True, slots=True)
class TurnTools:
    """All optional collaborators for one turn."""

    evaluator: PolicyEvaluator = field(default_factory=UnavailableEvaluator)
    approval_validator: ApprovalValidator = field(default_factory=UnavailableApprovalValidator)
    publisher: PolicyPublisher = field(default_factory=UnavailablePublisher)
    monitor: PublishMonitor = field(default_factory=UnavailableMonitor)
    memory_updater: MemoryUpdater = field(default_factory=UnavailableMemoryUpdater)

    def describe(self) -> dict[str, bool]:
        return {
            "evaluator": bool(self.evaluator.available),
            "approvalValidator": bool(self.approval_validator.available),
            "publisher": bool(self.publisher.available),
            "monitor": bool(self.monitor.available),
            "memoryUpdater": bool(self.memory_updater.available),
        }


def tools_from_callables(
    *,
    evaluate: ToolCallable | None = None,
    validate_approval: ToolCallable | None = None,
    publish: ToolCallable | None = None,
    monitor: ToolCallable | None = None,
    update_memory: ToolCallable | None = None,
) -> TurnTools:
    """Build a ``TurnTools`` bundle from plain async callables; ``None`` means unavailable."""

    return TurnTools(
        evaluator=CallableEvaluator(evaluate) if evaluate else UnavailableEvaluator(),
        approval_validator=(
            CallableApprovalValidator(validate_approval)
            if validate_approval
            else UnavailableApprovalValidator()
        ),
        publisher=CallablePublisher(publish) if publish else UnavailablePublisher(),
        monitor=CallableMonitor(monitor) if monitor else UnavailableMonitor(),
        memory_updater=(
            CallableMemoryUpdater(update_memory) if update_memory else UnavailableMemoryUpdater()
        ),
    )


__all__ = [
    "ApprovalValidator",
    "MemoryUpdater",
    "PolicyEvaluator",
    "PolicyPublisher",
    "PublishMonitor",
    "ToolCallable",
    "ToolPayload",
    "ToolResult",
    "ToolResultError",
    "ToolUnavailableError",
    "TurnContext",
    "TurnTools",
    "UnavailableApprovalValidator",
    "UnavailableEvaluator",
    "UnavailableMemoryUpdater",
    "UnavailableMonitor",
    "UnavailablePublisher",
    "require_mapping",
    "tools_from_callables",
]
