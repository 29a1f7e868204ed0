"""Prompt builders for the chat, critic, and revise model calls."""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from typing import Final

from strategy_copilot.constants import ENVELOPE_SCHEMA_VERSION
from strategy_copilot.domain.models import JSONValue
from strategy_copilot.gateway.base import ChatMessage
from strategy_copilot.utils.text import as_string, select_history_window

DEFAULT_HISTORY_TOKENS: Final[int] = 2400

CHAT_SYSTEM_LINES: Final[tuple[str, ...]] = (
    "You are a strategy copilot for merchants.",
    "Keep responses concise, practical, and aligned with the merchant language.",
    "Do not output markdown code fences.",
    "Always answer in plain text first.",
    "When the user explicitly asks to draft, create, or publish a strategy, append a new line"
    " followed by exactly one JSON object of the form"
    f' {{"schemaVersion":"{ENVELOPE_SCHEMA_VERSION}","mode":"PROPOSAL",'
    '"assistantMessage":"...","proposals":[{"templateId":"...","branchId":"...",'
    '"title":"...","rationale":"...","confidence":0.8,"policyPatch":{}}]}.',
    "When the user only chats, do not append any JSON.",
)

CRITIC_SYSTEM_LINES: Final[tuple[str, ...]] = (
    "You are a strategy proposal critic.",
    "Review current proposals and return whether revision is needed.",
)

REVISE_SYSTEM_LINES: Final[tuple[str, ...]] = (
    "You are a strategy proposal reviser.",
    "Revise proposals to satisfy critic feedback and policy patch allowlist constraints.",
)


def _dump(payload: Mapping[str, object]) -> str:
    return json.dumps(payload, ensure_ascii=False, sort_keys=False, default=str)


def build_chat_messages(
    *,
    user_message: str,
    catalog_listing: Sequence[Mapping[str, JSONValue]],
    history: Sequence[tuple[str, str]] = (),
    memory_facts: Mapping[str, JSONValue] | None = None,
    max_history_tokens: int = DEFAULT_HISTORY_TOKENS,
) -> list[ChatMessage]:
    """System prompt, a token-bounded history window, then the user message."""

    system_lines = list(CHAT_SYSTEM_LINES)
    system_lines.append(f"Available templates: {json.dumps(list(catalog_listing), ensure_ascii=False)}")
    if memory_facts:
        system_lines.append(f"Known merchant context: {json.dumps(dict(memory_facts), ensure_ascii=False)}")

    messages = [ChatMessage(role="system", content=" ".join(system_lines))]
    for role, content in select_history_window(history, max_tokens=max_history_tokens):
        if role in ("user", "assistant") and content:
            messages.append(ChatMessage(role=role, content=content))
    messages.append(
        ChatMessage(
            role="user",
            content=as_string(user_message) or "Please ask a clarifying question.",
        )
    )
    return messages


def build_critic_messages(
    *,
    merchant_id: str,
    session_id: str,
    round_number: int,
    user_message: str,
    proposals: Sequence[Mapping[str, JSONValue]],
) -> list[ChatMessage]:
    return [
        ChatMessage(role="system", content=" ".join(CRITIC_SYSTEM_LINES)),
        ChatMessage(
            role="user",
            content=_dump(
                {
                    "merchantId": as_string(merchant_id),
                    "sessionId": as_string(session_id),
                    "round": round_number,
                    "userMessage": as_string(user_message),
                    "proposals": list(proposals),
                }
            ),
        ),
    ]


def build_revise_messages(
    *,
    merchant_id: str,
    session_id: str,
    round_number: int,
    user_message: str,
    critic_decision: Mapping[str, JSONValue],
    validation_issues: Sequence[Mapping[str, JSONValue]],
    proposals: Sequence[Mapping[str, JSONValue]],
) -> list[ChatMessage]:
    return [
        ChatMessage(role="system", content=" ".join(REVISE_SYSTEM_LINES)),
        ChatMessage(
            role="user",
            content=_dump(
                {
                    "merchantId": as_string(merchant_id),
                    "sessionId": as_string(session_id),
                    "round": round_number,
                    "userMessage": as_string(user_message),
                    "criticDecision": dict(critic_decision),
                    "validationIssues": list(validation_issues),
                    "proposals": list(proposals),
                }
            ),
        ),
    ]


__all__ = ["build_chat_messages", "build_critic_messages", "build_revise_messages"]
