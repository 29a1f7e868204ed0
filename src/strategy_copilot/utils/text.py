"""Text normalization and token-budget helpers for turn inputs and summaries."""

from __future__ import annotations

import math
import re
from collections.abc import Iterable, Sequence
from typing import Final

from strategy_copilot.constants import ERROR_SUMMARY_MAX_CHARS
from strategy_copilot.security.redaction import redact_text

_WHITESPACE_RE: Final[re.Pattern[str]] = re.compile(r"\s+")
# CJK ideographs and kana count as roughly one token each.
_WIDE_CHAR_RE: Final[re.Pattern[str]] = re.compile(r"[぀-ヿ㐀-䶿一-鿿]")
_CHARS_PER_TOKEN: Final[float] = 4.0
_MESSAGE_OVERHEAD_TOKENS: Final[int] = 4


def as_string(value: object) -> str:
    """Return ``value`` stripped when it is a string, otherwise an empty string."""

    return value.strip() if isinstance(value, str) else ""


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()


def clamp_text(value: object, max_chars: int, *, ellipsis: str = "") -> str:
    """Trim ``value`` and cap it at ``max_chars`` characters."""

    if max_chars < 0:
        raise ValueError("max_chars must be >= 0")
    text = as_string(value)
    if len(text) <= max_chars:
        return text
    if ellipsis and max_chars > len(ellipsis):
        return text[: max_chars - len(ellipsis)] + ellipsis
    return text[:max_chars]


def clamp_number(value: object, minimum: float, maximum: float) -> float | None:
    """Clamp a finite numeric value into ``[minimum, maximum]``; ``None`` otherwise."""

    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        return None
    return min(maximum, max(minimum, parsed))


def summarize_error(error: object, *, known_secrets: Iterable[str] = ()) -> str:
    """Return a redacted, whitespace-collapsed, length-capped error message."""

    if isinstance(error, BaseException):
        raw = str(error).strip() or error.__class__.__name__
    elif error is None:
        raw = "unknown error"
    else:
        raw = str(error).strip() or "unknown error"
    collapsed = collapse_whitespace(redact_text(raw, known_secrets=known_secrets))
    return collapsed[:ERROR_SUMMARY_MAX_CHARS]


def dedupe_preserving_order(items: Iterable[str], *, limit: int | None = None) -> list[str]:
    """Case-insensitive dedupe that keeps first-seen spelling and order."""

    seen: set[str] = set()
    out: list[str] = []
    for item in items:
        text = as_string(item)
        if not text:
            continue
        key = text.casefold()
        if key in seen:
            continue
        seen.add(key)
        out.append(text)
        if limit is not None and len(out) >= limit:
            break
    return out


def estimate_tokens(text: str) -> int:
    """Cheap token estimate: wide characters count one each, the rest ~4 chars per token."""

    if not text:
        return 0
    wide = len(_WIDE_CHAR_RE.findall(text))
    narrow = len(text) - wide
    return wide + math.ceil(narrow / _CHARS_PER_TOKEN)


def select_history_window(
    history: Sequence[tuple[str, str]],
    *,
    max_tokens: int,
    max_messages: int | None = None,
) -> list[tuple[str, str]]:
    """Return the newest ``(role, content)`` messages whose estimate fits ``max_tokens``.

    Order is preserved; the window is always a suffix of ``history``.
    """

    if max_tokens <= 0:
        return []
    selected: list[tuple[str, str]] = []
    used = 0
    for role, content in reversed(history):
        if max_messages is not None and len(selected) >= max_messages:
            break
        cost = estimate_tokens(content) + _MESSAGE_OVERHEAD_TOKENS
        if used + cost > max_tokens:
            break
        selected.append((role, content))
        used += cost
    selected.reverse()
    return selected


__all__ = [
    "as_string",
    "clamp_number",
    "clamp_text",
    "collapse_whitespace",
    "dedupe_preserving_order",
    "estimate_tokens",
    "select_history_window",
    "summarize_error",
]
