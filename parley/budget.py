"""Token estimation and history trimming.

Estimates are a deterministic character heuristic, not a tokenizer: they only
need to be monotonic and consistent across calls so that trimming decisions are
reproducible for every vendor.
"""
from __future__ import annotations

import json
import logging
import math
import re
import warnings
from dataclasses import dataclass
from typing import Iterable

from parley.errors import BudgetViolationWarning
from parley.models import Message, ToolCall

logger = logging.getLogger(__name__)

ENGLISH_TOKENS_PER_CHAR = 0.25
CJK_TOKENS_PER_CHAR = 1.0

ROLE_OVERHEAD = {
    "system": 4,
    "user": 4,
    "assistant": 4,
    "tool": 10,
}
TOOL_CALL_OVERHEAD = 10
CONVERSATION_OVERHEAD = 3

# Hangul Jamo, CJK symbols, Hiragana, Katakana, CJK ideographs, Hangul syllables
_CJK = re.compile(r"[\u1100-\u11ff\u3000-\u303f\u3040-\u309f\u30a0-\u30ff\u4e00-\u9fff\uac00-\ud7af]")


def estimate_text_tokens(text: str | None) -> int:
    if not text:
        return 0
    per_char = CJK_TOKENS_PER_CHAR if _CJK.search(text) else ENGLISH_TOKENS_PER_CHAR
    return math.ceil(len(text) * per_char)


def estimate_tool_call_tokens(call: ToolCall) -> int:
    args = json.dumps(call.arguments, sort_keys=True)
    return estimate_text_tokens(call.name) + estimate_text_tokens(args) + TOOL_CALL_OVERHEAD


def estimate_tokens(messages: Message | Iterable[Message]) -> int:
    """Estimate one message, or a whole message list (which adds a fixed overhead)."""
    if isinstance(messages, Message):
        msg = messages
        tokens = estimate_text_tokens(msg.content) + ROLE_OVERHEAD.get(msg.role, 4)
        return tokens + sum(estimate_tool_call_tokens(tc) for tc in msg.tool_calls)
    return sum(estimate_tokens(m) for m in messages) + CONVERSATION_OVERHEAD


@dataclass(frozen=True)
class TrimResult:
    messages: list[Message]
    tokens: int
    within_budget: bool


def _anchor_index(messages: list[Message]) -> int | None:
    """Index of the most recent user message, or of the last message when there is none."""
    for i in range(len(messages) - 1, -1, -1):
        if messages[i].role == "user":
            return i
    return len(messages) - 1 if messages else None


def _next_removable(messages: list[Message], preserve_system: bool) -> int | None:
    anchor = _anchor_index(messages)
    if anchor is None:
        return None
    for i in range(anchor):
        msg = messages[i]
        if msg.role == "system" and (preserve_system or msg.preserve):
            continue
        return i
    return None


def fit(messages: list[Message], limit: int, preserve_system: bool = True) -> TrimResult:
    """Drop the oldest history until the estimate fits ``limit``.

    Returns ``messages`` itself when nothing has to go. The most recent user
    message and everything after it are never removed; when that tail alone
    exceeds the limit the result has ``within_budget=False``.
    """
    total = estimate_tokens(messages)
    if total <= limit:
        return TrimResult(messages, total, True)

    kept = list(messages)
    while total > limit:
        idx = _next_removable(kept, preserve_system)
        if idx is None:
            return TrimResult(kept, total, False)
        del kept[idx]
        total = estimate_tokens(kept)
    return TrimResult(kept, total, True)


def trim(messages: list[Message], limit: int, preserve_system: bool = True) -> list[Message]:
    result = fit(messages, limit, preserve_system)
    if not result.within_budget:
        logger.warning(
            "Cannot fit %d estimated tokens into %d without dropping the latest user message",
            result.tokens, limit,
        )
        warnings.warn(
            f"history needs {result.tokens} tokens, limit is {limit}",
            BudgetViolationWarning,
            stacklevel=2,
        )
    return result.messages
