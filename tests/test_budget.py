from __future__ import annotations

import warnings

import pytest

from parley.budget import (
    estimate_text_tokens,
    estimate_tokens,
    fit,
    trim,
)
from parley.errors import BudgetViolationWarning
from parley.models import Message, ToolCall


def _conversation() -> list[Message]:
    return [
        Message.system("Be brief."),
        Message.user("u1"),
        Message.assistant("a1"),
        Message.user("u2"),
        Message.assistant("a2"),
        Message.user("u3"),
        Message.assistant("a3"),
    ]


# ---------------------------------------------------------------------------
# Estimation
# ---------------------------------------------------------------------------

def test_english_text_is_a_quarter_token_per_char():
    assert estimate_text_tokens("abcd") == 1
    assert estimate_text_tokens("abcde") == 2
    assert estimate_text_tokens("") == 0
    assert estimate_text_tokens(None) == 0


def test_cjk_text_is_one_token_per_char():
    assert estimate_text_tokens("你好世界") == 4
    # one CJK character switches the whole string to the CJK rate
    assert estimate_text_tokens("hi 世界") == 5


def test_message_overhead_depends_on_role():
    assert estimate_tokens(Message.user("abcd")) == 1 + 4
    assert estimate_tokens(Message.tool("abcd", "t1", "search")) == 1 + 10


def test_tool_calls_add_name_arguments_and_overhead():
    call = ToolCall(id="t1", name="search", arguments={"q": "x"})
    msg = Message.assistant(None, [call])
    # "search" -> 2, '{"q": "x"}' -> 3, +10 per call, +4 role
    assert estimate_tokens(msg) == 2 + 3 + 10 + 4


def test_message_list_adds_conversation_overhead():
    msgs = [Message.user("abcd"), Message.assistant("abcd")]
    assert estimate_tokens(msgs) == 5 + 5 + 3
    assert estimate_tokens([]) == 3


# ---------------------------------------------------------------------------
# Trimming
# ---------------------------------------------------------------------------

def test_under_limit_returns_same_list():
    msgs = _conversation()
    result = fit(msgs, 10_000)
    assert result.messages is msgs
    assert result.within_budget


def test_trim_keeps_system_and_drops_oldest():
    msgs = _conversation()
    # 7 + 6*5 + 3 = 40 tokens
    assert estimate_tokens(msgs) == 40

    trimmed = trim(msgs, 30, preserve_system=True)

    assert trimmed[0] == msgs[0]
    assert len(trimmed) < len(msgs)
    assert [m.content for m in trimmed] == ["Be brief.", "u2", "a2", "u3", "a3"]
    assert estimate_tokens(trimmed) <= 30


def test_system_preservation_example():
    msgs = [
        Message.system("S"),
        Message.user("u1"),
        Message.assistant("a1"),
        Message.user("u2"),
    ]
    # each message is 5 tokens; two messages plus overhead is 13
    kept = trim(msgs, 13, preserve_system=True)
    assert [(m.role, m.content) for m in kept] == [("system", "S"), ("user", "u2")]

    dropped = trim(msgs, 13, preserve_system=False)
    assert [(m.role, m.content) for m in dropped] == [("assistant", "a1"), ("user", "u2")]


def test_preserve_flag_protects_system_message_even_when_not_preserving_system():
    msgs = [
        Message.system("S", preserve=True),
        Message.system("old notes"),
        Message.user("u1"),
        Message.user("u2"),
    ]
    kept = trim(msgs, 13, preserve_system=False)
    assert [m.content for m in kept] == ["S", "u2"]


def test_trim_is_idempotent():
    msgs = _conversation()
    once = trim(msgs, 30)
    twice = trim(once, 30)
    assert twice == once


def test_latest_user_turn_is_never_dropped():
    msgs = [
        Message.system("S"),
        Message.user("old"),
        Message.user("x" * 400),
        Message.assistant("partial answer"),
    ]
    result = fit(msgs, 20)
    assert not result.within_budget
    assert [m.content for m in result.messages] == ["S", "x" * 400, "partial answer"]


def test_degenerate_trim_warns():
    msgs = [Message.system("S"), Message.user("x" * 400)]
    with pytest.warns(BudgetViolationWarning):
        kept = trim(msgs, 20)
    assert kept == msgs


def test_no_warning_when_budget_is_met():
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        trim(_conversation(), 30)


def test_no_user_message_anchors_on_last_message():
    msgs = [Message.system("S"), Message.assistant("a1"), Message.assistant("a2")]
    result = fit(msgs, 13)
    assert [m.content for m in result.messages] == ["S", "a2"]
    assert result.within_budget
