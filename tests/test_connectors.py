from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import ollama
import openai
import pytest
from openai.types.chat import ChatCompletion

from parley.connectors import get_connector
from parley.connectors.ollama import OllamaConnector
from parley.connectors.openai import OpenAIConnector
from parley.errors import CredentialMissingError, ProviderError, ProviderErrorKind
from parley.models import Message, ToolCall
from parley.stores import InMemoryCredentialStore
from tests.conftest import SEARCH_TOOL, FakeConnector

_REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def _response(status: int) -> httpx.Response:
    return httpx.Response(status, request=_REQUEST)


def _openai(**credentials) -> OpenAIConnector:
    return OpenAIConnector(credentials=InMemoryCredentialStore(credentials or {"openai_api_key": "sk-test"}))


# ---------------------------------------------------------------------------
# Factory and catalog
# ---------------------------------------------------------------------------

def test_get_connector_by_name():
    connector = get_connector("ollama", model="llama3.2", host="http://gpu-box:11434")
    assert isinstance(connector, OllamaConnector)
    assert connector.model_id == "llama3.2"
    assert connector.host == "http://gpu-box:11434"


def test_get_connector_unknown_name():
    with pytest.raises(ValueError, match="Unknown connector"):
        get_connector("nope")


def test_default_openai_catalog():
    connector = _openai()
    assert [m.id for m in connector.models] == ["gpt-4o", "gpt-4-turbo", "gpt-3.5-turbo"]
    assert connector.model.max_context_length == 128000
    assert connector.model.supports_vision


def test_set_model_known_and_unknown():
    connector = _openai()
    assert connector.set_model("gpt-3.5-turbo")
    assert connector.model.max_context_length == 16000
    assert connector.set_model("not-a-model") is False
    assert connector.model_id == "gpt-3.5-turbo"


def test_configured_model_outside_catalog_is_added():
    connector = OpenAIConnector(model="my-finetune")
    assert connector.model_id == "my-finetune"
    assert connector.model.max_context_length == 8192
    assert "my-finetune" in [m.id for m in connector.models]


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

def test_openai_needs_a_key_and_ollama_does_not():
    store = InMemoryCredentialStore()
    assert not OpenAIConnector(credentials=store).has_valid_credential()
    assert OllamaConnector(credentials=store).has_valid_credential()


def test_set_credential_writes_through_and_resets_client():
    store = InMemoryCredentialStore()
    connector = OpenAIConnector(credentials=store)
    connector._client = MagicMock()

    connector.set_credential("sk-new")

    assert store.get("openai_api_key") == "sk-new"
    assert connector.has_valid_credential()
    assert connector._client is None


@pytest.mark.asyncio
async def test_send_without_credential_raises():
    connector = OpenAIConnector(credentials=InMemoryCredentialStore())
    with pytest.raises(CredentialMissingError):
        await connector.send([Message.user("hi")])


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "exc, kind",
    [
        (openai.AuthenticationError("bad key", response=_response(401), body=None), ProviderErrorKind.AUTH),
        (openai.PermissionDeniedError("no", response=_response(403), body=None), ProviderErrorKind.AUTH),
        (openai.RateLimitError("slow", response=_response(429), body=None), ProviderErrorKind.RATE_LIMIT),
        (openai.InternalServerError("oops", response=_response(500), body=None), ProviderErrorKind.TRANSIENT),
        (openai.APIConnectionError(request=_REQUEST), ProviderErrorKind.TRANSIENT),
        (openai.APITimeoutError(request=_REQUEST), ProviderErrorKind.TRANSIENT),
        (openai.BadRequestError("bad", response=_response(400), body=None), ProviderErrorKind.UNKNOWN),
        (ValueError("weird"), ProviderErrorKind.UNKNOWN),
    ],
)
def test_openai_classification(exc, kind):
    err = _openai().classify_error(exc)
    assert err.kind is kind
    assert err.provider == "openai"


@pytest.mark.parametrize(
    "exc, kind",
    [
        (ollama.ResponseError("unauthorized", 401), ProviderErrorKind.AUTH),
        (ollama.ResponseError("too many requests", 429), ProviderErrorKind.RATE_LIMIT),
        (ollama.ResponseError("server error", 503), ProviderErrorKind.TRANSIENT),
        (ollama.ResponseError("model 'x' not found", 404), ProviderErrorKind.UNKNOWN),
        (httpx.ConnectError("refused"), ProviderErrorKind.TRANSIENT),
        (ConnectionError("refused"), ProviderErrorKind.TRANSIENT),
    ],
)
def test_ollama_classification(exc, kind):
    assert OllamaConnector().classify_error(exc).kind is kind


@pytest.mark.asyncio
async def test_timeout_is_transient():
    connector = FakeConnector("slow", delay=0.5, timeout=0.01)
    with pytest.raises(ProviderError) as exc_info:
        await connector.send([Message.user("hi")])
    assert exc_info.value.kind is ProviderErrorKind.TRANSIENT
    assert exc_info.value.transient


# ---------------------------------------------------------------------------
# Wire formats
# ---------------------------------------------------------------------------

def test_messages_to_dicts_serializes_tool_turns():
    call = ToolCall(id="t1", name="search", arguments={"query": "x"})
    dicts = _openai()._messages_to_dicts([
        Message.system("sys"),
        Message.assistant(None, [call]),
        Message.tool("found", "t1", "search"),
    ])
    assert dicts[0] == {"role": "system", "content": "sys"}
    assert dicts[1]["tool_calls"][0]["function"] == {"name": "search", "arguments": '{"query": "x"}'}
    assert dicts[2] == {"role": "tool", "tool_call_id": "t1", "content": "found", "name": "search"}


def test_messages_to_ollama_keeps_argument_dicts():
    call = ToolCall(id="t1", name="search", arguments={"query": "x"})
    dicts = OllamaConnector()._messages_to_ollama([
        Message.assistant(None, [call]),
        Message.tool("found", "t1", "search"),
    ])
    assert dicts[0]["tool_calls"] == [{"function": {"name": "search", "arguments": {"query": "x"}}}]
    assert dicts[1] == {"role": "tool", "content": "found", "tool_name": "search"}


@pytest.mark.asyncio
async def test_openai_complete_parses_tool_calls_and_usage():
    completion = ChatCompletion.model_validate({
        "id": "c1",
        "object": "chat.completion",
        "created": 0,
        "model": "gpt-4o",
        "choices": [{
            "index": 0,
            "finish_reason": "tool_calls",
            "message": {
                "role": "assistant",
                "content": None,
                "tool_calls": [
                    {"id": "call_1", "type": "function",
                     "function": {"name": "search", "arguments": json.dumps({"query": "x"})}},
                    {"id": "call_2", "type": "function",
                     "function": {"name": "search", "arguments": "{broken"}},
                ],
            },
        }],
        "usage": {"prompt_tokens": 12, "completion_tokens": 3, "total_tokens": 15},
    })
    connector = _openai()
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=completion)
    connector._client = client

    envelope = await connector.send([Message.user("hi")], tools=[SEARCH_TOOL])

    sent = client.chat.completions.create.call_args.kwargs
    assert sent["tools"][0]["function"]["name"] == "search"
    assert envelope.stop_reason == "tool_use"
    assert envelope.provider_name == "openai" and envelope.model_name == "gpt-4o"
    assert envelope.tool_calls[0] == ToolCall(id="call_1", name="search", arguments={"query": "x"})
    assert envelope.tool_calls[1].invalid_arguments is not None
    assert envelope.usage.total_tokens == 15


@pytest.mark.asyncio
async def test_openai_sdk_errors_become_provider_errors():
    connector = _openai()
    client = MagicMock()
    client.chat.completions.create = AsyncMock(
        side_effect=openai.RateLimitError("slow", response=_response(429), body=None)
    )
    connector._client = client

    with pytest.raises(ProviderError) as exc_info:
        await connector.send([Message.user("hi")])

    assert exc_info.value.kind is ProviderErrorKind.RATE_LIMIT
    assert isinstance(exc_info.value.__cause__, openai.RateLimitError)


@pytest.mark.asyncio
async def test_ollama_complete_and_stream():
    response = ollama.ChatResponse.model_validate({
        "model": "qwen2.5:7b",
        "done": True,
        "done_reason": "stop",
        "message": {
            "role": "assistant",
            "content": "",
            "tool_calls": [{"function": {"name": "search", "arguments": {"query": "x"}}}],
        },
        "prompt_eval_count": 7,
        "eval_count": 2,
    })

    async def parts():
        for text, done in (("Hel", False), ("lo", False), ("", True)):
            yield ollama.ChatResponse.model_validate({
                "model": "qwen2.5:7b",
                "done": done,
                "message": {"role": "assistant", "content": text},
                "prompt_eval_count": 4 if done else None,
                "eval_count": 2 if done else None,
            })

    client = MagicMock()
    client.chat = AsyncMock(side_effect=[response, parts()])
    connector = OllamaConnector(client=client)

    envelope = await connector.send([Message.user("hi")], tools=[SEARCH_TOOL])
    assert envelope.tool_calls[0].name == "search"
    assert envelope.tool_calls[0].arguments == {"query": "x"}
    assert envelope.usage.prompt_tokens == 7

    chunks: list[str] = []
    streamed = await connector.send_streaming([Message.user("hi")], chunks.append)
    assert chunks == ["Hel", "lo"]
    assert streamed.content == "Hello"
    assert streamed.usage.total_tokens == 6


@pytest.mark.asyncio
async def test_callback_errors_are_not_classified():
    connector = FakeConnector("a", chunks=["x", "y"])

    def on_chunk(chunk: str) -> None:
        raise KeyError(chunk)

    with pytest.raises(KeyError):
        await connector.send_streaming([Message.user("hi")], on_chunk)
