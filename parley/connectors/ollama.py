from __future__ import annotations

import uuid
from typing import Any, AsyncIterator

import httpx
import ollama

from parley.connectors.base import DEFAULT_CONTEXT_LENGTH, LLMConnector, tool_to_dict
from parley.errors import ProviderError, ProviderErrorKind
from parley.models import (
    Capabilities,
    Message,
    ModelDescriptor,
    ResponseEnvelope,
    Tool,
    Usage,
)
from parley.stores import CredentialStore
from parley.tools import tool_call_from_raw

DEFAULT_HOST = "http://localhost:11434"


class OllamaConnector(LLMConnector):
    name = "ollama"
    capabilities = Capabilities(streaming=True, tool_calls=True, vision=False)
    credential_key = None  # local server, no key

    def __init__(
        self,
        model: str | None = None,
        credentials: CredentialStore | None = None,
        timeout: float = 60.0,
        host: str = DEFAULT_HOST,
        client: ollama.AsyncClient | None = None,
    ) -> None:
        super().__init__(model=model, credentials=credentials, timeout=timeout)
        self.host = host
        self._client = client or ollama.AsyncClient(host=host)

    async def complete(
        self, model: ModelDescriptor, messages: list[Message], tools: list[Tool] | None = None
    ) -> ResponseEnvelope:
        kwargs: dict[str, Any] = {"model": model.id, "messages": self._messages_to_ollama(messages)}
        if tools:
            kwargs["tools"] = [tool_to_dict(t) for t in tools]

        response = await self._client.chat(**kwargs)
        ollama_msg = response.message

        # Ollama doesn't assign IDs; .arguments is usually already a dict
        tool_calls = [
            tool_call_from_raw(str(uuid.uuid4()), tc.function.name, tc.function.arguments)
            for tc in ollama_msg.tool_calls or []
        ]

        content = ollama_msg.content or ""
        usage = _usage(response)
        if usage is None:
            usage = self._estimate_usage(messages, content)
        return ResponseEnvelope(
            message=Message.assistant(content or None, tool_calls),
            usage=usage,
            stop_reason="tool_use" if tool_calls else _stop_reason(response),
        )

    async def stream(self, model: ModelDescriptor, messages: list[Message]) -> AsyncIterator[str | Usage]:
        """Stream text. Never called with tools: Ollama doesn't support streaming + tools."""
        parts = await self._client.chat(
            model=model.id, messages=self._messages_to_ollama(messages), stream=True
        )
        async for part in parts:
            text = part.message.content
            if text:
                yield text
            if part.done:
                usage = _usage(part)
                if usage is not None:
                    yield usage

    async def list_models(self) -> list[ModelDescriptor]:
        listed = await self._client.list()
        return [
            ModelDescriptor(
                id=m.model,
                name=m.model,
                max_context_length=DEFAULT_CONTEXT_LENGTH,
                supports_tool_calls=True,
            )
            for m in listed.models
            if m.model
        ]

    def classify_error(self, exc: Exception) -> ProviderError:
        if isinstance(exc, ollama.ResponseError):
            status = exc.status_code
            if status in (401, 403):
                kind = ProviderErrorKind.AUTH
            elif status == 429:
                kind = ProviderErrorKind.RATE_LIMIT
            elif status >= 500:
                kind = ProviderErrorKind.TRANSIENT
            else:
                kind = ProviderErrorKind.UNKNOWN
            return ProviderError(self.name, kind, f"HTTP {status}: {exc.error}")
        if isinstance(exc, (ConnectionError, httpx.TransportError)):
            return ProviderError(
                self.name, ProviderErrorKind.TRANSIENT, f"cannot reach Ollama at {self.host}: {exc}"
            )
        return super().classify_error(exc)

    def _messages_to_ollama(self, messages: list[Message]) -> list[dict[str, Any]]:
        """Convert Message objects to Ollama-compatible dicts."""
        result = []
        for msg in messages:
            if msg.role == "tool":
                result.append({
                    "role": "tool",
                    "content": msg.content or "",
                    "tool_name": msg.name,
                })
            elif msg.tool_calls:
                result.append({
                    "role": "assistant",
                    "content": msg.content or "",
                    "tool_calls": [
                        {
                            "function": {
                                "name": tc.name,
                                "arguments": tc.arguments,
                            }
                        }
                        for tc in msg.tool_calls
                    ],
                })
            else:
                result.append({
                    "role": msg.role,
                    "content": msg.content or "",
                })
        return result


def _usage(response: Any) -> Usage | None:
    prompt = getattr(response, "prompt_eval_count", None)
    completion = getattr(response, "eval_count", None)
    if prompt is None and completion is None:
        return None
    return Usage.of(prompt or 0, completion or 0)


def _stop_reason(response: Any) -> str:
    return "length" if getattr(response, "done_reason", None) == "length" else "stop"
