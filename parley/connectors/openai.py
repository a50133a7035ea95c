from __future__ import annotations

from typing import Any, AsyncIterator

import openai
from openai import AsyncOpenAI

from parley.connectors.base import LLMConnector, tool_to_dict
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

# Context windows for chat models the /models endpoint lists without metadata.
KNOWN_MODELS: dict[str, ModelDescriptor] = {
    m.id: m
    for m in (
        ModelDescriptor(id="gpt-4o", name="GPT-4o", max_context_length=128000,
                        supports_tool_calls=True, supports_vision=True),
        ModelDescriptor(id="gpt-4o-mini", name="GPT-4o mini", max_context_length=128000,
                        supports_tool_calls=True, supports_vision=True),
        ModelDescriptor(id="gpt-4.1", name="GPT-4.1", max_context_length=1047576,
                        supports_tool_calls=True, supports_vision=True),
        ModelDescriptor(id="gpt-4.1-mini", name="GPT-4.1 mini", max_context_length=1047576,
                        supports_tool_calls=True, supports_vision=True),
        ModelDescriptor(id="gpt-4-turbo", name="GPT-4 Turbo", max_context_length=128000,
                        supports_tool_calls=True),
        ModelDescriptor(id="gpt-3.5-turbo", name="GPT-3.5 Turbo", max_context_length=16000,
                        supports_tool_calls=True),
    )
}


class OpenAIConnector(LLMConnector):
    name = "openai"
    capabilities = Capabilities(streaming=True, tool_calls=True, vision=True)
    default_models = [KNOWN_MODELS["gpt-4o"], KNOWN_MODELS["gpt-4-turbo"], KNOWN_MODELS["gpt-3.5-turbo"]]
    credential_key = "openai_api_key"

    def __init__(
        self,
        model: str | None = None,
        credentials: CredentialStore | None = None,
        timeout: float = 60.0,
        base_url: str | None = None,
        max_retries: int = 2,
    ) -> None:
        super().__init__(model=model, credentials=credentials, timeout=timeout)
        self.base_url = base_url or None
        self.max_retries = max_retries
        self._client: AsyncOpenAI | None = None

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            # Transient network blips are retried by the SDK itself.
            self._client = AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                max_retries=self.max_retries,
                timeout=self.timeout,
            )
        return self._client

    def _on_credential_changed(self) -> None:
        self._client = None

    async def complete(
        self, model: ModelDescriptor, messages: list[Message], tools: list[Tool] | None = None
    ) -> ResponseEnvelope:
        kwargs: dict[str, Any] = {"model": model.id, "messages": self._messages_to_dicts(messages)}
        if tools:
            kwargs["tools"] = [tool_to_dict(t) for t in tools]

        response = await self._get_client().chat.completions.create(**kwargs)
        choice = response.choices[0]

        tool_calls = [
            tool_call_from_raw(tc.id, tc.function.name, tc.function.arguments)
            for tc in choice.message.tool_calls or []
            if tc.type == "function"
        ]
        content = choice.message.content or ""
        if response.usage is not None:
            usage = Usage.of(response.usage.prompt_tokens, response.usage.completion_tokens)
        else:
            usage = self._estimate_usage(messages, content)

        if tool_calls:
            stop_reason = "tool_use"
        elif choice.finish_reason == "length":
            stop_reason = "length"
        else:
            stop_reason = "stop"
        return ResponseEnvelope(
            message=Message.assistant(content or None, tool_calls),
            usage=usage,
            stop_reason=stop_reason,
        )

    async def stream(self, model: ModelDescriptor, messages: list[Message]) -> AsyncIterator[str | Usage]:
        chunks = await self._get_client().chat.completions.create(
            model=model.id,
            messages=self._messages_to_dicts(messages),
            stream=True,
            stream_options={"include_usage": True},
        )
        async for chunk in chunks:
            if chunk.choices:
                text = chunk.choices[0].delta.content
                if text:
                    yield text
            if chunk.usage is not None:
                yield Usage.of(chunk.usage.prompt_tokens, chunk.usage.completion_tokens)

    async def list_models(self) -> list[ModelDescriptor]:
        models: list[ModelDescriptor] = []
        async for m in self._get_client().models.list():
            if m.id in KNOWN_MODELS:
                models.append(KNOWN_MODELS[m.id])
        return sorted(models, key=lambda d: d.id)

    def classify_error(self, exc: Exception) -> ProviderError:
        if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
            kind = ProviderErrorKind.AUTH
        elif isinstance(exc, openai.RateLimitError):
            kind = ProviderErrorKind.RATE_LIMIT
        elif isinstance(exc, (openai.APIConnectionError, openai.InternalServerError)):
            # APITimeoutError is an APIConnectionError
            kind = ProviderErrorKind.TRANSIENT
        elif isinstance(exc, openai.OpenAIError):
            kind = ProviderErrorKind.UNKNOWN
        else:
            return super().classify_error(exc)
        return ProviderError(self.name, kind, str(exc) or type(exc).__name__)
