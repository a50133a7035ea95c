from __future__ import annotations

import asyncio
import inspect
import json
import logging
from abc import ABC, abstractmethod
from contextlib import aclosing, asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, ClassVar

from parley.budget import estimate_text_tokens, estimate_tokens
from parley.cancel import CancelToken, check
from parley.errors import (
    CredentialMissingError,
    OperationCancelledError,
    ProviderError,
    ProviderErrorKind,
)
from parley.models import (
    Capabilities,
    Message,
    ModelDescriptor,
    ResponseEnvelope,
    Tool,
    Usage,
)
from parley.stores import CredentialStore, InMemoryCredentialStore

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_LENGTH = 8192

ChunkCallback = Callable[[str], Awaitable[None] | None]


async def emit(on_chunk: ChunkCallback, chunk: str) -> None:
    """Hand a chunk to a plain or async callback."""
    pending = on_chunk(chunk)
    if inspect.isawaitable(pending):
        await pending


class LLMConnector(ABC):
    """One backend vendor behind a uniform async interface.

    Subclasses implement ``complete`` (and ``stream`` when the vendor streams),
    ``list_models`` and ``classify_error``. The public ``send`` /
    ``send_streaming`` wrappers add the per-attempt timeout, credential check,
    cancellation and error classification, so vendors only translate payloads.
    """

    name: ClassVar[str] = ""
    capabilities: ClassVar[Capabilities] = Capabilities()
    default_models: ClassVar[list[ModelDescriptor]] = []
    credential_key: ClassVar[str | None] = None

    def __init__(
        self,
        model: str | None = None,
        credentials: CredentialStore | None = None,
        timeout: float = 60.0,
    ) -> None:
        self.credentials = credentials if credentials is not None else InMemoryCredentialStore()
        self.timeout = timeout
        self._models: list[ModelDescriptor] = list(self.default_models)
        self._model = self._models[0] if self._models else self._describe(model or "default")
        if model and not self.set_model(model):
            # A configured model the static catalog doesn't know yet.
            self._model = self._describe(model)
            self._models.append(self._model)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}/{self.model_id}>"

    # -- catalog ---------------------------------------------------------

    @property
    def models(self) -> list[ModelDescriptor]:
        return list(self._models)

    @property
    def model(self) -> ModelDescriptor:
        return self._model

    @property
    def model_id(self) -> str:
        return self._model.id

    def set_model(self, model_id: str) -> bool:
        for m in self._models:
            if m.id == model_id:
                self._model = m
                return True
        return False

    async def fetch_models(self) -> list[ModelDescriptor]:
        """Re-read the vendor catalog. Keeps the current model when it is still listed."""
        self._require_credential()
        async with self._attempt():
            models = await self.list_models()
        if models:
            current = self._model.id
            self._models = models
            if not self.set_model(current):
                self._model = models[0]
        return self.models

    def _describe(self, model_id: str) -> ModelDescriptor:
        return ModelDescriptor(
            id=model_id,
            name=model_id,
            max_context_length=DEFAULT_CONTEXT_LENGTH,
            supports_tool_calls=self.capabilities.tool_calls,
            supports_vision=self.capabilities.vision,
        )

    # -- credentials -----------------------------------------------------

    @property
    def api_key(self) -> str | None:
        if self.credential_key is None:
            return None
        return self.credentials.get(self.credential_key)

    def has_valid_credential(self) -> bool:
        return self.credential_key is None or bool(self.api_key)

    def set_credential(self, api_key: str) -> None:
        if self.credential_key is None:
            return
        self.credentials.set(self.credential_key, api_key)
        self._on_credential_changed()

    def _on_credential_changed(self) -> None:
        """Hook for vendors that cache an authenticated client."""

    def _require_credential(self) -> None:
        if not self.has_valid_credential():
            raise CredentialMissingError(self.name)

    # -- exchange --------------------------------------------------------

    async def send(
        self,
        messages: list[Message],
        system_prompt: str | None = None,
        tools: list[Tool] | None = None,
        cancel: CancelToken | None = None,
    ) -> ResponseEnvelope:
        """Single blocking exchange. Failures surface as ``ProviderError``."""
        check(cancel)
        self._require_credential()
        model = self._model
        request = self._with_system_prompt(messages, system_prompt)
        logger.debug("%s/%s: sending %d message(s)", self.name, model.id, len(request))
        async with self._attempt():
            envelope = await self.complete(model, request, tools or None)
        check(cancel)
        return envelope.model_copy(update={"provider_name": self.name, "model_name": model.id})

    async def send_streaming(
        self,
        messages: list[Message],
        on_chunk: ChunkCallback,
        system_prompt: str | None = None,
        cancel: CancelToken | None = None,
    ) -> ResponseEnvelope:
        """Deliver chunks through ``on_chunk`` in generation order.

        The envelope content is exactly the concatenation of the delivered chunks.
        """
        check(cancel)
        self._require_credential()
        model = self._model
        request = self._with_system_prompt(messages, system_prompt)
        parts: list[str] = []
        usage: Usage | None = None
        caller_error: Exception | None = None
        loop = asyncio.get_running_loop()
        async with self._attempt() as deadline:
            async with aclosing(self.stream(model, request)) as events:
                async for event in events:
                    if isinstance(event, Usage):
                        usage = event
                        continue
                    if not event:
                        continue
                    check(cancel)
                    # The deadline is suspended while the caller handles the chunk.
                    remaining = deadline.when() - loop.time()
                    deadline.reschedule(None)
                    try:
                        await emit(on_chunk, event)
                    except Exception as exc:
                        # The caller's failure, not the provider's: no classification.
                        caller_error = exc
                        break
                    parts.append(event)
                    deadline.reschedule(loop.time() + remaining)
        if caller_error is not None:
            raise caller_error
        content = "".join(parts)
        return ResponseEnvelope(
            message=Message.assistant(content),
            usage=usage or self._estimate_usage(request, content),
            provider_name=self.name,
            model_name=model.id,
        )

    @asynccontextmanager
    async def _attempt(self) -> AsyncIterator[asyncio.Timeout]:
        try:
            async with asyncio.timeout(self.timeout) as deadline:
                yield deadline
        except (ProviderError, OperationCancelledError):
            raise
        except TimeoutError as exc:
            raise ProviderError(
                self.name, ProviderErrorKind.TRANSIENT, f"timed out after {self.timeout:g}s"
            ) from exc
        except Exception as exc:
            raise self.classify_error(exc) from exc

    # -- vendor hooks ----------------------------------------------------

    @abstractmethod
    async def complete(
        self, model: ModelDescriptor, messages: list[Message], tools: list[Tool] | None = None
    ) -> ResponseEnvelope:
        """Non-streaming completion. Always used when tools are provided."""
        ...

    async def stream(self, model: ModelDescriptor, messages: list[Message]) -> AsyncIterator[str | Usage]:
        """Yield text chunks, optionally followed by a ``Usage``.

        Vendors without native streaming deliver the whole completion as one chunk.
        """
        envelope = await self.complete(model, messages)
        if envelope.content:
            yield envelope.content
        yield envelope.usage

    @abstractmethod
    async def list_models(self) -> list[ModelDescriptor]:
        ...

    def classify_error(self, exc: Exception) -> ProviderError:
        return ProviderError(self.name, ProviderErrorKind.UNKNOWN, str(exc) or type(exc).__name__)

    # -- helpers ---------------------------------------------------------

    @staticmethod
    def _with_system_prompt(messages: list[Message], system_prompt: str | None) -> list[Message]:
        if not system_prompt:
            return list(messages)
        rest = [m for m in messages if m.role != "system"]
        return [Message.system(system_prompt, preserve=True), *rest]

    @staticmethod
    def _estimate_usage(request: list[Message], content: str) -> Usage:
        return Usage.of(estimate_tokens(request), estimate_text_tokens(content))

    def _messages_to_dicts(self, messages: list[Message]) -> list[dict[str, Any]]:
        """Convert Message objects to OpenAI-style dicts for API calls."""
        result = []
        for msg in messages:
            if msg.role == "tool":
                result.append({
                    "role": "tool",
                    "tool_call_id": msg.tool_call_id,
                    "content": msg.content or "",
                    "name": msg.name,
                })
            elif msg.tool_calls:
                d: dict[str, Any] = {
                    "role": msg.role,
                    "content": msg.content or "",
                    "tool_calls": [
                        {
                            "id": tc.id,
                            "type": "function",
                            "function": {
                                "name": tc.name,
                                "arguments": json.dumps(tc.arguments),
                            },
                        }
                        for tc in msg.tool_calls
                    ],
                }
                result.append(d)
            else:
                result.append({
                    "role": msg.role,
                    "content": msg.content or "",
                })
        return result


def tool_to_dict(tool: Tool) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.parameters,
        },
    }
