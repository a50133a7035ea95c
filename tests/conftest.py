from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator

import pytest

from parley.config import OrchestratorSettings
from parley.connectors.base import LLMConnector
from parley.models import (
    Capabilities,
    Message,
    ModelDescriptor,
    ResponseEnvelope,
    Tool,
    ToolCall,
    Usage,
)
from parley.orchestrator import ChatOrchestrator
from parley.registry import ProviderRegistry
from parley.stores import InMemoryConversationStore, StaticPromptSource
from parley.tools import FunctionToolExecutor, ToolBridge

Step = str | ResponseEnvelope | Exception


class FakeConnector(LLMConnector):
    """Scripted connector.

    ``script`` holds one step per ``complete`` call: a reply string, a full
    envelope, or an exception to raise. The last step repeats once the script
    runs out. ``chunks`` drives ``stream``; ``stream_error`` is raised after
    the chunks have been yielded.
    """

    capabilities = Capabilities(streaming=True, tool_calls=True)
    default_models = [
        ModelDescriptor(id="fake-1", name="Fake 1", max_context_length=4096, supports_tool_calls=True),
        ModelDescriptor(id="fake-2", name="Fake 2", max_context_length=64, supports_tool_calls=True),
    ]

    def __init__(
        self,
        name: str = "fake",
        script: list[Step] | None = None,
        chunks: list[str] | None = None,
        stream_error: Exception | None = None,
        credential: bool = True,
        native_tools: bool = True,
        catalog: list[ModelDescriptor] | Exception | None = None,
        delay: float = 0.0,
        **kwargs: Any,
    ) -> None:
        self.name = name
        super().__init__(**kwargs)
        self.script: list[Step] = list(script or [f"reply from {name}"])
        self.chunks = chunks if chunks is not None else ["Hello", ", ", "world"]
        self.stream_error = stream_error
        self.credential = credential
        self.catalog = catalog
        self.delay = delay
        if not native_tools:
            self.capabilities = Capabilities(streaming=True, tool_calls=False)
        self.requests: list[list[Message]] = []
        self.tools_seen: list[list[Tool] | None] = []

    @property
    def calls(self) -> int:
        return len(self.requests)

    def has_valid_credential(self) -> bool:
        return self.credential

    def _next_step(self) -> Step:
        return self.script.pop(0) if len(self.script) > 1 else self.script[0]

    async def complete(
        self, model: ModelDescriptor, messages: list[Message], tools: list[Tool] | None = None
    ) -> ResponseEnvelope:
        self.requests.append(list(messages))
        self.tools_seen.append(tools)
        if self.delay:
            await asyncio.sleep(self.delay)
        step = self._next_step()
        if isinstance(step, Exception):
            raise step
        if isinstance(step, ResponseEnvelope):
            return step
        return ResponseEnvelope(message=Message.assistant(step), usage=Usage.of(10, 5))

    async def stream(self, model: ModelDescriptor, messages: list[Message]) -> AsyncIterator[str | Usage]:
        self.requests.append(list(messages))
        for chunk in self.chunks:
            await asyncio.sleep(0)
            yield chunk
        if self.stream_error is not None:
            raise self.stream_error
        yield Usage.of(10, len(self.chunks))

    async def list_models(self) -> list[ModelDescriptor]:
        if isinstance(self.catalog, Exception):
            raise self.catalog
        return list(self.catalog or [])


def tool_reply(*calls: ToolCall, content: str | None = None) -> ResponseEnvelope:
    return ResponseEnvelope(
        message=Message.assistant(content, list(calls)),
        usage=Usage.of(10, 5),
        stop_reason="tool_use",
    )


WEATHER_TOOL = Tool(
    name="get_weather",
    description="Weather for a city.",
    parameters={"type": "object", "properties": {"city": {"type": "string"}}, "required": ["city"]},
)
SEARCH_TOOL = Tool(
    name="search",
    description="Search the web.",
    parameters={"type": "object", "properties": {"query": {"type": "string"}}, "required": ["query"]},
)


@pytest.fixture
def store() -> InMemoryConversationStore:
    return InMemoryConversationStore()


@pytest.fixture
def executor() -> FunctionToolExecutor:
    """get_weather is slow and search is fast, so completion order differs from request order."""
    ex = FunctionToolExecutor()

    @ex.tool(name="get_weather", parameters=WEATHER_TOOL.parameters)
    async def get_weather(city: str = "Paris") -> dict:
        await asyncio.sleep(0.05)
        return {"city": city, "forecast": "sunny"}

    @ex.tool(name="search", parameters=SEARCH_TOOL.parameters)
    async def search(query: str = "") -> str:
        return f"results for {query}"

    @ex.tool(name="explode")
    def explode() -> None:
        raise RuntimeError("kaboom")

    return ex


@pytest.fixture
def make_orchestrator(store, executor):
    def factory(*connectors: LLMConnector, **settings: Any) -> ChatOrchestrator:
        return ChatOrchestrator(
            ProviderRegistry(connectors),
            store,
            prompts=StaticPromptSource("You are a test assistant."),
            bridge=ToolBridge(executor, max_depth=settings.pop("max_depth", 3)),
            settings=OrchestratorSettings(**settings),
        )

    return factory
