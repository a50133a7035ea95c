"""Tool-call bridge: run the tools a model asks for and hand the results back.

Two request shapes are supported:

* structured ``ToolCall`` objects returned by connectors with native tool
  calling; results are folded into Tool-role messages and the same connector is
  asked for a follow-up completion;
* inline fenced blocks for vendors without native tool calls. The grammar is
  fixed::

      ```tool <name>
      <JSON object, or one "key: value" pair per line>
      ```

  Each block is executed and replaced in place by itself followed by a
  ``**Tool Result:**`` JSON fence. No second model round-trip happens.
"""
from __future__ import annotations

import asyncio
import inspect
import json
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Mapping, Protocol

from parley.cancel import CancelToken, check
from parley.errors import ToolExecutionError, ToolLoopExceededError
from parley.models import Message, ResponseEnvelope, Tool, ToolCall, ToolResult

if TYPE_CHECKING:
    from parley.connectors.base import LLMConnector

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 3

INLINE_TOOL_PATTERN = re.compile(
    r"^```tool[ \t]+(?P<name>[A-Za-z_][\w.\-]*)[ \t]*\n(?P<body>.*?)^```[ \t]*$",
    re.MULTILINE | re.DOTALL,
)


class ToolExecutor(Protocol):
    async def execute(self, name: str, arguments: dict[str, Any]) -> ToolResult: ...


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------

def parse_arguments(raw: str | Mapping[str, Any] | None, key_values: bool = True) -> dict[str, Any]:
    """Parse tool arguments: a JSON object, or ``key: value`` lines when ``key_values``.

    A body that opens like JSON must be valid JSON. Raises ``ValueError`` for
    anything else.
    """
    if raw is None:
        return {}
    if isinstance(raw, Mapping):
        return dict(raw)
    text = raw.strip()
    if not text:
        return {}
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        if not key_values or text[0] in "{[":
            raise ValueError(f"malformed JSON arguments: {exc}") from exc
        return _parse_key_values(text)
    if not isinstance(parsed, dict):
        raise ValueError(f"arguments must be a JSON object, got {type(parsed).__name__}")
    return parsed


def _parse_key_values(text: str) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for line in text.splitlines():
        if not line.strip():
            continue
        key, sep, value = line.partition(":")
        if not sep or not key.strip():
            raise ValueError(f"expected 'key: value', got {line.strip()!r}")
        result[key.strip()] = _coerce(value.strip())
    return result


def _coerce(value: str) -> Any:
    for convert in (int, float):
        try:
            return convert(value)
        except ValueError:
            pass
    if value.lower() in ("true", "false"):
        return value.lower() == "true"
    return value


def tool_call_from_raw(
    call_id: str, name: str, raw: str | Mapping[str, Any] | None, key_values: bool = False
) -> ToolCall:
    """Build a ToolCall; unparseable arguments are kept for the bridge to report.

    Vendor ``function.arguments`` are JSON only; inline blocks pass ``key_values=True``.
    """
    try:
        return ToolCall(id=call_id, name=name, arguments=parse_arguments(raw, key_values))
    except ValueError as exc:
        return ToolCall(id=call_id, name=name, invalid_arguments=f"{exc} in {raw!r}")


# ---------------------------------------------------------------------------
# In-process executor
# ---------------------------------------------------------------------------

class FunctionToolExecutor:
    """Executes registered Python callables. Sync callables run in a worker thread."""

    def __init__(self) -> None:
        self._functions: dict[str, Callable[..., Any]] = {}
        self._schemas: dict[str, Tool] = {}

    @property
    def tools(self) -> list[Tool]:
        return list(self._schemas.values())

    def register(
        self,
        func: Callable[..., Any],
        name: str | None = None,
        description: str = "",
        parameters: dict[str, Any] | None = None,
    ) -> None:
        tool_name = name or func.__name__
        self._functions[tool_name] = func
        self._schemas[tool_name] = Tool(
            name=tool_name,
            description=description or inspect.getdoc(func) or "",
            parameters=parameters or {"type": "object", "properties": {}, "required": []},
        )

    def tool(
        self,
        name: str | None = None,
        description: str = "",
        parameters: dict[str, Any] | None = None,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            self.register(func, name, description, parameters)
            return func

        return decorator

    async def execute(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        func = self._functions.get(name)
        if func is None:
            return ToolResult(name=name, success=False, error=f"unknown tool '{name}'")
        try:
            if inspect.iscoroutinefunction(func):
                data = await func(**arguments)
            else:
                data = await asyncio.to_thread(func, **arguments)
        except Exception as e:
            logger.debug("Tool %s raised", name, exc_info=True)
            return ToolResult(name=name, success=False, error=f"{type(e).__name__}: {e}")
        return ToolResult(name=name, success=True, data=data)


# ---------------------------------------------------------------------------
# Inline blocks
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class InlineCall:
    start: int
    end: int
    block: str
    call: ToolCall

    def render(self, result: ToolResult) -> str:
        return f"{self.block}\n\n**Tool Result:**\n```json\n{result.as_text()}\n```"


def find_inline_calls(text: str) -> list[InlineCall]:
    found = []
    for i, match in enumerate(INLINE_TOOL_PATTERN.finditer(text)):
        call = tool_call_from_raw(
            f"inline-{i}", match.group("name"), match.group("body"), key_values=True
        )
        found.append(InlineCall(match.start(), match.end(), match.group(0), call))
    return found


def render_tool_instructions(tools: list[Tool]) -> str:
    """System-prompt addendum teaching the inline block convention."""
    lines = [
        "You can use tools. To call one, write a fenced block whose info string is",
        "`tool <name>` and whose body is a JSON object of arguments, for example:",
        "",
        "```tool get_weather",
        '{"city": "Paris"}',
        "```",
        "",
        "The block will be replaced by its result. Available tools:",
    ]
    for tool in tools:
        lines.append(f"- {tool.name}: {tool.description}")
        lines.append(f"  parameters: {json.dumps(tool.parameters)}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Bridge
# ---------------------------------------------------------------------------

class ToolBridge:
    def __init__(
        self,
        executor: ToolExecutor,
        max_depth: int = DEFAULT_MAX_DEPTH,
        max_concurrency: int | None = None,
    ) -> None:
        self.executor = executor
        self.max_depth = max_depth
        self._semaphore = asyncio.Semaphore(max_concurrency) if max_concurrency else None

    async def _execute_one(self, call: ToolCall) -> ToolResult:
        if call.invalid_arguments:
            logger.warning("Tool %s called with invalid arguments: %s", call.name, call.invalid_arguments)
            return ToolResult(
                call_id=call.id, name=call.name, success=False,
                error=f"invalid arguments: {call.invalid_arguments}",
            )
        try:
            if self._semaphore is not None:
                async with self._semaphore:
                    result = await self.executor.execute(call.name, call.arguments)
            else:
                result = await self.executor.execute(call.name, call.arguments)
        except Exception as exc:
            err = ToolExecutionError(call.name, str(exc) or type(exc).__name__)
            logger.warning("%s", err)
            return ToolResult(call_id=call.id, name=call.name, success=False, error=err.reason)
        if not result.success:
            logger.info("Tool %s failed: %s", call.name, result.error)
        return result.model_copy(update={"call_id": call.id, "name": call.name})

    async def execute_calls(self, calls: list[ToolCall]) -> list[ToolResult]:
        """Run calls concurrently; results come back in request order."""
        return list(await asyncio.gather(*(self._execute_one(c) for c in calls)))

    @staticmethod
    def fold(calls: list[ToolCall], results: list[ToolResult]) -> list[Message]:
        return [
            Message.tool(result.as_text(), tool_call_id=call.id, name=call.name)
            for call, result in zip(calls, results, strict=True)
        ]

    async def resolve(
        self,
        connector: LLMConnector,
        messages: list[Message],
        envelope: ResponseEnvelope,
        tools: list[Tool] | None,
        system_prompt: str | None = None,
        cancel: CancelToken | None = None,
        prepare: Callable[[list[Message]], list[Message]] | None = None,
    ) -> tuple[ResponseEnvelope, list[Message]]:
        """Execute tool rounds until the model stops asking for tools.

        Every follow-up goes to ``connector``, the provider that produced the
        calls. Returns the final envelope (usage summed over all rounds) and the
        transcript of assistant tool-call turns and tool results.
        """
        transcript: list[Message] = []
        usage = envelope.usage
        depth = 0
        while envelope.tool_calls:
            if depth >= self.max_depth:
                raise ToolLoopExceededError(depth, transcript, envelope)
            check(cancel)
            calls = envelope.tool_calls
            logger.info("Executing %d tool call(s): %s", len(calls), ", ".join(c.name for c in calls))
            results = await self.execute_calls(calls)
            transcript.append(envelope.message)
            transcript.extend(self.fold(calls, results))
            check(cancel)

            depth += 1
            request = [*messages, *transcript]
            if prepare is not None:
                request = prepare(request)
            envelope = await connector.send(request, system_prompt, tools, cancel)
            usage = usage + envelope.usage
        return envelope.model_copy(update={"usage": usage}), transcript

    async def expand_inline(self, text: str) -> str:
        """Execute inline tool blocks and substitute their results in place."""
        inline = find_inline_calls(text)
        if not inline:
            return text
        results = await self.execute_calls([i.call for i in inline])
        pieces: list[str] = []
        pos = 0
        for item, result in zip(inline, results):
            pieces.append(text[pos:item.start])
            pieces.append(item.render(result))
            pos = item.end
        pieces.append(text[pos:])
        return "".join(pieces)
