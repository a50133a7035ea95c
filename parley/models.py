from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["system", "user", "assistant", "tool"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ToolCall(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    invalid_arguments: str | None = None  # parse error for malformed arguments


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Role
    content: str | None = None
    tool_calls: list[ToolCall] = Field(default_factory=list)
    tool_call_id: str | None = None  # for role="tool" responses
    name: str | None = None  # tool name for role="tool"
    timestamp: datetime = Field(default_factory=_utcnow)
    preserve: bool = False  # system messages that must survive trimming

    @classmethod
    def system(cls, content: str, preserve: bool = False) -> Message:
        return cls(role="system", content=content, preserve=preserve)

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str | None, tool_calls: list[ToolCall] | None = None) -> Message:
        return cls(role="assistant", content=content, tool_calls=tool_calls or [])

    @classmethod
    def tool(cls, content: str, tool_call_id: str | None, name: str) -> Message:
        return cls(role="tool", content=content, tool_call_id=tool_call_id, name=name)


class Tool(BaseModel):
    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema object


class ToolResult(BaseModel):
    call_id: str | None = None
    name: str
    success: bool
    data: Any = None
    error: str | None = None

    def as_text(self) -> str:
        """Payload folded into the transcript for this result."""
        if not self.success:
            return f"Error: {self.error or 'tool failed'}"
        if isinstance(self.data, str):
            return self.data
        return json.dumps(self.data, indent=2, default=str)


class Capabilities(BaseModel):
    model_config = ConfigDict(frozen=True)

    streaming: bool = False
    tool_calls: bool = False
    vision: bool = False


class ModelDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    max_context_length: int
    supports_tool_calls: bool = False
    supports_vision: bool = False


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def of(cls, prompt_tokens: int, completion_tokens: int) -> Usage:
        return cls(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        )

    def __add__(self, other: Usage) -> Usage:
        return Usage.of(
            self.prompt_tokens + other.prompt_tokens,
            self.completion_tokens + other.completion_tokens,
        )


class ResponseEnvelope(BaseModel):
    message: Message
    usage: Usage = Field(default_factory=Usage)
    provider_name: str = ""
    model_name: str = ""
    stop_reason: str = "stop"  # "stop" | "tool_use" | "length"
    conversation_id: str | None = None
    transcript: list[Message] = Field(default_factory=list)
    budget_exceeded: bool = False

    @property
    def tool_calls(self) -> list[ToolCall]:
        return self.message.tool_calls

    @property
    def content(self) -> str:
        return self.message.content or ""


class Conversation(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str | None = None
    messages: list[Message] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def append(self, message: Message) -> None:
        """The only mutation a conversation allows."""
        self.messages.append(message)
        self.updated_at = _utcnow()
