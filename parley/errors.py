from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from parley.models import Message, ResponseEnvelope


class ProviderErrorKind(str, Enum):
    TRANSIENT = "transient"
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    UNKNOWN = "unknown"


class ParleyError(Exception):
    """Base class for every error raised by the orchestration core."""


class ProviderError(ParleyError):
    """A single provider attempt failed. Triggers fallback to the next provider."""

    def __init__(self, provider: str, kind: ProviderErrorKind, message: str) -> None:
        super().__init__(f"{provider}: {message} ({kind.value})")
        self.provider = provider
        self.kind = kind
        self.reason = message

    @property
    def transient(self) -> bool:
        return self.kind in (ProviderErrorKind.TRANSIENT, ProviderErrorKind.RATE_LIMIT)


class CredentialMissingError(ProviderError):
    def __init__(self, provider: str, message: str = "no API key configured") -> None:
        super().__init__(provider, ProviderErrorKind.AUTH, message)


class AllProvidersFailedError(ParleyError):
    def __init__(self, failures: list[tuple[str, ProviderError]]) -> None:
        self.failures = failures
        detail = "; ".join(f"{name}: {err.reason}" for name, err in failures)
        super().__init__(f"All LLM providers failed ({detail})" if failures else "All LLM providers failed")


class ToolExecutionError(ParleyError):
    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(f"Error executing {tool_name}: {message}")
        self.tool_name = tool_name
        self.reason = message


class ToolLoopExceededError(ParleyError):
    def __init__(self, depth: int, transcript: list[Message], envelope: ResponseEnvelope) -> None:
        super().__init__(f"Model still requested tools after {depth} follow-up round(s)")
        self.depth = depth
        self.transcript = transcript
        self.envelope = envelope
        self.conversation_id: str | None = None


class OperationCancelledError(ParleyError):
    """The caller cancelled the operation. Never triggers provider fallback."""


class BudgetViolationWarning(UserWarning):
    """Trimming could not reach the token limit without dropping the latest user turn."""
