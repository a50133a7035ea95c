"""Collaborators the orchestrator talks to: conversations, system prompts, credentials.

The protocols are what the core depends on. The concrete classes are small
local implementations used by the CLI and the tests.
"""
from __future__ import annotations

import asyncio
import logging
import os
import tomllib
from pathlib import Path
from typing import Protocol

from parley.config import dump_toml
from parley.models import Conversation, Message

logger = logging.getLogger(__name__)


class ConversationStore(Protocol):
    async def get_conversation(self, conversation_id: str) -> Conversation | None: ...

    async def append_message(self, conversation_id: str, message: Message) -> None: ...

    async def create_conversation(self, name: str | None = None) -> str: ...

    async def delete_conversation(self, conversation_id: str) -> None: ...

    async def list_conversations(self) -> list[Conversation]: ...


class SystemPromptSource(Protocol):
    async def get_default(self) -> str: ...

    async def get_by_id(self, prompt_id: str) -> str | None: ...


class CredentialStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

class InMemoryConversationStore:
    def __init__(self) -> None:
        self._conversations: dict[str, Conversation] = {}

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        conv = self._conversations.get(conversation_id)
        # Callers get a copy; appends only go through append_message.
        return conv.model_copy(deep=True) if conv else None

    async def append_message(self, conversation_id: str, message: Message) -> None:
        conv = self._conversations.get(conversation_id)
        if conv is None:
            raise KeyError(f"Unknown conversation '{conversation_id}'")
        conv.append(message)

    async def create_conversation(self, name: str | None = None) -> str:
        conv = Conversation(name=name)
        self._conversations[conv.id] = conv
        return conv.id

    async def delete_conversation(self, conversation_id: str) -> None:
        self._conversations.pop(conversation_id, None)

    async def list_conversations(self) -> list[Conversation]:
        return sorted(
            (c.model_copy(deep=True) for c in self._conversations.values()),
            key=lambda c: c.updated_at,
        )


class JsonConversationStore:
    """One ``<id>.json`` file per conversation under ``root``."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root).expanduser()
        self._lock = asyncio.Lock()

    def _path(self, conversation_id: str) -> Path:
        return self.root / f"{conversation_id}.json"

    def _read(self, conversation_id: str) -> Conversation | None:
        path = self._path(conversation_id)
        if not path.exists():
            return None
        return Conversation.model_validate_json(path.read_text(encoding="utf-8"))

    def _write(self, conv: Conversation) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        tmp = self._path(conv.id).with_suffix(".tmp")
        tmp.write_text(conv.model_dump_json(indent=2), encoding="utf-8")
        tmp.replace(self._path(conv.id))

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        return self._read(conversation_id)

    async def append_message(self, conversation_id: str, message: Message) -> None:
        async with self._lock:
            conv = self._read(conversation_id)
            if conv is None:
                raise KeyError(f"Unknown conversation '{conversation_id}'")
            conv.append(message)
            self._write(conv)

    async def create_conversation(self, name: str | None = None) -> str:
        conv = Conversation(name=name)
        async with self._lock:
            self._write(conv)
        logger.debug("Created conversation %s in %s", conv.id, self.root)
        return conv.id

    async def delete_conversation(self, conversation_id: str) -> None:
        async with self._lock:
            self._path(conversation_id).unlink(missing_ok=True)

    async def list_conversations(self) -> list[Conversation]:
        if not self.root.exists():
            return []
        convs = [
            Conversation.model_validate_json(p.read_text(encoding="utf-8"))
            for p in self.root.glob("*.json")
        ]
        return sorted(convs, key=lambda c: c.updated_at)


# ---------------------------------------------------------------------------
# System prompts
# ---------------------------------------------------------------------------

class StaticPromptSource:
    def __init__(self, default: str, prompts: dict[str, str] | None = None) -> None:
        self.default = default
        self.prompts = prompts or {}

    async def get_default(self) -> str:
        return self.default

    async def get_by_id(self, prompt_id: str) -> str | None:
        return self.prompts.get(prompt_id)


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

class InMemoryCredentialStore:
    def __init__(self, values: dict[str, str] | None = None) -> None:
        self._values = dict(values or {})

    def get(self, key: str) -> str | None:
        return self._values.get(key) or None

    def set(self, key: str, value: str) -> None:
        self._values[key] = value


class TomlCredentialStore:
    """API keys in a flat TOML file. An environment variable named ``KEY.upper()`` wins."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path).expanduser()

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        with open(self.path, "rb") as f:
            return {k: str(v) for k, v in tomllib.load(f).items()}

    def get(self, key: str) -> str | None:
        return os.environ.get(key.upper()) or self._load().get(key) or None

    def set(self, key: str, value: str) -> None:
        values = self._load()
        values[key] = value
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(dump_toml(values))
        self.path.chmod(0o600)
