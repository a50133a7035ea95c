from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator
from weakref import WeakValueDictionary

from parley.budget import fit
from parley.cancel import CancelToken, check
from parley.config import OrchestratorSettings
from parley.connectors.base import ChunkCallback, LLMConnector, emit
from parley.errors import ProviderError, ToolLoopExceededError
from parley.fallback import run_chain
from parley.models import Message, ResponseEnvelope, Tool
from parley.registry import ProviderRegistry
from parley.stores import ConversationStore, StaticPromptSource, SystemPromptSource
from parley.tools import ToolBridge, find_inline_calls, render_tool_instructions

logger = logging.getLogger(__name__)

STREAM_BUFFER = 16


class ChatOrchestrator:
    """Turns a caller's request into an ordered exchange with one provider.

    Per send: resolve the conversation, snapshot the fallback chain, trim the
    history to each provider's context window, try providers in order, run any
    tool rounds against the provider that answered, then append the new turns
    to the conversation store. Sends on the same conversation are serialized;
    different conversations run concurrently.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        store: ConversationStore,
        prompts: SystemPromptSource | None = None,
        bridge: ToolBridge | None = None,
        settings: OrchestratorSettings | None = None,
    ) -> None:
        self.registry = registry
        self.store = store
        self.settings = settings or OrchestratorSettings()
        self.prompts = prompts or StaticPromptSource(self.settings.system_prompt)
        self.bridge = bridge
        self._locks: WeakValueDictionary[str, asyncio.Lock] = WeakValueDictionary()
        self._refresh_lock = asyncio.Lock()

    # -- providers -------------------------------------------------------

    @property
    def active_provider(self) -> LLMConnector | None:
        return self.registry.active

    def set_active_provider(self, name: str) -> bool:
        return self.registry.set_active(name)

    def get_provider(self, name: str) -> LLMConnector | None:
        return self.registry.get(name)

    async def refresh_models(self) -> dict[str, int]:
        """Re-fetch the catalog of every credentialed provider. Returns model counts."""
        if self._refresh_lock.locked():
            logger.info("Model refresh already in progress, skipping")
            return {}
        async with self._refresh_lock:
            refreshed: dict[str, int] = {}
            for connector in self.registry:
                if not connector.has_valid_credential():
                    continue
                count = await self._refresh(connector)
                if count is not None:
                    refreshed[connector.name] = count
            logger.info("Model refresh completed")
            return refreshed

    async def refresh_models_for_provider(self, name: str) -> bool:
        connector = self.registry.get(name)
        if connector is None:
            logger.warning("Provider not found for model refresh: %s", name)
            return False
        if not connector.has_valid_credential():
            logger.warning("Cannot refresh models for provider without valid API key: %s", name)
            return False
        return await self._refresh(connector) is not None

    async def _refresh(self, connector: LLMConnector) -> int | None:
        try:
            models = await connector.fetch_models()
        except ProviderError as exc:
            logger.error("Error refreshing models for provider %s: %s", connector.name, exc)
            return None
        logger.info("Refreshed %d models for provider: %s", len(models), connector.name)
        return len(models)

    # -- conversations ---------------------------------------------------

    async def create_conversation(self, name: str | None = None) -> str:
        return await self.store.create_conversation(name)

    async def delete_conversation(self, conversation_id: str) -> None:
        async with self._lock_for(conversation_id):
            await self.store.delete_conversation(conversation_id)

    async def get_history(self, conversation_id: str) -> list[Message]:
        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None:
            logger.warning("Conversation not found: %s", conversation_id)
            return []
        return list(conversation.messages)

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    async def _resolve_conversation(self, conversation_id: str | None) -> str:
        if conversation_id:
            if await self.store.get_conversation(conversation_id) is not None:
                return conversation_id
            logger.warning("Conversation not found: %s, creating new conversation", conversation_id)
        return await self.store.create_conversation()

    async def _resolve_system_prompt(self, system_prompt: str | None) -> str:
        if system_prompt:
            return system_prompt
        return await self.prompts.get_default() or self.settings.system_prompt

    # -- sending ---------------------------------------------------------

    async def send_message(
        self,
        text: str,
        system_prompt: str | None = None,
        conversation_id: str | None = None,
        cancel: CancelToken | None = None,
    ) -> ResponseEnvelope:
        return await self.send_messages([Message.user(text)], system_prompt, conversation_id, cancel)

    async def send_messages(
        self,
        messages: list[Message],
        system_prompt: str | None = None,
        conversation_id: str | None = None,
        cancel: CancelToken | None = None,
    ) -> ResponseEnvelope:
        """Append ``messages`` to the conversation and get the next assistant turn."""
        return await self._exchange(messages, system_prompt, conversation_id, cancel)

    async def send_messages_with_tools(
        self,
        messages: list[Message],
        tools: list[Tool],
        system_prompt: str | None = None,
        conversation_id: str | None = None,
        cancel: CancelToken | None = None,
    ) -> ResponseEnvelope:
        if self.bridge is None:
            raise ValueError("send_messages_with_tools needs a ToolBridge")
        return await self._exchange(messages, system_prompt, conversation_id, cancel, tools=tools)

    async def send_messages_streaming(
        self,
        messages: list[Message],
        on_chunk: ChunkCallback,
        system_prompt: str | None = None,
        conversation_id: str | None = None,
        cancel: CancelToken | None = None,
    ) -> ResponseEnvelope:
        """Like ``send_messages`` but delivers the answer incrementally through ``on_chunk``.

        A provider that fails before its first chunk falls back to the next one.
        Once a chunk has reached the caller the chain stops there, since
        delivered text cannot be taken back.
        """
        return await self._exchange(messages, system_prompt, conversation_id, cancel, on_chunk=on_chunk)

    async def stream_messages(
        self,
        messages: list[Message],
        system_prompt: str | None = None,
        conversation_id: str | None = None,
        cancel: CancelToken | None = None,
    ) -> AsyncIterator[str]:
        """Async-iterator form of ``send_messages_streaming``.

        Closing the iterator early cancels the underlying operation.
        """
        cancel = cancel or CancelToken()
        # Bounded, so a slow consumer holds back the provider stream.
        queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=STREAM_BUFFER)

        async def produce() -> ResponseEnvelope:
            try:
                return await self.send_messages_streaming(
                    messages, queue.put, system_prompt, conversation_id, cancel
                )
            finally:
                if not asyncio.current_task().cancelling():
                    await queue.put(None)

        task = asyncio.create_task(produce())
        try:
            while True:
                chunk = await queue.get()
                if chunk is None:
                    break
                yield chunk
            await task
        finally:
            if not task.done():
                cancel.cancel()
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

    async def _exchange(
        self,
        new_messages: list[Message],
        system_prompt: str | None,
        conversation_id: str | None,
        cancel: CancelToken | None,
        tools: list[Tool] | None = None,
        on_chunk: ChunkCallback | None = None,
    ) -> ResponseEnvelope:
        check(cancel)
        conversation_id = await self._resolve_conversation(conversation_id)
        async with self._lock_for(conversation_id):
            conversation = await self.store.get_conversation(conversation_id)
            stored = conversation.messages if conversation is not None else []
            history = [m for m in [*stored, *new_messages] if m.role != "system"]
            prompt = await self._resolve_system_prompt(system_prompt)
            over_budget: set[str] = set()

            def native_tools(connector: LLMConnector) -> bool:
                return connector.capabilities.tool_calls and connector.model.supports_tool_calls

            def prepare(connector: LLMConnector, messages: list[Message]) -> list[Message]:
                text = prompt
                if tools and not native_tools(connector):
                    text = f"{prompt}\n\n{render_tool_instructions(tools)}"
                full = list(messages)
                if text:
                    full.insert(0, Message.system(text, preserve=self.settings.preserve_system))
                limit = max(connector.model.max_context_length - self.settings.reserve_tokens, 1)
                result = fit(full, limit, self.settings.preserve_system)
                if not result.within_budget:
                    over_budget.add(connector.name)
                    logger.warning(
                        "History for %s/%s needs %d tokens, limit %d; sending minimal tail",
                        connector.name, connector.model_id, result.tokens, limit,
                    )
                elif len(result.messages) < len(full):
                    logger.info("Trimmed %d message(s) for %s", len(full) - len(result.messages), connector.name)
                return result.messages

            delivered = 0

            async def deliver(chunk: str) -> None:
                nonlocal delivered
                delivered += 1
                await emit(on_chunk, chunk)

            async def call(connector: LLMConnector) -> ResponseEnvelope:
                request = prepare(connector, history)
                if on_chunk is not None:
                    return await connector.send_streaming(request, deliver, cancel=cancel)
                offered = tools if tools and native_tools(connector) else None
                return await connector.send(request, tools=offered, cancel=cancel)

            chain = self.registry.chain()
            connector, envelope = await run_chain(
                chain, call, should_continue=lambda err: delivered == 0
            )

            transcript: list[Message] = []
            if tools and self.bridge is not None:
                if envelope.tool_calls:
                    try:
                        envelope, transcript = await self.bridge.resolve(
                            connector,
                            history,
                            envelope,
                            tools,
                            cancel=cancel,
                            prepare=lambda msgs: prepare(connector, msgs),
                        )
                    except ToolLoopExceededError as exc:
                        await self._persist(conversation_id, [*new_messages, *exc.transcript])
                        exc.conversation_id = conversation_id
                        raise
                if find_inline_calls(envelope.content):
                    check(cancel)
                    content = await self.bridge.expand_inline(envelope.content)
                    envelope = envelope.model_copy(update={"message": Message.assistant(content)})

            appended = [*new_messages, *transcript, envelope.message]
            await self._persist(conversation_id, appended)
            return envelope.model_copy(update={
                "conversation_id": conversation_id,
                "transcript": appended,
                "budget_exceeded": connector.name in over_budget,
            })

    async def _persist(self, conversation_id: str, messages: list[Message]) -> None:
        for message in messages:
            await self.store.append_message(conversation_id, message)
