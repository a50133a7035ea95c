from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any

import click
import questionary
from rich.console import Console
from rich.markup import escape

import parley.config as config_mod
from parley.builtin_tools import BUILTIN_TOOLS, BuiltinToolExecutor
from parley.connectors import CONNECTOR_MAP, get_connector
from parley.errors import ParleyError
from parley.logging_config import setup_logging
from parley.models import Message
from parley.orchestrator import ChatOrchestrator
from parley.registry import ProviderRegistry
from parley.renderer import (
    render_conversations,
    render_error,
    render_footer,
    render_history,
    render_models,
    render_providers,
    render_reply,
)
from parley.repl import ChatSession, run_repl
from parley.stores import (
    ConversationStore,
    CredentialStore,
    JsonConversationStore,
    StaticPromptSource,
    TomlCredentialStore,
)
from parley.tools import ToolBridge

console = Console()


def build_orchestrator(
    cfg: dict[str, Any],
    credentials: CredentialStore | None = None,
    store: ConversationStore | None = None,
) -> ChatOrchestrator:
    """Wire connectors, stores and the tool bridge from a loaded config."""
    settings = config_mod.orchestrator_settings(cfg)
    credentials = credentials or TomlCredentialStore(config_mod.CREDENTIALS_FILE)
    registry = ProviderRegistry()
    for name in cfg["providers"]["order"]:
        if name not in CONNECTOR_MAP:
            console.print(f"[yellow]Ignoring unknown provider '{escape(name)}' in config.[/yellow]")
            continue
        registry.register(get_connector(
            name,
            credentials=credentials,
            timeout=settings.timeout,
            **config_mod.provider_options(cfg, name),
        ))
    if cfg["providers"].get("active"):
        registry.set_active(cfg["providers"]["active"])

    bridge = ToolBridge(
        BuiltinToolExecutor(),
        max_depth=settings.max_tool_depth,
        max_concurrency=settings.tool_concurrency or None,
    )
    return ChatOrchestrator(
        registry,
        store or JsonConversationStore(config_mod.storage_path(cfg)),
        prompts=StaticPromptSource(settings.system_prompt, cfg.get("prompts", {})),
        bridge=bridge,
        settings=settings,
    )


def _load() -> tuple[dict[str, Any], ChatOrchestrator]:
    cfg = config_mod.load()
    log_file = cfg["logging"].get("file")
    setup_logging(cfg["logging"]["level"], Path(log_file).expanduser() if log_file else None)
    return cfg, build_orchestrator(cfg)


def _select_provider(orch: ChatOrchestrator, provider: str | None) -> None:
    if provider and not orch.set_active_provider(provider):
        console.print(f"[red]Unknown provider '{escape(provider)}'. Known: {', '.join(orch.registry.names)}[/red]")
        sys.exit(1)


async def _system_prompt(orch: ChatOrchestrator, prompt_id: str | None) -> str | None:
    if not prompt_id:
        return None
    text = await orch.prompts.get_by_id(prompt_id)
    if text is None:
        console.print(f"[red]No prompt '{escape(prompt_id)}' in the prompts config table.[/red]")
        sys.exit(1)
    return text


@click.group(invoke_without_command=True)
@click.option("--conversation", "-c", default=None, help="Resume a conversation by ID")
@click.option("--provider", "-p", default=None, help="Provider to try first")
@click.option("--tools/--no-tools", default=False, help="Enable built-in tools")
@click.pass_context
def main(ctx: click.Context, conversation: str | None, provider: str | None, tools: bool) -> None:
    """parley: multi-provider LLM chat with fallback."""
    if ctx.invoked_subcommand is not None:
        return
    ctx.invoke(cmd_chat, conversation=conversation, provider=provider, tools=tools)


@main.command("chat")
@click.option("--conversation", "-c", default=None, help="Resume a conversation by ID")
@click.option("--provider", "-p", default=None, help="Provider to try first")
@click.option("--tools/--no-tools", default=False, help="Enable built-in tools")
def cmd_chat(conversation: str | None, provider: str | None, tools: bool) -> None:
    """Interactive chat."""
    _, orch = _load()
    _select_provider(orch, provider)

    async def run() -> None:
        conversation_id = conversation
        if conversation_id is None or not await orch.store.get_conversation(conversation_id):
            if conversation_id is not None:
                console.print(f"[yellow]Conversation {escape(conversation_id)} not found, starting a new one.[/yellow]")
            conversation_id = await orch.create_conversation()
        session = ChatSession(orch, conversation_id, BUILTIN_TOOLS, use_tools=tools)
        await run_repl(session)

    asyncio.run(run())


@main.command("ask")
@click.argument("text", nargs=-1, required=True)
@click.option("--provider", "-p", default=None, help="Provider to try first")
@click.option("--conversation", "-c", default=None, help="Append to a conversation")
@click.option("--prompt", "prompt_id", default=None, help="Named system prompt from config")
@click.option("--tools/--no-tools", default=False, help="Enable built-in tools")
@click.option("--no-stream", is_flag=True, help="Wait for the full answer")
def cmd_ask(
    text: tuple[str, ...],
    provider: str | None,
    conversation: str | None,
    prompt_id: str | None,
    tools: bool,
    no_stream: bool,
) -> None:
    """One-shot question."""
    _, orch = _load()
    _select_provider(orch, provider)
    messages = [Message.user(" ".join(text))]

    async def run() -> None:
        system_prompt = await _system_prompt(orch, prompt_id)
        if tools:
            envelope = await orch.send_messages_with_tools(messages, BUILTIN_TOOLS, system_prompt, conversation)
            render_reply(envelope)
        elif no_stream:
            envelope = await orch.send_messages(messages, system_prompt, conversation)
            render_reply(envelope)
        else:
            envelope = await orch.send_messages_streaming(
                messages,
                lambda chunk: console.print(chunk, end="", markup=False, highlight=False),
                system_prompt,
                conversation,
            )
            console.print()
            render_footer(envelope)
        console.print(f"[dim]conversation {envelope.conversation_id}[/dim]")

    try:
        asyncio.run(run())
    except ParleyError as e:
        render_error(e)
        sys.exit(1)


@main.command("providers")
def cmd_providers() -> None:
    """List providers in fallback order."""
    _, orch = _load()
    render_providers(orch.registry)


@main.command("models")
@click.option("--provider", "-p", default=None, help="Provider (default: active)")
@click.option("--refresh", is_flag=True, help="Re-fetch the catalog from the provider")
def cmd_models(provider: str | None, refresh: bool) -> None:
    """List a provider's models."""
    _, orch = _load()
    _select_provider(orch, provider)
    connector = orch.active_provider
    if connector is None:
        console.print("[yellow]No providers configured. Run 'parley config'.[/yellow]")
        return
    if refresh and not asyncio.run(orch.refresh_models_for_provider(connector.name)):
        console.print(f"[yellow]Could not refresh {escape(connector.name)}; showing known models.[/yellow]")
    render_models(connector)


@main.command("history")
@click.argument("conversation_id")
def cmd_history(conversation_id: str) -> None:
    """Show a conversation's messages."""
    _, orch = _load()
    render_history(asyncio.run(orch.get_history(conversation_id)))


@main.command("conversations")
@click.option("--delete", "delete_id", default=None, help="Delete a conversation by ID")
def cmd_conversations(delete_id: str | None) -> None:
    """List stored conversations."""
    _, orch = _load()
    if delete_id:
        asyncio.run(orch.delete_conversation(delete_id))
        console.print(f"[green]Deleted {escape(delete_id)}.[/green]")
        return
    render_conversations(asyncio.run(orch.store.list_conversations()))


@main.command("config")
def cmd_config() -> None:
    """Interactive configuration wizard."""
    cfg = config_mod.load()

    console.print("[bold cyan]parley configuration[/bold cyan]\n")

    order = questionary.checkbox(
        "Providers (in fallback order of selection):",
        choices=[
            questionary.Choice(name, checked=name in cfg["providers"]["order"])
            for name in CONNECTOR_MAP
        ],
    ).ask()
    if not order:
        console.print("[yellow]Configuration cancelled.[/yellow]")
        return

    active = questionary.select(
        "Provider to try first:",
        choices=order,
        default=cfg["providers"]["active"] if cfg["providers"]["active"] in order else order[0],
    ).ask()
    if active is None:
        console.print("[yellow]Configuration cancelled.[/yellow]")
        return

    credentials = TomlCredentialStore(config_mod.CREDENTIALS_FILE)
    for name in order:
        model = questionary.text(f"{name} model:", default=cfg[name]["model"]).ask()
        if model is None:
            console.print("[yellow]Configuration cancelled.[/yellow]")
            return
        cfg[name]["model"] = model

        connector = get_connector(name, credentials=credentials)
        if connector.credential_key and not connector.has_valid_credential():
            key = questionary.password(f"{name} API key (blank to skip):").ask()
            if key:
                connector.set_credential(key)

    cfg["providers"]["order"] = order
    cfg["providers"]["active"] = active
    config_mod.save(cfg)

    console.print(f"\n[green]Config saved to {config_mod.CONFIG_FILE}[/green]")

    if "ollama" in order:
        console.print(
            "\n[dim]Make sure Ollama is running:[/dim]\n"
            "  ollama serve\n"
            f"  ollama pull {cfg['ollama']['model']}\n"
        )
