from __future__ import annotations

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from parley.connectors.base import LLMConnector
from parley.errors import AllProvidersFailedError, ParleyError, ToolLoopExceededError
from parley.models import Conversation, Message, ResponseEnvelope
from parley.registry import ProviderRegistry

console = Console()

_ROLE_STYLES = {
    "system": "magenta",
    "user": "cyan",
    "assistant": "green",
    "tool": "yellow",
}


def render_providers(registry: ProviderRegistry) -> None:
    """Show registered providers in fallback order."""
    if not len(registry):
        console.print("[yellow]No providers configured. Run 'parley config'.[/yellow]")
        return

    chain = registry.chain()
    active = registry.active
    table = Table(title="Providers", show_lines=False)
    table.add_column("#", style="dim", justify="right")
    table.add_column("Provider", style="cyan")
    table.add_column("Model")
    table.add_column("Context", justify="right")
    table.add_column("Credential")
    table.add_column("Capabilities", style="dim")

    for connector in registry:
        position = str(chain.index(connector) + 1) if connector in chain else "-"
        marker = "● " if connector is active else "  "
        credential = "[green]ok[/green]" if connector.has_valid_credential() else "[red]missing[/red]"
        caps = connector.capabilities
        flags = [name for name, on in (("stream", caps.streaming), ("tools", caps.tool_calls), ("vision", caps.vision)) if on]
        table.add_row(
            position,
            f"{marker}{escape(connector.name)}",
            escape(connector.model_id),
            f"{connector.model.max_context_length:,}",
            credential,
            ", ".join(flags),
        )
    console.print(table)


def render_models(connector: LLMConnector) -> None:
    table = Table(title=f"Models: {connector.name}")
    table.add_column("Model", style="cyan")
    table.add_column("Context", justify="right")
    table.add_column("Tools", justify="center")
    table.add_column("Vision", justify="center")
    for model in connector.models:
        name = f"[bold]{escape(model.id)}[/bold] ●" if model.id == connector.model_id else escape(model.id)
        table.add_row(
            name,
            f"{model.max_context_length:,}",
            "✓" if model.supports_tool_calls else "",
            "✓" if model.supports_vision else "",
        )
    console.print(table)


def render_conversations(conversations: list[Conversation]) -> None:
    if not conversations:
        console.print("[yellow]No conversations yet. Start one with: parley chat[/yellow]")
        return
    table = Table(title="Conversations")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Messages", justify="right")
    table.add_column("Updated", style="dim")
    for conv in reversed(conversations):
        table.add_row(
            conv.id,
            escape(conv.name or "—"),
            str(len(conv.messages)),
            conv.updated_at.astimezone().strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


def render_history(messages: list[Message]) -> None:
    if not messages:
        console.print("[yellow]No messages in this conversation.[/yellow]")
        return
    for msg in messages:
        style = _ROLE_STYLES.get(msg.role, "white")
        label = msg.role if msg.role != "tool" else f"tool:{msg.name}"
        console.print(f"[bold {style}]{escape(label)}[/bold {style}]  [dim]{msg.timestamp.astimezone():%H:%M:%S}[/dim]")
        if msg.tool_calls:
            for tc in msg.tool_calls:
                console.print(f"  [yellow]→ {escape(tc.name)}[/yellow] [dim]{escape(str(tc.arguments))}[/dim]")
        if msg.content:
            console.print(Markdown(msg.content) if msg.role == "assistant" else escape(msg.content))
        console.print()


def render_reply(envelope: ResponseEnvelope) -> None:
    """Print a non-streamed answer followed by its footer."""
    console.print("\n[bold]Assistant:[/bold]")
    console.print(Markdown(envelope.content))
    render_footer(envelope)


def render_footer(envelope: ResponseEnvelope) -> None:
    usage = envelope.usage
    parts = [
        f"{envelope.provider_name}/{envelope.model_name}",
        f"{usage.prompt_tokens}+{usage.completion_tokens} tokens",
    ]
    tool_turns = sum(1 for m in envelope.transcript if m.role == "tool")
    if tool_turns:
        parts.append(f"{tool_turns} tool result(s)")
    line = f"[dim]{escape(' · '.join(parts))}[/dim]"
    if envelope.budget_exceeded:
        line += "  [yellow]history exceeds context window[/yellow]"
    console.print(line)
    console.print()


def render_error(exc: Exception) -> None:
    if isinstance(exc, AllProvidersFailedError):
        lines = [f"[red]{escape(name)}[/red]: {escape(err.reason)} [dim]({err.kind.value})[/dim]" for name, err in exc.failures]
        console.print(Panel("\n".join(lines) or "no provider answered", title="All LLM providers failed", border_style="red"))
    elif isinstance(exc, ToolLoopExceededError):
        console.print(f"[red]Error: {escape(str(exc))}[/red] [dim](partial transcript saved)[/dim]")
    elif isinstance(exc, ParleyError):
        console.print(f"[red]Error: {escape(str(exc))}[/red]")
    else:
        console.print(f"[red]Unexpected error: {escape(type(exc).__name__)}: {escape(str(exc))}[/red]")


def render_help() -> None:
    """Show a panel listing all REPL commands."""
    lines = [
        "[bold]!providers[/bold]        providers in fallback order",
        "[bold]!use <name>[/bold]       make a provider active",
        "[bold]!models[/bold]           models of the active provider",
        "[bold]!model <id>[/bold]       switch the active provider's model",
        "[bold]!refresh[/bold]          re-fetch model catalogs",
        "[bold]!history[/bold]          this conversation so far",
        "[bold]!tools[/bold]            toggle built-in tools",
        "[bold]!help[/bold]             show this help",
        "",
        "[bold]/exit[/bold]             quit",
        "[bold]Shift+Enter[/bold]       newline without submitting",
    ]
    console.print(Panel("\n".join(lines), title="commands", border_style="dim"))
