from __future__ import annotations

from prompt_toolkit import PromptSession
from prompt_toolkit.formatted_text import HTML
from prompt_toolkit.key_binding import KeyBindings
from rich.console import Console
from rich.markup import escape

from parley.errors import ToolLoopExceededError
from parley.models import Message, Tool
from parley.orchestrator import ChatOrchestrator
from parley.renderer import (
    render_error,
    render_footer,
    render_help,
    render_history,
    render_models,
    render_providers,
    render_reply,
)

console = Console()


class ChatSession:
    """State of one interactive chat: the conversation and the tool toggle."""

    def __init__(
        self,
        orchestrator: ChatOrchestrator,
        conversation_id: str,
        tools: list[Tool] | None = None,
        use_tools: bool = False,
    ) -> None:
        self.orchestrator = orchestrator
        self.conversation_id = conversation_id
        self.tools = tools or []
        self.use_tools = use_tools and bool(self.tools)
        self.exchanges = 0

    @property
    def label(self) -> str:
        active = self.orchestrator.active_provider
        return f"{active.name}/{active.model_id}" if active else "no provider"

    async def send(self, text: str) -> None:
        messages = [Message.user(text)]
        if self.use_tools:
            envelope = await self.orchestrator.send_messages_with_tools(
                messages, self.tools, conversation_id=self.conversation_id
            )
            render_reply(envelope)
        else:
            console.print("\n[bold]Assistant:[/bold]")
            envelope = await self.orchestrator.send_messages_streaming(
                messages,
                lambda chunk: console.print(chunk, end="", markup=False, highlight=False),
                conversation_id=self.conversation_id,
            )
            console.print()
            render_footer(envelope)
        self.conversation_id = envelope.conversation_id or self.conversation_id
        self.exchanges += 1

    async def handle_command(self, command: str) -> None:
        """Dispatch a ! command."""
        parts = command.strip().split(None, 1)
        cmd = parts[0].lstrip("!").lower()
        arg = parts[1].strip() if len(parts) > 1 else ""
        orch = self.orchestrator

        if cmd == "providers":
            render_providers(orch.registry)
        elif cmd == "use":
            if not arg:
                console.print("[red]Usage: !use <provider>[/red]")
            elif orch.set_active_provider(arg):
                console.print(f"[green]Active provider: {escape(self.label)}[/green]")
            else:
                console.print(f"[red]Unknown provider '{escape(arg)}'. Known: {', '.join(orch.registry.names)}[/red]")
        elif cmd == "models":
            active = orch.active_provider
            if active is None:
                console.print("[yellow]No provider configured.[/yellow]")
            else:
                render_models(active)
        elif cmd == "model":
            active = orch.active_provider
            if not arg or active is None:
                console.print("[red]Usage: !model <id>[/red]")
            elif active.set_model(arg):
                console.print(f"[green]Model: {escape(self.label)}[/green]")
            else:
                console.print(f"[red]{escape(active.name)} has no model '{escape(arg)}'. Try !refresh.[/red]")
        elif cmd == "refresh":
            counts = await orch.refresh_models()
            for name, count in counts.items():
                console.print(f"[green]{escape(name)}[/green]: {count} model(s)")
            if not counts:
                console.print("[yellow]No catalog could be refreshed.[/yellow]")
        elif cmd == "history":
            render_history(await orch.get_history(self.conversation_id))
        elif cmd == "tools":
            if not self.tools:
                console.print("[yellow]No tools available.[/yellow]")
            else:
                self.use_tools = not self.use_tools
                console.print(f"Tools {'on' if self.use_tools else 'off'}.")
        elif cmd == "help":
            render_help()
        else:
            console.print(f"[red]Unknown command: {escape(command)}[/red]")


def _make_toolbar(session: ChatSession) -> HTML:
    tools = "tools on" if session.use_tools else "streaming"
    return HTML(
        f"<b>[{session.label}]</b>  <i>[{tools}]</i>  "
        "<dim>Enter to send | Shift+Enter for newline | /exit to quit | !help for commands</dim>"
    )


async def run_repl(session: ChatSession) -> None:
    """
    Run the interactive prompt_toolkit REPL.
    Enter = submit, Shift+Enter = newline (ESC+CR).
    """
    kb = KeyBindings()

    # Enter submits (eager so it overrides the multiline default)
    @kb.add("enter", eager=True)
    def _submit(event):
        event.current_buffer.validate_and_handle()

    @kb.add("escape", "enter")
    def _newline(event):
        event.current_buffer.insert_text("\n")

    prompt_session: PromptSession = PromptSession(
        multiline=True,
        key_bindings=kb,
        bottom_toolbar=lambda: _make_toolbar(session),
        prompt_continuation="  ",
    )

    console.print(
        f"[bold cyan]parley[/bold cyan]: [bold]{escape(session.label)}[/bold]  "
        f"[dim]conversation {session.conversation_id}[/dim]\n"
        "[dim]Enter to send, Shift+Enter for newline, /exit or Ctrl+D to quit[/dim]\n"
    )

    while True:
        try:
            text = await prompt_session.prompt_async("> ")
        except KeyboardInterrupt:
            continue
        except EOFError:
            break

        text = text.strip()
        if not text:
            continue
        if text.lower() in ("/exit", "/quit"):
            break

        try:
            if text.startswith("!"):
                await session.handle_command(text)
            else:
                await session.send(text)
        except ToolLoopExceededError as e:
            session.conversation_id = e.conversation_id or session.conversation_id
            render_error(e)
        except Exception as e:
            render_error(e)

    console.print(f"\n[dim]{session.exchanges} exchange(s) in conversation {session.conversation_id}[/dim]")
    console.print("[bold cyan]Goodbye![/bold cyan]")
