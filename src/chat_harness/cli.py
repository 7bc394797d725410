"""Terminal front-end for Chat Harness."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import time
from pathlib import Path

import click
from prompt_toolkit import PromptSession
from prompt_toolkit.formatted_text import HTML
from prompt_toolkit.history import FileHistory
from rich.console import Console
from rich.prompt import Confirm
from rich.table import Table

from chat_harness import __version__
from chat_harness.cancellation import CancellationToken
from chat_harness.config import BACKEND_NAMES, HarnessConfig, load_config
from chat_harness.core.approval import ApprovalBroker, ApprovalRequest
from chat_harness.core.compressor import HistoryCompressor
from chat_harness.core.orchestrator import Orchestrator
from chat_harness.errors import HarnessError, OperationCancelledError
from chat_harness.events.bus import EventBus
from chat_harness.llm.retry import RETRYABLE_ERROR_PATTERNS, RetryOptions
from chat_harness.llm.router import BackendRouter
from chat_harness.tools.builtin import register_builtins
from chat_harness.tools.registry import ToolRegistry
from chat_harness.types import AgentEvent, EventType

console = Console()

HELP_TEXT = """\
[bold]Commands:[/bold]
  /models          - List models offered by the active backend
  /model <id>      - Switch model
  /backend <name>  - Switch backend (gemini, copilot, ollama)
  /tokens          - Show estimated history size against the model limit
  /compress        - Summarise older history now
  /tools           - List available tools
  /prompts         - List available prompt templates
  /clear           - Clear conversation
  /quit            - Exit
"""


class ChatSession:
    """Everything one interactive conversation needs.

    Parameters
    ----------
    config:
        Loaded harness configuration.
    router:
        Backend router (built from *config* if omitted).
    registry:
        Tool provider (plugins plus built-in tools if omitted).
    auto_approve:
        Run every tool call without asking.
    """

    def __init__(
        self,
        config: HarnessConfig,
        router: BackendRouter | None = None,
        registry: ToolRegistry | None = None,
        auto_approve: bool = False,
    ) -> None:
        self.config = config
        self.router = router or BackendRouter(config)
        if registry is None:
            registry = ToolRegistry()
            registry.discover()
            register_builtins(registry)
        self.registry = registry
        self.broker = ApprovalBroker(on_request=self._ask_approval)
        self.auto_approve = auto_approve
        self.event_bus = EventBus()
        self.event_bus.subscribe(EventType.LLM_RETRY, _show_retry)
        self.event_bus.subscribe(EventType.HISTORY_COMPRESSED, _show_compressed)
        self.event_bus.subscribe(EventType.TOOL_DENIED, _show_denied)

        retry = config.retry
        self.orchestrator = Orchestrator(
            self.router.get_adapter(),
            self.router.current_model,
            compressor=HistoryCompressor(config.compression),
            event_bus=self.event_bus,
            retry_options=RetryOptions(
                max_attempts=retry.max_attempts,
                initial_delay=retry.initial_delay,
                max_delay=retry.max_delay,
                retryable_patterns=RETRYABLE_ERROR_PATTERNS
                + tuple(retry.extra_retryable_patterns),
            ),
            max_rounds=config.max_rounds,
        )

    async def ask(self, prompt: str, cancel_token: CancellationToken | None = None) -> str:
        approval = None if self.auto_approve else self.broker
        return await self.orchestrator.run(
            prompt,
            tool_provider=self.registry,
            approval_callback=approval,
            cancel_token=cancel_token,
            on_partial_text=_print_partial,
        )

    def switch_backend(self, name: str) -> None:
        adapter = self.router.switch(name)
        self.orchestrator.adapter = adapter
        self.orchestrator.model = self.router.current_model

    def set_model(self, model: str) -> None:
        self.router.set_model(model)
        self.orchestrator.model = model

    async def aclose(self) -> None:
        self.broker.cancel_all()
        await self.router.aclose()

    async def _ask_approval(self, request: ApprovalRequest) -> None:
        args = json.dumps(request.arguments, ensure_ascii=False)
        console.print(f"\n[yellow]Tool request:[/yellow] [bold]{request.tool_name}[/bold] {args[:300]}")
        approved = await asyncio.to_thread(Confirm.ask, "Allow?", default=False)
        self.broker.resolve(request.request_id, approved)


# ---------------------------------------------------------------------------
# Event display
# ---------------------------------------------------------------------------

def _print_partial(chunk: str) -> None:
    console.print(chunk, end="", markup=False, highlight=False, soft_wrap=True)


def _show_retry(event: AgentEvent) -> None:
    d = event.data
    console.print(
        f"\n[dim]Retrying (attempt {d['attempt']}) in {d['delay']:.1f}s: {d['error'][:120]}[/dim]"
    )


def _show_compressed(event: AgentEvent) -> None:
    d = event.data
    console.print(
        f"[dim]History compressed: ~{d['original_tokens']} -> ~{d['new_tokens']} tokens[/dim]"
    )


def _show_denied(event: AgentEvent) -> None:
    if event.data.get("auto"):
        console.print(f"[dim]Auto-denied repeated call to {event.data['tool']}[/dim]")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

async def handle_command(cmd: str, session: ChatSession) -> bool | str:
    """Handle /commands. Returns True if handled, 'quit' to exit."""
    parts = cmd.strip().split(maxsplit=1)
    command = parts[0].lower()
    arg = parts[1].strip() if len(parts) > 1 else ""
    orch = session.orchestrator

    if command in ("/quit", "/exit", "/q"):
        return "quit"

    elif command == "/help":
        console.print(HELP_TEXT)
        return True

    elif command == "/clear":
        orch.clear()
        console.print("[dim]Conversation cleared.[/dim]")
        return True

    elif command == "/tokens":
        est = orch.token_estimate()
        console.print(
            f"[dim]~{est.current:,} / {est.limit:,} tokens "
            f"({est.fraction:.1%}) for {est.model}[/dim]"
        )
        return True

    elif command == "/compress":
        result = await orch.compress(force=True)
        if result.compressed:
            console.print(
                f"[green]Compressed: ~{result.original_tokens:,} -> "
                f"~{result.new_tokens:,} tokens[/green]"
            )
        else:
            console.print(f"[yellow]Not compressed: {result.reason or result.status.value}[/yellow]")
        return True

    elif command == "/models":
        models = await orch.adapter.list_models()
        table = Table(title=f"{session.router.active} models")
        table.add_column("ID")
        table.add_column("Name")
        for m in models:
            marker = " *" if m.id == orch.model else ""
            table.add_row(m.id + marker, m.display_name)
        console.print(table)
        return True

    elif command == "/model":
        if not arg:
            console.print(f"[dim]Model: {orch.model}[/dim]")
        else:
            session.set_model(arg)
            console.print(f"[green]Model set to {arg}[/green]")
        return True

    elif command == "/backend":
        if not arg:
            console.print(f"[dim]Backend: {session.router.active} ({', '.join(BACKEND_NAMES)})[/dim]")
        else:
            session.switch_backend(arg)
            console.print(f"[green]Backend: {arg} (model {orch.model})[/green]")
        return True

    elif command == "/tools":
        for decl in session.registry.get_all_tools():
            console.print(f"  [bold]{decl.name}[/bold]: {decl.description[:80]}")
        return True

    elif command == "/prompts":
        prompts = session.registry.get_all_prompts()
        if not prompts:
            console.print("[dim]No prompt templates registered.[/dim]")
        for p in prompts:
            console.print(f"  [bold]{p.server}/{p.name}[/bold]: {p.description[:80]}")
        return True

    return False


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

async def _run_prompt(session: ChatSession, prompt: str, verbose: bool) -> None:
    token = CancellationToken()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel)
        installed = True
    except (NotImplementedError, RuntimeError):
        installed = False

    start = time.monotonic()
    try:
        await session.ask(prompt, token)
        console.print(f"\n[dim]({time.monotonic() - start:.1f}s)[/dim]\n")
    except OperationCancelledError:
        console.print("\n[yellow]Cancelled.[/yellow]")
    except HarnessError as e:
        console.print(f"\n[red]{e.kind}: {e}[/red]")
        if verbose:
            console.print_exception()
    except Exception as e:
        console.print(f"\n[red]Error: {e}[/red]")
        if verbose:
            console.print_exception()
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


async def _repl(session: ChatSession, verbose: bool) -> None:
    history_path = Path(os.path.expanduser("~/.chat_harness/history"))
    history_path.parent.mkdir(parents=True, exist_ok=True)
    prompt_session: PromptSession[str] = PromptSession(history=FileHistory(str(history_path)))

    while True:
        try:
            user_input = (await prompt_session.prompt_async(
                HTML(f"<ansigreen><b>{session.router.active} ❯ </b></ansigreen>")
            )).strip()
        except (EOFError, KeyboardInterrupt):
            console.print("\n[dim]Goodbye![/dim]")
            return

        if not user_input:
            continue

        if user_input.startswith("/"):
            try:
                result = await handle_command(user_input, session)
            except HarnessError as e:
                console.print(f"[red]{e.kind}: {e}[/red]")
                continue
            if result == "quit":
                console.print("[dim]Goodbye![/dim]")
                return
            if result:
                continue
            console.print(f"[red]Unknown command: {user_input.split()[0]}[/red]")
            continue

        await _run_prompt(session, user_input, verbose)


async def _main_async(
    config: HarnessConfig,
    prompt_text: str | None,
    auto_approve: bool,
    verbose: bool,
) -> None:
    session = ChatSession(config, auto_approve=auto_approve)
    try:
        adapter = session.orchestrator.adapter
        if not adapter.is_configured():
            console.print(f"[yellow]Backend {adapter.name} is not configured.[/yellow]")
        if prompt_text:
            await _run_prompt(session, prompt_text, verbose)
        else:
            await _repl(session, verbose)
    finally:
        await session.aclose()


@click.command()
@click.option("--config", "-c", "config_path", default=None,
              help="Path to chat_harness.yaml (auto-detected from CWD or ~/.chat_harness/)")
@click.option("--backend", "-b", type=click.Choice(BACKEND_NAMES), default=None,
              help="Backend to use")
@click.option("--model", "-m", default=None, help="Model id")
@click.option("--prompt", "-p", "prompt_text", default=None,
              help="Send one prompt non-interactively and exit")
@click.option("--yes", "-y", "auto_approve", is_flag=True, help="Approve all tool calls")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
def main(config_path: str | None, backend: str | None, model: str | None,
         prompt_text: str | None, auto_approve: bool, verbose: bool) -> None:
    """Chat Harness - agentic chat over Gemini, Copilot and Ollama."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)

    config, config_file = load_config(config_path)
    if backend:
        config.backend = backend
    if model:
        getattr(config.backends, config.backend).model = model

    console.print(f"[bold bright_blue]Chat Harness[/bold bright_blue] [dim]v{__version__}[/dim]")
    if config_file:
        console.print(f"[dim]Config: {config_file}[/dim]")
    else:
        console.print("[dim]Config: defaults (no chat_harness.yaml found)[/dim]")
    console.print(f"[dim]Backend: {config.backend}  Type /help for commands[/dim]\n")

    asyncio.run(_main_async(config, prompt_text, auto_approve, verbose))


if __name__ == "__main__":
    main()
