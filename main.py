#!/usr/bin/env python3
"""
Toolsmith - Self-Extending Tool-Orchestrated Assistant
======================================================

Main entry point for the interactive console.

Usage:
    python main.py                       # Provider and model from config/toolsmith.yaml
    python main.py --provider anthropic --model claude-3-5-sonnet-latest
    python main.py --provider ollama --model llama3.1
    python main.py --help                # Show help

API keys are read from the environment (OPENAI_API_KEY, ANTHROPIC_API_KEY, ...).
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Ensure project root is in path
sys.path.insert(0, str(Path(__file__).parent))

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from core.errors import ToolsmithError
from core.orchestrator import Orchestrator, TurnResult, build_orchestrator
from infra.config import DEFAULT_CONFIG_PATH, ConfigError, ConfigManager, SecretManager
from infra.database import DatabaseError
from infra.logging import configure_logging


console = Console()

HELP_TEXT = """
[bold]Commands:[/bold]
  /tools     list built-in and custom tools
  /history   show the conversation so far
  /clear     clear the conversation history
  /status    show session status
  /help      show this
  /quit      exit

Anything else is sent to the assistant.
"""


def print_banner(orchestrator: Orchestrator) -> None:
    """Print the Toolsmith banner."""
    status = orchestrator.get_status()
    banner = Text()
    banner.append("Toolsmith", style="bold cyan")
    banner.append(" - an assistant that builds its own tools\n", style="dim")
    banner.append(f"Provider: {status['provider']} ({status['model']})\n", style="green")
    banner.append(
        f"Tools: {status['builtin_tools']} built-in, {status['dynamic_tools']} custom\n\n",
        style="dim",
    )
    banner.append("Type ", style="dim")
    banner.append("/help", style="bold green")
    banner.append(" for commands, ", style="dim")
    banner.append("/quit", style="bold red")
    banner.append(" to exit", style="dim")

    console.print(Panel(banner, title="Welcome", border_style="blue"))


def print_status(orchestrator: Orchestrator) -> None:
    """Print current session status."""
    status = orchestrator.get_status()
    errors = ", ".join(f"{k}={v}" for k, v in status["errors"].items()) or "none"
    console.print(
        f"[dim]State: {status['state']} | "
        f"Provider: {status['provider']}/{status['model']} | "
        f"Tools: {status['builtin_tools']}+{status['dynamic_tools']} | "
        f"History: {status['history_turns']} turns | "
        f"Errors: {errors}[/dim]"
    )


def print_tools(orchestrator: Orchestrator) -> None:
    """Print every tool the model can see."""
    registry = orchestrator.registry
    table = Table(title="Available tools", show_lines=False)
    table.add_column("Name", style="cyan")
    table.add_column("Kind", style="magenta")
    table.add_column("Description")

    for schema in registry.list_all():
        kind = "built-in" if registry.is_builtin(schema.name) else "custom"
        table.add_row(schema.name, kind, schema.description)

    console.print(table)


def print_result(result: TurnResult) -> None:
    """Render the outcome of a turn."""
    for tool_result in result.tool_results:
        marker = "[green]✓[/green]" if tool_result.success else "[red]✗[/red]"
        console.print(f"[dim]{marker} {tool_result.tool_name} ({tool_result.execution_time_ms:.0f}ms)[/dim]")

    if result.error_kind is not None:
        console.print(f"[bold red]Error:[/bold red] {result.answer}")
        return

    style = "yellow" if result.truncated or result.cancelled else "green"
    console.print(Panel(result.answer or "(no answer)", title="Toolsmith", border_style=style))
    console.print(f"[dim]{result.steps} step(s) in {result.execution_time_ms:.0f}ms[/dim]")


def handle_command(orchestrator: Orchestrator, command: str) -> bool:
    """Run a /command. Returns False when the loop should stop."""
    name = command.split()[0].lower()

    if name in ("/quit", "/exit", "/q"):
        return False
    if name == "/help":
        console.print(HELP_TEXT)
    elif name == "/tools":
        print_tools(orchestrator)
    elif name == "/history":
        console.print(orchestrator.history.render("text"))
    elif name == "/clear":
        count = orchestrator.clear_history()
        console.print(f"[green]Cleared {count} turns from history[/green]")
    elif name == "/status":
        print_status(orchestrator)
    else:
        console.print(f"[yellow]Unknown command: {name}. Type /help.[/yellow]")
    return True


def run_console(orchestrator: Orchestrator) -> None:
    """Interactive read-eval-print loop."""
    print_banner(orchestrator)

    while True:
        try:
            text = console.input("\n[bold cyan]>[/bold cyan] ").strip()
        except (KeyboardInterrupt, EOFError):
            break

        if not text:
            continue

        if text.startswith("/"):
            if not handle_command(orchestrator, text):
                break
            continue

        try:
            with console.status("[dim]Thinking...[/dim]"):
                result = asyncio.run(orchestrator.run_turn(text))
        except KeyboardInterrupt:
            console.print("\n[yellow]Turn interrupted[/yellow]")
            continue

        print_result(result)

    console.print("\n[yellow]Shutting down...[/yellow]")
    orchestrator.shutdown()


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Toolsmith - an assistant that builds its own tools"
    )
    parser.add_argument(
        "--config", "-c",
        default=DEFAULT_CONFIG_PATH,
        help="Path to configuration file"
    )
    parser.add_argument(
        "--provider", "-p",
        help="Model provider: openai, anthropic, groq, together, ollama, custom"
    )
    parser.add_argument("--model", "-m", help="Model name")
    parser.add_argument("--db", help="Path to the SQLite database")
    parser.add_argument(
        "--max-steps",
        type=int,
        help="Provider submissions allowed per user message"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Show debug logging on the console"
    )

    args = parser.parse_args()

    try:
        config = ConfigManager(args.config).config
    except ConfigError as e:
        console.print(f"[bold red]Configuration error:[/bold red] {e}")
        return 2

    if args.provider:
        config.provider.name = args.provider.strip().lower()
    if args.model:
        config.provider.model = args.model
    if args.db:
        config.storage.db_path = args.db
    if args.max_steps is not None:
        if args.max_steps < 1:
            parser.error("--max-steps must be at least 1")
        config.orchestrator.max_steps = args.max_steps

    configure_logging(
        level=logging.DEBUG if args.debug else logging.WARNING,
        log_dir=config.storage.log_dir,
    )
    logger = logging.getLogger("toolsmith.main")

    try:
        orchestrator = build_orchestrator(config, SecretManager())
    except (ToolsmithError, DatabaseError) as e:
        console.print(f"[bold red]Startup failed:[/bold red] {e}")
        return 1

    try:
        run_console(orchestrator)
        return 0
    except Exception as e:
        logger.exception("Fatal error")
        console.print(f"[bold red]Error:[/bold red] {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
