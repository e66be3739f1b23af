"""
Coquette CLI.

Module: coquette/cli.py

Runs single agent turns from a terminal and renders the live snapshot
stream with rich.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

import anyio
import click
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from adapters.llm import LLMProvider, create_adapter

from . import __version__
from .agent import AgentCore, InMemoryTurnStore, Request, ResourceConstraints, ToolRegistry, Turn
from .config import CoquetteConfig
from .tools import default_tools


def _find_project_env(start: Optional[Path] = None, max_depth: int = 10) -> Optional[Path]:
    """Nearest .env in ``start`` (the working directory) or one of its parents."""
    origin = (start or Path.cwd()).resolve()
    for directory in [origin, *origin.parents][:max_depth]:
        candidate = directory / ".env"
        if candidate.is_file():
            return candidate
    return None


_dotenv = _find_project_env()
if _dotenv is not None:
    load_dotenv(_dotenv, override=False)

console = Console()


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def build_agent(settings: CoquetteConfig) -> AgentCore:
    """Assemble the engine with the bundled tools."""
    options = {}
    if settings.llm_provider == LLMProvider.OLLAMA.value:
        options["endpoint"] = settings.ollama_endpoint
    llm = create_adapter(provider=settings.llm_provider, model=settings.decision_model, **options)
    return AgentCore(llm, ToolRegistry(default_tools()), settings=settings, store=InMemoryTurnStore())


def render_turn(turn: Turn, show_thinking: bool = False) -> None:
    """Print a completed Turn."""
    if turn.tool_executions:
        table = Table(title="Tool steps", show_lines=False)
        table.add_column("#", justify="right")
        table.add_column("Tool", style="cyan")
        table.add_column("Status")
        table.add_column("ms", justify="right")
        table.add_column("Note", style="dim")
        for index, record in enumerate(turn.tool_executions, start=1):
            if record.validated:
                status = "[green]ok[/green]"
            elif record.success:
                status = "[yellow]rejected[/yellow]"
            else:
                status = "[red]failed[/red]"
            note = record.validation_reason or ""
            if record.recovery:
                note = f"recovery, {note}"
            table.add_row(str(index), record.tool_name, status, str(record.execution_time_ms), note)
        console.print(table)

    if show_thinking and turn.reasoning_trace:
        console.print(Panel(Text(turn.reasoning_trace), title="Reasoning", border_style="dim"))

    style = "red" if turn.error else "green"
    console.print(Panel(Text(turn.final_content), title="Answer", border_style=style))


async def _run_turn(agent: AgentCore, request: Request, constraints: ResourceConstraints) -> Turn:
    last: Optional[Turn] = None
    try:
        with console.status("Thinking...") as status:
            async with agent.stream_turn(request, constraints) as updates:
                async for snapshot in updates:
                    last = snapshot
                    label = snapshot.activity or snapshot.state.value.replace("_", " ").capitalize()
                    status.update(f"{label}...")
    finally:
        await agent.llm.aclose()
    if last is None or not last.is_complete:
        raise click.ClickException("The turn ended without an answer")
    return last


@click.group(invoke_without_command=True)
@click.option("--version", is_flag=True, help="Show version and exit")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Logging level (defaults to COQUETTE_LOG_LEVEL)",
)
@click.option(
    "--provider",
    type=click.Choice([p.value for p in LLMProvider], case_sensitive=False),
    default=None,
    help="Text-generation provider (defaults to COQUETTE_LLM_PROVIDER)",
)
@click.pass_context
def cli(ctx: click.Context, version: bool, log_level: Optional[str], provider: Optional[str]) -> None:
    """
    Coquette - agent orchestration engine for a mobile AI assistant.
    """
    if version:
        console.print(f"[bold green]Coquette v{__version__}[/bold green]")
        sys.exit(0)

    overrides = {}
    if log_level:
        overrides["log_level"] = log_level.upper()
    if provider:
        overrides["llm_provider"] = provider.lower()
    settings = CoquetteConfig().model_copy(update=overrides)

    setup_logging(settings.log_level)

    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command("ask")
@click.argument("text", nargs=-1, required=True)
@click.option("--show-thinking", is_flag=True, help="Show the model's reasoning trace")
@click.option("--metered", is_flag=True, help="Treat the network as metered")
@click.option("--battery", type=click.IntRange(0, 100), default=None, help="Battery percentage")
@click.pass_context
def ask_cmd(
    ctx: click.Context,
    text: tuple,
    show_thinking: bool,
    metered: bool,
    battery: Optional[int],
) -> None:
    """Run one turn for TEXT and print the answer."""
    settings: CoquetteConfig = ctx.obj["settings"]
    agent = build_agent(settings)
    request = Request(text=" ".join(text))
    constraints = ResourceConstraints(metered_network=metered, battery_percent=battery)

    turn = anyio.run(_run_turn, agent, request, constraints)
    render_turn(turn, show_thinking=show_thinking)
    if turn.error:
        sys.exit(1)


@cli.command("tools")
def tools_cmd() -> None:
    """List the bundled tools."""
    registry = ToolRegistry(default_tools())
    table = Table(title="Available tools")
    table.add_column("Name", style="cyan")
    table.add_column("Class")
    table.add_column("Risk")
    table.add_column("Consumes")
    table.add_column("Produces")
    table.add_column("Description", style="dim")
    for tool in registry.all():
        table.add_row(
            tool.name,
            tool.tool_class.value,
            tool.risk_level.value,
            tool.consumes or "-",
            tool.produces or "-",
            tool.description,
        )
    console.print(table)


def main() -> None:
    """Console script entry point."""
    try:
        cli(obj={})
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"[bold red]Turn failed:[/bold red] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
