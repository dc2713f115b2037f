"""Command line entry point for TaskPilot."""

import asyncio
import os
import sys
from pathlib import Path

import typer
from rich.console import Console
from rich.text import Text

from taskpilot.config import Config, get_config, set_config
from taskpilot.engine import TurnEngine
from taskpilot.environment import detect_environment
from taskpilot.events import (
    Completed,
    CredentialsExhausted,
    Event,
    Failed,
    TextChunk,
    ToolCallCompleted,
    ToolCallRequested,
)
from taskpilot.exceptions import ConfigurationError
from taskpilot.llm.client import ProviderClient
from taskpilot.logging import configure_logging, get_logger
from taskpilot.recovery import (
    CommandAvailabilityCache,
    DependencyCache,
    FallbackPlanner,
    ModelPlanGenerator,
    RemediationRunner,
    ShellCommandRunner,
)
from taskpilot.tools import ShellTool, ToolRegistry

log = get_logger(__name__)

app = typer.Typer(help="TaskPilot - an autonomous coding agent for your terminal")
console = Console()

TOOL_RESULT_PREVIEW_CHARS = 400

# Availability outlives any one engine.
DEPENDENCY_CACHE = DependencyCache()
COMMAND_CACHE = CommandAvailabilityCache()


def load_config(config: str = "", model: str = "", provider: str = "") -> Config:
    """Load configuration and apply command line overrides."""
    cfg = Config.from_yaml(Path(config)) if config else Config.load()
    if model:
        cfg.model.model = model
    if provider:
        cfg.model.provider = provider
    set_config(cfg)
    return cfg


def build_engine(
    client: ProviderClient,
    config: Config | None = None,
    workspace: Path | None = None,
) -> TurnEngine:
    """Wire the tool registry, recovery loop and engine around one client."""
    cfg = config or get_config()
    workspace = (workspace or Path.cwd()).resolve()
    environment = detect_environment()

    cancel_event = asyncio.Event()

    shell = ShellTool(cwd=str(workspace))
    if cfg.recovery.enabled:
        generator = (
            ModelPlanGenerator(client, model=cfg.model.model) if cfg.recovery.use_model_plans else None
        )
        planner = FallbackPlanner(DEPENDENCY_CACHE, plan_generator=generator)
        shell.attach_recovery(
            RemediationRunner(
                ShellCommandRunner(shell),
                planner,
                environment,
                config=cfg,
                workspace=workspace,
                commands=COMMAND_CACHE,
                cancel_event=cancel_event,
            )
        )

    return TurnEngine(
        client,
        ToolRegistry([shell]),
        config=cfg,
        environment=environment,
        workspace_root=workspace,
        model=cfg.model.model,
        cancel_event=cancel_event,
    )


def render_event(event: Event, out: Console = console) -> None:
    if isinstance(event, TextChunk):
        out.print(event.text, end="", markup=False, highlight=False)
    elif isinstance(event, ToolCallRequested):
        line = Text("\n> ", style="cyan")
        line.append(event.call.name, style="bold cyan")
        command = event.call.args.get("command")
        if command:
            line.append(f" {command}")
        out.print(line)
    elif isinstance(event, ToolCallCompleted):
        preview = event.result.content if isinstance(event.result.content, str) else str(event.result.content)
        if len(preview) > TOOL_RESULT_PREVIEW_CHARS:
            preview = preview[:TOOL_RESULT_PREVIEW_CHARS] + " ..."
        style = "green" if event.result.success else "red"
        out.print(Text(preview, style=style))
    elif isinstance(event, Completed):
        out.print()
    elif isinstance(event, CredentialsExhausted):
        out.print(Text(f"\nCredentials exhausted: {event.message}", style="bold yellow"))
    elif isinstance(event, Failed):
        out.print(Text(f"\nFailed: {event.message}", style="bold red"))


async def run_message(message: str, config: Config) -> Event | None:
    """Send one message and stream its events to the console."""
    async with ProviderClient.from_config(config) as client:
        engine = build_engine(client, config)
        terminal: Event | None = None
        async for event in engine.run(message):
            render_event(event)
            terminal = event
        return terminal


@app.command()
def run(
    message: str = typer.Argument(..., help="Task for the agent"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    provider: str = typer.Option("", "-p", "--provider", help="Override provider"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Run one task to completion."""
    if verbose:
        os.environ["TASKPILOT_LOGGING__LEVEL"] = "DEBUG"
    try:
        cfg = load_config(config, model, provider)
    except (OSError, ValueError) as e:
        console.print(Text(f"Failed to load config: {e}", style="bold red"))
        raise typer.Exit(code=2)
    configure_logging("DEBUG" if verbose else None)

    try:
        terminal = asyncio.run(run_message(message, cfg))
    except ConfigurationError as e:
        console.print(Text(f"Configuration error: {e}", style="bold red"))
        raise typer.Exit(code=2)
    except KeyboardInterrupt:
        log.info("Shutting down...")
        sys.exit(130)

    if not isinstance(terminal, Completed):
        raise typer.Exit(code=1)


@app.command()
def version() -> None:
    """Show version information."""
    from taskpilot import __version__

    console.print(f"TaskPilot v{__version__}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
