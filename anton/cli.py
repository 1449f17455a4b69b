"""CLI for Anton.

Provides command-line interface for running a task document through an
agent, previewing a run, and inspecting or stopping the active run.
"""

import asyncio
import dataclasses
import logging
import os
import signal
import sys

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from anton.claude_session import create_claude_session
from anton.config import RunConfig
from anton.controller import AntonController
from anton.discord_notifier import DiscordNotifier
from anton.errors import AntonError
from anton.lock import LockManager
from anton.models import RunResult, RunState
from anton.reporter import ProgressReporter, console_callback, format_dry_run_plan
from anton.task_parser import parse_task_file
from anton.telemetry import create_metrics, setup_telemetry

console = Console()

# Model aliases for the --model flag
MODEL_ALIASES = {
    "haiku": "claude-haiku-4-5-20251001",
    "sonnet": "claude-sonnet-4-5-20250929",
    "opus": "claude-opus-4-5-20251101",
}


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(name)s: %(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


@click.group()
@click.version_option(package_name="anton")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
def cli(verbose: bool) -> None:
    """Anton - Autonomous task orchestrator for markdown checklists."""
    _configure_logging(verbose)


@cli.command()
@click.argument("task_file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--project-dir",
    "-C",
    type=click.Path(exists=True, file_okay=False),
    default=".",
    help="Repository the agent works in (default: current directory)",
)
@click.option("--decompose/--no-decompose", default=None, help="Allow task decomposition")
@click.option("--preflight", is_flag=True, default=None, help="Run discovery before each task")
@click.option("--auto-commit/--no-auto-commit", default=None, help="Commit after each task")
@click.option("--skip-on-fail/--no-skip-on-fail", default=None, help="Skip tasks that exhaust retries")
@click.option("--verify-ai", is_flag=True, default=None, help="AI review of each diff")
@click.option("--verify-cmd", multiple=True, help="Check command run after each task (repeatable)")
@click.option("--max-retries", type=int, default=None, help="Attempts allowed per task")
@click.option("--task-timeout", type=int, default=None, help="Per-task timeout in seconds")
@click.option(
    "--scope-guard",
    type=click.Choice(["off", "lax", "strict"]),
    default=None,
    help="How strictly changed files must match the task",
)
@click.option(
    "-m",
    "--model",
    type=click.Choice(["haiku", "sonnet", "opus"]),
    default=None,
    help="Claude model for agent sessions (default: Claude's default)",
)
@click.option("--notify/--no-notify", default=False, help="Post progress to DISCORD_WEBHOOK_URL")
def run(
    task_file: str,
    project_dir: str,
    decompose: bool | None,
    preflight: bool | None,
    auto_commit: bool | None,
    skip_on_fail: bool | None,
    verify_ai: bool | None,
    verify_cmd: tuple[str, ...],
    max_retries: int | None,
    task_timeout: int | None,
    scope_guard: str | None,
    model: str | None,
    notify: bool,
) -> None:
    """Run every pending task in a task document."""
    config = RunConfig.from_env(task_file, project_dir)

    overrides = {
        "decompose": decompose,
        "preflight_enabled": preflight,
        "auto_commit": auto_commit,
        "skip_on_fail": skip_on_fail,
        "verify_ai": verify_ai,
        "max_retries": max_retries,
        "task_timeout_sec": task_timeout,
        "scope_guard": scope_guard,
        "model": MODEL_ALIASES[model] if model else None,
    }
    changes = {k: v for k, v in overrides.items() if v is not None}
    if verify_cmd:
        changes["verify_commands"] = tuple(verify_cmd)
    config = dataclasses.replace(config, **changes)

    result = asyncio.run(_run(config, notify))
    if result is None:
        sys.exit(1)
    _print_run_summary(result)
    sys.exit(0 if result.final_state != RunState.FAILED else 1)


async def _run(config: RunConfig, notify: bool) -> RunResult | None:
    """Internal async implementation of a run."""
    tracer, meter = setup_telemetry(config)
    create_metrics(meter)

    reporter = ProgressReporter(
        [console_callback(lambda line: console.print(line, markup=False, highlight=False))]
    )
    if notify:
        webhook_url = os.getenv("DISCORD_WEBHOOK_URL", "")
        if webhook_url:
            reporter.add_callback(DiscordNotifier(webhook_url))
        else:
            console.print("[yellow]DISCORD_WEBHOOK_URL not set; notifications disabled[/yellow]")

    controller = AntonController(
        config, create_claude_session, reporter=reporter, tracer=tracer
    )

    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, controller.stop)
    loop.add_signal_handler(signal.SIGTERM, controller.stop)

    console.print(f"[bold]Starting run:[/bold] {config.task_file}")
    try:
        return await controller.start()
    except AntonError as e:
        console.print(f"[red]Error:[/red] {e}")
        return None
    finally:
        loop.remove_signal_handler(signal.SIGINT)
        loop.remove_signal_handler(signal.SIGTERM)


def _print_run_summary(result: RunResult) -> None:
    """Print run completion table."""
    status_color = {
        RunState.COMPLETED: "green",
        RunState.FAILED: "red",
        RunState.IDLE: "yellow",
    }
    color = status_color.get(result.final_state, "white")

    table = Table(title="Run Summary")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Completed", str(result.completed))
    if result.auto_completed:
        table.add_row("Already done", str(result.auto_completed))
    table.add_row("Skipped", str(len(result.skipped)))
    table.add_row("Failed", str(result.failed))
    table.add_row("Remaining", str(result.remaining))
    table.add_row("Commits", str(result.total_commits))
    table.add_row("Stop reason", f"[{color}]{result.stop_reason}[/{color}]")
    console.print(table)

    if result.error:
        console.print(f"[red]Error:[/red] {result.error}")


@cli.command()
@click.argument("task_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--verify-cmd", multiple=True, help="Check command a run would use")
def plan(task_file: str, verify_cmd: tuple[str, ...]) -> None:
    """Show what a run would do without running anything."""
    try:
        parsed = parse_task_file(task_file)
    except AntonError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    console.print(format_dry_run_plan(parsed, tuple(verify_cmd)), markup=False)


@cli.command()
def status() -> None:
    """Show the run currently holding the lock."""
    config = RunConfig.from_env(".", ".")
    locks = LockManager(config.state_dir)
    record = locks.read()

    if record is None:
        console.print("No run in progress")
        return

    if not locks.is_held():
        console.print(f"[yellow]Stale lock (PID {record.pid or 'unknown'})[/yellow]")
        return

    table = Table(title="Active Run")
    table.add_column("Field")
    table.add_column("Value")
    table.add_row("PID", str(record.pid))
    table.add_row("Started", record.started_at)
    table.add_row("Directory", record.cwd)
    table.add_row("Task file", record.task_file)
    console.print(table)


@cli.command()
def stop() -> None:
    """Ask the active run to stop after its current work."""
    config = RunConfig.from_env(".", ".")
    locks = LockManager(config.state_dir)
    record = locks.read()

    if record is None or not locks.is_held():
        console.print("No run in progress")
        return

    try:
        os.kill(record.pid, signal.SIGINT)
    except ProcessLookupError:
        console.print(f"[yellow]Process {record.pid} is gone[/yellow]")
        return
    except PermissionError:
        console.print(f"[red]Not permitted to signal PID {record.pid}[/red]")
        sys.exit(1)
    console.print(f"Stop requested (PID {record.pid})")


def main() -> None:
    """Main entry point for the Anton CLI."""
    cli()


if __name__ == "__main__":
    main()
