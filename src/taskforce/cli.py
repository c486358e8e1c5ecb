"""Inspection CLI for a taskforce database."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.table import Table

from .config import EngineConfig
from .errors import TransportError
from .storage.snapshot import SqliteSnapshotStore
from .tasks.models import Task, TaskStatus
from .transport.sqlite import SqliteQueueTransport

console = Console()
error_console = Console(stderr=True)
logger = logging.getLogger(__name__)

app = typer.Typer(
    name="taskforce",
    help="Inspect tasks and the job queue of a taskforce engine",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

_STATUS_STYLES = {
    TaskStatus.PENDING: "yellow",
    TaskStatus.ASSIGNED: "cyan",
    TaskStatus.IN_PROGRESS: "blue",
    TaskStatus.COMPLETED: "green",
    TaskStatus.FAILED: "red",
    TaskStatus.RESOLVED: "dim",
}


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Path to engine.yaml"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Verbose logging"),
    ] = False,
):
    """Taskforce engine tools."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    ctx.obj = EngineConfig.load(config_path)


async def _load_tasks(config: EngineConfig, status: str | None) -> list[Task]:
    store = SqliteSnapshotStore(config.db_path)
    try:
        return await store.load_snapshot(status)
    finally:
        await store.close()


async def _queue_counts(config: EngineConfig) -> dict[str, int]:
    transport = SqliteQueueTransport(config.db_path, queue_name=config.queue_name)
    await transport.connect(consume=False)
    try:
        return await transport.job_counts()
    finally:
        await transport.close()


@app.command("tasks")
def list_tasks(
    ctx: typer.Context,
    status: Annotated[
        Optional[str],
        typer.Option("--status", "-s", help="Filter by status"),
    ] = None,
):
    """List tasks from the last saved snapshot."""
    config: EngineConfig = ctx.obj
    if status is not None and status not in {s.value for s in TaskStatus}:
        error_console.print(f"[red]Error:[/red] Unknown status: {status}")
        raise typer.Exit(1)

    tasks = asyncio.run(_load_tasks(config, status))
    if not tasks:
        console.print("[dim]No tasks found[/dim]")
        return

    table = Table(title="Tasks", show_header=True, header_style="bold cyan")
    table.add_column("ID", style="dim")
    table.add_column("Title")
    table.add_column("Priority", width=8)
    table.add_column("Status", width=12)
    table.add_column("Worker")
    table.add_column("Retries", justify="right", width=7)

    for task in tasks:
        style = _STATUS_STYLES.get(task.status, "")
        title = task.title if len(task.title) <= 40 else task.title[:37] + "..."
        table.add_row(
            task.id,
            title,
            str(task.priority),
            f"[{style}]{task.status}[/{style}]" if style else str(task.status),
            task.assigned_to or "-",
            f"{task.retry_count}/{task.max_retries}",
        )

    console.print(table)


@app.command("queue")
def queue_stats(ctx: typer.Context):
    """Show job counts of the durable queue."""
    config: EngineConfig = ctx.obj
    try:
        counts = asyncio.run(_queue_counts(config))
    except TransportError as e:
        error_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    table = Table(title=f"Queue {config.queue_name}", show_header=True, header_style="bold cyan")
    table.add_column("State")
    table.add_column("Jobs", justify="right")
    for state, count in counts.items():
        table.add_row(state, str(count))
    console.print(table)


@app.command("config")
def show_config(ctx: typer.Context):
    """Show the effective engine configuration."""
    config: EngineConfig = ctx.obj
    console.print("[bold]Engine:[/bold]")
    for key, value in config.to_dict().items():
        console.print(f"  {key}: {value}")


if __name__ == "__main__":
    app()
