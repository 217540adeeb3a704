"""Worker slot CLI commands.

This module provides CLI commands for running a worker slot and for running
crash recovery on its own.
"""

from __future__ import annotations

import asyncio
import signal
from typing import Annotated

import structlog
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from slotkeeper.errors import InvalidSlotError, SlotkeeperError
from slotkeeper.models.heartbeat import OfflineReason
from slotkeeper.orchestrator.state_machine import idle_heartbeat, offline_heartbeat

app = typer.Typer(help="Worker slot commands")
console = Console()
logger = structlog.get_logger(__name__)


@app.command()
def run(
    slot: Annotated[str, typer.Argument(help="Slot to run (e.g. dev-1)")],
) -> None:
    """Run the worker loop for a slot until SIGTERM or SIGINT.

    SIGUSR1 reloads the configuration and applies new worker and session
    timings without dropping the task in flight.

    Args:
        slot: Slot name, one of the configured worker slots
    """
    from slotkeeper.main import get_app_context

    ctx = get_app_context()

    try:
        worker = ctx.worker(slot)
    except InvalidSlotError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=2)

    console.print(
        Panel(
            f"[bold cyan]Slotkeeper Worker[/bold cyan]\n\n"
            f"[bold]Slot:[/bold] {slot}\n"
            f"[bold]Task store:[/bold] {ctx.config.task_store.base_url}\n"
            f"[bold]Heartbeats:[/bold] {ctx.config.heartbeat.backend}\n"
            f"[bold]Poll interval:[/bold] {ctx.config.worker.poll_interval_seconds:.0f}s",
            title="Starting Worker",
            border_style="cyan",
        )
    )

    def handle_reload() -> None:
        try:
            worker.reload(ctx.reload_config())
        except (ValueError, SlotkeeperError) as e:
            logger.error("config_reload_failed", slot=slot, error=str(e))

    async def run_worker() -> None:
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGTERM, worker.request_stop)
        loop.add_signal_handler(signal.SIGINT, worker.request_stop)
        loop.add_signal_handler(signal.SIGUSR1, handle_reload)
        try:
            await worker.run()
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT, signal.SIGUSR1):
                loop.remove_signal_handler(sig)
            await ctx.aclose()

    try:
        asyncio.run(run_worker())
    except SlotkeeperError as e:
        console.print(f"[red]Worker failed:[/red] {e}")
        raise typer.Exit(code=1)

    console.print(f"[green]Worker {slot} stopped[/green]")


@app.command()
def recover(
    slot: Annotated[str, typer.Argument(help="Slot to recover")],
) -> None:
    """Run crash recovery for a slot without starting the worker.

    Args:
        slot: Slot name
    """
    from slotkeeper.main import get_app_context

    ctx = get_app_context()
    if slot not in ctx.config.worker.slots:
        console.print(f"[red]{InvalidSlotError(slot, ctx.config.worker.slots)}[/red]")
        raise typer.Exit(code=2)

    async def run_recovery():
        task_store = ctx.task_store()
        heartbeat_store = ctx.heartbeat_store()
        supervisor = ctx.supervisor(slot, task_store)
        try:
            report = await ctx.recovery(task_store, heartbeat_store, supervisor).recover(slot)
            if report.crashed:
                # Park the slot offline so the next start does not recover it again
                idle = idle_heartbeat(
                    slot, previous=report.previous_heartbeat, restart_count=report.restart_count
                )
                await heartbeat_store.write_heartbeat(
                    offline_heartbeat(idle, OfflineReason.SHUTDOWN)
                )
            return report
        finally:
            await ctx.aclose()

    try:
        report = asyncio.run(run_recovery())
    except SlotkeeperError as e:
        console.print(f"[red]Recovery failed:[/red] {e}")
        raise typer.Exit(code=1)

    table = Table(title=f"Crash recovery: {slot}", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Previous status", report.previous_status.value if report.previous_status else "-")
    table.add_row("Abandoned task", report.abandoned_task or "-")
    table.add_row("Abandoned session", report.abandoned_session or "-")
    table.add_row("Reaped sessions", ", ".join(report.reaped_sessions) or "-")
    table.add_row("Task requeued", "yes" if report.task_requeued else "no")
    table.add_row("Restart count", str(report.restart_count))
    console.print(table)
