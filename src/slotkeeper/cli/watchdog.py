"""Watchdog CLI commands.

This module provides CLI commands for running the heartbeat watchdog as a
long-lived process or for a single cycle.
"""

from __future__ import annotations

import asyncio
import signal

import typer
from rich.console import Console
from rich.table import Table

from slotkeeper.orchestrator.watchdog import WatchdogReport

app = typer.Typer(help="Heartbeat watchdog commands")
console = Console()


def render_report(report: WatchdogReport) -> Table:
    """Render a watchdog cycle report as a table of actions."""
    table = Table(title=f"Watchdog: {report.checked} heartbeats checked")
    table.add_column("Slot", style="cyan")
    table.add_column("Action")
    table.add_column("Task")
    table.add_column("Age (s)", justify="right")
    table.add_column("Detail", style="dim")
    for action in report.actions:
        table.add_row(
            action.slot,
            action.action_type.value,
            action.task_id or "-",
            f"{action.age_seconds:.0f}" if action.age_seconds else "-",
            action.detail or "",
        )
    return table


@app.command()
def run() -> None:
    """Run watchdog cycles until SIGTERM or SIGINT."""
    from slotkeeper.main import get_app_context

    ctx = get_app_context()
    watchdog = ctx.watchdog()

    console.print(
        f"[bold cyan]Watchdog running[/bold cyan] "
        f"[dim](every {ctx.config.watchdog.check_interval_seconds:.0f}s, "
        f"stale after {ctx.config.watchdog.stale_threshold_seconds:.0f}s)[/dim]"
    )

    async def run_watchdog() -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, watchdog.request_stop)
        try:
            await watchdog.run()
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)
            await ctx.aclose()

    asyncio.run(run_watchdog())
    console.print("[green]Watchdog stopped[/green]")


@app.command()
def check() -> None:
    """Run a single watchdog cycle and print what it did.

    Exits with code 1 if the cycle hit store errors.
    """
    from slotkeeper.main import get_app_context

    ctx = get_app_context()

    async def run_check() -> WatchdogReport:
        try:
            return await ctx.watchdog().check_heartbeats()
        finally:
            await ctx.aclose()

    report = asyncio.run(run_check())

    if report.actions:
        console.print(render_report(report))
    else:
        console.print(f"[green]No stale heartbeats[/green] [dim]({report.checked} checked)[/dim]")

    for error in report.errors:
        console.print(f"[red]Error:[/red] {error}")
    if report.errors:
        raise typer.Exit(code=1)
