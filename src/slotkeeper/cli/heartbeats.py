"""Heartbeat inspection CLI commands."""

from __future__ import annotations

import asyncio
import json
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from slotkeeper.errors import HeartbeatStoreError
from slotkeeper.orchestrator.watchdog import SlotDiagnosis, SlotHealth, diagnose

app = typer.Typer(help="Heartbeat inspection commands")
console = Console()

_HEALTH_STYLES = {
    SlotHealth.OK: "green",
    SlotHealth.WARN: "yellow",
    SlotHealth.DOWN: "red",
}


@app.command("list")
def list_heartbeats(
    as_json: Annotated[
        bool,
        typer.Option("--json", help="Print raw heartbeat records as JSON"),
    ] = False,
) -> None:
    """Show the heartbeat and health grade of every slot."""
    from slotkeeper.main import get_app_context

    ctx = get_app_context()

    async def load():
        store = ctx.heartbeat_store()
        try:
            return await store.list_heartbeats()
        finally:
            await ctx.aclose()

    try:
        heartbeats = asyncio.run(load())
    except HeartbeatStoreError as e:
        console.print(f"[red]Cannot read heartbeats:[/red] {e}")
        raise typer.Exit(code=1)

    if as_json:
        console.print_json(json.dumps([hb.to_json_dict() for hb in heartbeats]))
        return

    diagnoses = diagnose(heartbeats, slots=ctx.config.worker.slots)
    console.print(render_diagnoses(diagnoses))

    if any(d.health == SlotHealth.DOWN for d in diagnoses):
        raise typer.Exit(code=1)


def render_diagnoses(diagnoses: list[SlotDiagnosis]) -> Table:
    table = Table(title="Worker slots")
    table.add_column("Slot", style="cyan")
    table.add_column("Health")
    table.add_column("Status")
    table.add_column("Age (s)", justify="right")
    table.add_column("Task")
    table.add_column("Session", style="dim")
    table.add_column("Restarts", justify="right")
    table.add_column("Note", style="dim")
    for d in diagnoses:
        style = _HEALTH_STYLES[d.health]
        table.add_row(
            d.slot,
            f"[{style}]{d.health.value}[/{style}]",
            d.status.value if d.status else "-",
            f"{d.age_seconds:.0f}" if d.age_seconds is not None else "-",
            d.task or "-",
            d.session_id or "-",
            str(d.restart_count),
            d.note or "",
        )
    return table
