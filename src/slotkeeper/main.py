"""Main CLI entry point for Slotkeeper.

This module provides the main Typer application with sub-commands for running
worker slots, the heartbeat watchdog, and inspecting heartbeats.

Usage:
    slotkeeper worker run dev-1
    slotkeeper worker recover dev-1
    slotkeeper watchdog run
    slotkeeper watchdog check
    slotkeeper heartbeats list
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console

from slotkeeper.agents.payload import TemplatePayloadBuilder
from slotkeeper.agents.process import SubprocessLauncher
from slotkeeper.agents.registry import SessionRegistry
from slotkeeper.agents.status import HttpSessionStatusSource
from slotkeeper.cli import heartbeats as heartbeats_cli
from slotkeeper.cli import watchdog as watchdog_cli
from slotkeeper.cli import worker as worker_cli
from slotkeeper.config import SlotkeeperConfig, load_config
from slotkeeper.logging import setup_logging
from slotkeeper.orchestrator.recovery import CrashRecovery
from slotkeeper.orchestrator.supervisor import SessionSupervisor
from slotkeeper.orchestrator.watchdog import HeartbeatWatchdog
from slotkeeper.orchestrator.worker import WorkerLoop
from slotkeeper.stores.heartbeat_store import (
    DatabaseHeartbeatStore,
    FileHeartbeatStore,
    create_heartbeat_store,
)
from slotkeeper.stores.task_store import HttpTaskStore

app = typer.Typer(
    name="slotkeeper",
    help="Slotkeeper: worker slot orchestration for agent sessions",
    no_args_is_help=True,
)

# Add sub-apps
app.add_typer(worker_cli.app, name="worker", help="Run and recover worker slots")
app.add_typer(watchdog_cli.app, name="watchdog", help="Detect stale workers")
app.add_typer(heartbeats_cli.app, name="heartbeats", help="Inspect heartbeats")

console = Console()


class AppContext:
    """Application context shared across CLI commands.

    Builds the stores and orchestrator components from the loaded
    configuration. Components that hold connections are tracked and closed
    by ``aclose()``.

    Attributes:
        config: Loaded Slotkeeper configuration
        config_path: File the configuration was loaded from, for reloads
    """

    def __init__(self, config: SlotkeeperConfig, config_path: Path | None = None):
        self.config = config
        self.config_path = config_path
        self._closeables: list = []

    def reload_config(self) -> SlotkeeperConfig:
        """Re-read configuration from the same sources."""
        self.config = load_config(self.config_path)
        return self.config

    def task_store(self) -> HttpTaskStore:
        store = HttpTaskStore(self.config.task_store)
        self._closeables.append(store)
        return store

    def heartbeat_store(self) -> FileHeartbeatStore | DatabaseHeartbeatStore:
        store = create_heartbeat_store(self.config)
        if isinstance(store, DatabaseHeartbeatStore):
            self._closeables.append(store)
        return store

    def supervisor(self, slot: str, task_store: HttpTaskStore) -> SessionSupervisor:
        session_config = self.config.session
        status_source = None
        if session_config.status_url:
            status_source = HttpSessionStatusSource(
                session_config.status_url,
                timeout_seconds=self.config.task_store.timeout_seconds,
            )
            self._closeables.append(status_source)

        return SessionSupervisor(
            slot=slot,
            config=session_config,
            launcher=SubprocessLauncher(session_config.command, session_config.args),
            task_store=task_store,
            payload_builder=TemplatePayloadBuilder(session_config.template),
            registry=SessionRegistry(session_config.run_dir),
            status_source=status_source,
        )

    def recovery(
        self,
        task_store: HttpTaskStore,
        heartbeat_store: FileHeartbeatStore | DatabaseHeartbeatStore,
        supervisor: SessionSupervisor,
    ) -> CrashRecovery:
        return CrashRecovery(task_store, heartbeat_store, supervisor, self.config.task_store)

    def worker(self, slot: str) -> WorkerLoop:
        """Assemble a worker loop and its collaborators for ``slot``.

        Raises:
            InvalidSlotError: If ``slot`` is not configured
        """
        task_store = self.task_store()
        heartbeat_store = self.heartbeat_store()
        supervisor = self.supervisor(slot, task_store)
        return WorkerLoop(
            slot=slot,
            config=self.config,
            task_store=task_store,
            heartbeat_store=heartbeat_store,
            supervisor=supervisor,
            recovery=self.recovery(task_store, heartbeat_store, supervisor),
        )

    def watchdog(self) -> HeartbeatWatchdog:
        return HeartbeatWatchdog(
            task_store=self.task_store(),
            heartbeat_store=self.heartbeat_store(),
            config=self.config.watchdog,
        )

    async def aclose(self) -> None:
        """Close every connection-holding component built so far."""
        while self._closeables:
            await self._closeables.pop().close()


# Global context holder
_app_context: AppContext | None = None


def get_app_context() -> AppContext:
    """Get the shared application context.

    Raises:
        RuntimeError: If context has not been initialized
    """
    if _app_context is None:
        raise RuntimeError("Application context not initialized. Call initialize_context first.")
    return _app_context


def initialize_context(config: SlotkeeperConfig, config_path: Path | None = None) -> AppContext:
    """Initialize the global application context."""
    global _app_context
    _app_context = AppContext(config, config_path)
    return _app_context


@app.callback()
def main_callback(
    config_path: Annotated[
        Optional[Path],
        typer.Option(
            "--config",
            "-c",
            help="Path to configuration file (TOML format)",
            exists=True,
            dir_okay=False,
            readable=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Load configuration, configure logging and initialize the context.

    Args:
        config_path: Optional path to TOML configuration file
        verbose: Enable debug-level logging
    """
    try:
        config = load_config(config_path)
    except Exception as e:
        console.print(f"[red]Error loading configuration:[/red] {e}")
        raise typer.Exit(code=1)

    logging_config = config.logging
    if verbose:
        logging_config = logging_config.model_copy(update={"level": "DEBUG"})
    setup_logging(logging_config)

    initialize_context(config, config_path)

    if verbose:
        console.print("[dim]Debug logging enabled[/dim]")


if __name__ == "__main__":
    app()
