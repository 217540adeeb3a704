"""Launching and signalling external agent processes.

Agent sessions run as detached OS processes in their own process group, so a
signal to the group reaches the agent and anything it spawned. Standard output
and error are captured to per-session log files for diagnostics; the
orchestrator never parses them.
"""

from __future__ import annotations

import asyncio
import os
import signal as signal_module
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Protocol, runtime_checkable

import psutil
import structlog

from slotkeeper.errors import SpawnError

logger = structlog.get_logger(__name__)


class SignalKind(str, Enum):
    """Signals the supervisor sends to a session's process group."""

    TERMINATE = "terminate"
    KILL = "kill"


_SIGNALS = {
    SignalKind.TERMINATE: signal_module.SIGTERM,
    SignalKind.KILL: signal_module.SIGKILL,
}

# Allowed gap between a registry record's spawn time and the process start time
START_TIME_TOLERANCE_SECONDS = 5.0


@dataclass
class ProcessHandle:
    """Reference to a spawned (or rediscovered) agent process.

    Attributes:
        pid: Process id, which is also the process group id
        label: Session label the process was spawned for
        stdout_path: File capturing standard output, if any
        stderr_path: File capturing standard error, if any
        exit_code: Exit status once the process is known to have exited
    """

    pid: int
    label: str
    stdout_path: Path | None = None
    stderr_path: Path | None = None
    exit_code: int | None = None
    process: asyncio.subprocess.Process | None = field(default=None, repr=False)


@runtime_checkable
class ProcessLauncher(Protocol):
    """Creates and controls external agent processes."""

    async def spawn(
        self, label: str, payload: str, cwd: Path, log_dir: Path
    ) -> ProcessHandle:
        """Start a detached process, raising SpawnError if it cannot be created."""
        ...

    async def signal(self, handle: ProcessHandle, kind: SignalKind) -> bool:
        """Signal the process group; False if it no longer exists."""
        ...

    def is_alive(self, handle: ProcessHandle) -> bool:
        """Whether the process is still running, recording its exit code if not."""
        ...

    def owns(self, handle: ProcessHandle, spawned_at: datetime) -> bool:
        """Whether the process at ``handle.pid`` is still the one spawned for ``handle.label``."""
        ...


class SubprocessLauncher:
    """ProcessLauncher using asyncio subprocesses.

    The command line is ``command`` followed by ``args`` with ``{label}`` and
    ``{payload}`` substituted, e.g.::

        openclaw agent --session-id agent:main:subagent:<label> --message <payload> ...

    Attributes:
        command: Executable and leading arguments
        args: Argument template
    """

    def __init__(self, command: list[str], args: list[str]) -> None:
        if not command:
            raise ValueError("Agent command must not be empty")
        self.command = list(command)
        self.args = list(args)

    def build_argv(self, label: str, payload: str) -> list[str]:
        """Render the full argument vector for a session."""
        return self.command + [
            arg.replace("{label}", label).replace("{payload}", payload) for arg in self.args
        ]

    async def spawn(
        self, label: str, payload: str, cwd: Path, log_dir: Path
    ) -> ProcessHandle:
        """Start the agent process in a new session (process group).

        Args:
            label: Session label, used in the argument vector and log names
            payload: Instruction text for the agent
            cwd: Working directory of the process
            log_dir: Directory for the stdout/stderr capture files

        Returns:
            Handle for the running process

        Raises:
            SpawnError: If the working directory, log files or executable
                are unusable
        """
        argv = self.build_argv(label, payload)
        stdout_path = log_dir / f"{label}.out.log"
        stderr_path = log_dir / f"{label}.err.log"

        if not cwd.is_dir():
            raise SpawnError(label, f"working directory does not exist: {cwd}")

        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            with open(stdout_path, "ab") as out, open(stderr_path, "ab") as err:
                process = await asyncio.create_subprocess_exec(
                    *argv,
                    cwd=str(cwd),
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=out,
                    stderr=err,
                    start_new_session=True,
                )
        except OSError as e:
            logger.error(
                "session_spawn_failed",
                label=label,
                executable=argv[0],
                error=str(e),
            )
            raise SpawnError(label, str(e)) from e

        logger.info(
            "session_process_started",
            label=label,
            pid=process.pid,
            cwd=str(cwd),
            stdout=str(stdout_path),
        )
        return ProcessHandle(
            pid=process.pid,
            label=label,
            stdout_path=stdout_path,
            stderr_path=stderr_path,
            process=process,
        )

    async def signal(self, handle: ProcessHandle, kind: SignalKind) -> bool:
        """Send a signal to the whole process group of ``handle``."""
        if not self.is_alive(handle):
            return False
        try:
            os.killpg(handle.pid, _SIGNALS[kind])
        except ProcessLookupError:
            return False
        except PermissionError as e:
            logger.warning(
                "session_signal_denied",
                label=handle.label,
                pid=handle.pid,
                signal=kind.value,
                error=str(e),
            )
            return False
        logger.debug("session_signalled", label=handle.label, pid=handle.pid, signal=kind.value)
        return True

    def is_alive(self, handle: ProcessHandle) -> bool:
        """Check whether the process is running.

        Processes spawned by this launcher are checked through their asyncio
        transport, which also yields the exit code. Rediscovered processes
        (pid only) are probed with signal 0.
        """
        if handle.exit_code is not None:
            return False

        if handle.process is not None:
            returncode = handle.process.returncode
            if returncode is None:
                return True
            handle.exit_code = returncode
            return False

        try:
            os.kill(handle.pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists but owned by someone else
            return True
        return True

    def owns(self, handle: ProcessHandle, spawned_at: datetime) -> bool:
        """Check that a rediscovered pid still belongs to its session.

        A pid read back from the session registry may have been reused by an
        unrelated process after the agent exited or the host rebooted. The
        process counts as the session's if its command line carries the
        session label, or if it started within START_TIME_TOLERANCE_SECONDS
        of ``spawned_at``. A process that cannot be inspected is not ours.

        Args:
            handle: Handle rebuilt from a registry record
            spawned_at: Spawn time stored in that record
        """
        if handle.process is not None:
            return True

        try:
            process = psutil.Process(handle.pid)
            cmdline = process.cmdline()
            started = datetime.fromtimestamp(process.create_time(), tz=timezone.utc)
        except psutil.Error as e:
            logger.debug(
                "session_pid_uninspectable", label=handle.label, pid=handle.pid, error=str(e)
            )
            return False

        if any(handle.label in arg for arg in cmdline):
            return True
        if spawned_at.tzinfo is None:
            spawned_at = spawned_at.replace(tzinfo=timezone.utc)
        return abs((started - spawned_at).total_seconds()) <= START_TIME_TOLERANCE_SECONDS
