"""Session supervisor for agent processes.

The supervisor owns the lifecycle of one external agent session at a time for
its slot: spawn, monitor until a terminal outcome, and terminate. Process exit
is not treated as completion. The outcome is resolved from independent
observers:

- ``LaneWatcher``: the task's lane in the task store. An agent signals
  completion by moving its task to review, done or blocked.
- ``ProcessWatcher``: whether the OS process is alive and its exit code.
- ``SessionStatusSource`` (optional): the agent runtime's own view of the
  session, which may report an explicit failure.

The lane is checked first so an agent that moved its task and then exited
non-zero still counts as complete. A task found back in ``queued`` was
reclaimed by the watchdog or crash recovery, and the session is released
without touching it.
"""

from __future__ import annotations

import asyncio
import re
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable

import structlog
from pydantic import BaseModel, Field

from slotkeeper.agents.payload import PayloadBuilder
from slotkeeper.agents.process import ProcessHandle, ProcessLauncher, SignalKind
from slotkeeper.agents.registry import SessionRecord, SessionRegistry
from slotkeeper.agents.status import ExternalSessionStatus, SessionStatusSource
from slotkeeper.config import SessionConfig
from slotkeeper.errors import SpawnError, TaskNotFoundError, TaskStoreError
from slotkeeper.models.heartbeat import utcnow
from slotkeeper.models.task import TERMINAL_LANES, Lane, Task
from slotkeeper.orchestrator.scheduler import CancellationToken
from slotkeeper.stores.task_store import TaskStore

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]
TickCallback = Callable[["Session"], Awaitable[None]]

_SUFFIX_RE = re.compile(r"[^A-Za-z0-9]")


def make_session_id(slot: str, task_id: str) -> str:
    """Generate a session id of the form ``<slot>-<task-suffix>-<8 hex>``.

    The task suffix is the last dash-separated part of the task id with
    non-alphanumerics removed, so ``task-2024-abc`` yields ``abc``.
    """
    suffix = _SUFFIX_RE.sub("", task_id.split("-")[-1])[:16] or "task"
    return f"{slot}-{suffix}-{secrets.token_hex(4)}"


# ---------------------------------------------------------------------------
# Session and outcome models
# ---------------------------------------------------------------------------


@dataclass
class Session:
    """One supervised agent session.

    Attributes:
        session_id: Unique session identifier
        slot: Slot that owns the session
        task_id: Task the session works on
        handle: Handle of the agent process
        spawned_at: Wall-clock spawn time
        timeout_seconds: Effective timeout after clamping
        started_monotonic: Monotonic spawn time used for deadlines
        terminated: Whether terminate() has already run
    """

    session_id: str
    slot: str
    task_id: str
    handle: ProcessHandle
    timeout_seconds: float
    started_monotonic: float
    spawned_at: datetime = field(default_factory=utcnow)
    terminated: bool = False

    @property
    def timeout_ms(self) -> int:
        return int(self.timeout_seconds * 1000)


class OutcomeKind(str, Enum):
    """Terminal result of monitoring a session."""

    COMPLETE = "complete"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    RELEASED = "released"


class SessionOutcome(BaseModel):
    """Result of monitoring a session to a terminal state.

    Attributes:
        kind: Outcome category
        reason: Human-readable explanation
        elapsed_seconds: Time from spawn to the outcome
        final_lane: Task lane observed when the outcome was resolved
        exit_code: Process exit code, if the process had exited
    """

    kind: OutcomeKind
    reason: str
    elapsed_seconds: float = Field(default=0.0, ge=0.0)
    final_lane: Lane | None = None
    exit_code: int | None = None

    @property
    def success(self) -> bool:
        """Complete, with the task in review or done."""
        return self.kind == OutcomeKind.COMPLETE and self.final_lane in (Lane.REVIEW, Lane.DONE)


@dataclass
class ProcessObservation:
    """Snapshot of an agent process."""

    alive: bool
    exit_code: int | None = None


# ---------------------------------------------------------------------------
# Observers
# ---------------------------------------------------------------------------


class ProcessWatcher:
    """Observes agent processes through a ProcessLauncher."""

    def __init__(self, launcher: ProcessLauncher) -> None:
        self.launcher = launcher

    def observe(self, session: Session) -> ProcessObservation:
        alive = self.launcher.is_alive(session.handle)
        return ProcessObservation(alive=alive, exit_code=None if alive else session.handle.exit_code)


class LaneWatcher:
    """Observes task lanes through the task store.

    Transient store errors are logged and reported as an unknown lane (None).
    A task that no longer exists raises TaskNotFoundError.
    """

    def __init__(self, task_store: TaskStore) -> None:
        self.task_store = task_store

    async def observe(self, task_id: str) -> Lane | None:
        try:
            task = await self.task_store.get_task(task_id)
        except TaskNotFoundError:
            raise
        except TaskStoreError as e:
            logger.warning("lane_check_failed", task_id=task_id, error=str(e))
            return None
        return task.lane


class OutcomeResolver:
    """Combines observations into a terminal outcome, or None to keep waiting.

    Precedence: terminal lane, a lane back in queued (the task
    was taken away from this session), then explicit failure (runtime-reported
    failure or non-zero exit), then timeout.
    """

    def resolve(
        self,
        lane: Lane | None,
        process: ProcessObservation,
        external: ExternalSessionStatus | None,
        elapsed_seconds: float,
        timeout_seconds: float,
    ) -> SessionOutcome | None:
        exit_code = None if process.alive else process.exit_code

        if lane is not None and lane in TERMINAL_LANES:
            return SessionOutcome(
                kind=OutcomeKind.COMPLETE,
                reason=f"task moved to {lane.value}",
                elapsed_seconds=elapsed_seconds,
                final_lane=lane,
                exit_code=exit_code,
            )

        if lane == Lane.QUEUED:
            return SessionOutcome(
                kind=OutcomeKind.RELEASED,
                reason="task returned to queued while the session was running",
                elapsed_seconds=elapsed_seconds,
                final_lane=lane,
                exit_code=exit_code,
            )

        if external is not None and external.is_failure:
            return SessionOutcome(
                kind=OutcomeKind.FAILED,
                reason=f"session reported {external.value}",
                elapsed_seconds=elapsed_seconds,
                final_lane=lane,
                exit_code=exit_code,
            )

        if exit_code is not None and exit_code != 0:
            return SessionOutcome(
                kind=OutcomeKind.FAILED,
                reason=f"agent process exited with code {exit_code}",
                elapsed_seconds=elapsed_seconds,
                final_lane=lane,
                exit_code=exit_code,
            )

        if elapsed_seconds >= timeout_seconds:
            return SessionOutcome(
                kind=OutcomeKind.TIMEOUT,
                reason=(
                    f"session timed out after {elapsed_seconds:.1f}s "
                    f"(limit {timeout_seconds:.1f}s)"
                ),
                elapsed_seconds=elapsed_seconds,
                final_lane=lane,
                exit_code=exit_code,
            )

        return None


# ---------------------------------------------------------------------------
# Supervisor
# ---------------------------------------------------------------------------


class SessionSupervisor:
    """Spawns, monitors and terminates agent sessions for one slot.

    Attributes:
        slot: Slot this supervisor works for
        config: Session configuration (cadence, timeouts, directories)
    """

    KILL_POLL_SECONDS = 0.05

    def __init__(
        self,
        slot: str,
        config: SessionConfig,
        launcher: ProcessLauncher,
        task_store: TaskStore,
        payload_builder: PayloadBuilder,
        registry: SessionRegistry | None = None,
        status_source: SessionStatusSource | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self.slot = slot
        self.config = config
        self.launcher = launcher
        self.payload_builder = payload_builder
        self.registry = registry
        self.status_source = status_source
        self.process_watcher = ProcessWatcher(launcher)
        self.lane_watcher = LaneWatcher(task_store)
        self.resolver = OutcomeResolver()
        self._clock = clock
        self._logger = logger.bind(component="SessionSupervisor", slot=slot)

    def reconfigure(self, config: SessionConfig) -> None:
        """Apply new session settings to sessions spawned from now on.

        The monitor cadence changes immediately; timeouts of running sessions
        are kept.
        """
        self.config = config
        self._logger.info(
            "supervisor_reconfigured",
            monitor_interval=config.monitor_interval_seconds,
            default_timeout=config.default_timeout_seconds,
        )

    def resolve_timeout(self, task: Task) -> float:
        """Effective session timeout in seconds for ``task``.

        Uses the task's ``timeout_ms`` override when present, else the default,
        clamped to the hard ceiling and to at least one monitor interval.
        """
        if task.timeout_ms is not None:
            timeout = task.timeout_ms / 1000.0
        else:
            timeout = self.config.default_timeout_seconds
        timeout = min(timeout, self.config.max_timeout_seconds)
        return max(timeout, self.config.monitor_interval_seconds)

    def elapsed(self, session: Session) -> float:
        return max(0.0, self._clock() - session.started_monotonic)

    # -- spawn ---------------------------------------------------------------

    async def spawn(self, task: Task) -> Session:
        """Start an agent session for ``task``.

        Args:
            task: Task to execute

        Returns:
            The running Session

        Raises:
            SpawnError: If the payload cannot be built or the process
                cannot be created
        """
        session_id = make_session_id(self.slot, task.id)
        try:
            payload = self.payload_builder.build(task, self.slot)
        except Exception as e:
            raise SpawnError(session_id, f"cannot build payload: {e}") from e

        cwd = Path(task.working_dir) if task.working_dir else self.config.working_dir
        handle = await self.launcher.spawn(
            label=session_id,
            payload=payload,
            cwd=cwd.expanduser(),
            log_dir=self.config.log_dir,
        )

        session = Session(
            session_id=session_id,
            slot=self.slot,
            task_id=task.id,
            handle=handle,
            timeout_seconds=self.resolve_timeout(task),
            started_monotonic=self._clock(),
        )

        if self.registry is not None:
            try:
                self.registry.register(
                    SessionRecord(
                        session_id=session_id,
                        slot=self.slot,
                        task_id=task.id,
                        pid=handle.pid,
                        spawned_at=session.spawned_at,
                    )
                )
            except OSError as e:
                self._logger.warning(
                    "session_registry_write_failed", session_id=session_id, error=str(e)
                )

        self._logger.info(
            "session_spawned",
            session_id=session_id,
            task_id=task.id,
            pid=handle.pid,
            timeout_seconds=session.timeout_seconds,
        )
        return session

    # -- monitor -------------------------------------------------------------

    async def check(self, session: Session) -> SessionOutcome | None:
        """Run one observation round and resolve it.

        Returns:
            The terminal outcome, or None while the session is still running
        """
        elapsed = self.elapsed(session)
        try:
            lane = await self.lane_watcher.observe(session.task_id)
        except TaskNotFoundError:
            return SessionOutcome(
                kind=OutcomeKind.FAILED,
                reason="task no longer exists in the task store",
                elapsed_seconds=elapsed,
            )

        process = self.process_watcher.observe(session)
        external = None
        if self.status_source is not None and not (lane and lane in TERMINAL_LANES):
            external = await self.status_source.get_status(session.session_id)

        if not process.alive and process.exit_code == 0:
            self._logger.debug(
                "session_process_exited_clean",
                session_id=session.session_id,
                lane=lane.value if lane else None,
            )

        return self.resolver.resolve(
            lane=lane,
            process=process,
            external=external,
            elapsed_seconds=elapsed,
            timeout_seconds=session.timeout_seconds,
        )

    async def monitor(
        self,
        session: Session,
        abort: CancellationToken,
        on_tick: TickCallback | None = None,
    ) -> SessionOutcome:
        """Wait for ``session`` to reach a terminal outcome.

        Polls every monitor interval, with the last sleep clamped to the time
        remaining before the timeout, so a hung session resolves to TIMEOUT no
        later than one interval after its deadline.

        Args:
            session: Session to watch
            abort: Token that ends monitoring with a CANCELLED outcome
            on_tick: Awaited after each non-terminal check

        Returns:
            The terminal SessionOutcome
        """
        log = self._logger.bind(session_id=session.session_id, task_id=session.task_id)
        while True:
            if abort.cancelled:
                return self._cancelled(session, abort)

            outcome = await self.check(session)
            if outcome is not None:
                log.info(
                    "session_outcome",
                    outcome=outcome.kind.value,
                    reason=outcome.reason,
                    elapsed_seconds=round(outcome.elapsed_seconds, 1),
                    final_lane=outcome.final_lane.value if outcome.final_lane else None,
                    exit_code=outcome.exit_code,
                )
                return outcome

            if on_tick is not None:
                await on_tick(session)

            remaining = session.timeout_seconds - self.elapsed(session)
            delay = max(0.0, min(self.config.monitor_interval_seconds, remaining))
            if not await abort.sleep(delay):
                return self._cancelled(session, abort)

    def _cancelled(self, session: Session, abort: CancellationToken) -> SessionOutcome:
        process = self.process_watcher.observe(session)
        self._logger.info(
            "session_monitor_cancelled",
            session_id=session.session_id,
            reason=abort.reason,
        )
        return SessionOutcome(
            kind=OutcomeKind.CANCELLED,
            reason=abort.reason or "monitoring cancelled",
            elapsed_seconds=self.elapsed(session),
            exit_code=process.exit_code,
        )

    # -- terminate -----------------------------------------------------------

    async def _wait_exit(self, handle: ProcessHandle, timeout: float) -> bool:
        if handle.process is not None:
            try:
                await asyncio.wait_for(handle.process.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                return False
            return not self.launcher.is_alive(handle)

        deadline = time.monotonic() + timeout
        while self.launcher.is_alive(handle):
            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(self.KILL_POLL_SECONDS)
        return True

    async def _stop_process(self, handle: ProcessHandle) -> bool:
        """SIGTERM the group, wait the grace window, then SIGKILL."""
        if not self.launcher.is_alive(handle):
            return False
        await self.launcher.signal(handle, SignalKind.TERMINATE)
        if await self._wait_exit(handle, self.config.kill_grace_seconds):
            return True
        self._logger.warning("session_kill_escalated", label=handle.label, pid=handle.pid)
        await self.launcher.signal(handle, SignalKind.KILL)
        await self._wait_exit(handle, self.config.kill_grace_seconds)
        return True

    async def terminate(self, session: Session) -> bool:
        """Terminate a session's process group. Idempotent.

        Returns:
            True if a live process was signalled, False if the session was
            already terminated or its process had exited
        """
        if session.terminated:
            return False
        session.terminated = True
        try:
            signalled = await self._stop_process(session.handle)
        finally:
            if self.registry is not None:
                self.registry.unregister(session.session_id)

        self._logger.info(
            "session_terminated",
            session_id=session.session_id,
            signalled=signalled,
            exit_code=session.handle.exit_code,
        )
        return signalled

    async def reap_slot(self, slot: str | None = None) -> list[str]:
        """Kill and forget every registered session of a slot.

        A live pid is only signalled when the launcher confirms it still
        belongs to the recorded session; a reused pid is dropped untouched.

        Args:
            slot: Slot to reap; defaults to this supervisor's slot

        Returns:
            Ids of the sessions whose processes were still alive and killed
        """
        if self.registry is None:
            return []
        slot = slot or self.slot
        killed: list[str] = []
        for record in self.registry.for_slot(slot):
            handle = ProcessHandle(pid=record.pid, label=record.session_id)
            if self.launcher.is_alive(handle) and not self.launcher.owns(handle, record.spawned_at):
                self._logger.warning(
                    "stale_session_pid_skipped",
                    session_id=record.session_id,
                    task_id=record.task_id,
                    pid=record.pid,
                )
            elif await self._stop_process(handle):
                killed.append(record.session_id)
                self._logger.warning(
                    "orphan_session_reaped",
                    session_id=record.session_id,
                    task_id=record.task_id,
                    pid=record.pid,
                )
            self.registry.unregister(record.session_id)
        return killed
