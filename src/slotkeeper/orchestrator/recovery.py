"""Crash recovery for a worker slot.

Runs once when a worker starts, before it writes its first idle heartbeat.
If the previous worker of the same slot died mid-task, its last heartbeat is
still ``working``; recovery kills the session that worker left behind and
puts the task back in the queue so it is picked up again.

Components:
    - CrashRecovery: reads the last heartbeat, reaps the slot's registered
      sessions and requeues the abandoned task.
    - RecoveryReport: what was found and what was done.
"""

from __future__ import annotations

import asyncio
import time
from enum import Enum

import structlog
from pydantic import BaseModel, Field

from slotkeeper.config import TaskStoreConfig
from slotkeeper.errors import HeartbeatStoreError, TaskNotFoundError, TaskStoreError
from slotkeeper.models.heartbeat import WorkerHeartbeat, WorkerStatus, utcnow
from slotkeeper.models.task import Lane, Task, TaskUpdate
from slotkeeper.orchestrator.state_machine import lane_update
from slotkeeper.orchestrator.supervisor import SessionSupervisor
from slotkeeper.stores.heartbeat_store import HeartbeatStore
from slotkeeper.stores.task_store import TaskStore

logger = structlog.get_logger(__name__)

RECOVERY_NOTE = "crash-recovery"

# Lanes from which an abandoned task is put back in the queue
_REQUEUE_LANES = {Lane.DEVELOPMENT, Lane.QUEUED}


class RecoveryAction(str, Enum):
    """Actions taken during crash recovery."""

    SESSIONS_REAPED = "sessions_reaped"
    SESSION_KILLED = "session_killed"
    TASK_REQUEUED = "task_requeued"
    TASK_LEFT_TERMINAL = "task_left_terminal"
    TASK_MISSING = "task_missing"
    RESTART_COUNTED = "restart_counted"


class RecoveryReport(BaseModel):
    """Summary of a crash recovery run.

    Attributes:
        slot: Slot that was recovered.
        previous_status: Status of the last heartbeat, if one existed.
        previous_heartbeat: The last heartbeat itself.
        abandoned_task: Task held by the previous worker, if any.
        abandoned_session: Session held by the previous worker, if any.
        reaped_sessions: Registered sessions found alive and killed.
        session_killed: Whether the abandoned session was among them.
        task_requeued: Whether the abandoned task was put back in the queue.
        task_lane: Lane of the abandoned task after recovery.
        restart_count: Restart count to carry into the new heartbeat.
        actions: Actions taken, in order.
        started_at: ISO-8601 timestamp when recovery started.
        duration_seconds: Total recovery duration in seconds.
    """

    slot: str
    previous_status: WorkerStatus | None = None
    previous_heartbeat: WorkerHeartbeat | None = Field(default=None, exclude=True)
    abandoned_task: str | None = None
    abandoned_session: str | None = None
    reaped_sessions: list[str] = Field(default_factory=list)
    session_killed: bool = False
    task_requeued: bool = False
    task_lane: Lane | None = None
    restart_count: int = 0
    actions: list[RecoveryAction] = Field(default_factory=list)
    started_at: str = Field(default="")
    duration_seconds: float = Field(default=0.0)

    @property
    def crashed(self) -> bool:
        """Whether the previous worker died while working."""
        return self.previous_status == WorkerStatus.WORKING


class CrashRecovery:
    """Startup self-repair for one slot.

    Attributes:
        task_store: Store holding the abandoned task
        heartbeat_store: Store holding the previous heartbeat
        supervisor: Supervisor used to find and kill lingering sessions
        config: Retry settings for the requeue update
    """

    def __init__(
        self,
        task_store: TaskStore,
        heartbeat_store: HeartbeatStore,
        supervisor: SessionSupervisor,
        config: TaskStoreConfig | None = None,
    ) -> None:
        self.task_store = task_store
        self.heartbeat_store = heartbeat_store
        self.supervisor = supervisor
        self.config = config or TaskStoreConfig()
        self._logger = logger.bind(component="CrashRecovery")

    async def _read_previous(self, slot: str) -> WorkerHeartbeat | None:
        try:
            return await self.heartbeat_store.read_heartbeat(slot)
        except HeartbeatStoreError as e:
            self._logger.warning("previous_heartbeat_unreadable", slot=slot, error=str(e))
            return None

    def _requeue_update(self, task: Task, previous: WorkerHeartbeat) -> TaskUpdate:
        metadata = {
            "crashRecovery": True,
            "abandonedSessionId": previous.session_id,
            "recoveredBy": previous.slot,
            "recoveredAt": utcnow().isoformat(),
        }
        if task.lane == Lane.QUEUED:
            # Already queued, only annotate
            return TaskUpdate(metadata=metadata)
        return lane_update(
            task,
            Lane.QUEUED,
            note=f"{RECOVERY_NOTE}: worker {previous.slot} restarted mid-task",
            metadata=metadata,
        )

    async def _requeue(
        self, task_id: str, previous: WorkerHeartbeat, report: RecoveryReport
    ) -> None:
        """Put the abandoned task back in the queue, retrying store errors.

        Raises:
            TaskStoreError: If the store stays unavailable; the previous
                heartbeat is left untouched so the next start retries.
        """
        attempts = self.config.update_attempts

        for attempt in range(attempts):
            try:
                task = await self.task_store.get_task(task_id)
                report.task_lane = task.lane
                if task.lane not in _REQUEUE_LANES:
                    report.actions.append(RecoveryAction.TASK_LEFT_TERMINAL)
                    self._logger.info(
                        "abandoned_task_left_in_place",
                        task_id=task_id,
                        lane=task.lane.value,
                    )
                    return
                stored = await self.task_store.update_task(
                    task_id, self._requeue_update(task, previous)
                )
                report.task_lane = stored.lane
                report.task_requeued = True
                report.actions.append(RecoveryAction.TASK_REQUEUED)
                return
            except TaskNotFoundError:
                report.actions.append(RecoveryAction.TASK_MISSING)
                self._logger.warning("abandoned_task_missing", task_id=task_id)
                return
            except TaskStoreError as e:
                if attempt == attempts - 1:
                    self._logger.error(
                        "abandoned_task_requeue_failed", task_id=task_id, error=str(e)
                    )
                    raise
                delay = self.config.update_backoff_seconds * (2**attempt)
                self._logger.warning(
                    "abandoned_task_requeue_retry",
                    task_id=task_id,
                    attempt=attempt + 1,
                    backoff_seconds=delay,
                    error=str(e),
                )
                await asyncio.sleep(delay)

    async def recover(self, slot: str) -> RecoveryReport:
        """Repair the aftermath of an unclean exit of ``slot``.

        Args:
            slot: Slot being started

        Returns:
            RecoveryReport describing what was found and done

        Raises:
            TaskStoreError: If the abandoned task could not be requeued
        """
        start = time.monotonic()
        report = RecoveryReport(slot=slot, started_at=utcnow().isoformat())

        previous = await self._read_previous(slot)
        if previous is not None:
            report.previous_status = previous.status
            report.previous_heartbeat = previous
            report.restart_count = previous.metadata.restart_count

        report.reaped_sessions = await self.supervisor.reap_slot(slot)
        if report.reaped_sessions:
            report.actions.append(RecoveryAction.SESSIONS_REAPED)

        if previous is not None and previous.status == WorkerStatus.WORKING:
            report.abandoned_task = previous.task
            report.abandoned_session = previous.session_id
            report.session_killed = previous.session_id in report.reaped_sessions
            if report.session_killed:
                report.actions.append(RecoveryAction.SESSION_KILLED)

            self._logger.warning(
                "crash_detected",
                slot=slot,
                task_id=previous.task,
                session_id=previous.session_id,
                last_update=previous.last_update.isoformat(),
            )
            await self._requeue(previous.task, previous, report)
            report.restart_count += 1
            report.actions.append(RecoveryAction.RESTART_COUNTED)

        report.duration_seconds = time.monotonic() - start
        self._logger.info(
            "crash_recovery_complete",
            slot=slot,
            previous_status=report.previous_status.value if report.previous_status else None,
            reaped_sessions=len(report.reaped_sessions),
            task_requeued=report.task_requeued,
            restart_count=report.restart_count,
        )
        return report
