"""Heartbeat watchdog for Slotkeeper.

The watchdog runs in its own process and reclaims work from workers that
stopped heartbeating without a clean shutdown (killed, hung, or on a host that
went away) and were not restarted. Each cycle it:

1. Lists all heartbeats and picks the non-offline ones older than the
   staleness threshold.
2. Re-reads each candidate and skips it if the worker wrote in the meantime.
3. Writes the heartbeat as offline with reason ``stale-heartbeat``; the task
   and session move into the ``abandoned_*`` metadata fields.
4. Puts the abandoned task back in the queue if it is still in development.

The watchdog never signals OS processes; killing a lingering agent session is
left to the slot's next start (crash recovery).
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from enum import Enum
from typing import Callable

import structlog
from pydantic import BaseModel, Field

from slotkeeper.config import WatchdogConfig
from slotkeeper.errors import HeartbeatStoreError, TaskNotFoundError, TaskStoreError
from slotkeeper.models.heartbeat import OfflineReason, WorkerHeartbeat, WorkerStatus, utcnow
from slotkeeper.models.task import Lane
from slotkeeper.orchestrator.scheduler import CancellationToken
from slotkeeper.orchestrator.state_machine import lane_update, offline_heartbeat
from slotkeeper.stores.heartbeat_store import HeartbeatStore
from slotkeeper.stores.task_store import TaskStore

logger = structlog.get_logger(__name__)

WATCHDOG_NOTE = "watchdog"

# Fleet health grading thresholds
HEALTH_OK_SECONDS = 60.0
HEALTH_WARN_SECONDS = 300.0


# ---------------------------------------------------------------------------
# Enums and Models
# ---------------------------------------------------------------------------


class WatchdogActionType(str, Enum):
    """Types of watchdog actions."""

    MARKED_OFFLINE = "marked_offline"
    TASK_REQUEUED = "task_requeued"
    TASK_LEFT_IN_PLACE = "task_left_in_place"
    SKIPPED_REFRESHED = "skipped_refreshed"
    FAILED = "failed"


class WatchdogAction(BaseModel):
    """Record of one action taken by the watchdog.

    Attributes:
        slot: Slot the action concerns
        action_type: Type of action taken
        task_id: Task involved, if any
        session_id: Session the slot held, if any
        age_seconds: Heartbeat age when the action was decided
        detail: Extra context (lane left in place, error text)
        timestamp: When the action was taken
    """

    slot: str
    action_type: WatchdogActionType
    task_id: str | None = None
    session_id: str | None = None
    age_seconds: float = 0.0
    detail: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)


class WatchdogReport(BaseModel):
    """Summary of one watchdog cycle.

    Attributes:
        checked: Number of heartbeats inspected
        stale_slots: Slots found stale in the listing
        offlined_slots: Slots actually written offline
        requeued_tasks: Tasks put back in the queue
        actions: Every action taken, in order
        errors: Store errors that interrupted part of the cycle
        started_at: When the cycle started
    """

    checked: int = 0
    stale_slots: list[str] = Field(default_factory=list)
    offlined_slots: list[str] = Field(default_factory=list)
    requeued_tasks: list[str] = Field(default_factory=list)
    actions: list[WatchdogAction] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)


class SlotHealth(str, Enum):
    """Health grade of a slot in the fleet summary."""

    OK = "ok"
    WARN = "warn"
    DOWN = "down"


class SlotDiagnosis(BaseModel):
    """Fleet summary line for one slot."""

    slot: str
    health: SlotHealth
    status: WorkerStatus | None = None
    age_seconds: float | None = None
    task: str | None = None
    session_id: str | None = None
    restart_count: int = 0
    note: str | None = None


def grade_heartbeat(heartbeat: WorkerHeartbeat, now: datetime | None = None) -> SlotHealth:
    """Grade a heartbeat: ok under a minute, warn under five, down otherwise.

    Offline heartbeats are always down.
    """
    if heartbeat.status == WorkerStatus.OFFLINE:
        return SlotHealth.DOWN
    age = heartbeat.age_seconds(now)
    if age < HEALTH_OK_SECONDS:
        return SlotHealth.OK
    if age < HEALTH_WARN_SECONDS:
        return SlotHealth.WARN
    return SlotHealth.DOWN


def diagnose(
    heartbeats: list[WorkerHeartbeat],
    slots: list[str] | None = None,
    now: datetime | None = None,
) -> list[SlotDiagnosis]:
    """Summarise fleet health, one entry per slot.

    Args:
        heartbeats: Heartbeats as listed from the store
        slots: Configured slots; those without a heartbeat are reported down
        now: Reference time, defaults to the current time

    Returns:
        Diagnoses ordered by configured slot order, then by slot name
    """
    now = now or utcnow()
    by_slot = {hb.slot: hb for hb in heartbeats}
    order = list(slots or [])
    order += sorted(s for s in by_slot if s not in order)

    result = []
    for slot in order:
        hb = by_slot.get(slot)
        if hb is None:
            result.append(SlotDiagnosis(slot=slot, health=SlotHealth.DOWN, note="no heartbeat"))
            continue
        result.append(
            SlotDiagnosis(
                slot=slot,
                health=grade_heartbeat(hb, now),
                status=hb.status,
                age_seconds=round(hb.age_seconds(now), 1),
                task=hb.task or hb.metadata.abandoned_task,
                session_id=hb.session_id,
                restart_count=hb.metadata.restart_count,
                note=hb.metadata.offline_reason.value if hb.metadata.offline_reason else None,
            )
        )
    return result


# ---------------------------------------------------------------------------
# Watchdog
# ---------------------------------------------------------------------------


class HeartbeatWatchdog:
    """Detects stale worker heartbeats and releases their tasks.

    Attributes:
        config: Watchdog configuration (cycle interval, staleness threshold)
    """

    def __init__(
        self,
        task_store: TaskStore,
        heartbeat_store: HeartbeatStore,
        config: WatchdogConfig,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.task_store = task_store
        self.heartbeat_store = heartbeat_store
        self.config = config
        self._clock = clock
        self._stop = CancellationToken()
        self._watchdog_task: asyncio.Task[None] | None = None
        self._logger = logger.bind(component="HeartbeatWatchdog")

    def is_stale(self, heartbeat: WorkerHeartbeat, now: datetime | None = None) -> bool:
        """Whether a heartbeat is non-offline and older than the threshold."""
        if heartbeat.status == WorkerStatus.OFFLINE:
            return False
        return heartbeat.age_seconds(now or self._clock()) > self.config.stale_threshold_seconds

    async def check_heartbeats(self) -> WatchdogReport:
        """Run one watchdog cycle.

        Returns:
            WatchdogReport of what was found and done
        """
        report = WatchdogReport(started_at=self._clock())
        try:
            heartbeats = await self.heartbeat_store.list_heartbeats()
        except HeartbeatStoreError as e:
            self._logger.error("watchdog_list_failed", error=str(e))
            report.errors.append(str(e))
            return report

        report.checked = len(heartbeats)
        now = self._clock()
        for heartbeat in heartbeats:
            if self.is_stale(heartbeat, now):
                report.stale_slots.append(heartbeat.slot)
                await self._release(heartbeat.slot, report)

        if report.stale_slots:
            self._logger.warning(
                "watchdog_cycle_complete",
                checked=report.checked,
                stale=report.stale_slots,
                requeued=report.requeued_tasks,
            )
        else:
            self._logger.debug("watchdog_cycle_complete", checked=report.checked)
        return report

    async def _release(self, slot: str, report: WatchdogReport) -> None:
        """Mark a stale slot offline and requeue its task."""
        try:
            current = await self.heartbeat_store.read_heartbeat(slot)
        except HeartbeatStoreError as e:
            report.errors.append(str(e))
            report.actions.append(
                WatchdogAction(slot=slot, action_type=WatchdogActionType.FAILED, detail=str(e))
            )
            return

        now = self._clock()
        if current is None or not self.is_stale(current, now):
            self._logger.info("stale_heartbeat_refreshed", slot=slot)
            report.actions.append(
                WatchdogAction(slot=slot, action_type=WatchdogActionType.SKIPPED_REFRESHED)
            )
            return

        age = current.age_seconds(now)
        try:
            await self.heartbeat_store.write_heartbeat(
                offline_heartbeat(current, OfflineReason.STALE_HEARTBEAT, keep_writer=False)
            )
        except HeartbeatStoreError as e:
            self._logger.error("stale_heartbeat_write_failed", slot=slot, error=str(e))
            report.errors.append(str(e))
            report.actions.append(
                WatchdogAction(slot=slot, action_type=WatchdogActionType.FAILED, detail=str(e))
            )
            return

        report.offlined_slots.append(slot)
        report.actions.append(
            WatchdogAction(
                slot=slot,
                action_type=WatchdogActionType.MARKED_OFFLINE,
                task_id=current.task,
                session_id=current.session_id,
                age_seconds=age,
            )
        )
        self._logger.warning(
            "worker_marked_offline",
            slot=slot,
            age_seconds=round(age, 1),
            task_id=current.task,
            session_id=current.session_id,
        )

        if current.task is not None:
            await self._requeue(current, age, report)

    async def _requeue(self, heartbeat: WorkerHeartbeat, age: float, report: WatchdogReport) -> None:
        task_id = heartbeat.task
        try:
            task = await self.task_store.get_task(task_id)
            if task.lane != Lane.DEVELOPMENT:
                report.actions.append(
                    WatchdogAction(
                        slot=heartbeat.slot,
                        action_type=WatchdogActionType.TASK_LEFT_IN_PLACE,
                        task_id=task_id,
                        detail=task.lane.value,
                    )
                )
                return
            await self.task_store.update_task(
                task_id,
                lane_update(
                    task,
                    Lane.QUEUED,
                    note=f"{WATCHDOG_NOTE}: {heartbeat.slot} heartbeat stale for {age:.0f}s",
                    metadata={
                        "watchdogRequeue": True,
                        "staleSlot": heartbeat.slot,
                        "abandonedSessionId": heartbeat.session_id,
                        "requeuedAt": self._clock().isoformat(),
                    },
                ),
            )
        except TaskNotFoundError:
            report.actions.append(
                WatchdogAction(
                    slot=heartbeat.slot,
                    action_type=WatchdogActionType.TASK_LEFT_IN_PLACE,
                    task_id=task_id,
                    detail="missing",
                )
            )
            return
        except TaskStoreError as e:
            # Heartbeat is offline now, so later cycles will not retry this task
            self._logger.error("watchdog_requeue_failed", task_id=task_id, error=str(e))
            report.errors.append(str(e))
            report.actions.append(
                WatchdogAction(
                    slot=heartbeat.slot,
                    action_type=WatchdogActionType.FAILED,
                    task_id=task_id,
                    detail=str(e),
                )
            )
            return

        report.requeued_tasks.append(task_id)
        report.actions.append(
            WatchdogAction(
                slot=heartbeat.slot,
                action_type=WatchdogActionType.TASK_REQUEUED,
                task_id=task_id,
                session_id=heartbeat.session_id,
                age_seconds=age,
            )
        )
        self._logger.warning("abandoned_task_requeued", task_id=task_id, slot=heartbeat.slot)

    # -- loop ----------------------------------------------------------------

    async def run(self) -> None:
        """Run watchdog cycles until stop() is called."""
        self._logger.info(
            "watchdog_started",
            check_interval=self.config.check_interval_seconds,
            stale_threshold=self.config.stale_threshold_seconds,
        )
        while not self._stop.cancelled:
            try:
                await self.check_heartbeats()
            except Exception as e:
                self._logger.error("watchdog_loop_error", error=str(e), exc_info=True)
            await self._stop.sleep(self.config.check_interval_seconds)
        self._logger.info("watchdog_stopped")

    async def start(self) -> None:
        """Start the watchdog loop as a background task. No-op if running."""
        if self._watchdog_task is not None and not self._watchdog_task.done():
            self._logger.warning("watchdog_already_running")
            return
        self._watchdog_task = asyncio.create_task(self.run())

    def request_stop(self) -> None:
        """Ask the loop to exit after the current cycle."""
        self._stop.cancel("stop requested")

    async def stop(self) -> None:
        """Stop the loop and wait for it to finish."""
        self.request_stop()
        if self._watchdog_task is not None:
            await self._watchdog_task
            self._watchdog_task = None
