"""Per-slot worker loop.

A worker owns one slot. It polls the task store for queued tasks owned by the
slot, hands the chosen task to the session supervisor, and records the result
back on the task. Its heartbeat tells the rest of the system what it is doing:

    idle ──pickup──▶ working ──complete──▶ idle
      └──────────────┴──stop / fatal error──▶ offline

Ordering rules on pickup: the session is spawned first, then the working
heartbeat is written, then the task lane moves to development. A spawn
failure therefore never leaves a working heartbeat behind, and a crash after
the heartbeat write is visible to crash recovery and the watchdog.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Iterable

import structlog

from slotkeeper.config import SlotkeeperConfig
from slotkeeper.errors import (
    HeartbeatStoreError,
    InvalidSlotError,
    SpawnError,
    TaskNotFoundError,
    TaskStoreError,
)
from slotkeeper.logging import bind_worker_context, set_correlation_id
from slotkeeper.models.heartbeat import OfflineReason, WorkerHeartbeat, WorkerStatus, utcnow
from slotkeeper.models.task import TERMINAL_LANES, Lane, Task, TaskUpdate
from slotkeeper.orchestrator.recovery import CrashRecovery
from slotkeeper.orchestrator.scheduler import CancellationToken, PollBackoff
from slotkeeper.orchestrator.state_machine import (
    idle_heartbeat,
    lane_update,
    offline_heartbeat,
    validate_lane_transition,
    working_heartbeat,
)
from slotkeeper.orchestrator.supervisor import OutcomeKind, Session, SessionOutcome, SessionSupervisor
from slotkeeper.stores.heartbeat_store import HeartbeatStore
from slotkeeper.stores.task_store import TaskStore

logger = structlog.get_logger(__name__)

SHUTDOWN_NOTE = "worker-shutdown"
FATAL_NOTE = "worker-fatal-error"


def select_next_task(tasks: Iterable[Task], slot: str) -> Task | None:
    """Pick the next task for a slot.

    Eligible tasks are queued and owned by the slot. They are ordered by
    priority (P0 first), then creation time (oldest first), then id, so the
    choice is deterministic for any input order.

    Args:
        tasks: Candidate tasks
        slot: Slot doing the selection

    Returns:
        The task to work on, or None if nothing is eligible
    """
    eligible = [t for t in tasks if t.owner == slot and t.lane == Lane.QUEUED]
    if not eligible:
        return None
    return min(eligible, key=lambda t: (t.priority_rank, t.created_sort_key, t.id))


@dataclass
class PendingCompletion:
    """A completion that could not be persisted yet."""

    task_id: str
    session_id: str
    outcome: SessionOutcome


class WorkerLoop:
    """Scheduling loop for one worker slot.

    Attributes:
        slot: Slot this worker runs
        config: Active configuration (replaced on reload)
        backoff: Poll cadence and store-error backoff
    """

    def __init__(
        self,
        slot: str,
        config: SlotkeeperConfig,
        task_store: TaskStore,
        heartbeat_store: HeartbeatStore,
        supervisor: SessionSupervisor,
        recovery: CrashRecovery | None = None,
    ) -> None:
        """Initialize the worker loop.

        Raises:
            InvalidSlotError: If ``slot`` is not one of the configured slots
        """
        if slot not in config.worker.slots:
            raise InvalidSlotError(slot, config.worker.slots)

        self.slot = slot
        self.config = config
        self.task_store = task_store
        self.heartbeat_store = heartbeat_store
        self.supervisor = supervisor
        self.recovery = recovery
        self.backoff = PollBackoff(
            base_seconds=config.worker.poll_interval_seconds,
            max_seconds=config.worker.max_backoff_seconds,
            jitter=config.worker.backoff_jitter,
        )

        self._stopping = CancellationToken()
        self._shutdown_abort = CancellationToken()
        self._grace_task: asyncio.Task[None] | None = None
        self._heartbeat: WorkerHeartbeat | None = None
        self._last_heartbeat_at = 0.0
        self._current: tuple[Task, Session] | None = None
        self._pending: PendingCompletion | None = None
        self._logger = logger.bind(component="WorkerLoop", slot=slot)

    # -- properties ----------------------------------------------------------

    @property
    def heartbeat(self) -> WorkerHeartbeat | None:
        """Last heartbeat this worker wrote."""
        return self._heartbeat

    @property
    def stopping(self) -> bool:
        return self._stopping.cancelled

    @property
    def current_session(self) -> Session | None:
        return self._current[1] if self._current else None

    # -- heartbeats ----------------------------------------------------------

    async def _write_heartbeat(self, heartbeat: WorkerHeartbeat) -> None:
        await self.heartbeat_store.write_heartbeat(heartbeat)
        self._heartbeat = heartbeat
        self._last_heartbeat_at = time.monotonic()

    def _heartbeat_interval(self) -> float:
        if self._heartbeat is not None and self._heartbeat.status == WorkerStatus.WORKING:
            return self.config.heartbeat.working_interval_seconds
        return self.config.heartbeat.idle_interval_seconds

    async def refresh_heartbeat(self, force: bool = False) -> None:
        """Rewrite the current heartbeat with a fresh timestamp when due.

        Write failures are logged; the next refresh tries again.
        """
        if self._heartbeat is None:
            return
        if not force and time.monotonic() - self._last_heartbeat_at < self._heartbeat_interval():
            return
        try:
            await self._write_heartbeat(self._heartbeat.model_copy(update={"last_update": utcnow()}))
        except HeartbeatStoreError as e:
            self._last_heartbeat_at = time.monotonic()
            self._logger.warning("heartbeat_refresh_failed", error=str(e))

    async def _on_monitor_tick(self, session: Session) -> None:
        await self.refresh_heartbeat()

    async def _wait(self, seconds: float) -> bool:
        """Cancellable wait that keeps the heartbeat fresh.

        Returns:
            True if the full delay elapsed, False if a stop was requested
        """
        deadline = time.monotonic() + seconds
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return True
            until_refresh = self._heartbeat_interval() - (time.monotonic() - self._last_heartbeat_at)
            if until_refresh <= 0:
                await self.refresh_heartbeat(force=True)
                continue
            if not await self._stopping.sleep(min(remaining, until_refresh)):
                return False

    # -- polling -------------------------------------------------------------

    async def poll_for_task(self) -> Task | None:
        """Fetch queued tasks for this slot and select the next one.

        Store errors are logged and counted by the backoff; they never
        propagate.
        """
        try:
            tasks = await self.task_store.list_tasks(owner=self.slot, lane=Lane.QUEUED)
        except TaskStoreError as e:
            self.backoff.record_failure()
            self._logger.warning(
                "task_poll_failed",
                error=str(e),
                consecutive_failures=self.backoff.failures,
                next_delay_seconds=round(self.backoff.current_delay, 1),
            )
            return None

        self.backoff.record_success()
        task = select_next_task(tasks, self.slot)
        if task is not None:
            self._logger.info(
                "task_selected",
                task_id=task.id,
                priority=task.priority,
                candidates=len(tasks),
            )
        return task

    # -- pickup --------------------------------------------------------------

    async def _block_after_spawn_failure(self, task: Task, error: SpawnError) -> None:
        update = lane_update(
            task,
            Lane.BLOCKED,
            note=f"spawn failed: {error.reason}",
            metadata={
                "error": str(error),
                "blockedBy": self.slot,
                "blockedAt": utcnow().isoformat(),
            },
        )
        try:
            await self.task_store.update_task(task.id, update)
        except TaskStoreError as e:
            # Still queued; the next poll retries the spawn
            self._logger.error("spawn_failure_not_recorded", task_id=task.id, error=str(e))

    async def pickup_task(self, task: Task) -> Session | None:
        """Claim a task: spawn its session, mark working, move to development.

        Returns:
            The running session, or None if the pickup did not happen. The
            task is blocked on spawn failure and otherwise left queued.
        """
        log = self._logger.bind(task_id=task.id)

        try:
            session = await self.supervisor.spawn(task)
        except SpawnError as e:
            log.error("task_spawn_failed", error=str(e))
            await self._block_after_spawn_failure(task, e)
            return None

        started_at = utcnow()
        try:
            await self._write_heartbeat(
                working_heartbeat(
                    self.slot,
                    task,
                    session.session_id,
                    previous=self._heartbeat,
                    task_started_at=started_at,
                )
            )
        except HeartbeatStoreError as e:
            log.error("working_heartbeat_failed", session_id=session.session_id, error=str(e))
            await self.supervisor.terminate(session)
            return None

        update = lane_update(
            task,
            Lane.DEVELOPMENT,
            note=f"picked up by {self.slot}",
            owner=self.slot,
            metadata={
                "sessionId": session.session_id,
                "startedAt": started_at.isoformat(),
                "worker": self.slot,
            },
        )
        try:
            await self.task_store.update_task(task.id, update)
        except TaskStoreError as e:
            log.warning("pickup_lane_update_failed", session_id=session.session_id, error=str(e))
            await self.supervisor.terminate(session)
            await self._reset_idle()
            return None

        self._current = (task, session)
        set_correlation_id(session.session_id)
        bind_worker_context(self.slot, task.id, session.session_id)
        log.info("task_picked_up", session_id=session.session_id, title=task.title)
        return session

    # -- completion ----------------------------------------------------------

    def _completion_metadata(self, session_id: str, outcome: SessionOutcome) -> dict[str, Any]:
        metadata: dict[str, Any] = {
            "completedAt": utcnow().isoformat(),
            "completedBy": self.slot,
            "sessionId": session_id,
            "success": outcome.success,
            "outcome": outcome.kind.value,
            "elapsedSeconds": round(outcome.elapsed_seconds, 1),
        }
        if not outcome.success:
            metadata["error"] = outcome.reason
        if outcome.exit_code is not None:
            metadata["exitCode"] = outcome.exit_code
        return metadata

    async def _persist_completion(
        self, task_id: str, session_id: str, outcome: SessionOutcome
    ) -> None:
        task = await self.task_store.get_task(task_id)
        if task.lane == Lane.QUEUED:
            # Requeued by the watchdog or recovery; the task is no longer ours
            self._logger.warning(
                "completion_dropped_task_requeued",
                task_id=task_id,
                outcome=outcome.kind.value,
            )
            return

        metadata = self._completion_metadata(session_id, outcome)
        if task.lane in TERMINAL_LANES:
            # Agent already moved it; patching metadata adds no history entry
            update = TaskUpdate(metadata=metadata)
        else:
            target = Lane.REVIEW if outcome.kind == OutcomeKind.COMPLETE else Lane.BLOCKED
            if validate_lane_transition(task.lane, target):
                update = lane_update(task, target, note=outcome.reason, metadata=metadata)
            else:
                self._logger.warning(
                    "completion_lane_skipped",
                    task_id=task_id,
                    lane=task.lane.value,
                    target=target.value,
                )
                update = TaskUpdate(metadata=metadata)

        await self.task_store.update_task(task_id, update)

    async def complete_task(
        self, task_id: str, session_id: str, outcome: SessionOutcome
    ) -> bool:
        """Record a session outcome on its task and return the slot to idle.

        The update is attempted ``task_store.update_attempts`` times with
        exponential backoff. If every attempt fails the heartbeat stays
        working and the completion is kept pending for the next cycle.

        Args:
            task_id: Task the session worked on
            session_id: Session that produced the outcome
            outcome: Terminal outcome of the session

        Returns:
            True if the completion was recorded (or the task no longer
            exists), False if it is still pending
        """
        log = self._logger.bind(task_id=task_id, session_id=session_id)
        attempts = self.config.task_store.update_attempts
        base_delay = self.config.task_store.update_backoff_seconds

        for attempt in range(attempts):
            try:
                await self._persist_completion(task_id, session_id, outcome)
                break
            except TaskNotFoundError:
                log.warning("completed_task_missing")
                break
            except TaskStoreError as e:
                if attempt < attempts - 1:
                    delay = base_delay * (2**attempt)
                    log.warning(
                        "completion_update_retry",
                        attempt=attempt + 1,
                        backoff_seconds=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)
                else:
                    log.error("completion_update_exhausted", attempts=attempts, error=str(e))
        else:
            self._pending = PendingCompletion(task_id, session_id, outcome)
            return False

        self._pending = None
        log.info(
            "task_completed",
            outcome=outcome.kind.value,
            success=outcome.success,
            elapsed_seconds=round(outcome.elapsed_seconds, 1),
        )
        await self._reset_idle()
        return True

    async def _reset_idle(self) -> None:
        self._current = None
        set_correlation_id(None)
        bind_worker_context(self.slot)
        try:
            await self._write_heartbeat(idle_heartbeat(self.slot, previous=self._heartbeat))
        except HeartbeatStoreError as e:
            # Stale working record; the next refresh retries with idle status
            self._logger.error("idle_heartbeat_failed", error=str(e))
            if self._heartbeat is not None:
                self._heartbeat = idle_heartbeat(self.slot, previous=self._heartbeat)

    async def _release_current(self, note: str) -> bool:
        """Terminate the in-flight session and put its task back in the queue.

        Only a task still in development is moved; one the agent already
        finished is left where it is.

        Returns:
            True if the slot no longer holds a task, False if the requeue
            could not be written
        """
        if self._current is None:
            return True
        task, session = self._current
        await self.supervisor.terminate(session)

        try:
            current = await self.task_store.get_task(task.id)
            if current.lane == Lane.DEVELOPMENT:
                await self.task_store.update_task(
                    task.id,
                    lane_update(
                        current,
                        Lane.QUEUED,
                        note=note,
                        metadata={
                            "requeuedBy": self.slot,
                            "requeuedAt": utcnow().isoformat(),
                            "abandonedSessionId": session.session_id,
                        },
                    ),
                )
                self._logger.info("task_requeued", task_id=task.id, note=note)
        except TaskNotFoundError:
            self._logger.warning("released_task_missing", task_id=task.id)
        except TaskStoreError as e:
            self._logger.error("task_requeue_failed", task_id=task.id, note=note, error=str(e))
            return False

        self._current = None
        self._pending = None
        return True

    # -- main loop -----------------------------------------------------------

    async def run_task(self, task: Task) -> SessionOutcome | None:
        """Pick up a task and supervise it to a terminal outcome.

        Returns:
            The session outcome, or None if the pickup failed
        """
        session = await self.pickup_task(task)
        if session is None:
            return None

        abort = self._shutdown_abort.child()
        try:
            outcome = await self.supervisor.monitor(session, abort, on_tick=self._on_monitor_tick)
        finally:
            abort.detach()
            await self.supervisor.terminate(session)

        if outcome.kind == OutcomeKind.CANCELLED:
            await self._release_current(SHUTDOWN_NOTE)
            return outcome

        if outcome.kind == OutcomeKind.RELEASED:
            # Someone else put the task back in the queue; leave it there
            self._logger.warning(
                "task_ownership_lost", task_id=task.id, session_id=session.session_id
            )
            await self._reset_idle()
            return outcome

        await self.complete_task(task.id, session.session_id, outcome)
        return outcome

    async def run_once(self) -> None:
        """One scheduling iteration: finish a pending completion, or poll and
        run a task, or wait for the next poll."""
        if self._pending is not None:
            pending = self._pending
            if not await self.complete_task(pending.task_id, pending.session_id, pending.outcome):
                self.backoff.record_failure()
                await self._wait(self.backoff.next_delay())
            return

        task = await self.poll_for_task()
        if task is None:
            await self._wait(self.backoff.next_delay())
            return

        outcome = await self.run_task(task)
        if outcome is None and not self.stopping:
            # Pickup failed; back off before retrying the store
            await self._wait(self.backoff.next_delay())

    async def start_up(self) -> None:
        """Run crash recovery and write the initial idle heartbeat."""
        restart_count = None
        previous = None
        if self.recovery is not None:
            report = await self.recovery.recover(self.slot)
            restart_count = report.restart_count
            previous = report.previous_heartbeat

        started = utcnow()
        heartbeat = idle_heartbeat(
            self.slot,
            previous=previous,
            started_at=started,
            restart_count=restart_count,
        )
        await self._write_heartbeat(heartbeat)
        self._logger.info(
            "worker_started",
            restart_count=heartbeat.metadata.restart_count,
            poll_interval=self.config.worker.poll_interval_seconds,
        )

    async def run(self) -> None:
        """Run the worker until stop is requested.

        Raises:
            Exception: Any unexpected error, after the in-flight task has been
                requeued and an offline heartbeat with reason fatal-error
                written. If the requeue fails the working heartbeat is kept
                so crash recovery or the watchdog reclaims the task.
        """
        bind_worker_context(self.slot)
        try:
            await self.start_up()
            while not self.stopping:
                await self.run_once()
        except Exception as e:
            self._logger.exception("worker_fatal_error", error=str(e))
            if await self._release_current(FATAL_NOTE):
                await self._go_offline(OfflineReason.FATAL_ERROR)
            raise
        finally:
            if self._grace_task is not None:
                self._grace_task.cancel()

        await self._shutdown()

    async def _shutdown(self) -> None:
        if self._pending is not None:
            pending = self._pending
            if not await self.complete_task(pending.task_id, pending.session_id, pending.outcome):
                # Leave the working heartbeat so recovery or the watchdog reclaims the task
                self._logger.error("completion_unpersisted_at_shutdown", task_id=pending.task_id)
                return
        if self._current is not None:
            self._logger.error("task_unreleased_at_shutdown", task_id=self._current[0].id)
            return
        await self._go_offline(OfflineReason.SHUTDOWN)
        self._logger.info("worker_stopped")

    async def _go_offline(self, reason: OfflineReason) -> None:
        if self._heartbeat is None:
            return
        try:
            await self._write_heartbeat(offline_heartbeat(self._heartbeat, reason))
        except HeartbeatStoreError as e:
            self._logger.error("offline_heartbeat_failed", reason=reason.value, error=str(e))

    # -- control -------------------------------------------------------------

    async def _abort_after_grace(self, grace: float) -> None:
        await asyncio.sleep(grace)
        self._logger.warning("shutdown_grace_expired", grace_seconds=grace)
        self._shutdown_abort.cancel(SHUTDOWN_NOTE)

    def request_stop(self) -> None:
        """Stop taking new tasks and shut down.

        An in-flight task gets ``worker.shutdown_grace_seconds`` to reach a
        terminal state; after that its monitor is aborted, the session
        terminated and the task requeued. Must be called from the event loop.
        """
        if self.stopping:
            return
        grace = self.config.worker.shutdown_grace_seconds
        self._logger.info(
            "worker_stop_requested",
            in_flight=self._current[0].id if self._current else None,
            grace_seconds=grace,
        )
        self._stopping.cancel("stop requested")
        if grace <= 0:
            self._shutdown_abort.cancel(SHUTDOWN_NOTE)
        else:
            self._grace_task = asyncio.get_running_loop().create_task(
                self._abort_after_grace(grace)
            )

    def reload(self, config: SlotkeeperConfig) -> None:
        """Apply new worker and session timings without dropping the current task.

        Raises:
            InvalidSlotError: If the new configuration no longer lists this slot
        """
        if self.slot not in config.worker.slots:
            raise InvalidSlotError(self.slot, config.worker.slots)
        self.config = config
        self.backoff.reconfigure(
            base_seconds=config.worker.poll_interval_seconds,
            max_seconds=config.worker.max_backoff_seconds,
            jitter=config.worker.backoff_jitter,
        )
        self.supervisor.reconfigure(config.session)
        self._logger.info(
            "worker_reloaded",
            poll_interval=config.worker.poll_interval_seconds,
            in_flight=self._current[0].id if self._current else None,
        )
