"""Lane and worker status state machines for the Slotkeeper orchestrator.

This module holds the transition tables for the two state machines the core
drives: the task lane (persisted by the task store) and the worker status
(persisted as the slot heartbeat). It builds the store updates and heartbeat
records for each transition so every caller produces them the same way.

Only the lane transitions the orchestration core itself requests are listed.
Agents and humans move tasks through other transitions directly in the store.
"""

from __future__ import annotations

import os
from datetime import datetime
from typing import Any

import structlog

from slotkeeper import __version__
from slotkeeper.errors import InvalidTransitionError
from slotkeeper.models.heartbeat import (
    HeartbeatMetadata,
    OfflineReason,
    WorkerHeartbeat,
    WorkerStatus,
    utcnow,
)
from slotkeeper.models.task import Lane, Task, TaskUpdate

logger = structlog.get_logger(__name__)


# Authoritative lane transitions requested by the core
VALID_LANE_TRANSITIONS: dict[Lane, set[Lane]] = {
    # BLOCKED straight from queued only when the session cannot be spawned
    Lane.QUEUED: {Lane.DEVELOPMENT, Lane.BLOCKED},
    Lane.DEVELOPMENT: {Lane.REVIEW, Lane.BLOCKED, Lane.QUEUED},
    Lane.REVIEW: set(),
    Lane.BLOCKED: set(),
    Lane.DONE: set(),
}

VALID_STATUS_TRANSITIONS: dict[WorkerStatus, set[WorkerStatus]] = {
    WorkerStatus.IDLE: {WorkerStatus.IDLE, WorkerStatus.WORKING, WorkerStatus.OFFLINE},
    WorkerStatus.WORKING: {WorkerStatus.WORKING, WorkerStatus.IDLE, WorkerStatus.OFFLINE},
    WorkerStatus.OFFLINE: {WorkerStatus.IDLE, WorkerStatus.OFFLINE},
}


def validate_lane_transition(current: Lane, target: Lane) -> bool:
    """Validate if a lane transition may be requested by the core.

    Args:
        current: Current task lane.
        target: Target task lane.

    Returns:
        True if the transition is listed in VALID_LANE_TRANSITIONS.
    """
    return target in VALID_LANE_TRANSITIONS.get(current, set())


def validate_status_transition(current: WorkerStatus, target: WorkerStatus) -> bool:
    """Validate a worker status transition, including same-status refreshes."""
    return target in VALID_STATUS_TRANSITIONS.get(current, set())


def lane_update(
    task: Task,
    target: Lane,
    note: str,
    owner: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> TaskUpdate:
    """Build the store update for a lane transition.

    Args:
        task: Task as last read from the store.
        target: Lane to move the task to.
        note: Note recorded on the status history entry.
        owner: New owner, or None to leave unchanged.
        metadata: Keys merged into the task metadata.

    Returns:
        TaskUpdate carrying the lane change.

    Raises:
        InvalidTransitionError: If the transition is not valid.
    """
    if not validate_lane_transition(task.lane, target):
        raise InvalidTransitionError(task.lane.value, target.value, task.id)

    logger.info(
        "lane_transition",
        task_id=task.id,
        from_lane=task.lane.value,
        to_lane=target.value,
        note=note,
    )
    return TaskUpdate(lane=target, owner=owner, note=note, metadata=metadata)


def _metadata(
    previous: WorkerHeartbeat | None,
    **changes: Any,
) -> HeartbeatMetadata:
    base = previous.metadata if previous is not None else HeartbeatMetadata()
    fields = {
        "worker_pid": os.getpid(),
        "worker_version": __version__,
        "restart_count": base.restart_count,
        "task_started_at": None,
        "offline_reason": None,
        "abandoned_task": None,
        "abandoned_session": None,
    }
    fields.update(changes)
    return HeartbeatMetadata(**fields)


def _check_status(previous: WorkerHeartbeat | None, target: WorkerStatus, slot: str) -> None:
    if previous is not None and not validate_status_transition(previous.status, target):
        raise InvalidTransitionError(previous.status.value, target.value, slot)


def idle_heartbeat(
    slot: str,
    previous: WorkerHeartbeat | None = None,
    started_at: datetime | None = None,
    restart_count: int | None = None,
) -> WorkerHeartbeat:
    """Build an idle heartbeat for a slot.

    Args:
        slot: Worker slot name.
        previous: Heartbeat being replaced, used to carry the restart count.
        started_at: Worker start time; defaults to the previous one or now.
        restart_count: Explicit restart count, overriding the carried one.
    """
    _check_status(previous, WorkerStatus.IDLE, slot)
    changes: dict[str, Any] = {}
    if restart_count is not None:
        changes["restart_count"] = restart_count
    return WorkerHeartbeat(
        slot=slot,
        status=WorkerStatus.IDLE,
        started_at=started_at or (previous.started_at if previous else utcnow()),
        metadata=_metadata(previous, **changes),
    )


def working_heartbeat(
    slot: str,
    task: Task,
    session_id: str,
    previous: WorkerHeartbeat | None = None,
    task_started_at: datetime | None = None,
) -> WorkerHeartbeat:
    """Build a working heartbeat binding a slot to a task and session.

    Args:
        slot: Worker slot name.
        task: Task being worked on.
        session_id: Id of the supervised session.
        previous: Heartbeat being replaced.
        task_started_at: When the task was picked up; defaults to the value
            already carried by a working ``previous`` heartbeat, else now.
    """
    _check_status(previous, WorkerStatus.WORKING, slot)
    if task_started_at is None:
        carried = previous.metadata.task_started_at if previous is not None else None
        task_started_at = carried or utcnow()
    return WorkerHeartbeat(
        slot=slot,
        status=WorkerStatus.WORKING,
        task=task.id,
        task_title=task.title or None,
        session_id=session_id,
        started_at=previous.started_at if previous else utcnow(),
        metadata=_metadata(previous, task_started_at=task_started_at),
    )


def offline_heartbeat(
    previous: WorkerHeartbeat,
    reason: OfflineReason,
    keep_writer: bool = True,
) -> WorkerHeartbeat:
    """Build an offline heartbeat from the last known one.

    Any task and session held by ``previous`` move into the ``abandoned_*``
    metadata fields so the record stays valid and the history stays readable.

    Args:
        previous: Last heartbeat written for the slot.
        reason: Why the slot is going offline.
        keep_writer: When False (watchdog), the pid and version of the
            process that wrote ``previous`` are preserved instead of being
            replaced with the caller's.
    """
    _check_status(previous, WorkerStatus.OFFLINE, previous.slot)
    changes: dict[str, Any] = {
        "offline_reason": reason,
        "abandoned_task": previous.task or previous.metadata.abandoned_task,
        "abandoned_session": previous.session_id or previous.metadata.abandoned_session,
    }
    if not keep_writer:
        changes["worker_pid"] = previous.metadata.worker_pid
        changes["worker_version"] = previous.metadata.worker_version
    return WorkerHeartbeat(
        slot=previous.slot,
        status=WorkerStatus.OFFLINE,
        started_at=previous.started_at,
        metadata=_metadata(previous, **changes),
    )
