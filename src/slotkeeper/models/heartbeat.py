"""Worker heartbeat model.

A heartbeat is the per-slot liveness and status record written by the slot's
own worker loop and read by the watchdog. It is keyed by slot, a stable
logical identity that survives worker process restarts.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class WorkerStatus(str, Enum):
    """Worker slot status.

    State transitions:
        IDLE ⇄ WORKING
        IDLE/WORKING → OFFLINE (shutdown, fatal error, or watchdog)
        OFFLINE → IDLE (restart after crash recovery)
    """

    IDLE = "idle"
    WORKING = "working"
    OFFLINE = "offline"


class OfflineReason(str, Enum):
    """Why a heartbeat was moved to offline."""

    STALE_HEARTBEAT = "stale-heartbeat"
    SHUTDOWN = "shutdown"
    FATAL_ERROR = "fatal-error"


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class _HeartbeatModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class HeartbeatMetadata(_HeartbeatModel):
    """Process-level details attached to a heartbeat.

    Attributes:
        worker_pid: PID of the worker process that wrote the heartbeat
        worker_version: Slotkeeper version of that process
        restart_count: Number of crash recoveries this slot has performed
        task_started_at: When the current task was picked up
        offline_reason: Why the slot is offline, when it is
        abandoned_task: Task the slot held when it was marked offline
        abandoned_session: Session the slot held when it was marked offline
    """

    worker_pid: int | None = None
    worker_version: str | None = None
    restart_count: int = Field(default=0, ge=0)
    task_started_at: datetime | None = None
    offline_reason: OfflineReason | None = None
    abandoned_task: str | None = None
    abandoned_session: str | None = None


class WorkerHeartbeat(_HeartbeatModel):
    """Liveness and status record for one worker slot.

    Invariant: ``status == WORKING`` if and only if both ``task`` and
    ``session_id`` are set. The validator rejects any other combination, so an
    inconsistent heartbeat can never be built or persisted.

    Attributes:
        slot: Worker slot name
        status: Current worker status
        task: Id of the task being worked on
        task_title: Title of that task, for display
        session_id: Id of the supervised agent session
        last_update: When this record was last written
        started_at: When the worker process last (re)initialised
        metadata: Process-level details
    """

    slot: str
    status: WorkerStatus
    task: str | None = None
    task_title: str | None = None
    session_id: str | None = None
    last_update: datetime = Field(default_factory=utcnow)
    started_at: datetime = Field(default_factory=utcnow)
    metadata: HeartbeatMetadata = Field(default_factory=HeartbeatMetadata)

    @model_validator(mode="after")
    def check_working_invariant(self) -> WorkerHeartbeat:
        """Enforce working ⇔ (task and session_id present)."""
        if self.status == WorkerStatus.WORKING:
            if self.task is None or self.session_id is None:
                raise ValueError(
                    f"Heartbeat for {self.slot} is working but task or session_id is missing"
                )
        elif self.task is not None or self.session_id is not None:
            raise ValueError(
                f"Heartbeat for {self.slot} is {self.status.value} but still holds "
                f"task={self.task} session_id={self.session_id}"
            )
        return self

    def age_seconds(self, now: datetime | None = None) -> float:
        """Seconds elapsed since this heartbeat was last written."""
        now = now or utcnow()
        last = self.last_update
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        return max(0.0, (now - last).total_seconds())

    def to_json_dict(self) -> dict:
        """Serialise with camelCase keys for storage."""
        return self.model_dump(mode="json", by_alias=True)
