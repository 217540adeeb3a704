"""Exception hierarchy for Slotkeeper.

Every error raised by the orchestration core derives from SlotkeeperError so
callers at the process boundary (CLI, signal handlers) can catch one type.
Store errors are transient by definition and are retried by the worker loop;
the remaining errors describe a single task or slot and are recorded on it.
"""

from __future__ import annotations


class SlotkeeperError(Exception):
    """Base class for all Slotkeeper errors."""


class TaskStoreError(SlotkeeperError):
    """Raised when the task store cannot be read or written.

    Attributes:
        status_code: HTTP status code returned by the store, if any.
    """

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class TaskNotFoundError(TaskStoreError):
    """Raised when the task store has no task with the requested id."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task {task_id} not found", status_code=404)


class HeartbeatStoreError(SlotkeeperError):
    """Raised when a heartbeat record cannot be read or written."""


class SpawnError(SlotkeeperError):
    """Raised when the external agent process could not be created.

    Attributes:
        label: Session label the spawn was attempted for.
    """

    def __init__(self, label: str, reason: str):
        self.label = label
        self.reason = reason
        super().__init__(f"Failed to spawn session {label}: {reason}")


class InvalidSlotError(SlotkeeperError):
    """Raised when a worker is started for a slot that is not configured."""

    def __init__(self, slot: str, valid_slots: list[str]):
        self.slot = slot
        self.valid_slots = valid_slots
        super().__init__(f"Invalid slot: {slot}. Must be one of: {', '.join(valid_slots)}")


class InvalidTransitionError(SlotkeeperError):
    """Raised when an invalid lane or worker status transition is attempted.

    Attributes:
        current: The current lane or status value.
        target: The attempted target value.
        subject: Task id or slot name the transition was attempted for.
    """

    def __init__(self, current: str, target: str, subject: str | None = None):
        self.current = current
        self.target = target
        self.subject = subject
        msg = f"Invalid transition from {current} to {target}"
        if subject:
            msg += f" for {subject}"
        super().__init__(msg)
