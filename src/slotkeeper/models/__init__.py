"""Domain models shared by the Slotkeeper stores and orchestrator."""

from slotkeeper.models.heartbeat import (
    HeartbeatMetadata,
    OfflineReason,
    WorkerHeartbeat,
    WorkerStatus,
    utcnow,
)
from slotkeeper.models.task import (
    TERMINAL_LANES,
    Lane,
    StatusHistoryEntry,
    Task,
    TaskUpdate,
    priority_rank,
)

__all__ = [
    "HeartbeatMetadata",
    "OfflineReason",
    "WorkerHeartbeat",
    "WorkerStatus",
    "utcnow",
    "TERMINAL_LANES",
    "Lane",
    "StatusHistoryEntry",
    "Task",
    "TaskUpdate",
    "priority_rank",
]
