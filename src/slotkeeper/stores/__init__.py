"""Stores for tasks and worker heartbeats."""

from slotkeeper.stores.heartbeat_store import (
    DatabaseHeartbeatStore,
    FileHeartbeatStore,
    HeartbeatStore,
    create_heartbeat_store,
)
from slotkeeper.stores.task_store import HttpTaskStore, TaskStore

__all__ = [
    "DatabaseHeartbeatStore",
    "FileHeartbeatStore",
    "HeartbeatStore",
    "create_heartbeat_store",
    "HttpTaskStore",
    "TaskStore",
]
