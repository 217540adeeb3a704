"""Shared pytest fixtures for Slotkeeper tests.

Provides in-memory fakes for the task store, heartbeat store, process launcher
and payload builder, plus a configuration tuned for fast test loops. The fakes
honour the same contracts as the production adapters:

- FakeTaskStore appends exactly one status history entry per lane change.
- MemoryHeartbeatStore stores whole validated records keyed by slot.
- FakeLauncher tracks process liveness by session label and exits processes
  when signalled, unless told to ignore SIGTERM.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

import pytest

from slotkeeper.agents.process import ProcessHandle, SignalKind
from slotkeeper.agents.registry import SessionRegistry
from slotkeeper.config import (
    HeartbeatConfig,
    SessionConfig,
    SlotkeeperConfig,
    TaskStoreConfig,
    WatchdogConfig,
    WorkerConfig,
)
from slotkeeper.errors import HeartbeatStoreError, SpawnError, TaskNotFoundError, TaskStoreError
from slotkeeper.models.heartbeat import WorkerHeartbeat, utcnow
from slotkeeper.models.task import Lane, StatusHistoryEntry, Task, TaskUpdate
from slotkeeper.orchestrator.supervisor import SessionSupervisor

SLOTS = ["pm", "architect", "dev-1", "dev-2", "qa"]

BASE_TIME = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeTaskStore:
    """In-memory TaskStore.

    Attributes:
        tasks: Stored tasks keyed by id
        updates: Every successful update, in order
        fail_list: Number of upcoming list_tasks calls that fail
        fail_get: Number of upcoming get_task calls that fail
        fail_update: Number of upcoming update_task calls that fail
    """

    def __init__(self, tasks: list[Task] | None = None) -> None:
        self.tasks: dict[str, Task] = {t.id: t for t in tasks or []}
        self.updates: list[tuple[str, TaskUpdate]] = []
        self.fail_list = 0
        self.fail_get = 0
        self.fail_update = 0
        self.list_calls = 0

    def add(self, task: Task) -> None:
        self.tasks[task.id] = task

    def move(self, task_id: str, lane: Lane, note: str = "agent") -> None:
        """Move a task the way an agent would, directly in the store."""
        self._apply(task_id, TaskUpdate(lane=lane, note=note))

    def lane_of(self, task_id: str) -> Lane:
        return self.tasks[task_id].lane

    def _apply(self, task_id: str, update: TaskUpdate) -> Task:
        task = self.tasks[task_id]
        changes: dict[str, Any] = {"updated_at": utcnow()}
        if update.lane is not None and update.lane != task.lane:
            entry = StatusHistoryEntry(
                at=utcnow(), from_lane=task.lane, to=update.lane, note=update.note
            )
            changes["lane"] = update.lane
            changes["status_history"] = [*task.status_history, entry]
        if update.owner is not None:
            changes["owner"] = update.owner
        if update.metadata:
            changes["metadata"] = {**task.metadata, **update.metadata}
        self.tasks[task_id] = task.model_copy(update=changes)
        return self.tasks[task_id].model_copy(deep=True)

    async def list_tasks(self, owner: str | None = None, lane: Lane | None = None) -> list[Task]:
        self.list_calls += 1
        if self.fail_list:
            self.fail_list -= 1
            raise TaskStoreError("task store unavailable", status_code=503)
        return [
            t.model_copy(deep=True)
            for t in self.tasks.values()
            if (owner is None or t.owner == owner) and (lane is None or t.lane == lane)
        ]

    async def get_task(self, task_id: str) -> Task:
        if self.fail_get:
            self.fail_get -= 1
            raise TaskStoreError("task store unavailable", status_code=503)
        if task_id not in self.tasks:
            raise TaskNotFoundError(task_id)
        return self.tasks[task_id].model_copy(deep=True)

    async def update_task(self, task_id: str, update: TaskUpdate) -> Task:
        if self.fail_update:
            self.fail_update -= 1
            raise TaskStoreError("task store unavailable", status_code=503)
        if task_id not in self.tasks:
            raise TaskNotFoundError(task_id)
        self.updates.append((task_id, update))
        return self._apply(task_id, update)


class MemoryHeartbeatStore:
    """In-memory HeartbeatStore recording every write."""

    def __init__(self) -> None:
        self.records: dict[str, WorkerHeartbeat] = {}
        self.writes: list[WorkerHeartbeat] = []
        self.fail_write = 0
        self.fail_read = 0

    async def read_heartbeat(self, slot: str) -> WorkerHeartbeat | None:
        if self.fail_read:
            self.fail_read -= 1
            raise HeartbeatStoreError("heartbeat store unavailable")
        return self.records.get(slot)

    async def write_heartbeat(self, heartbeat: WorkerHeartbeat) -> None:
        if self.fail_write:
            self.fail_write -= 1
            raise HeartbeatStoreError("heartbeat store unavailable")
        self.records[heartbeat.slot] = heartbeat
        self.writes.append(heartbeat)

    async def list_heartbeats(self) -> list[WorkerHeartbeat]:
        return [self.records[slot] for slot in sorted(self.records)]

    def statuses(self, slot: str) -> list[str]:
        """Status values written for ``slot``, collapsing consecutive repeats."""
        result: list[str] = []
        for hb in self.writes:
            if hb.slot == slot and (not result or result[-1] != hb.status.value):
                result.append(hb.status.value)
        return result


class FakeLauncher:
    """ProcessLauncher simulating agent processes by session label.

    Attributes:
        running: Labels of processes that are alive
        exit_codes: Exit codes of processes that have exited
        payloads: Payload each label was spawned with
        signals: Signals sent, as (label, kind)
        spawn_error: When set, spawn() raises SpawnError with this reason
        ignore_terminate: When True, SIGTERM does not stop the process
        on_spawn: Called with each new handle after it is created
        reused_pids: Labels whose recorded pid now belongs to another process
    """

    def __init__(self) -> None:
        self.running: set[str] = set()
        self.exit_codes: dict[str, int] = {}
        self.payloads: dict[str, str] = {}
        self.cwds: dict[str, Path] = {}
        self.signals: list[tuple[str, SignalKind]] = []
        self.spawn_error: str | None = None
        self.ignore_terminate = False
        self.on_spawn: Callable[[ProcessHandle], None] | None = None
        self.reused_pids: set[str] = set()
        self._next_pid = 40000

    async def spawn(self, label: str, payload: str, cwd: Path, log_dir: Path) -> ProcessHandle:
        if self.spawn_error is not None:
            raise SpawnError(label, self.spawn_error)
        self._next_pid += 1
        handle = ProcessHandle(pid=self._next_pid, label=label)
        self.running.add(label)
        self.payloads[label] = payload
        self.cwds[label] = cwd
        if self.on_spawn is not None:
            self.on_spawn(handle)
        return handle

    def exit(self, label: str, code: int = 0) -> None:
        """Simulate the process for ``label`` exiting."""
        self.running.discard(label)
        self.exit_codes[label] = code

    def start_orphan(self, label: str) -> None:
        """Simulate a process left running by a previous worker."""
        self.running.add(label)

    async def signal(self, handle: ProcessHandle, kind: SignalKind) -> bool:
        if not self.is_alive(handle):
            return False
        self.signals.append((handle.label, kind))
        if kind == SignalKind.KILL:
            self.exit(handle.label, -9)
        elif not self.ignore_terminate:
            self.exit(handle.label, -15)
        return True

    def is_alive(self, handle: ProcessHandle) -> bool:
        if handle.exit_code is not None:
            return False
        if handle.label in self.running:
            return True
        handle.exit_code = self.exit_codes.get(handle.label)
        return False

    def owns(self, handle: ProcessHandle, spawned_at: datetime) -> bool:
        return handle.label not in self.reused_pids


class StaticPayloadBuilder:
    """PayloadBuilder returning a fixed instruction line."""

    def __init__(self, error: Exception | None = None) -> None:
        self.error = error

    def build(self, task: Task, slot: str) -> str:
        if self.error is not None:
            raise self.error
        return f"{slot}: work on {task.id}"


class ManualClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def make_task() -> Callable[..., Task]:
    """Factory for tasks with sensible defaults.

    Returns:
        Callable accepting Task field overrides
    """

    def factory(task_id: str = "T-1", **overrides: Any) -> Task:
        fields: dict[str, Any] = {
            "id": task_id,
            "title": f"Task {task_id}",
            "lane": Lane.QUEUED,
            "priority": "P2",
            "owner": "dev-1",
            "created_at": BASE_TIME,
        }
        fields.update(overrides)
        return Task(**fields)

    return factory


@pytest.fixture
def task_store() -> FakeTaskStore:
    return FakeTaskStore()


@pytest.fixture
def heartbeat_store() -> MemoryHeartbeatStore:
    return MemoryHeartbeatStore()


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def payload_builder() -> StaticPayloadBuilder:
    return StaticPayloadBuilder()


@pytest.fixture
def registry(tmp_path: Path) -> SessionRegistry:
    return SessionRegistry(tmp_path / "run")


@pytest.fixture
def config(tmp_path: Path) -> SlotkeeperConfig:
    """Configuration with millisecond-scale cadences for fast loops.

    Returns:
        SlotkeeperConfig rooted in the test's temporary directory
    """
    return SlotkeeperConfig(
        task_store=TaskStoreConfig(update_attempts=3, update_backoff_seconds=0),
        heartbeat=HeartbeatConfig(
            directory=tmp_path / "heartbeats",
            idle_interval_seconds=0.05,
            working_interval_seconds=0.05,
        ),
        worker=WorkerConfig(
            slots=list(SLOTS),
            poll_interval_seconds=0.01,
            max_backoff_seconds=0.08,
            backoff_jitter=0.0,
            shutdown_grace_seconds=0.0,
        ),
        session=SessionConfig(
            working_dir=tmp_path,
            log_dir=tmp_path / "logs",
            run_dir=tmp_path / "run",
            monitor_interval_seconds=0.01,
            default_timeout_seconds=5.0,
            max_timeout_seconds=10.0,
            kill_grace_seconds=0.05,
        ),
        watchdog=WatchdogConfig(check_interval_seconds=0.05, stale_threshold_seconds=1.0),
    )


@pytest.fixture
def make_supervisor(
    config: SlotkeeperConfig,
    launcher: FakeLauncher,
    task_store: FakeTaskStore,
    payload_builder: StaticPayloadBuilder,
    registry: SessionRegistry,
) -> Callable[..., SessionSupervisor]:
    """Factory for supervisors wired to the shared fakes.

    Returns:
        Callable accepting the slot and SessionSupervisor overrides
    """

    def factory(slot: str = "dev-1", **overrides: Any) -> SessionSupervisor:
        kwargs: dict[str, Any] = {
            "slot": slot,
            "config": config.session,
            "launcher": launcher,
            "task_store": task_store,
            "payload_builder": payload_builder,
            "registry": registry,
        }
        kwargs.update(overrides)
        return SessionSupervisor(**kwargs)

    return factory


@pytest.fixture
def manual_clock() -> ManualClock:
    return ManualClock()


def stale_time(seconds: float) -> datetime:
    """A timestamp ``seconds`` in the past."""
    return utcnow() - timedelta(seconds=seconds)


@pytest.fixture
def ago() -> Callable[[float], datetime]:
    """Factory for timestamps in the past, by age in seconds."""
    return stale_time
