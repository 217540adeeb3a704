"""Pytest fixtures for E2E tests.

Whole slots are assembled from real components (worker loop, session
supervisor, crash recovery, watchdog) over the in-memory task store,
heartbeat store and launcher from the top-level conftest. The
``agent`` fixture plays the part of the external agent runtime.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable

import pytest

from slotkeeper.agents.process import ProcessHandle
from slotkeeper.models.task import Lane
from slotkeeper.orchestrator.recovery import CrashRecovery
from slotkeeper.orchestrator.worker import WorkerLoop


class AgentSimulator:
    """Drives spawned fake sessions the way agents would.

    Each spawn consumes the next behaviour scripted for its task:
    ``complete`` moves the task to review and exits 0, ``fail`` exits 1,
    ``hang`` does nothing. Unscripted spawns complete.

    Attributes:
        scripts: Remaining behaviours per task id
        spawned: Task id of every spawn, in order
        delay: Seconds before a scripted behaviour happens
    """

    COMPLETE = "complete"
    HANG = "hang"
    FAIL = "fail"

    def __init__(self, launcher, task_store, delay: float = 0.05) -> None:
        self.launcher = launcher
        self.task_store = task_store
        self.delay = delay
        self.scripts: dict[str, list[str]] = {}
        self.spawned: list[str] = []
        launcher.on_spawn = self._on_spawn

    def script(self, task_id: str, *behaviours: str) -> None:
        self.scripts[task_id] = list(behaviours)

    def _on_spawn(self, handle: ProcessHandle) -> None:
        task_id = self.launcher.payloads[handle.label].rsplit(" ", 1)[-1]
        self.spawned.append(task_id)
        pending = self.scripts.get(task_id)
        behaviour = pending.pop(0) if pending else self.COMPLETE
        loop = asyncio.get_running_loop()
        if behaviour == self.COMPLETE:
            loop.call_later(self.delay, self._complete, task_id, handle.label)
        elif behaviour == self.FAIL:
            loop.call_later(self.delay, self.launcher.exit, handle.label, 1)

    def _complete(self, task_id: str, label: str) -> None:
        if label in self.launcher.running:
            self.task_store.move(task_id, Lane.REVIEW, note=f"{label} done")
            self.launcher.exit(label, 0)


@pytest.fixture
def agent(launcher, task_store) -> AgentSimulator:
    return AgentSimulator(launcher, task_store)


@pytest.fixture
def build_slot(config, task_store, heartbeat_store, make_supervisor) -> Callable[[str], WorkerLoop]:
    """Factory for a fully wired worker loop with crash recovery."""

    def factory(slot: str) -> WorkerLoop:
        supervisor = make_supervisor(slot)
        recovery = CrashRecovery(task_store, heartbeat_store, supervisor, config.task_store)
        return WorkerLoop(
            slot=slot,
            config=config,
            task_store=task_store,
            heartbeat_store=heartbeat_store,
            supervisor=supervisor,
            recovery=recovery,
        )

    return factory


@pytest.fixture
def eventually() -> Callable:
    """Await a condition, failing the test after a timeout."""

    async def wait(predicate: Callable[[], bool], timeout: float = 10.0) -> None:
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.01)

    return wait
