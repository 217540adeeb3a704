"""Unit tests for the heartbeat watchdog.

Tests cover:
- Staleness detection and the offline write with stale-heartbeat reason
- Requeueing abandoned development tasks, leaving other lanes alone
- Read-then-write protection against workers that refreshed meanwhile
- Store failures during a cycle
- Fleet health grading
- Background loop start/stop
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from slotkeeper.errors import HeartbeatStoreError
from slotkeeper.models.heartbeat import (
    HeartbeatMetadata,
    OfflineReason,
    WorkerHeartbeat,
    WorkerStatus,
    utcnow,
)
from slotkeeper.models.task import Lane
from slotkeeper.orchestrator.watchdog import (
    HeartbeatWatchdog,
    SlotHealth,
    WatchdogActionType,
    diagnose,
    grade_heartbeat,
)


@pytest.fixture
def watchdog(config, task_store, heartbeat_store) -> HeartbeatWatchdog:
    return HeartbeatWatchdog(task_store, heartbeat_store, config.watchdog)


def heartbeat(
    slot: str,
    status: WorkerStatus,
    age: float,
    ago,
    task: str | None = None,
    worker_pid: int = 4242,
) -> WorkerHeartbeat:
    return WorkerHeartbeat(
        slot=slot,
        status=status,
        task=task,
        session_id=f"{slot}-s-0000aaaa" if task else None,
        last_update=ago(age),
        metadata=HeartbeatMetadata(worker_pid=worker_pid, worker_version="0.1.0"),
    )


class TestCheckHeartbeats:
    async def test_fresh_heartbeats_untouched(self, watchdog, heartbeat_store, ago) -> None:
        await heartbeat_store.write_heartbeat(heartbeat("dev-1", WorkerStatus.IDLE, 0.1, ago))
        heartbeat_store.writes.clear()

        report = await watchdog.check_heartbeats()

        assert report.checked == 1
        assert report.stale_slots == []
        assert heartbeat_store.writes == []

    async def test_stale_working_slot_released(
        self, watchdog, heartbeat_store, task_store, make_task, ago
    ) -> None:
        task_store.add(make_task(lane=Lane.DEVELOPMENT))
        stale = heartbeat("dev-1", WorkerStatus.WORKING, 30, ago, task="T-1")
        await heartbeat_store.write_heartbeat(stale)

        report = await watchdog.check_heartbeats()

        assert report.stale_slots == ["dev-1"]
        assert report.offlined_slots == ["dev-1"]
        assert report.requeued_tasks == ["T-1"]
        assert [a.action_type for a in report.actions] == [
            WatchdogActionType.MARKED_OFFLINE,
            WatchdogActionType.TASK_REQUEUED,
        ]

        offline = heartbeat_store.records["dev-1"]
        assert offline.status == WorkerStatus.OFFLINE
        assert offline.metadata.offline_reason == OfflineReason.STALE_HEARTBEAT
        assert offline.metadata.abandoned_task == "T-1"
        assert offline.metadata.abandoned_session == stale.session_id
        assert offline.metadata.worker_pid == 4242

        task = task_store.tasks["T-1"]
        assert task.lane == Lane.QUEUED
        assert task.status_history[-1].note.startswith("watchdog: dev-1 heartbeat stale for")
        assert task.metadata["watchdogRequeue"] is True
        assert task.metadata["abandonedSessionId"] == stale.session_id

    async def test_stale_idle_slot_marked_offline(
        self, watchdog, heartbeat_store, task_store, ago
    ) -> None:
        await heartbeat_store.write_heartbeat(heartbeat("qa", WorkerStatus.IDLE, 30, ago))

        report = await watchdog.check_heartbeats()

        assert report.offlined_slots == ["qa"]
        assert report.requeued_tasks == []
        assert task_store.updates == []

    async def test_offline_slots_ignored(self, watchdog, heartbeat_store, ago) -> None:
        await heartbeat_store.write_heartbeat(heartbeat("pm", WorkerStatus.OFFLINE, 3600, ago))
        heartbeat_store.writes.clear()

        report = await watchdog.check_heartbeats()

        assert report.stale_slots == []
        assert heartbeat_store.writes == []

    async def test_non_development_task_left_in_place(
        self, watchdog, heartbeat_store, task_store, make_task, ago
    ) -> None:
        task_store.add(make_task(lane=Lane.REVIEW))
        await heartbeat_store.write_heartbeat(
            heartbeat("dev-1", WorkerStatus.WORKING, 30, ago, task="T-1")
        )

        report = await watchdog.check_heartbeats()

        assert report.offlined_slots == ["dev-1"]
        assert report.requeued_tasks == []
        assert report.actions[-1].action_type == WatchdogActionType.TASK_LEFT_IN_PLACE
        assert report.actions[-1].detail == "review"
        assert task_store.lane_of("T-1") == Lane.REVIEW

    async def test_refreshed_before_write_is_skipped(
        self, watchdog, heartbeat_store, ago
    ) -> None:
        stale = heartbeat("dev-1", WorkerStatus.IDLE, 30, ago)
        fresh = heartbeat("dev-1", WorkerStatus.IDLE, 0, ago)
        heartbeat_store.list_heartbeats = AsyncMock(return_value=[stale])
        heartbeat_store.read_heartbeat = AsyncMock(return_value=fresh)

        report = await watchdog.check_heartbeats()

        assert report.stale_slots == ["dev-1"]
        assert report.offlined_slots == []
        assert report.actions[0].action_type == WatchdogActionType.SKIPPED_REFRESHED
        assert heartbeat_store.writes == []

    async def test_requeue_failure_reported(
        self, watchdog, heartbeat_store, task_store, make_task, ago
    ) -> None:
        task_store.add(make_task(lane=Lane.DEVELOPMENT))
        await heartbeat_store.write_heartbeat(
            heartbeat("dev-1", WorkerStatus.WORKING, 30, ago, task="T-1")
        )
        task_store.fail_get = 1

        report = await watchdog.check_heartbeats()

        assert report.offlined_slots == ["dev-1"]
        assert report.requeued_tasks == []
        assert len(report.errors) == 1
        assert task_store.lane_of("T-1") == Lane.DEVELOPMENT

    async def test_offline_write_failure_skips_requeue(
        self, watchdog, heartbeat_store, task_store, make_task, ago
    ) -> None:
        task_store.add(make_task(lane=Lane.DEVELOPMENT))
        await heartbeat_store.write_heartbeat(
            heartbeat("dev-1", WorkerStatus.WORKING, 30, ago, task="T-1")
        )
        heartbeat_store.fail_write = 1

        report = await watchdog.check_heartbeats()

        assert report.offlined_slots == []
        assert report.actions[-1].action_type == WatchdogActionType.FAILED
        assert task_store.lane_of("T-1") == Lane.DEVELOPMENT

    async def test_list_failure(self, watchdog, heartbeat_store) -> None:
        heartbeat_store.list_heartbeats = AsyncMock(side_effect=HeartbeatStoreError("disk gone"))

        report = await watchdog.check_heartbeats()

        assert report.checked == 0
        assert report.errors == ["disk gone"]


class TestDiagnose:
    def test_grades(self, ago) -> None:
        now = utcnow()
        assert grade_heartbeat(heartbeat("a", WorkerStatus.IDLE, 10, ago), now) == SlotHealth.OK
        assert grade_heartbeat(heartbeat("a", WorkerStatus.IDLE, 120, ago), now) == SlotHealth.WARN
        assert grade_heartbeat(heartbeat("a", WorkerStatus.IDLE, 600, ago), now) == SlotHealth.DOWN
        assert grade_heartbeat(heartbeat("a", WorkerStatus.OFFLINE, 1, ago), now) == SlotHealth.DOWN

    def test_missing_slots_reported_down(self, ago) -> None:
        heartbeats = [
            heartbeat("dev-1", WorkerStatus.WORKING, 5, ago, task="T-1"),
            heartbeat("extra", WorkerStatus.IDLE, 5, ago),
        ]

        result = diagnose(heartbeats, slots=["pm", "dev-1"])

        assert [d.slot for d in result] == ["pm", "dev-1", "extra"]
        assert result[0].health == SlotHealth.DOWN
        assert result[0].note == "no heartbeat"
        assert result[1].health == SlotHealth.OK
        assert result[1].task == "T-1"


class TestWatchdogLoop:
    async def test_start_and_stop(self, watchdog, heartbeat_store, ago) -> None:
        await heartbeat_store.write_heartbeat(heartbeat("qa", WorkerStatus.IDLE, 30, ago))

        await watchdog.start()
        for _ in range(100):
            if heartbeat_store.records["qa"].status == WorkerStatus.OFFLINE:
                break
            await asyncio.sleep(0.01)
        await asyncio.wait_for(watchdog.stop(), timeout=5)

        assert heartbeat_store.records["qa"].status == WorkerStatus.OFFLINE

    async def test_cycle_errors_do_not_stop_loop(self, watchdog, heartbeat_store) -> None:
        heartbeat_store.list_heartbeats = AsyncMock(side_effect=RuntimeError("bug"))

        await watchdog.start()
        await asyncio.sleep(0.15)
        await asyncio.wait_for(watchdog.stop(), timeout=5)

        assert heartbeat_store.list_heartbeats.await_count >= 2
