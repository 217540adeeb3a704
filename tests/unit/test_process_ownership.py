"""Unit tests for matching rediscovered pids to their sessions.

psutil.Process is patched so each test controls the command line and start
time seen for the pid.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import psutil
import pytest

from slotkeeper.agents.process import ProcessHandle, SubprocessLauncher

SPAWNED_AT = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
LABEL = "dev-1-7-0a1b2c3d"


@pytest.fixture
def launcher() -> SubprocessLauncher:
    return SubprocessLauncher(["openclaw", "agent"], ["--session-id", "agent:main:subagent:{label}"])


def fake_process(cmdline: list[str], started: datetime) -> MagicMock:
    process = MagicMock(spec=psutil.Process)
    process.cmdline.return_value = cmdline
    process.create_time.return_value = started.timestamp()
    return process


class TestOwns:
    """Test SubprocessLauncher.owns against registry records."""

    def test_label_on_command_line(self, launcher) -> None:
        process = fake_process(
            ["openclaw", "agent", "--session-id", f"agent:main:subagent:{LABEL}"],
            SPAWNED_AT - timedelta(days=1),
        )
        with patch("slotkeeper.agents.process.psutil.Process", return_value=process) as ctor:
            assert launcher.owns(ProcessHandle(pid=4242, label=LABEL), SPAWNED_AT)
        ctor.assert_called_once_with(4242)

    def test_start_time_close_to_spawn(self, launcher) -> None:
        process = fake_process(["node", "agent.js"], SPAWNED_AT - timedelta(seconds=0.5))
        with patch("slotkeeper.agents.process.psutil.Process", return_value=process):
            assert launcher.owns(ProcessHandle(pid=4242, label=LABEL), SPAWNED_AT)

    def test_naive_spawn_time_treated_as_utc(self, launcher) -> None:
        process = fake_process(["node"], SPAWNED_AT)
        with patch("slotkeeper.agents.process.psutil.Process", return_value=process):
            assert launcher.owns(
                ProcessHandle(pid=4242, label=LABEL), SPAWNED_AT.replace(tzinfo=None)
            )

    def test_reused_pid_is_foreign(self, launcher) -> None:
        # Same pid, started by something else long after the session was recorded
        process = fake_process(["postgres", "-D", "/data"], SPAWNED_AT + timedelta(days=2))
        with patch("slotkeeper.agents.process.psutil.Process", return_value=process):
            assert not launcher.owns(ProcessHandle(pid=4242, label=LABEL), SPAWNED_AT)

    @pytest.mark.parametrize(
        "error",
        [psutil.NoSuchProcess(4242), psutil.AccessDenied(4242), psutil.ZombieProcess(4242)],
    )
    def test_uninspectable_process_is_not_owned(self, launcher, error) -> None:
        with patch("slotkeeper.agents.process.psutil.Process", side_effect=error):
            assert not launcher.owns(ProcessHandle(pid=4242, label=LABEL), SPAWNED_AT)

    def test_spawned_handle_is_owned_without_lookup(self, launcher) -> None:
        handle = ProcessHandle(pid=4242, label=LABEL, process=MagicMock())
        with patch("slotkeeper.agents.process.psutil.Process") as ctor:
            assert launcher.owns(handle, SPAWNED_AT)
        ctor.assert_not_called()
