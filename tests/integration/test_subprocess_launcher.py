"""Integration tests for the subprocess launcher.

These tests start real ``sh`` processes in their own process groups.
"""

from __future__ import annotations

import asyncio
import os
import sys
from datetime import timedelta
from pathlib import Path

import pytest

from slotkeeper.agents.process import (
    ProcessHandle,
    ProcessLauncher,
    SignalKind,
    SubprocessLauncher,
)
from slotkeeper.errors import SpawnError
from slotkeeper.models.heartbeat import utcnow

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX process groups")


@pytest.fixture
def launcher() -> SubprocessLauncher:
    # The payload is the shell script
    return SubprocessLauncher(["sh", "-c"], ["{payload}", "{label}"])


class TestBuildArgv:
    def test_placeholders_substituted(self) -> None:
        launcher = SubprocessLauncher(
            ["openclaw", "agent"],
            ["--session-id", "agent:main:subagent:{label}", "--message", "{payload}"],
        )
        assert launcher.build_argv("dev-1-1-aa", "do it") == [
            "openclaw",
            "agent",
            "--session-id",
            "agent:main:subagent:dev-1-1-aa",
            "--message",
            "do it",
        ]

    def test_empty_command_rejected(self) -> None:
        with pytest.raises(ValueError):
            SubprocessLauncher([], [])

    def test_implements_protocol(self, launcher) -> None:
        assert isinstance(launcher, ProcessLauncher)


class TestSpawn:
    async def test_exit_code_and_output_captured(self, launcher, tmp_path: Path) -> None:
        handle = await launcher.spawn("s-1", "echo hello; exit 3", tmp_path, tmp_path / "logs")
        await handle.process.wait()

        assert not launcher.is_alive(handle)
        assert handle.exit_code == 3
        assert handle.stdout_path.read_text().strip() == "hello"

    async def test_runs_in_working_directory(self, launcher, tmp_path: Path) -> None:
        workdir = tmp_path / "work"
        workdir.mkdir()
        handle = await launcher.spawn("s-2", "pwd", workdir, tmp_path / "logs")
        await handle.process.wait()

        assert Path(handle.stdout_path.read_text().strip()).resolve() == workdir.resolve()

    async def test_own_process_group(self, launcher, tmp_path: Path) -> None:
        handle = await launcher.spawn("s-3", "sleep 30", tmp_path, tmp_path / "logs")
        try:
            assert os.getpgid(handle.pid) == handle.pid
        finally:
            await launcher.signal(handle, SignalKind.KILL)
            await handle.process.wait()

    async def test_missing_working_directory(self, launcher, tmp_path: Path) -> None:
        with pytest.raises(SpawnError, match="working directory"):
            await launcher.spawn("s-4", "true", tmp_path / "missing", tmp_path / "logs")

    async def test_missing_executable(self, tmp_path: Path) -> None:
        launcher = SubprocessLauncher([str(tmp_path / "no-such-agent")], [])
        with pytest.raises(SpawnError) as exc_info:
            await launcher.spawn("s-5", "x", tmp_path, tmp_path / "logs")
        assert exc_info.value.label == "s-5"


class TestSignal:
    async def test_terminate_running_process(self, launcher, tmp_path: Path) -> None:
        handle = await launcher.spawn("s-6", "sleep 30", tmp_path, tmp_path / "logs")
        assert launcher.is_alive(handle)

        assert await launcher.signal(handle, SignalKind.TERMINATE)
        await asyncio.wait_for(handle.process.wait(), timeout=5)

        assert not launcher.is_alive(handle)
        assert handle.exit_code < 0

    async def test_signal_after_exit(self, launcher, tmp_path: Path) -> None:
        handle = await launcher.spawn("s-7", "true", tmp_path, tmp_path / "logs")
        await handle.process.wait()

        assert not await launcher.signal(handle, SignalKind.KILL)

    async def test_rediscovered_handle_probed_by_pid(self, launcher, tmp_path: Path) -> None:
        handle = await launcher.spawn("s-8", "sleep 30", tmp_path, tmp_path / "logs")
        rediscovered = ProcessHandle(pid=handle.pid, label="s-8")

        assert launcher.is_alive(rediscovered)

        assert await launcher.signal(rediscovered, SignalKind.KILL)
        await asyncio.wait_for(handle.process.wait(), timeout=5)
        assert not launcher.is_alive(rediscovered)


class TestOwns:
    async def test_rediscovered_session_is_owned(self, launcher, tmp_path: Path) -> None:
        # A loop keeps sh itself running, so its command line still carries the label
        handle = await launcher.spawn(
            "dev-1-9-0a1b2c3d", "while true; do sleep 1; done", tmp_path, tmp_path / "logs"
        )
        try:
            rediscovered = ProcessHandle(pid=handle.pid, label="dev-1-9-0a1b2c3d")
            assert launcher.owns(rediscovered, utcnow() - timedelta(days=3))
        finally:
            await launcher.signal(handle, SignalKind.KILL)
            await handle.process.wait()

    async def test_start_time_identifies_unlabelled_process(self, tmp_path: Path) -> None:
        launcher = SubprocessLauncher(["sleep"], ["30"])
        handle = await launcher.spawn("dev-1-9-0a1b2c3d", "", tmp_path, tmp_path / "logs")
        try:
            rediscovered = ProcessHandle(pid=handle.pid, label=handle.label)
            assert launcher.owns(rediscovered, utcnow())
        finally:
            await launcher.signal(handle, SignalKind.KILL)
            await handle.process.wait()

    async def test_pid_of_another_process_is_not_owned(self, launcher, tmp_path: Path) -> None:
        handle = await launcher.spawn("s-9", "while true; do sleep 1; done", tmp_path, tmp_path / "logs")
        try:
            stale = ProcessHandle(pid=handle.pid, label="dev-1-4-deadbeef")
            assert launcher.is_alive(stale)
            assert not launcher.owns(stale, utcnow() - timedelta(days=3))
        finally:
            await launcher.signal(handle, SignalKind.KILL)
            await handle.process.wait()
