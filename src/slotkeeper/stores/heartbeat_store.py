"""Heartbeat store backends.

The heartbeat store holds exactly one record per slot. Writers are the slot's
own worker loop and, only for stale records and only toward ``offline``, the
watchdog. Records are always written whole so a reader never observes a
half-written heartbeat.

Two backends are provided:

- ``FileHeartbeatStore``: one JSON file per slot, written to a temporary file
  in the same directory and renamed over the target.
- ``DatabaseHeartbeatStore``: one row per slot in ``worker_heartbeats``.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Protocol, runtime_checkable

import structlog
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from slotkeeper.config import SlotkeeperConfig
from slotkeeper.database.connection import get_engine, get_session_factory
from slotkeeper.database.queries import heartbeat as heartbeat_queries
from slotkeeper.errors import HeartbeatStoreError
from slotkeeper.models.heartbeat import WorkerHeartbeat

logger = structlog.get_logger(__name__)


@runtime_checkable
class HeartbeatStore(Protocol):
    """Key-scoped storage of worker heartbeats."""

    async def read_heartbeat(self, slot: str) -> WorkerHeartbeat | None:
        """Return the slot's heartbeat, or None if it never wrote one."""
        ...

    async def write_heartbeat(self, heartbeat: WorkerHeartbeat) -> None:
        """Replace the slot's heartbeat with ``heartbeat``."""
        ...

    async def list_heartbeats(self) -> list[WorkerHeartbeat]:
        """Return every readable heartbeat, ordered by slot."""
        ...


# ---------------------------------------------------------------------------
# File backend
# ---------------------------------------------------------------------------


class FileHeartbeatStore:
    """Heartbeat store keeping one JSON file per slot in a directory.

    Attributes:
        directory: Directory holding the ``<slot>.json`` files
    """

    SUFFIX = ".json"

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def _path(self, slot: str) -> Path:
        if not slot or "/" in slot or "\\" in slot or slot.startswith("."):
            raise HeartbeatStoreError(f"Invalid slot name for heartbeat file: {slot!r}")
        return self.directory / f"{slot}{self.SUFFIX}"

    def _read_file(self, path: Path) -> WorkerHeartbeat | None:
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise HeartbeatStoreError(f"Cannot read heartbeat {path}: {e}") from e
        try:
            return WorkerHeartbeat.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            raise HeartbeatStoreError(f"Corrupt heartbeat {path}: {e}") from e

    def _write_file(self, heartbeat: WorkerHeartbeat) -> None:
        path = self._path(heartbeat.slot)
        payload = json.dumps(heartbeat.to_json_dict(), indent=2)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self.directory, prefix=f".{heartbeat.slot}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise HeartbeatStoreError(f"Cannot write heartbeat {path}: {e}") from e

    async def read_heartbeat(self, slot: str) -> WorkerHeartbeat | None:
        """Read a slot's heartbeat file.

        Raises:
            HeartbeatStoreError: If the file exists but cannot be read or parsed
        """
        return await asyncio.to_thread(self._read_file, self._path(slot))

    async def write_heartbeat(self, heartbeat: WorkerHeartbeat) -> None:
        """Atomically replace a slot's heartbeat file.

        Raises:
            HeartbeatStoreError: If the file cannot be written
        """
        await asyncio.to_thread(self._write_file, heartbeat)
        logger.debug(
            "heartbeat_written",
            slot=heartbeat.slot,
            status=heartbeat.status.value,
            task=heartbeat.task,
        )

    async def list_heartbeats(self) -> list[WorkerHeartbeat]:
        """Read all heartbeat files; unreadable files are logged and skipped."""
        if not self.directory.is_dir():
            return []

        heartbeats: list[WorkerHeartbeat] = []
        for path in sorted(self.directory.glob(f"*{self.SUFFIX}")):
            if path.name.startswith("."):
                continue
            try:
                heartbeat = await asyncio.to_thread(self._read_file, path)
            except HeartbeatStoreError as e:
                logger.warning("heartbeat_unreadable", path=str(path), error=str(e))
                continue
            if heartbeat is not None:
                heartbeats.append(heartbeat)
        return heartbeats


# ---------------------------------------------------------------------------
# Database backend
# ---------------------------------------------------------------------------


class DatabaseHeartbeatStore:
    """Heartbeat store backed by the ``worker_heartbeats`` table.

    Attributes:
        session_factory: Factory producing async database sessions
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        engine: AsyncEngine | None = None,
    ) -> None:
        """Initialize the database heartbeat store.

        Args:
            session_factory: Factory for async database sessions
            engine: Engine to dispose on close(), when owned by this store
        """
        self.session_factory = session_factory
        self._engine = engine

    async def read_heartbeat(self, slot: str) -> WorkerHeartbeat | None:
        """Read a slot's heartbeat row.

        Raises:
            HeartbeatStoreError: On database or validation failure
        """
        try:
            async with self.session_factory() as session:
                record = await heartbeat_queries.get_heartbeat(session, slot)
                if record is None:
                    return None
                return heartbeat_queries.record_to_heartbeat(record)
        except (SQLAlchemyError, ValidationError) as e:
            raise HeartbeatStoreError(f"Cannot read heartbeat for {slot}: {e}") from e

    async def write_heartbeat(self, heartbeat: WorkerHeartbeat) -> None:
        """Insert or overwrite a slot's heartbeat row.

        Raises:
            HeartbeatStoreError: On database failure
        """
        try:
            async with self.session_factory() as session:
                await heartbeat_queries.upsert_heartbeat(session, heartbeat)
        except SQLAlchemyError as e:
            raise HeartbeatStoreError(
                f"Cannot write heartbeat for {heartbeat.slot}: {e}"
            ) from e

    async def list_heartbeats(self) -> list[WorkerHeartbeat]:
        """Read all heartbeat rows; invalid rows are logged and skipped."""
        try:
            async with self.session_factory() as session:
                records = await heartbeat_queries.list_heartbeats(session)
        except SQLAlchemyError as e:
            raise HeartbeatStoreError(f"Cannot list heartbeats: {e}") from e

        heartbeats: list[WorkerHeartbeat] = []
        for record in records:
            try:
                heartbeats.append(heartbeat_queries.record_to_heartbeat(record))
            except ValidationError as e:
                logger.warning("heartbeat_row_invalid", slot=record.slot, error=str(e))
        return heartbeats

    async def close(self) -> None:
        """Dispose of the owned engine, if any."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None


def create_heartbeat_store(
    config: SlotkeeperConfig,
) -> FileHeartbeatStore | DatabaseHeartbeatStore:
    """Build the heartbeat store selected by ``config.heartbeat.backend``."""
    if config.heartbeat.backend == "database":
        engine = get_engine(config.database)
        return DatabaseHeartbeatStore(get_session_factory(engine), engine=engine)
    return FileHeartbeatStore(config.heartbeat.directory)
