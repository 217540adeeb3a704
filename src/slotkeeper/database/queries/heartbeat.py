"""Worker heartbeat query functions for Slotkeeper.

Provides async functions for reading and upserting HeartbeatRecord rows and
for converting them to and from WorkerHeartbeat models.
"""

from __future__ import annotations

from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from slotkeeper.database.models.heartbeat import HeartbeatRecord
from slotkeeper.models.heartbeat import HeartbeatMetadata, WorkerHeartbeat

logger = structlog.get_logger(__name__)


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def record_to_heartbeat(record: HeartbeatRecord) -> WorkerHeartbeat:
    """Convert a database row into a WorkerHeartbeat model."""
    return WorkerHeartbeat(
        slot=record.slot,
        status=record.status,
        task=record.task,
        task_title=record.task_title,
        session_id=record.session_id,
        last_update=_as_utc(record.last_update),
        started_at=_as_utc(record.started_at),
        metadata=HeartbeatMetadata.model_validate(record.meta or {}),
    )


async def get_heartbeat(session: AsyncSession, slot: str) -> HeartbeatRecord | None:
    """Retrieve the heartbeat row for a slot.

    Args:
        session: Active async database session.
        slot: Worker slot name.

    Returns:
        The HeartbeatRecord if one exists, None otherwise.
    """
    stmt = select(HeartbeatRecord).where(HeartbeatRecord.slot == slot)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_heartbeats(session: AsyncSession) -> list[HeartbeatRecord]:
    """Retrieve all heartbeat rows ordered by slot."""
    stmt = select(HeartbeatRecord).order_by(HeartbeatRecord.slot)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def upsert_heartbeat(
    session: AsyncSession,
    heartbeat: WorkerHeartbeat,
) -> HeartbeatRecord:
    """Insert or overwrite the heartbeat row for a slot.

    The whole record is replaced in one transaction, so readers never see a
    row with a status from one write and a task from another.

    Args:
        session: Active async database session.
        heartbeat: Validated heartbeat to persist.

    Returns:
        The persisted HeartbeatRecord.
    """
    meta = heartbeat.metadata.model_dump(mode="json", by_alias=True)

    async with session.begin():
        record = await get_heartbeat(session, heartbeat.slot)
        if record is None:
            record = HeartbeatRecord(slot=heartbeat.slot)
            session.add(record)
        record.status = heartbeat.status
        record.task = heartbeat.task
        record.task_title = heartbeat.task_title
        record.session_id = heartbeat.session_id
        record.last_update = heartbeat.last_update
        record.started_at = heartbeat.started_at
        record.meta = meta
        await session.flush()

    logger.debug(
        "heartbeat_row_written",
        slot=heartbeat.slot,
        status=heartbeat.status.value,
        task=heartbeat.task,
    )
    return record
