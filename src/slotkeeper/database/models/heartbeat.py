"""Worker heartbeat table.

One row per slot. The row is overwritten on every heartbeat write; history is
not kept. Process-level details live in a JSON column (JSONB on PostgreSQL).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Enum, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from slotkeeper.database.models.base import Base, TimestampMixin
from slotkeeper.models.heartbeat import WorkerStatus


class HeartbeatRecord(TimestampMixin, Base):
    """Persisted heartbeat for one worker slot.

    Attributes:
        slot: Worker slot name (primary key).
        status: Worker status.
        task: Id of the task being worked on, if any.
        task_title: Display title of that task.
        session_id: Id of the supervised session, if any.
        last_update: When the worker last wrote this record.
        started_at: When the worker process last (re)initialised.
        meta: Heartbeat metadata as JSON, stored in the ``metadata`` column.
    """

    __tablename__ = "worker_heartbeats"

    slot: Mapped[str] = mapped_column(Text, primary_key=True)
    status: Mapped[WorkerStatus] = mapped_column(
        Enum(
            WorkerStatus,
            name="worker_status",
            native_enum=False,
            length=16,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
    )
    task: Mapped[str | None] = mapped_column(Text, nullable=True)
    task_title: Mapped[str | None] = mapped_column(Text, nullable=True)
    session_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_update: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    meta: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSON().with_variant(JSONB(), "postgresql"),
        nullable=False,
        default=dict,
    )

    def __repr__(self) -> str:
        return f"<HeartbeatRecord slot={self.slot} status={self.status.value}>"
