"""Worker heartbeats table.

Creates the worker_heartbeats table holding one row per worker slot.

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "worker_heartbeats",
        sa.Column("slot", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("task", sa.Text(), nullable=True),
        sa.Column("task_title", sa.Text(), nullable=True),
        sa.Column("session_id", sa.Text(), nullable=True),
        sa.Column("last_update", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "metadata",
            sa.JSON().with_variant(postgresql.JSONB(), "postgresql"),
            nullable=False,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("slot"),
        sa.CheckConstraint(
            "status IN ('idle', 'working', 'offline')",
            name="ck_worker_heartbeats_status",
        ),
        sa.CheckConstraint(
            "(status = 'working') = (task IS NOT NULL AND session_id IS NOT NULL)",
            name="ck_worker_heartbeats_working_binding",
        ),
    )
    op.create_index("idx_worker_heartbeats_status", "worker_heartbeats", ["status"])


def downgrade() -> None:
    op.drop_index("idx_worker_heartbeats_status", table_name="worker_heartbeats")
    op.drop_table("worker_heartbeats")
