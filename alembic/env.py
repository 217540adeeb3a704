"""Alembic environment for the Slotkeeper heartbeat database.

Only the ``database`` heartbeat backend needs a schema: one
``worker_heartbeats`` row per slot, upserted by every worker and read by the
watchdog and the ``heartbeats`` CLI. The file backend needs no migrations.

The URL comes from SlotkeeperConfig (``[database] url`` or
``SLOTKEEPER_DATABASE__URL``). The database is usually shared with the task
bridge, so Slotkeeper keeps its own version table and autogenerate only
considers tables declared on Slotkeeper's metadata.
"""

from __future__ import annotations

import asyncio
from logging.config import fileConfig
from typing import Any

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

from slotkeeper.config import load_config
from slotkeeper.database.models import Base

VERSION_TABLE = "slotkeeper_alembic_version"

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

slotkeeper_config = load_config()
config.set_main_option("sqlalchemy.url", slotkeeper_config.database.url)

target_metadata = Base.metadata


def include_object(obj: Any, name: str | None, type_: str, reflected: bool, compare_to: Any) -> bool:
    """Skip tables that exist in the database but belong to other applications."""
    if type_ == "table" and reflected and compare_to is None:
        return False
    return True


def _configure(**kwargs: Any) -> None:
    context.configure(
        target_metadata=target_metadata,
        version_table=VERSION_TABLE,
        include_object=include_object,
        compare_type=True,
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Emit the heartbeat schema as SQL without connecting."""
    _configure(
        url=config.get_main_option("sqlalchemy.url"),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    _configure(connection=connection)

    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    """Apply pending revisions through the asyncpg engine."""
    connectable = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)

    await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_async_migrations())
