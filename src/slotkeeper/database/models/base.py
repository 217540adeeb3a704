"""SQLAlchemy declarative base and common column mixins for Slotkeeper.

Example:
    >>> class MyModel(TimestampMixin, Base):
    ...     __tablename__ = "my_table"
    ...     name: Mapped[str] = mapped_column(Text, primary_key=True)
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """SQLAlchemy 2.0 declarative base for all Slotkeeper models."""

    pass


class TimestampMixin:
    """Mixin providing database-managed created_at and updated_at columns.

    Attributes:
        created_at: Timestamp set by the database on row creation.
        updated_at: Timestamp set on row creation and on each modification.
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )
