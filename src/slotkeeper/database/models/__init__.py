"""SQLAlchemy models for Slotkeeper."""

from slotkeeper.database.models.base import Base, TimestampMixin
from slotkeeper.database.models.heartbeat import HeartbeatRecord

__all__ = ["Base", "TimestampMixin", "HeartbeatRecord"]
