"""Task model as exposed by the task store.

Tasks are owned by the external task store; this module only mirrors the
fields the orchestration core reads and the partial updates it sends. Wire
names are camelCase and mapped through pydantic aliases.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class Lane(str, Enum):
    """Pipeline stage of a task.

    Lane transitions requested by the core:
        QUEUED → DEVELOPMENT → REVIEW
                      ↓
                  BLOCKED
        DEVELOPMENT → QUEUED (crash recovery, watchdog, shutdown requeue)
        QUEUED → BLOCKED (spawn failure)
    """

    QUEUED = "queued"
    DEVELOPMENT = "development"
    REVIEW = "review"
    BLOCKED = "blocked"
    DONE = "done"


# Lanes in which a supervised session is considered finished
TERMINAL_LANES: frozenset[Lane] = frozenset({Lane.REVIEW, Lane.DONE, Lane.BLOCKED})

PRIORITY_RANKS: dict[str, int] = {"P0": 0, "P1": 1, "P2": 2, "P3": 3}
UNKNOWN_PRIORITY_RANK = 9

_EPOCH_MAX = datetime.max.replace(tzinfo=timezone.utc)


def priority_rank(priority: str | None) -> int:
    """Rank a priority label, lower is more urgent.

    Args:
        priority: Priority label such as "P0"; case-insensitive.

    Returns:
        0 for P0 through 3 for P3, and a rank below P3 for anything else.
    """
    return PRIORITY_RANKS.get(str(priority or "").upper(), UNKNOWN_PRIORITY_RANK)


class _StoreModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class StatusHistoryEntry(_StoreModel):
    """One lane transition recorded by the task store.

    Attributes:
        at: When the transition happened
        from_lane: Lane before the transition (absent for creation)
        to: Lane after the transition
        note: Free-text reason
    """

    at: datetime
    from_lane: Lane | None = Field(default=None, alias="from")
    to: Lane
    note: str | None = None


class Task(_StoreModel):
    """A unit of work in the shared queue.

    Attributes:
        id: Task identifier
        title: Short human-readable title
        lane: Current pipeline stage
        priority: Priority label, P0 highest
        owner: Slot the task is assigned to, if any
        problem: Problem statement
        scope: Scope statement
        acceptance_criteria: Acceptance criteria bullets
        working_dir: Working directory for the agent session
        timeout_ms: Per-task session timeout override in milliseconds
        created_at: Creation time, used as the FIFO tie-break
        updated_at: Last modification time
        status_history: Append-only lane transition log
        metadata: Completion and recovery annotations
    """

    id: str
    title: str = ""
    lane: Lane
    priority: str = "P2"
    owner: str | None = None
    problem: str | None = None
    scope: str | None = None
    acceptance_criteria: list[str] = Field(default_factory=list)
    working_dir: str | None = None
    timeout_ms: int | None = Field(default=None, gt=0)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    status_history: list[StatusHistoryEntry] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("priority", mode="before")
    @classmethod
    def normalize_priority(cls, v: Any) -> str:
        """Upper-case the priority label, defaulting to P2 when missing."""
        if v is None or v == "":
            return "P2"
        return str(v).upper()

    @property
    def priority_rank(self) -> int:
        """Numeric rank of this task's priority (0 = P0)."""
        return priority_rank(self.priority)

    @property
    def created_sort_key(self) -> datetime:
        """Creation time normalised to UTC; tasks without one sort last."""
        if self.created_at is None:
            return _EPOCH_MAX
        if self.created_at.tzinfo is None:
            return self.created_at.replace(tzinfo=timezone.utc)
        return self.created_at

    @property
    def is_terminal(self) -> bool:
        """Whether the task sits in a lane that ends a session."""
        return self.lane in TERMINAL_LANES


class TaskUpdate(_StoreModel):
    """Partial update sent to the task store.

    The store appends exactly one status history entry when ``lane`` differs
    from the stored lane, using ``note`` as the entry's note. ``metadata`` is
    merged into the task's metadata.

    Attributes:
        lane: New lane, or None to leave unchanged
        owner: New owner, or None to leave unchanged
        note: Note recorded on the history entry for a lane change
        metadata: Keys merged into the task metadata
    """

    lane: Lane | None = None
    owner: str | None = None
    note: str | None = Field(default=None, alias="statusNote")
    metadata: dict[str, Any] | None = None

    def to_payload(self) -> dict[str, Any]:
        """Serialise to the store's JSON body, omitting unset fields."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
