"""Registry of live agent sessions.

Each supervised session is recorded as a small JSON file under the run
directory while it is alive. The registry outlives the worker process, which
lets crash recovery find and kill sessions left behind by a previous worker
of the same slot.
"""

from __future__ import annotations

import json
import os
import tempfile
from datetime import datetime
from pathlib import Path

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from slotkeeper.models.heartbeat import utcnow

logger = structlog.get_logger(__name__)


class SessionRecord(BaseModel):
    """Registry entry for one live session.

    Attributes:
        session_id: Session identifier
        slot: Slot that spawned the session
        task_id: Task the session works on
        pid: Process (group) id of the agent
        spawned_at: When the process was started
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    session_id: str
    slot: str
    task_id: str
    pid: int = Field(gt=0)
    spawned_at: datetime = Field(default_factory=utcnow)


class SessionRegistry:
    """Pid-file registry of live sessions, keyed by session id.

    Attributes:
        run_dir: Directory holding the ``<session_id>.json`` files
    """

    def __init__(self, run_dir: Path) -> None:
        self.run_dir = Path(run_dir)

    def _path(self, session_id: str) -> Path:
        return self.run_dir / f"{session_id}.json"

    def register(self, record: SessionRecord) -> None:
        """Record a live session, replacing any entry with the same id."""
        self.run_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.run_dir, prefix=".", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(record.model_dump_json(by_alias=True))
            os.replace(tmp_name, self._path(record.session_id))
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug("session_registered", session_id=record.session_id, pid=record.pid)

    def unregister(self, session_id: str) -> None:
        """Forget a session. Unknown ids are ignored."""
        self._path(session_id).unlink(missing_ok=True)

    def get(self, session_id: str) -> SessionRecord | None:
        """Look up a session by id."""
        return self._load(self._path(session_id))

    def for_slot(self, slot: str) -> list[SessionRecord]:
        """All registered sessions spawned by ``slot``, oldest first."""
        records = [r for r in self.all() if r.slot == slot]
        return sorted(records, key=lambda r: r.spawned_at)

    def all(self) -> list[SessionRecord]:
        """Every readable registry entry."""
        if not self.run_dir.is_dir():
            return []
        records = []
        for path in sorted(self.run_dir.glob("*.json")):
            record = self._load(path)
            if record is not None:
                records.append(record)
        return records

    def _load(self, path: Path) -> SessionRecord | None:
        try:
            return SessionRecord.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, ValidationError) as e:
            logger.warning("session_record_unreadable", path=str(path), error=str(e))
            return None
