"""External session status queries.

The agent runtime can report a session as failed before its process exits (or
while the process keeps running). A ``SessionStatusSource`` surfaces those
explicit failure signals to the supervisor. Lookups are best effort: any
transport problem yields None and the supervisor falls back to its other
observers.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Protocol, runtime_checkable

import httpx
import structlog

logger = structlog.get_logger(__name__)


class ExternalSessionStatus(str, Enum):
    """Session status as reported by the agent runtime."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ERROR = "error"
    TERMINATED = "terminated"
    UNKNOWN = "unknown"

    @property
    def is_failure(self) -> bool:
        return self in (ExternalSessionStatus.FAILED, ExternalSessionStatus.ERROR)

    @classmethod
    def parse(cls, value: Any) -> ExternalSessionStatus:
        """Map a raw status string, treating unknown values as UNKNOWN."""
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.UNKNOWN


@runtime_checkable
class SessionStatusSource(Protocol):
    """Reports the runtime's view of a session."""

    async def get_status(self, session_id: str) -> ExternalSessionStatus | None:
        """Status of the session, or None when it cannot be determined."""
        ...


class HttpSessionStatusSource:
    """SessionStatusSource backed by a ``GET /api/sessions`` style endpoint.

    The endpoint returns either a JSON array of sessions or an object with a
    ``sessions`` array. A session matches when its ``id``, ``sessionId``,
    ``label`` or ``sessionKey`` equals the session id, or when its
    ``sessionKey`` ends with ``:<session id>``.
    """

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    @staticmethod
    def _matches(entry: dict[str, Any], session_id: str) -> bool:
        for key in ("id", "sessionId", "label", "sessionKey"):
            if entry.get(key) == session_id:
                return True
        key = entry.get("sessionKey")
        return isinstance(key, str) and key.endswith(f":{session_id}")

    async def get_status(self, session_id: str) -> ExternalSessionStatus | None:
        try:
            response = await self._client.get(self.url)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug("session_status_unavailable", session_id=session_id, error=str(e))
            return None

        sessions = data.get("sessions", []) if isinstance(data, dict) else data
        if not isinstance(sessions, list):
            return None

        for entry in sessions:
            if isinstance(entry, dict) and self._matches(entry, session_id):
                return ExternalSessionStatus.parse(entry.get("status"))
        return None
