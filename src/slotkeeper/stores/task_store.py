"""Task store client.

The task store is the system of record for tasks and owns the status history:
it appends one history entry whenever an update changes a task's lane. The
orchestration core talks to it through the ``TaskStore`` protocol; the
production implementation is ``HttpTaskStore`` against the bridge REST API.

Every transport or server failure is surfaced as ``TaskStoreError`` so the
worker loop can treat all of them as transient and back off.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable
from urllib.parse import quote

import httpx
import structlog
from pydantic import ValidationError

from slotkeeper.config import TaskStoreConfig
from slotkeeper.errors import TaskNotFoundError, TaskStoreError
from slotkeeper.models.task import Lane, Task, TaskUpdate

logger = structlog.get_logger(__name__)


@runtime_checkable
class TaskStore(Protocol):
    """Read and update tasks in the shared queue."""

    async def list_tasks(
        self, owner: str | None = None, lane: Lane | None = None
    ) -> list[Task]:
        """List tasks, optionally narrowed by owner and lane."""
        ...

    async def get_task(self, task_id: str) -> Task:
        """Fetch one task, raising TaskNotFoundError if it does not exist."""
        ...

    async def update_task(self, task_id: str, update: TaskUpdate) -> Task:
        """Apply a partial update and return the stored task."""
        ...


class HttpTaskStore:
    """TaskStore backed by the bridge REST API.

    Endpoints used:
        GET /tasks?owner=&lane=  list tasks
        PUT /tasks/{id}          partial update, returns the stored task

    The API has no single-task read, so get_task filters the list.

    Attributes:
        config: Task store configuration with base URL and timeout
    """

    def __init__(
        self,
        config: TaskStoreConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the HTTP task store.

        Args:
            config: TaskStoreConfig with the API base URL and timeout
            transport: Optional httpx transport, used to plug in a mock
        """
        self.config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> HttpTaskStore:
        """Async context manager entry."""
        self._get_client()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url.rstrip("/"),
                timeout=httpx.Timeout(self.config.timeout_seconds),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        client = self._get_client()
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning("task_store_timeout", method=method, path=path)
            raise TaskStoreError(f"{method} {path} timed out") from e
        except httpx.RequestError as e:
            logger.warning("task_store_unreachable", method=method, path=path, error=str(e))
            raise TaskStoreError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 400:
            raise TaskStoreError(
                f"{method} {path} returned HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise TaskStoreError(f"Task store returned invalid JSON: {e}") from e

    @staticmethod
    def _parse_task(data: Any) -> Task:
        try:
            return Task.model_validate(data)
        except ValidationError as e:
            raise TaskStoreError(f"Malformed task in store response: {e}") from e

    async def list_tasks(
        self, owner: str | None = None, lane: Lane | None = None
    ) -> list[Task]:
        """List tasks from the store.

        Args:
            owner: Only return tasks owned by this slot
            lane: Only return tasks in this lane

        Returns:
            Tasks in store order. Malformed entries are skipped and logged.

        Raises:
            TaskStoreError: On transport failure or an error response
        """
        params: dict[str, str] = {}
        if owner is not None:
            params["owner"] = owner
        if lane is not None:
            params["lane"] = lane.value

        response = await self._request("GET", "/tasks", params=params)
        payload = self._json(response)
        if not isinstance(payload, list):
            raise TaskStoreError("Task list response is not a JSON array")

        tasks: list[Task] = []
        for item in payload:
            try:
                tasks.append(Task.model_validate(item))
            except ValidationError as e:
                logger.warning(
                    "task_store_skipped_malformed_task",
                    task_id=item.get("id") if isinstance(item, dict) else None,
                    error=str(e),
                )
        return tasks

    async def get_task(self, task_id: str) -> Task:
        """Fetch a single task by id.

        Raises:
            TaskNotFoundError: If the store has no such task
            TaskStoreError: On transport failure or an error response
        """
        for task in await self.list_tasks():
            if task.id == task_id:
                return task
        raise TaskNotFoundError(task_id)

    async def update_task(self, task_id: str, update: TaskUpdate) -> Task:
        """Apply a partial update to a task.

        Args:
            task_id: Task to update
            update: Fields to change; the note is recorded on the history
                entry the store appends for a lane change

        Returns:
            The task as stored after the update

        Raises:
            TaskNotFoundError: If the store has no such task
            TaskStoreError: On transport failure or an error response
        """
        try:
            response = await self._request(
                "PUT", f"/tasks/{quote(task_id, safe='')}", json=update.to_payload()
            )
        except TaskStoreError as e:
            if e.status_code == 404:
                raise TaskNotFoundError(task_id) from e
            raise

        task = self._parse_task(self._json(response))
        logger.debug(
            "task_updated",
            task_id=task_id,
            lane=task.lane.value,
            note=update.note,
        )
        return task
