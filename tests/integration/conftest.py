"""Pytest fixtures for integration tests.

Provides an async database engine backed by in-memory SQLite for the
database heartbeat backend, and an in-process fake of the task store REST
API mounted on an httpx.MockTransport.

Tests that require PostgreSQL-specific behaviour (JSONB, server-side
timestamps) should be marked with @pytest.mark.postgres to skip them in
SQLite environments.
"""

from __future__ import annotations

import json
from typing import Any, AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from slotkeeper.database.models import Base


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create an in-memory SQLite async engine for testing.

    Yields:
        Configured AsyncEngine instance with all tables created.
    """
    test_engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create an async session factory bound to the test engine."""
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """A database session rolled back after the test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


class FakeTaskApi:
    """In-memory task store speaking the bridge REST API.

    Implements ``GET /api/tasks`` (with owner and lane filters) and
    ``PUT /api/tasks/{id}``. A lane change appends a status history entry
    carrying ``statusNote``. Every request is recorded.

    Attributes:
        tasks: Stored tasks as raw JSON dicts, keyed by id
        requests: Every request received, in order
        fail_with: Status code returned for the next N requests
        fail_count: Remaining forced failures
    """

    def __init__(self) -> None:
        self.tasks: dict[str, dict[str, Any]] = {}
        self.requests: list[httpx.Request] = []
        self.fail_with = 503
        self.fail_count = 0
        self.raw_list_body: bytes | None = None

    def add(self, task_id: str, lane: str = "queued", **fields: Any) -> dict[str, Any]:
        task = {
            "id": task_id,
            "title": fields.pop("title", f"Task {task_id}"),
            "lane": lane,
            "priority": fields.pop("priority", "P2"),
            "owner": fields.pop("owner", "dev-1"),
            "createdAt": fields.pop("createdAt", "2026-01-01T12:00:00Z"),
            "statusHistory": [],
            "metadata": {},
            **fields,
        }
        self.tasks[task_id] = task
        return task

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_count > 0:
            self.fail_count -= 1
            return httpx.Response(self.fail_with, text="bridge unavailable")

        path = request.url.path
        if request.method == "GET" and path == "/api/tasks":
            if self.raw_list_body is not None:
                return httpx.Response(200, content=self.raw_list_body)
            owner = request.url.params.get("owner")
            lane = request.url.params.get("lane")
            items = [
                t
                for t in self.tasks.values()
                if (owner is None or t.get("owner") == owner)
                and (lane is None or t.get("lane") == lane)
            ]
            return httpx.Response(200, json=items)

        if request.method == "PUT" and path.startswith("/api/tasks/"):
            task_id = path.removeprefix("/api/tasks/")
            task = self.tasks.get(task_id)
            if task is None:
                return httpx.Response(404, json={"error": "Task not found"})
            body = json.loads(request.content)
            new_lane = body.get("lane")
            if new_lane and new_lane != task["lane"]:
                task["statusHistory"].append(
                    {
                        "at": "2026-01-01T12:30:00Z",
                        "from": task["lane"],
                        "to": new_lane,
                        "note": body.get("statusNote"),
                    }
                )
                task["lane"] = new_lane
            if "owner" in body:
                task["owner"] = body["owner"]
            if body.get("metadata"):
                task["metadata"].update(body["metadata"])
            return httpx.Response(200, json=task)

        return httpx.Response(404, json={"error": "Not found"})


@pytest.fixture
def task_api() -> FakeTaskApi:
    """Fake task store API with no tasks."""
    return FakeTaskApi()


@pytest.fixture
def task_api_transport(task_api: FakeTaskApi) -> httpx.MockTransport:
    """httpx transport routing requests to the fake task store API."""
    return httpx.MockTransport(task_api.handler)
