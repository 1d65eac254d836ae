from __future__ import annotations

import os

# Point the module-level engine at SQLite before any timeledger module builds it.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import re
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

import httpx
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from timeledger.core.config import Settings
from timeledger.domain.models import Base, Issue, Project, TimeEntry, User
from timeledger.services.remote.client import RedmineClient
from timeledger.services.sync.orchestrator import SyncOrchestrator
from timeledger.services.telemetry import reset_telemetry


_USER_DETAIL = re.compile(r"^/users/(\d+)\.json$")
_PROJECT_DETAIL = re.compile(r"^/projects/(\d+)\.json$")
_MEMBERSHIPS = re.compile(r"^/projects/(\d+)/memberships\.json$")


class FakeRedmine:
    """In-memory Redmine REST API served through ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.users: dict[int, dict[str, Any]] = {}
        self.projects: dict[int, dict[str, Any]] = {}
        self.issues: dict[int, dict[str, Any]] = {}
        self.time_entries: dict[int, dict[str, Any]] = {}
        self.memberships: dict[int, list[dict[str, Any]]] = {}
        # Status codes returned, in order, before a path starts succeeding.
        self.failures: dict[str, list[int]] = {}
        self.requests: list[httpx.Request] = []

    def fail(self, path: str, *statuses: int) -> None:
        self.failures.setdefault(path, []).extend(statuses)

    def requests_for(self, path: str) -> list[httpx.Request]:
        return [request for request in self.requests if request.url.path == path]

    def add_user(self, user_id: int, firstname: str, lastname: str, *, status: int = 1) -> dict[str, Any]:
        self.users[user_id] = {
            "id": user_id,
            "login": f"{firstname.lower()}.{lastname.lower()}",
            "firstname": firstname,
            "lastname": lastname,
            "mail": f"{firstname.lower()}@example.com",
            "status": status,
            "created_on": "2026-01-05T09:00:00Z",
            "updated_on": "2026-01-05T09:00:00Z",
        }
        return self.users[user_id]

    def add_project(
        self,
        project_id: int,
        name: str,
        *,
        parent_id: int | None = None,
        status: int = 1,
        custom_fields: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": project_id,
            "name": name,
            "identifier": name.lower().replace(" ", "-"),
            "description": "",
            "status": status,
            "created_on": "2026-01-10T09:00:00Z",
            "updated_on": "2026-01-10T09:00:00Z",
        }
        if parent_id is not None:
            payload["parent"] = {"id": parent_id, "name": self.projects[parent_id]["name"]}
        if custom_fields is not None:
            payload["custom_fields"] = custom_fields
        self.projects[project_id] = payload
        return payload

    def add_issue(
        self,
        issue_id: int,
        project_id: int,
        *,
        subject: str | None = None,
        status: str = "New",
        assignee_id: int | None = None,
        estimated_hours: float | None = None,
        updated_on: str = "2026-10-01T10:00:00Z",
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": issue_id,
            "project": {"id": project_id, "name": self.projects[project_id]["name"]},
            "subject": subject or f"Issue {issue_id}",
            "status": {"id": 1, "name": status},
            "tracker": {"id": 1, "name": "Task"},
            "priority": {"id": 2, "name": "Normal"},
            "estimated_hours": estimated_hours,
            "done_ratio": 0,
            "created_on": "2026-09-01T10:00:00Z",
            "updated_on": updated_on,
        }
        if assignee_id is not None:
            payload["assigned_to"] = {"id": assignee_id, "name": "assignee"}
        self.issues[issue_id] = payload
        return payload

    def add_time_entry(
        self,
        entry_id: int,
        *,
        user_id: int,
        project_id: int,
        hours: float,
        spent_on: str,
        issue_id: int | None = None,
        created_on: str | None = None,
    ) -> dict[str, Any]:
        created = created_on or f"{spent_on}T17:00:00Z"
        payload: dict[str, Any] = {
            "id": entry_id,
            "project": {"id": project_id, "name": "project"},
            "user": {"id": user_id, "name": "user"},
            "activity": {"id": 9, "name": "Development"},
            "hours": hours,
            "comments": "",
            "spent_on": spent_on,
            "created_on": created,
            "updated_on": created,
        }
        if issue_id is not None:
            payload["issue"] = {"id": issue_id}
        self.time_entries[entry_id] = payload
        return payload

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        queued = self.failures.get(path)
        if queued:
            return httpx.Response(queued.pop(0), json={"errors": ["injected failure"]})
        params = request.url.params

        if path == "/users.json":
            return self._page("users", list(self.users.values()), params)
        if path == "/projects.json":
            return self._page("projects", list(self.projects.values()), params)
        if path == "/issues.json":
            items = [item for item in self.issues.values() if _matches_project(item, params)]
            items = [item for item in items if _on_or_after(item["updated_on"][:10], params.get("updated_on"))]
            return self._page("issues", items, params)
        if path == "/time_entries.json":
            items = [item for item in self.time_entries.values() if _matches_project(item, params)]
            items = [item for item in items if _on_or_after(item["spent_on"], params.get("spent_on"))]
            return self._page("time_entries", items, params)

        match = _USER_DETAIL.match(path)
        if match:
            user = self.users.get(int(match.group(1)))
            return httpx.Response(200, json={"user": user}) if user else httpx.Response(404, json={})
        match = _MEMBERSHIPS.match(path)
        if match:
            return self._page("memberships", self.memberships.get(int(match.group(1)), []), params)
        match = _PROJECT_DETAIL.match(path)
        if match:
            project = self.projects.get(int(match.group(1)))
            return httpx.Response(200, json={"project": project}) if project else httpx.Response(404, json={})
        return httpx.Response(404, json={})

    @staticmethod
    def _page(key: str, items: list[dict[str, Any]], params: httpx.QueryParams) -> httpx.Response:
        ordered = sorted(items, key=lambda item: item["id"])
        offset = int(params.get("offset", 0))
        limit = int(params.get("limit", 25))
        return httpx.Response(
            200,
            json={key: ordered[offset : offset + limit], "total_count": len(ordered), "offset": offset, "limit": limit},
        )


def _matches_project(item: dict[str, Any], params: httpx.QueryParams) -> bool:
    project_id = params.get("project_id")
    return project_id is None or item["project"]["id"] == int(project_id)


def _on_or_after(value: str, expression: str | None) -> bool:
    if not expression or not expression.startswith(">="):
        return True
    return value >= expression[2:]


class LocalSeeder:
    """Insert mirrored rows directly, bypassing the sync path."""

    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._session_factory = session_factory
        self._next_external = 1000

    def _external_id(self) -> int:
        self._next_external += 1
        return self._next_external

    async def _add(self, row: Any) -> int:
        async with self._session_factory() as session:
            session.add(row)
            await session.commit()
            return row.id

    async def user(self, name: str, *, status: str = "active", role: str = "user") -> int:
        return await self._add(
            User(
                external_id=self._external_id(),
                login=name.lower(),
                display_name=name,
                email=f"{name.lower()}@example.com",
                status=status,
                role=role,
            )
        )

    async def project(self, name: str) -> int:
        return await self._add(Project(external_id=self._external_id(), name=name, status="active"))

    async def issue(
        self,
        project_id: int,
        *,
        subject: str = "Task",
        status: str = "In Progress",
        assignee_id: int | None = None,
        estimated_hours: str | None = None,
    ) -> int:
        return await self._add(
            Issue(
                external_id=self._external_id(),
                project_id=project_id,
                assignee_id=assignee_id,
                subject=subject,
                status=status,
                estimated_hours=Decimal(estimated_hours) if estimated_hours is not None else None,
            )
        )

    async def entry(
        self,
        *,
        user_id: int,
        project_id: int,
        hours: str,
        spent_on: date,
        issue_id: int | None = None,
        created_on: datetime | None = None,
    ) -> int:
        created = created_on or datetime(spent_on.year, spent_on.month, spent_on.day, 17, tzinfo=timezone.utc)
        return await self._add(
            TimeEntry(
                external_id=self._external_id(),
                user_id=user_id,
                project_id=project_id,
                issue_id=issue_id,
                hours=Decimal(hours),
                spent_on=spent_on,
                created_on=created,
            )
        )


@pytest.fixture(autouse=True)
def reset_telemetry_between_tests() -> None:
    # Counters are process-global; isolate them per test.
    reset_telemetry()
    yield
    reset_telemetry()


@pytest.fixture
def settings() -> Settings:
    # Zero delays and a tiny page size keep pagination paths exercised but fast.
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite:///:memory:",
        redmine_url="http://redmine.test",
        redmine_api_key="test-key",
        remote_page_size=2,
        remote_user_page_delay_ms=0,
        remote_project_page_delay_ms=0,
        remote_issue_page_delay_ms=0,
        remote_time_entry_page_delay_ms=0,
        remote_user_detail_batch_delay_ms=0,
        remote_project_detail_delay_ms=0,
        remote_retry_max_attempts=2,
        remote_retry_backoff_ms=1,
        remote_retry_max_backoff_ms=1,
        remote_breaker_consecutive_failures=3,
        sync_upsert_concurrency=1,
        sync_resolve_project_managers=False,
    )


@pytest.fixture
async def engine():
    # One shared in-memory connection; sessions must not overlap on it.
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
def seeder(session_factory) -> LocalSeeder:
    return LocalSeeder(session_factory)


@pytest.fixture
def fake_redmine() -> FakeRedmine:
    return FakeRedmine()


@pytest.fixture
async def client(settings, fake_redmine) -> RedmineClient:
    client = RedmineClient(lambda: settings, transport=httpx.MockTransport(fake_redmine.handler))
    yield client
    await client.aclose()


@pytest.fixture
def orchestrator(client, session_factory, settings) -> SyncOrchestrator:
    return SyncOrchestrator(client=client, session_factory=session_factory, settings=settings)
