from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Generic, Iterable, Literal, Sequence, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from timeledger.core.config import Settings
from timeledger.core.dates import as_utc, start_of_day
from timeledger.core.errors import DatabaseError, ReferentialError, RemoteError
from timeledger.domain.models import (
    Base,
    Issue,
    Project,
    ProjectMember,
    ProjectStatus,
    TimeEntry,
    User,
    UserStatus,
)
from timeledger.persistence.repos import issues as issues_repo
from timeledger.persistence.repos import projects as projects_repo
from timeledger.persistence.repos import synced as synced_repo
from timeledger.persistence.repos import time_entries as time_entries_repo
from timeledger.persistence.repos import users as users_repo
from timeledger.services.remote.client import FetchResult, RedmineClient
from timeledger.services.remote.schemas import (
    RemoteIssue,
    RemoteMembership,
    RemoteProject,
    RemoteTimeEntry,
    RemoteUser,
)
from timeledger.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

RemoteT = TypeVar("RemoteT")
SyncMode = Literal["full", "incremental"]

_USER_STATUS = {1: UserStatus.ACTIVE, 2: UserStatus.REGISTERED, 3: UserStatus.LOCKED}
_PROJECT_STATUS = {5: ProjectStatus.CLOSED, 9: ProjectStatus.ARCHIVED}


@dataclass
class EntitySyncResult:
    """Per-entity-type counters for one sync pass."""

    entity_type: str
    synced: int = 0
    errors: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    deleted: int = 0
    deactivated: int = 0
    filtered: int = 0
    complete: bool = True
    error: str | None = None
    error_samples: list[str] = field(default_factory=list)
    max_error_samples: int = 10

    @property
    def status(self) -> str:
        if self.error is not None and self.synced == 0:
            return "failed"
        if self.error is not None or self.errors:
            return "partial"
        return "success"

    def record_outcome(self, outcome: str) -> None:
        self.synced += 1
        if outcome == "created":
            self.created += 1
        elif outcome == "updated":
            self.updated += 1
        else:
            self.unchanged += 1

    def record_error(self, reason: str) -> None:
        # Keep a bounded sample of reasons; the rest only count.
        self.errors += 1
        if len(self.error_samples) < self.max_error_samples:
            self.error_samples.append(reason)

    def as_counts(self) -> dict[str, int]:
        return {"synced": self.synced, "errors": self.errors}


def _chunks(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    size = max(1, size)
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _changed_since(record: Any, cursor: datetime) -> bool:
    # Records without timestamps are kept; the upsert is idempotent anyway.
    stamps = [value for value in (getattr(record, "created_on", None), getattr(record, "updated_on", None)) if value]
    if not stamps:
        return True
    return any(as_utc(value) >= cursor for value in stamps)


class EntityReconciler(ABC, Generic[RemoteT]):
    """Upsert remote records of one type and reconcile remote deletions."""

    entity_type: str
    model: type[Base]
    batch_size_setting: str | None = None

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        client: RedmineClient | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._client = client

    def new_result(self) -> EntitySyncResult:
        return EntitySyncResult(self.entity_type, max_error_samples=self._settings.sync_error_sample_size)

    @abstractmethod
    async def upsert(self, session: AsyncSession, record: RemoteT, *, synced_at: datetime) -> str:
        """Write one record; returns created, updated or unchanged."""

    @abstractmethod
    async def delete_missing(self, session: AsyncSession, local_id: int, result: EntitySyncResult) -> None:
        """Remove or deactivate one local row that the remote no longer reports."""

    async def reconcile(
        self,
        fetched: FetchResult[RemoteT],
        *,
        mode: SyncMode,
        synced_at: datetime,
        cursor: datetime | None = None,
        scoped: bool = False,
    ) -> EntitySyncResult:
        result = self.new_result()
        for _ in range(fetched.invalid):
            result.record_error(f"{self.entity_type}: invalid remote payload")
        for _ in range(fetched.skipped):
            result.record_error(f"{self.entity_type}: detail fetch failed")
        records = list(fetched.items)
        if mode == "incremental" and cursor is not None:
            kept = [record for record in records if _changed_since(record, cursor)]
            result.filtered = len(records) - len(kept)
            records = kept
        await self.upsert_records(records, result, synced_at=synced_at)
        if fetched.error is not None:
            result.error = str(fetched.error)
        result.complete = fetched.complete
        if mode == "full" and not scoped:
            if fetched.complete and fetched.error is None:
                await self.reconcile_deletions(fetched.seen_ids, result)
            else:
                logger.warning("sync_deletion_skipped entity=%s reason=incomplete_fetch", self.entity_type)
        return result

    def ordered_batches(self, records: list[RemoteT]) -> list[Sequence[RemoteT]]:
        size_setting = self.batch_size_setting
        size = getattr(self._settings, size_setting) if size_setting else len(records) or 1
        return list(_chunks(records, size))

    async def upsert_records(
        self,
        records: list[RemoteT],
        result: EntitySyncResult,
        *,
        synced_at: datetime,
    ) -> None:
        semaphore = asyncio.Semaphore(max(1, self._settings.sync_upsert_concurrency))
        batches = self.ordered_batches(records)
        for index, batch in enumerate(batches, start=1):
            outcomes = await asyncio.gather(
                *(self._upsert_unit(semaphore, record, synced_at) for record in batch),
                return_exceptions=True,
            )
            failed = 0
            for record, outcome in zip(batch, outcomes):
                if isinstance(outcome, BaseException):
                    failed += 1
                    result.record_error(f"{self.entity_type} {getattr(record, 'id', '?')}: {outcome}")
                else:
                    result.record_outcome(outcome)
            if failed:
                increment_counter(f"sync_record_errors_total.{self.entity_type}", failed)
            logger.info(
                "sync_batch_completed entity=%s batch=%d/%d ok=%d failed=%d",
                self.entity_type,
                index,
                len(batches),
                len(batch) - failed,
                failed,
            )

    async def _upsert_unit(self, semaphore: asyncio.Semaphore, record: RemoteT, synced_at: datetime) -> str:
        # Each unit owns its session so a failure never poisons its siblings.
        async with semaphore:
            try:
                async with self._session_factory() as session:
                    outcome = await self.upsert(session, record, synced_at=synced_at)
                    await session.commit()
                    return outcome
            except SQLAlchemyError as exc:
                raise DatabaseError(f"{self.entity_type} upsert failed: {exc}") from exc

    async def reconcile_deletions(self, seen_ids: set[int], result: EntitySyncResult) -> None:
        async with self._session_factory() as session:
            local = await synced_repo.list_external_ids(session, self.model)
        missing = sorted(set(local) - seen_ids)
        if not seen_ids and local:
            # An empty listing against a populated table is far more likely an API fault.
            logger.warning("sync_deletion_skipped entity=%s reason=empty_fetch local=%d", self.entity_type, len(local))
            return
        for external_id in missing:
            try:
                async with self._session_factory() as session:
                    await self.delete_missing(session, local[external_id], result)
                    await session.commit()
            except Exception as exc:  # noqa: BLE001 - one failed delete must not stop the rest
                result.record_error(f"{self.entity_type} delete {external_id}: {exc}")
        if missing:
            logger.info(
                "sync_deletions_reconciled entity=%s missing=%d deleted=%d deactivated=%d",
                self.entity_type,
                len(missing),
                result.deleted,
                result.deactivated,
            )


class UserReconciler(EntityReconciler[RemoteUser]):
    entity_type = "users"
    model = User

    async def upsert(self, session: AsyncSession, record: RemoteUser, *, synced_at: datetime) -> str:
        status = _USER_STATUS.get(record.status, UserStatus.ACTIVE)
        _, outcome = await synced_repo.upsert_by_external_id(
            session,
            User,
            external_id=record.id,
            values={
                "login": record.login,
                "display_name": record.display_name,
                "email": record.mail,
                "status": status.value,
            },
            create_only={"role": "user"},
            created_at=record.created_on,
            updated_at=record.updated_on,
            synced_at=synced_at,
        )
        return outcome

    async def delete_missing(self, session: AsyncSession, local_id: int, result: EntitySyncResult) -> None:
        # Users with history are locked instead of removed so audit trails stay intact.
        if await users_repo.has_dependents(session, local_id):
            if await users_repo.lock_user(session, local_id):
                result.deactivated += 1
            return
        await users_repo.delete_user(session, local_id)
        result.deleted += 1


class ProjectReconciler(EntityReconciler[RemoteProject]):
    entity_type = "projects"
    model = Project

    def ordered_batches(self, records: list[RemoteProject]) -> list[Sequence[RemoteProject]]:
        # Upsert tree generations in order so parents exist before their children.
        by_id = {record.id: record for record in records}
        depth_cache: dict[int, int] = {}

        def depth(record: RemoteProject, seen: frozenset[int] = frozenset()) -> int:
            if record.id in depth_cache:
                return depth_cache[record.id]
            parent = by_id.get(record.parent.id) if record.parent else None
            value = 0 if parent is None or parent.id in seen else depth(parent, seen | {record.id}) + 1
            depth_cache[record.id] = value
            return value

        generations: dict[int, list[RemoteProject]] = {}
        for record in records:
            generations.setdefault(depth(record), []).append(record)
        return [generations[level] for level in sorted(generations)]

    async def upsert(self, session: AsyncSession, record: RemoteProject, *, synced_at: datetime) -> str:
        parent_id = await synced_repo.resolve_local_id(session, Project, record.parent.id if record.parent else None)
        status = _PROJECT_STATUS.get(record.status, ProjectStatus.ACTIVE)
        row, outcome = await synced_repo.upsert_by_external_id(
            session,
            Project,
            external_id=record.id,
            values={
                "name": record.name,
                "identifier": record.identifier,
                "description": record.description,
                "status": status.value,
                "parent_id": parent_id,
            },
            created_at=record.created_on,
            updated_at=record.updated_on,
            synced_at=synced_at,
        )
        if row.manager_id is None and self._settings.sync_resolve_project_managers:
            await self._resolve_manager(session, row, record)
        return outcome

    async def _resolve_manager(self, session: AsyncSession, row: Project, record: RemoteProject) -> None:
        # Manager comes from a "manager"/"PM" custom field, else the parent project.
        custom_fields = record.custom_fields
        if not custom_fields and self._client is not None:
            try:
                detail = await self._client.fetch_project_detail(record.id)
                custom_fields = detail.custom_fields
            except RemoteError as exc:
                logger.warning("project_detail_failed project_id=%s error=%s", record.id, exc)
            await asyncio.sleep(self._settings.remote_project_detail_delay_ms / 1000.0)
        hint = _manager_hint(custom_fields)
        manager = await users_repo.find_manager_by_hint(session, hint) if hint else None
        if manager is not None:
            row.manager_id = manager.id
        elif row.parent_id is not None:
            parent = await projects_repo.get_project(session, row.parent_id)
            if parent is not None and parent.manager_id is not None:
                row.manager_id = parent.manager_id
        if row.manager_id is not None:
            logger.info("project_manager_resolved project_id=%s manager_id=%s", record.id, row.manager_id)

    async def delete_missing(self, session: AsyncSession, local_id: int, result: EntitySyncResult) -> None:
        result.deleted += await projects_repo.delete_projects(session, [local_id])


def _manager_hint(custom_fields: Sequence[Any]) -> str | None:
    for custom_field in custom_fields:
        name = (custom_field.name or "").lower()
        value = custom_field.value
        if ("manager" in name or "pm" in name) and isinstance(value, str) and value.strip():
            return value.strip()
    return None


class IssueReconciler(EntityReconciler[RemoteIssue]):
    entity_type = "issues"
    model = Issue
    batch_size_setting = "sync_issue_batch_size"

    async def upsert(self, session: AsyncSession, record: RemoteIssue, *, synced_at: datetime) -> str:
        project_id = await synced_repo.resolve_local_id(session, Project, record.project.id)
        if project_id is None:
            raise ReferentialError(f"project {record.project.id} not synced")
        assignee_id = await synced_repo.resolve_local_id(
            session, User, record.assigned_to.id if record.assigned_to else None
        )
        _, outcome = await synced_repo.upsert_by_external_id(
            session,
            Issue,
            external_id=record.id,
            values={
                "project_id": project_id,
                "assignee_id": assignee_id,
                "subject": record.subject,
                "status": record.status.name if record.status and record.status.name else "Unknown",
                "tracker": record.tracker.name if record.tracker else None,
                "priority": record.priority.name if record.priority else None,
                "estimated_hours": record.estimated_hours,
                "done_ratio": record.done_ratio,
                "due_date": record.due_date,
            },
            created_at=record.created_on,
            updated_at=record.updated_on,
            synced_at=synced_at,
        )
        return outcome

    async def delete_missing(self, session: AsyncSession, local_id: int, result: EntitySyncResult) -> None:
        result.deleted += await issues_repo.delete_issues(session, [local_id])


class TimeEntryReconciler(EntityReconciler[RemoteTimeEntry]):
    entity_type = "time_entries"
    model = TimeEntry
    batch_size_setting = "sync_time_entry_batch_size"

    async def upsert(self, session: AsyncSession, record: RemoteTimeEntry, *, synced_at: datetime) -> str:
        user_id = await synced_repo.resolve_local_id(session, User, record.user.id)
        if user_id is None:
            raise ReferentialError(f"user {record.user.id} not synced")
        project_id = await synced_repo.resolve_local_id(session, Project, record.project.id)
        if project_id is None:
            raise ReferentialError(f"project {record.project.id} not synced")
        issue_id = None
        if record.issue is not None:
            issue_id = await synced_repo.resolve_local_id(session, Issue, record.issue.id)
            if issue_id is None:
                raise ReferentialError(f"issue {record.issue.id} not synced")
        created_on = record.created_on or start_of_day(record.spent_on)
        _, outcome = await synced_repo.upsert_by_external_id(
            session,
            TimeEntry,
            external_id=record.id,
            values={
                "user_id": user_id,
                "project_id": project_id,
                "issue_id": issue_id,
                "hours": record.hours,
                "spent_on": record.spent_on,
                "activity": record.activity.name if record.activity else None,
                "comments": record.comments,
                "created_on": created_on,
            },
            created_at=created_on,
            updated_at=record.updated_on,
            synced_at=synced_at,
        )
        return outcome

    async def delete_missing(self, session: AsyncSession, local_id: int, result: EntitySyncResult) -> None:
        result.deleted += await time_entries_repo.delete_time_entries(session, [local_id])


class ProjectMemberReconciler(EntityReconciler[RemoteMembership]):
    entity_type = "project_members"
    model = ProjectMember

    async def upsert(self, session: AsyncSession, record: RemoteMembership, *, synced_at: datetime) -> str:
        project_id = await synced_repo.resolve_local_id(session, Project, record.project.id)
        if project_id is None:
            raise ReferentialError(f"project {record.project.id} not synced")
        user_id = await synced_repo.resolve_local_id(session, User, record.user.id if record.user else None)
        member = record.user or record.group
        _, outcome = await synced_repo.upsert_by_external_id(
            session,
            ProjectMember,
            external_id=record.id,
            values={
                "project_id": project_id,
                "user_id": user_id,
                "remote_user_id": record.user.id if record.user else None,
                "remote_group_id": record.group.id if record.group else None,
                "name": member.name if member else None,
                "roles_json": [{"id": role.id, "name": role.name} for role in record.roles],
            },
            created_at=None,
            updated_at=None,
            synced_at=synced_at,
        )
        return outcome

    async def delete_missing(self, session: AsyncSession, local_id: int, result: EntitySyncResult) -> None:
        row = await session.get(ProjectMember, local_id)
        if row is not None:
            await session.delete(row)
            result.deleted += 1
