from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from timeledger.core.config import SYNC_ENTITY_TYPES, Settings, get_settings
from timeledger.core.dates import utc_now
from timeledger.persistence.repos import projects as projects_repo
from timeledger.persistence.repos import sync_logs as sync_logs_repo
from timeledger.services.remote.client import FetchResult, RedmineClient
from timeledger.services.sync.reconciler import (
    EntityReconciler,
    EntitySyncResult,
    IssueReconciler,
    ProjectMemberReconciler,
    ProjectReconciler,
    SyncMode,
    TimeEntryReconciler,
    UserReconciler,
)
from timeledger.services.sync.state import SyncStateStore


logger = logging.getLogger(__name__)


@dataclass
class SyncRunResult:
    mode: str
    started_at: datetime
    completed_at: datetime | None = None
    results: dict[str, EntitySyncResult] = field(default_factory=dict)

    @property
    def status(self) -> str:
        statuses = {result.status for result in self.results.values()}
        if not statuses or statuses == {"success"}:
            return "success"
        if statuses == {"failed"}:
            return "failed"
        return "partial"

    @property
    def total_synced(self) -> int:
        return sum(result.synced for result in self.results.values())

    def as_counts(self) -> dict[str, dict[str, int]]:
        return {entity: result.as_counts() for entity, result in self.results.items()}


class SyncOrchestrator:
    """Drive fetch + reconcile per entity type in referential order."""

    def __init__(
        self,
        *,
        client: RedmineClient | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        state_store: SyncStateStore | None = None,
        settings: Settings | None = None,
    ) -> None:
        if session_factory is None:
            from timeledger.persistence.db import SessionLocal

            session_factory = SessionLocal
        self._settings = settings or get_settings()
        self._session_factory = session_factory
        self._client = client or RedmineClient()
        self._state = state_store or SyncStateStore(session_factory)
        deps: dict[str, Any] = {
            "session_factory": session_factory,
            "settings": self._settings,
            "client": self._client,
        }
        self._reconcilers: dict[str, EntityReconciler] = {
            "users": UserReconciler(**deps),
            "projects": ProjectReconciler(**deps),
            "issues": IssueReconciler(**deps),
            "time_entries": TimeEntryReconciler(**deps),
        }
        self._member_reconciler = ProjectMemberReconciler(**deps)

    @property
    def state(self) -> SyncStateStore:
        return self._state

    async def run_full_sync(self) -> SyncRunResult:
        return await self._run("full")

    async def run_incremental_sync(self) -> SyncRunResult:
        return await self._run("incremental")

    async def get_last_sync_times(self) -> dict[str, datetime | None]:
        return await self._state.get_all()

    async def _run(self, mode: SyncMode) -> SyncRunResult:
        run = SyncRunResult(mode=mode, started_at=utc_now())
        logger.info("sync_pass_started mode=%s", mode)
        # Strict dependency order; a failed stage never rolls back earlier ones.
        for entity_type in SYNC_ENTITY_TYPES:
            run.results[entity_type] = await self.run_entity_sync(entity_type, mode)
        run.completed_at = utc_now()
        await self._write_log(
            sync_type=mode,
            entity_type=None,
            status=run.status,
            records_synced=run.total_synced,
            errors=sum(result.errors for result in run.results.values()),
            started_at=run.started_at,
            completed_at=run.completed_at,
            error_message=_first_error(run.results.values()),
            metadata_json={"counts": run.as_counts()},
        )
        logger.info(
            "sync_pass_completed mode=%s status=%s synced=%d duration_s=%.1f",
            mode,
            run.status,
            run.total_synced,
            (run.completed_at - run.started_at).total_seconds(),
        )
        return run

    async def run_entity_sync(
        self,
        entity_type: str,
        mode: SyncMode = "full",
        *,
        project_external_id: int | None = None,
        days_back: int | None = None,
    ) -> EntitySyncResult:
        """Sync a single entity type.

        A project or ``days_back`` scope narrows the fetch; scoped runs never
        reconcile deletions and never move the shared cursor, since they did
        not look at the whole collection.
        """
        reconciler = self._reconcilers[entity_type]
        started = utc_now()
        scoped = project_external_id is not None or days_back is not None
        cursor = await self._state.get(entity_type) if mode == "incremental" else None
        try:
            fetched = await self._fetch(
                entity_type,
                mode,
                cursor=cursor,
                now=started,
                project_external_id=project_external_id,
                days_back=days_back,
            )
            result = await reconciler.reconcile(
                fetched,
                mode=mode,
                synced_at=started,
                cursor=cursor,
                scoped=scoped,
            )
        except Exception as exc:  # noqa: BLE001 - one failed stage must not stop later stages
            logger.exception("sync_stage_failed entity=%s mode=%s", entity_type, mode)
            result = reconciler.new_result()
            result.complete = False
            result.error = str(exc) or type(exc).__name__
        # Advance only when something landed, so an empty pass retries the same window.
        if result.synced > 0 and not scoped:
            await self._state.set(entity_type, started)
        await self._write_log(
            sync_type=mode,
            entity_type=entity_type,
            status=result.status,
            records_synced=result.synced,
            errors=result.errors,
            started_at=started,
            completed_at=utc_now(),
            error_message=result.error or (result.error_samples[0] if result.error_samples else None),
            metadata_json={
                "created": result.created,
                "updated": result.updated,
                "unchanged": result.unchanged,
                "deleted": result.deleted,
                "deactivated": result.deactivated,
                "complete": result.complete,
                "error_samples": result.error_samples,
            },
        )
        logger.info(
            "sync_stage_completed entity=%s mode=%s status=%s synced=%d errors=%d created=%d updated=%d deleted=%d deactivated=%d",
            entity_type,
            mode,
            result.status,
            result.synced,
            result.errors,
            result.created,
            result.updated,
            result.deleted,
            result.deactivated,
        )
        return result

    async def _fetch(
        self,
        entity_type: str,
        mode: SyncMode,
        *,
        cursor: datetime | None,
        now: datetime,
        project_external_id: int | None,
        days_back: int | None,
    ) -> FetchResult:
        if entity_type == "users":
            return await self._client.fetch_users()
        if entity_type == "projects":
            return await self._client.fetch_projects()
        if entity_type == "issues":
            return await self._client.fetch_issues(
                updated_after=self._window_start(mode, cursor, now, days_back, buffer_days=0),
                project_id=project_external_id,
            )
        if entity_type == "time_entries":
            return await self._client.fetch_time_entries(
                spent_from=self._window_start(
                    mode, cursor, now, days_back, buffer_days=self._settings.incremental_buffer_days
                ),
                project_id=project_external_id,
            )
        raise ValueError(f"Unknown entity type: {entity_type}")

    def _window_start(
        self,
        mode: SyncMode,
        cursor: datetime | None,
        now: datetime,
        days_back: int | None,
        *,
        buffer_days: int,
    ) -> date | None:
        # Server-side lower bound; full passes read everything unless explicitly scoped.
        if days_back is not None:
            return (now - timedelta(days=days_back)).date()
        if mode == "full":
            return None
        if cursor is None:
            return (now - timedelta(days=self._settings.incremental_default_lookback_days)).date()
        return (cursor - timedelta(days=buffer_days)).date()

    async def sync_project_members(self) -> EntitySyncResult:
        """Mirror memberships of every local project and drop ones removed upstream."""
        started = utc_now()
        async with self._session_factory() as session:
            projects = await projects_repo.list_projects(session)
        combined: FetchResult = FetchResult()
        for project in projects:
            fetched = await self._client.fetch_project_members(project.external_id)
            combined.items.extend(fetched.items)
            combined.seen_ids |= fetched.seen_ids
            combined.invalid += fetched.invalid
            combined.failed_pages += fetched.failed_pages
            if not fetched.complete:
                combined.complete = False
            if fetched.error is not None:
                combined.error = fetched.error
            await asyncio.sleep(self._settings.remote_project_detail_delay_ms / 1000.0)
        result = await self._member_reconciler.reconcile(combined, mode="full", synced_at=started)
        await self._write_log(
            sync_type="full",
            entity_type="project_members",
            status=result.status,
            records_synced=result.synced,
            errors=result.errors,
            started_at=started,
            completed_at=utc_now(),
            error_message=result.error,
        )
        logger.info(
            "sync_stage_completed entity=project_members projects=%d synced=%d errors=%d deleted=%d",
            len(projects),
            result.synced,
            result.errors,
            result.deleted,
        )
        return result

    async def _write_log(self, **fields: Any) -> None:
        # Best-effort run log; a logging failure must not fail the sync.
        try:
            async with self._session_factory() as session:
                await sync_logs_repo.create_sync_log(session, **fields)
                await session.commit()
        except Exception as exc:  # noqa: BLE001 - keep sync outcome independent of log writes
            logger.warning("sync_log_write_failed entity=%s error=%s", fields.get("entity_type"), exc)

    async def aclose(self) -> None:
        await self._client.aclose()


def _first_error(results: Any) -> str | None:
    for result in results:
        if result.error:
            return f"{result.entity_type}: {result.error}"
    return None
