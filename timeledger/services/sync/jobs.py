from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import date
from typing import Any, Literal

from arq import create_pool
from arq.connections import RedisSettings
from pydantic import BaseModel

from timeledger.core.config import SYNC_ENTITY_TYPES, get_settings
from timeledger.persistence.db import SessionLocal
from timeledger.persistence.repos import sync_logs as sync_logs_repo
from timeledger.services import telemetry
from timeledger.services.compliance.service import ComplianceRunResult, ComplianceService
from timeledger.services.remote.client import RedmineClient
from timeledger.services.sync.orchestrator import SyncOrchestrator
from timeledger.services.sync.state import SyncStateStore


logger = logging.getLogger(__name__)

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()
# Strong references keep inline jobs alive until they finish.
_background_tasks: set[asyncio.Task] = set()

JobKind = Literal["sync", "compliance", "cycle"]


class SyncJobPayload(BaseModel):
    # Shared payload for the worker functions and inline execution.
    kind: JobKind
    job_id: str
    mode: Literal["full", "incremental"] = "incremental"
    entity_type: str | None = None
    days_back: int | None = None
    project_external_id: int | None = None
    as_of: date | None = None


class JobAck(BaseModel):
    status: Literal["started"] = "started"
    job_id: str
    kind: JobKind


def _new_job_id(kind: str) -> str:
    return f"{kind}-{uuid.uuid4().hex[:12]}"


def build_orchestrator() -> SyncOrchestrator:
    return SyncOrchestrator(session_factory=SessionLocal)


def build_compliance_service() -> ComplianceService:
    return ComplianceService(session_factory=SessionLocal)


async def get_redis_pool():
    # Cache the Redis pool to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.sync_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def trigger_sync(
    mode: Literal["full", "incremental"] = "incremental",
    *,
    entity_type: str | None = None,
    days_back: int | None = None,
    project_external_id: int | None = None,
) -> JobAck:
    """Start a sync pass in the background and return immediately."""
    if entity_type is not None and entity_type not in SYNC_ENTITY_TYPES:
        raise ValueError(f"Unknown entity type: {entity_type}")
    if days_back is not None and days_back < 1:
        raise ValueError("days_back must be positive")
    payload = SyncJobPayload(
        kind="sync",
        job_id=_new_job_id("sync"),
        mode=mode,
        entity_type=entity_type,
        days_back=days_back,
        project_external_id=project_external_id,
    )
    return await _dispatch(payload, "run_sync_job")


async def trigger_compliance(as_of: date | None = None) -> JobAck:
    payload = SyncJobPayload(kind="compliance", job_id=_new_job_id("compliance"), as_of=as_of)
    return await _dispatch(payload, "run_compliance_job")


async def _dispatch(payload: SyncJobPayload, function_name: str) -> JobAck:
    settings = get_settings()
    if settings.sync_execution_mode.lower() == "inline":
        task = asyncio.create_task(_run_inline(payload))
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)
    else:
        redis = await get_redis_pool()
        await redis.enqueue_job(
            function_name,
            payload.model_dump(mode="json"),
            _job_id=payload.job_id,
            _queue_name=settings.sync_queue_name,
        )
    logger.info(
        "sync_job_started kind=%s job_id=%s mode=%s execution=%s",
        payload.kind,
        payload.job_id,
        payload.mode,
        settings.sync_execution_mode,
    )
    return JobAck(job_id=payload.job_id, kind=payload.kind)


async def _run_inline(payload: SyncJobPayload) -> None:
    # Nobody awaits inline tasks; outcomes surface through sync logs.
    try:
        await execute_job(payload)
    except Exception:  # noqa: BLE001 - background task has no caller to report to
        logger.exception("sync_job_failed kind=%s job_id=%s", payload.kind, payload.job_id)


async def execute_job(payload: SyncJobPayload) -> dict[str, Any]:
    """Run one job to completion; shared by the worker and inline mode."""
    if payload.kind == "compliance":
        result = await _run_compliance(payload.as_of)
        return _compliance_summary(result)
    if payload.kind == "cycle":
        return await run_sync_cycle()

    orchestrator = build_orchestrator()
    try:
        if payload.entity_type is not None:
            stage = await orchestrator.run_entity_sync(
                payload.entity_type,
                payload.mode,
                project_external_id=payload.project_external_id,
                days_back=payload.days_back,
            )
            return {"status": stage.status, "counts": {stage.entity_type: stage.as_counts()}}
        if payload.mode == "full":
            run = await orchestrator.run_full_sync()
        else:
            run = await orchestrator.run_incremental_sync()
        return {"status": run.status, "counts": run.as_counts()}
    finally:
        await orchestrator.aclose()


async def run_sync_cycle() -> dict[str, Any]:
    """Scheduled cycle: incremental sync, then compliance over the fresh mirror."""
    orchestrator = build_orchestrator()
    try:
        run = await orchestrator.run_incremental_sync()
    finally:
        await orchestrator.aclose()
    compliance = await _run_compliance(None)
    logger.info(
        "sync_cycle_completed sync_status=%s synced=%d violations=%d compliance_status=%s",
        run.status,
        run.total_synced,
        len(compliance.violations),
        compliance.status,
    )
    return {
        "sync": {"status": run.status, "counts": run.as_counts()},
        "compliance": _compliance_summary(compliance),
    }


async def _run_compliance(as_of: date | None) -> ComplianceRunResult:
    service = build_compliance_service()
    return await service.run_compliance_checks(as_of)


def _compliance_summary(result: ComplianceRunResult) -> dict[str, Any]:
    return {
        "status": result.status,
        "as_of": result.as_of.isoformat(),
        "violations": len(result.violations),
        "created": result.created,
        "updated": result.updated,
        "errors": result.errors,
        "failed_rules": result.failed_rules,
    }


async def get_sync_status(*, log_limit: int = 20, check_connection: bool = True) -> dict[str, Any]:
    """Cursors, recent run logs and remote reachability for operators."""
    cursors = await SyncStateStore(SessionLocal).get_all()
    async with SessionLocal() as session:
        logs = await sync_logs_repo.list_recent_sync_logs(session, limit=log_limit)
    connected: bool | None = None
    if check_connection:
        client = RedmineClient()
        try:
            connected = await client.test_connection()
        except Exception as exc:  # noqa: BLE001 - status reporting must not fail on config issues
            logger.warning("sync_status_connection_failed error=%s", exc)
            connected = False
        finally:
            await client.aclose()
    return {
        "cursors": {entity: value.isoformat() if value else None for entity, value in cursors.items()},
        "recent_logs": [
            {
                "id": log.id,
                "sync_type": log.sync_type,
                "entity_type": log.entity_type,
                "status": log.status,
                "records_synced": log.records_synced,
                "errors": log.errors,
                "error_message": log.error_message,
                "started_at": log.started_at.isoformat() if log.started_at else None,
                "completed_at": log.completed_at.isoformat() if log.completed_at else None,
            }
            for log in logs
        ],
        "connected": connected,
        "counters": telemetry.counters_snapshot(),
        "gauges": telemetry.gauges_snapshot(),
        "external_calls": telemetry.external_call_stats(),
        "inflight_jobs": len(_background_tasks),
    }
