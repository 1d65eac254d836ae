from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from timeledger.core.config import get_settings
from timeledger.core.logging import configure_logging
from timeledger.services.sync.jobs import SyncJobPayload, execute_job, run_sync_cycle


logger = logging.getLogger(__name__)


async def run_sync_job(ctx, payload: dict) -> dict:
    # Parse and validate payloads in the worker to enforce schema contracts.
    job_payload = SyncJobPayload.model_validate(payload)
    logger.info(
        "sync_job_received job_id=%s try=%s mode=%s entity=%s",
        ctx.get("job_id") or job_payload.job_id,
        ctx.get("job_try", 1),
        job_payload.mode,
        job_payload.entity_type or "all",
    )
    return await execute_job(job_payload)


async def run_compliance_job(ctx, payload: dict) -> dict:
    job_payload = SyncJobPayload.model_validate(payload)
    logger.info("compliance_job_received job_id=%s as_of=%s", job_payload.job_id, job_payload.as_of)
    return await execute_job(job_payload)


async def run_scheduled_cycle(ctx) -> dict:
    # Nightly cron: incremental sync then compliance checks.
    return await run_sync_cycle()


async def _startup(ctx) -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info("sync_worker_started queue=%s cron=%s", settings.sync_queue_name, settings.sync_cron_enabled)


def _cron_jobs() -> list:
    settings = get_settings()
    if not settings.sync_cron_enabled:
        return []
    return [cron(run_scheduled_cycle, hour={settings.sync_cron_hour}, minute={0}, run_at_startup=False)]


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.sync_queue_name
    max_tries = settings.sync_job_max_tries
    # Passes share cursors; never run two at once.
    max_jobs = 1
    # Full passes over large trackers run well beyond arq's default timeout.
    job_timeout = 6 * 60 * 60
    functions = [run_sync_job, run_compliance_job]
    cron_jobs = _cron_jobs()
    on_startup = _startup
