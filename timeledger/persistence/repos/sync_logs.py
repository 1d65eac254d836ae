from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from timeledger.domain.models import SyncLog


async def create_sync_log(
    session: AsyncSession,
    *,
    sync_type: str,
    entity_type: str | None,
    status: str,
    records_synced: int,
    errors: int,
    started_at: datetime,
    completed_at: datetime | None,
    error_message: str | None = None,
    metadata_json: dict[str, Any] | None = None,
) -> SyncLog:
    row = SyncLog(
        sync_type=sync_type,
        entity_type=entity_type,
        status=status,
        records_synced=records_synced,
        errors=errors,
        started_at=started_at,
        completed_at=completed_at,
        error_message=error_message,
        metadata_json=metadata_json,
    )
    session.add(row)
    return row


async def list_recent_sync_logs(session: AsyncSession, *, limit: int = 20) -> list[SyncLog]:
    result = await session.execute(
        select(SyncLog).order_by(SyncLog.started_at.desc(), SyncLog.id.desc()).limit(limit)
    )
    return list(result.scalars().all())
