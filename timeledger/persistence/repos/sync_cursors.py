from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from timeledger.core.dates import as_utc, utc_now
from timeledger.domain.models import SyncCursor


async def get_cursor(session: AsyncSession, entity_type: str) -> datetime | None:
    row = await session.get(SyncCursor, entity_type)
    return as_utc(row.last_synced_at) if row else None


async def list_cursors(session: AsyncSession) -> dict[str, datetime]:
    result = await session.execute(select(SyncCursor))
    return {row.entity_type: as_utc(row.last_synced_at) for row in result.scalars().all()}


async def set_cursor(session: AsyncSession, entity_type: str, timestamp: datetime) -> None:
    row = await session.get(SyncCursor, entity_type)
    if row is None:
        session.add(SyncCursor(entity_type=entity_type, last_synced_at=timestamp, updated_at=utc_now()))
    else:
        row.last_synced_at = timestamp
        row.updated_at = utc_now()


async def delete_cursors(session: AsyncSession, entity_type: str | None = None) -> None:
    stmt = delete(SyncCursor)
    if entity_type is not None:
        stmt = stmt.where(SyncCursor.entity_type == entity_type)
    await session.execute(stmt)
