from __future__ import annotations

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from timeledger.domain.models import TimeEntry


async def delete_time_entries(session: AsyncSession, entry_ids: list[int]) -> int:
    if not entry_ids:
        return 0
    result = await session.execute(delete(TimeEntry).where(TimeEntry.id.in_(entry_ids)))
    return int(result.rowcount or 0)
