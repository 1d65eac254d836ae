from __future__ import annotations

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from timeledger.domain.models import Issue, TimeEntry


async def delete_issues(session: AsyncSession, issue_ids: list[int]) -> int:
    # Issue removal takes its time entries with it.
    if not issue_ids:
        return 0
    await session.execute(delete(TimeEntry).where(TimeEntry.issue_id.in_(issue_ids)))
    result = await session.execute(delete(Issue).where(Issue.id.in_(issue_ids)))
    return int(result.rowcount or 0)
