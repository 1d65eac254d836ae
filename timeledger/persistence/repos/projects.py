from __future__ import annotations

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from timeledger.domain.models import Issue, Project, ProjectMember, TimeEntry


async def get_project(session: AsyncSession, project_id: int) -> Project | None:
    return await session.get(Project, project_id)


async def list_projects(session: AsyncSession) -> list[Project]:
    result = await session.execute(select(Project).order_by(Project.id))
    return list(result.scalars().all())


async def delete_projects(session: AsyncSession, project_ids: list[int]) -> int:
    """Hard-delete projects together with their issues, time entries and memberships."""
    if not project_ids:
        return 0
    # Cascade explicitly so backends without FK enforcement behave identically.
    issue_ids = select(Issue.id).where(Issue.project_id.in_(project_ids))
    await session.execute(delete(TimeEntry).where(TimeEntry.issue_id.in_(issue_ids)))
    # What remains here is issue-less; the project_id FK forbids keeping it once the project goes.
    await session.execute(delete(TimeEntry).where(TimeEntry.project_id.in_(project_ids)))
    await session.execute(delete(Issue).where(Issue.project_id.in_(project_ids)))
    await session.execute(delete(ProjectMember).where(ProjectMember.project_id.in_(project_ids)))
    await session.execute(
        update(Project).where(Project.parent_id.in_(project_ids)).values(parent_id=None)
    )
    result = await session.execute(delete(Project).where(Project.id.in_(project_ids)))
    return int(result.rowcount or 0)
