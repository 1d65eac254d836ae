from __future__ import annotations

from sqlalchemy import delete, exists, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from timeledger.domain.models import (
    ComplianceViolation,
    Issue,
    ManagerScorecard,
    Project,
    ProjectMember,
    TimeEntry,
    User,
    UserStatus,
)


async def has_dependents(session: AsyncSession, user_id: int) -> bool:
    # Any historical reference keeps the user row alive as a locked record.
    checks = (
        exists().where(TimeEntry.user_id == user_id),
        exists().where(Issue.assignee_id == user_id),
        exists().where(ComplianceViolation.user_id == user_id),
        exists().where(ManagerScorecard.manager_id == user_id),
        exists().where(User.manager_id == user_id),
        exists().where(Project.manager_id == user_id),
        exists().where(ProjectMember.user_id == user_id),
    )
    for check in checks:
        result = await session.execute(select(check))
        if result.scalar():
            return True
    return False


async def lock_user(session: AsyncSession, user_id: int) -> bool:
    """Soft-delete a user; returns False when it was already locked."""
    result = await session.execute(
        update(User)
        .where(User.id == user_id, User.status != UserStatus.LOCKED.value)
        .values(status=UserStatus.LOCKED.value)
    )
    return bool(result.rowcount)


async def delete_user(session: AsyncSession, user_id: int) -> None:
    await session.execute(delete(User).where(User.id == user_id))


async def find_manager_by_hint(session: AsyncSession, hint: str) -> User | None:
    # Match the free-text custom field against managers by name or email.
    needle = f"%{hint.strip().lower()}%"
    result = await session.execute(
        select(User)
        .where(
            User.role.in_(("manager", "admin")),
            or_(func.lower(User.display_name).like(needle), func.lower(User.email).like(needle)),
        )
        .order_by(User.id)
        .limit(1)
    )
    return result.scalar_one_or_none()
