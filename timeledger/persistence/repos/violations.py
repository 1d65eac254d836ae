from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from timeledger.core.dates import utc_now
from timeledger.domain.models import ComplianceViolation, ViolationStatus


async def get_by_key(
    session: AsyncSession, *, user_id: int, violation_type: str, day: datetime
) -> ComplianceViolation | None:
    result = await session.execute(
        select(ComplianceViolation).where(
            ComplianceViolation.user_id == user_id,
            ComplianceViolation.violation_type == violation_type,
            ComplianceViolation.date == day,
        )
    )
    return result.scalar_one_or_none()


async def upsert_violation(
    session: AsyncSession,
    *,
    user_id: int,
    violation_type: str,
    day: datetime,
    severity: str,
    metadata_json: dict[str, Any],
) -> tuple[ComplianceViolation, bool]:
    """Create or refresh a violation; returns (row, created)."""
    row = await get_by_key(session, user_id=user_id, violation_type=violation_type, day=day)
    now = utc_now()
    if row is None:
        row = ComplianceViolation(
            user_id=user_id,
            violation_type=violation_type,
            date=day,
            severity=severity,
            status=ViolationStatus.OPEN.value,
            metadata_json=metadata_json,
            created_at=now,
            updated_at=now,
        )
        session.add(row)
        await session.flush()
        return row, True
    # Recurrence re-opens a previously resolved violation.
    row.severity = severity
    row.metadata_json = metadata_json
    row.status = ViolationStatus.OPEN.value
    row.resolved_at = None
    row.updated_at = now
    await session.flush()
    return row, False


async def list_violations(
    session: AsyncSession,
    *,
    user_id: int | None = None,
    status: str | None = None,
    violation_type: str | None = None,
    since: datetime | None = None,
    limit: int = 500,
) -> list[ComplianceViolation]:
    stmt = select(ComplianceViolation)
    if user_id is not None:
        stmt = stmt.where(ComplianceViolation.user_id == user_id)
    if status:
        stmt = stmt.where(ComplianceViolation.status == status)
    if violation_type:
        stmt = stmt.where(ComplianceViolation.violation_type == violation_type)
    if since is not None:
        stmt = stmt.where(ComplianceViolation.date >= since)
    result = await session.execute(
        stmt.order_by(ComplianceViolation.date.desc(), ComplianceViolation.id.desc()).limit(limit)
    )
    return list(result.scalars().all())


async def resolve_violation(session: AsyncSession, violation_id: int) -> ComplianceViolation | None:
    row = await session.get(ComplianceViolation, violation_id)
    if row is None:
        return None
    row.status = ViolationStatus.RESOLVED.value
    row.resolved_at = utc_now()
    row.updated_at = row.resolved_at
    return row
