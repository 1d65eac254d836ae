from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from timeledger.core.dates import as_utc, start_of_day
from timeledger.domain.models import Issue, Project, TimeEntry, User, UserStatus


# Detectors that look at "the last week" share this window.
RECENT_WINDOW_DAYS = 7
_HOURS_QUANTUM = Decimal("0.01")


@dataclass(frozen=True)
class SnapshotUser:
    id: int
    display_name: str
    status: str

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE.value


@dataclass(frozen=True)
class SnapshotIssue:
    id: int
    project_id: int
    assignee_id: int | None
    subject: str
    status: str
    estimated_hours: Decimal | None


@dataclass(frozen=True)
class SnapshotEntry:
    id: int
    user_id: int
    project_id: int
    issue_id: int | None
    hours: Decimal
    spent_on: date
    created_on: datetime


@dataclass
class ComplianceSnapshot:
    """Read-only view of the local mirror that every detector evaluates.

    ``entries`` only covers the recent window the detectors need; per-issue
    hour totals and last-entry dates are pre-aggregated over full history.
    """

    users: dict[int, SnapshotUser] = field(default_factory=dict)
    project_names: dict[int, str] = field(default_factory=dict)
    issues: dict[int, SnapshotIssue] = field(default_factory=dict)
    entries: list[SnapshotEntry] = field(default_factory=list)
    issue_hours: dict[int, Decimal] = field(default_factory=dict)
    last_entry_by_user: dict[int, date] = field(default_factory=dict)
    last_entry_by_issue: dict[int, date] = field(default_factory=dict)

    def active_users(self) -> list[SnapshotUser]:
        return [user for user in self.users.values() if user.is_active]


def snapshot_window_days(*lookbacks: int) -> int:
    return max([RECENT_WINDOW_DAYS, *lookbacks]) + 1


async def load_snapshot(session: AsyncSession, *, as_of: date, window_days: int) -> ComplianceSnapshot:
    snapshot = ComplianceSnapshot()
    window_start = as_of - timedelta(days=window_days)

    users = await session.execute(select(User.id, User.display_name, User.status))
    snapshot.users = {row.id: SnapshotUser(row.id, row.display_name, row.status) for row in users.all()}

    projects = await session.execute(select(Project.id, Project.name))
    snapshot.project_names = {row.id: row.name for row in projects.all()}

    issues = await session.execute(
        select(Issue.id, Issue.project_id, Issue.assignee_id, Issue.subject, Issue.status, Issue.estimated_hours)
    )
    snapshot.issues = {
        row.id: SnapshotIssue(
            row.id,
            row.project_id,
            row.assignee_id,
            row.subject,
            row.status,
            Decimal(str(row.estimated_hours)) if row.estimated_hours is not None else None,
        )
        for row in issues.all()
    }

    # Either side of the window matters: late entries are found by creation time.
    entries = await session.execute(
        select(TimeEntry).where(
            or_(TimeEntry.spent_on >= window_start, TimeEntry.created_on >= start_of_day(window_start))
        )
    )
    snapshot.entries = [
        SnapshotEntry(
            id=row.id,
            user_id=row.user_id,
            project_id=row.project_id,
            issue_id=row.issue_id,
            hours=Decimal(str(row.hours)),
            spent_on=row.spent_on,
            created_on=as_utc(row.created_on),
        )
        for row in entries.scalars().all()
    ]

    totals = await session.execute(
        select(TimeEntry.issue_id, func.sum(TimeEntry.hours))
        .where(TimeEntry.issue_id.is_not(None))
        .group_by(TimeEntry.issue_id)
    )
    # Hours carry two decimals; quantize so float sums from SQLite compare exactly.
    snapshot.issue_hours = {
        row[0]: Decimal(str(row[1] or 0)).quantize(_HOURS_QUANTUM) for row in totals.all()
    }

    last_by_user = await session.execute(
        select(TimeEntry.user_id, func.max(TimeEntry.spent_on))
        .where(TimeEntry.spent_on <= as_of)
        .group_by(TimeEntry.user_id)
    )
    snapshot.last_entry_by_user = {row[0]: _as_date(row[1]) for row in last_by_user.all() if row[1]}

    last_by_issue = await session.execute(
        select(TimeEntry.issue_id, func.max(TimeEntry.spent_on))
        .where(TimeEntry.issue_id.is_not(None), TimeEntry.spent_on <= as_of)
        .group_by(TimeEntry.issue_id)
    )
    snapshot.last_entry_by_issue = {row[0]: _as_date(row[1]) for row in last_by_issue.all() if row[1]}
    return snapshot


def _as_date(value: date | str) -> date:
    # SQLite aggregates hand back ISO strings instead of dates.
    if isinstance(value, str):
        return date.fromisoformat(value[:10])
    return value
