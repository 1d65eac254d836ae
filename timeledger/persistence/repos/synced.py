from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal, TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from timeledger.core.dates import as_utc
from timeledger.domain.models import Base


ModelT = TypeVar("ModelT", bound=Base)
UpsertOutcome = Literal["created", "updated", "unchanged"]


async def get_by_external_id(session: AsyncSession, model: type[ModelT], external_id: int) -> ModelT | None:
    result = await session.execute(select(model).where(model.external_id == external_id))
    return result.scalar_one_or_none()


async def resolve_local_id(session: AsyncSession, model: type[ModelT], external_id: int | None) -> int | None:
    # Translate a remote reference into a local primary key, or None if not mirrored yet.
    if external_id is None:
        return None
    result = await session.execute(select(model.id).where(model.external_id == external_id))
    return result.scalar_one_or_none()


async def list_external_ids(session: AsyncSession, model: type[ModelT], *where: Any) -> dict[int, int]:
    """Map external id to local id for every mirrored row, optionally filtered."""
    stmt = select(model.external_id, model.id)
    if where:
        stmt = stmt.where(*where)
    result = await session.execute(stmt)
    return {int(external_id): int(local_id) for external_id, local_id in result.all()}


def _same(current: Any, incoming: Any) -> bool:
    # Compare with normalization for values that round-trip lossy through the DB.
    if current is None or incoming is None:
        return current is None and incoming is None
    if isinstance(incoming, datetime) and isinstance(current, datetime):
        return as_utc(current) == as_utc(incoming)
    if isinstance(incoming, (Decimal, float, int)) and not isinstance(incoming, bool):
        try:
            return Decimal(str(current)) == Decimal(str(incoming))
        except ArithmeticError:
            return False
    if isinstance(incoming, date) and isinstance(current, date):
        return current == incoming
    return current == incoming


def changed_fields(row: Base, values: dict[str, Any]) -> list[str]:
    return [name for name, value in values.items() if not _same(getattr(row, name), value)]


async def upsert_by_external_id(
    session: AsyncSession,
    model: type[ModelT],
    *,
    external_id: int,
    values: dict[str, Any],
    created_at: datetime | None,
    updated_at: datetime | None,
    synced_at: datetime,
    create_only: dict[str, Any] | None = None,
) -> tuple[ModelT, UpsertOutcome]:
    """Create or update one mirrored row keyed on its remote id.

    ``updated_at`` is written only when a mutable field actually changed, and
    always from the remote-reported timestamp rather than the wall clock.
    ``create_only`` carries locally owned defaults that later syncs must not
    overwrite (for example a user's role tag).
    """
    row = await get_by_external_id(session, model, external_id)
    if row is None:
        payload = dict(values)
        payload.update(create_only or {})
        row = model(external_id=external_id, **payload)
        if created_at is not None:
            row.created_at = created_at
        if hasattr(row, "updated_at"):
            row.updated_at = updated_at or created_at
        row.last_synced_at = synced_at
        session.add(row)
        await session.flush()
        return row, "created"

    changes = changed_fields(row, values)
    row.last_synced_at = synced_at
    if not changes:
        return row, "unchanged"
    for name in changes:
        setattr(row, name, values[name])
    if updated_at is not None and hasattr(row, "updated_at"):
        row.updated_at = updated_at
    await session.flush()
    return row, "updated"
