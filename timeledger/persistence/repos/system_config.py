from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from timeledger.core.dates import utc_now
from timeledger.domain.models import SystemConfig


async def get_value(session: AsyncSession, key: str) -> dict[str, Any] | None:
    row = await session.get(SystemConfig, key)
    return dict(row.value_json) if row and row.value_json is not None else None


async def set_value(session: AsyncSession, key: str, value: dict[str, Any]) -> None:
    row = await session.get(SystemConfig, key)
    if row is None:
        session.add(SystemConfig(key=key, value_json=value, updated_at=utc_now()))
        return
    # Assign a fresh dict so JSON change tracking picks up the mutation.
    row.value_json = dict(value)
    row.updated_at = utc_now()
