from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from timeledger.core.config import SYNC_ENTITY_TYPES
from timeledger.persistence.repos import sync_cursors as cursors_repo


logger = logging.getLogger(__name__)


class SyncStateStore:
    """Persisted "last successful pass" timestamp per entity type."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, entity_type: str) -> datetime | None:
        async with self._session_factory() as session:
            return await cursors_repo.get_cursor(session, entity_type)

    async def set(self, entity_type: str, timestamp: datetime) -> None:
        async with self._session_factory() as session:
            await cursors_repo.set_cursor(session, entity_type, timestamp)
            await session.commit()
        logger.info("sync_cursor_advanced entity=%s at=%s", entity_type, timestamp.isoformat())

    async def get_all(self) -> dict[str, datetime | None]:
        # Report every known entity type, including ones that never synced.
        async with self._session_factory() as session:
            stored = await cursors_repo.list_cursors(session)
        times: dict[str, datetime | None] = {entity: stored.get(entity) for entity in SYNC_ENTITY_TYPES}
        for entity, value in stored.items():
            times.setdefault(entity, value)
        return times

    async def reset(self, entity_type: str | None = None) -> None:
        async with self._session_factory() as session:
            await cursors_repo.delete_cursors(session, entity_type)
            await session.commit()
        logger.warning("sync_cursor_reset entity=%s", entity_type or "all")
