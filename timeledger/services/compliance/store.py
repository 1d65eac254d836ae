from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from timeledger.core.dates import start_of_day
from timeledger.core.errors import DatabaseError
from timeledger.domain.models import ComplianceViolation, ViolationStatus
from timeledger.persistence.repos import violations as violations_repo
from timeledger.services.compliance.engine import ViolationCandidate
from timeledger.services.compliance.evidence import dump_evidence
from timeledger.services.compliance.scoring import score_from_severities


logger = logging.getLogger(__name__)


@dataclass
class StoreResult:
    created: int = 0
    updated: int = 0
    errors: int = 0
    error_samples: list[str] = field(default_factory=list)

    @property
    def stored(self) -> int:
        return self.created + self.updated


class ViolationStore:
    """Persist detector output keyed by (user, violation type, day)."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], *, max_error_samples: int = 10) -> None:
        self._session_factory = session_factory
        self._max_error_samples = max_error_samples

    async def store_violations(self, candidates: Iterable[ViolationCandidate]) -> StoreResult:
        result = StoreResult()
        # One transaction per candidate so a bad row never discards its siblings.
        for candidate in candidates:
            try:
                created = await self._store_one(candidate)
            except Exception as exc:  # noqa: BLE001 - count and continue with the remaining candidates
                result.errors += 1
                if len(result.error_samples) < self._max_error_samples:
                    result.error_samples.append(
                        f"user={candidate.user_id} type={candidate.violation_type.value}: {exc}"
                    )
                logger.warning(
                    "violation_store_failed user_id=%s type=%s date=%s error=%s",
                    candidate.user_id,
                    candidate.violation_type.value,
                    candidate.date,
                    exc,
                )
                continue
            if created:
                result.created += 1
            else:
                result.updated += 1
        logger.info(
            "violations_stored created=%d updated=%d errors=%d", result.created, result.updated, result.errors
        )
        return result

    async def _store_one(self, candidate: ViolationCandidate) -> bool:
        try:
            async with self._session_factory() as session:
                _, created = await violations_repo.upsert_violation(
                    session,
                    user_id=candidate.user_id,
                    violation_type=candidate.violation_type.value,
                    day=start_of_day(candidate.date),
                    severity=candidate.severity.value,
                    metadata_json=dump_evidence(candidate.evidence),
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise DatabaseError(f"violation upsert failed: {exc}") from exc
        return created

    async def list_violations(
        self,
        *,
        user_id: int | None = None,
        status: str | None = None,
        violation_type: str | None = None,
        since: date | datetime | None = None,
        limit: int = 500,
    ) -> list[ComplianceViolation]:
        async with self._session_factory() as session:
            return await violations_repo.list_violations(
                session,
                user_id=user_id,
                status=status,
                violation_type=violation_type,
                since=start_of_day(since) if since is not None else None,
                limit=limit,
            )

    async def resolve_violation(self, violation_id: int) -> ComplianceViolation | None:
        async with self._session_factory() as session:
            row = await violations_repo.resolve_violation(session, violation_id)
            if row is None:
                logger.info("violation_resolve_missing id=%s", violation_id)
                return None
            await session.commit()
        logger.info("violation_resolved id=%s user_id=%s type=%s", row.id, row.user_id, row.violation_type)
        return row

    async def get_user_compliance_score(self, user_id: int) -> int:
        async with self._session_factory() as session:
            rows = await violations_repo.list_violations(
                session, user_id=user_id, status=ViolationStatus.OPEN.value, limit=10_000
            )
        return score_from_severities(row.severity for row in rows)
