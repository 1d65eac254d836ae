from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# Importing the package registers every detector with the shared registry.
import timeledger.services.compliance.rules  # noqa: F401
from timeledger.core.dates import to_date, utc_now
from timeledger.domain.models import ComplianceViolation
from timeledger.persistence.repos import sync_logs as sync_logs_repo
from timeledger.services.compliance.config import ComplianceConfigProvider
from timeledger.services.compliance.engine import (
    RuleContext,
    RuleRegistry,
    ViolationCandidate,
    registry as default_registry,
    run_rules,
)
from timeledger.services.compliance.scoring import compute_scores
from timeledger.services.compliance.snapshot import load_snapshot, snapshot_window_days
from timeledger.services.compliance.store import ViolationStore


logger = logging.getLogger(__name__)


@dataclass
class ComplianceRunResult:
    as_of: date
    violations: list[ViolationCandidate] = field(default_factory=list)
    scores: dict[int, int] = field(default_factory=dict)
    created: int = 0
    updated: int = 0
    errors: int = 0
    failed_rules: list[str] = field(default_factory=list)

    @property
    def stored(self) -> int:
        return self.created + self.updated

    @property
    def status(self) -> str:
        if self.errors or self.failed_rules:
            return "partial"
        return "success"


class ComplianceService:
    """Evaluate every registered detector over one snapshot and persist the results."""

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        config_provider: ComplianceConfigProvider | None = None,
        registry: RuleRegistry | None = None,
    ) -> None:
        if session_factory is None:
            from timeledger.persistence.db import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory
        self._config_provider = config_provider or ComplianceConfigProvider(session_factory)
        self._registry = registry or default_registry
        self._store = ViolationStore(session_factory)

    @property
    def store(self) -> ViolationStore:
        return self._store

    async def run_compliance_checks(self, as_of: date | datetime | None = None) -> ComplianceRunResult:
        started = utc_now()
        day = to_date(as_of) if as_of is not None else started.date()
        config = await self._config_provider.get_compliance_rule_config()
        window_days = snapshot_window_days(
            config.missing_entry_days, config.late_entry_check_days, config.stale_task_days
        )
        # Single read session: every detector sees the same state.
        async with self._session_factory() as session:
            snapshot = await load_snapshot(session, as_of=day, window_days=window_days)
        logger.info(
            "compliance_run_started as_of=%s users=%d issues=%d entries=%d",
            day,
            len(snapshot.users),
            len(snapshot.issues),
            len(snapshot.entries),
        )

        outcome = run_rules(RuleContext(snapshot=snapshot, config=config, as_of=day), self._registry.create_all())
        stored = await self._store.store_violations(outcome.candidates)
        scores = compute_scores(outcome.candidates, [user.id for user in snapshot.active_users()])
        result = ComplianceRunResult(
            as_of=day,
            violations=outcome.candidates,
            scores=scores,
            created=stored.created,
            updated=stored.updated,
            errors=stored.errors,
            failed_rules=outcome.failed_rules,
        )
        await self._write_log(result, started=started, error_samples=stored.error_samples)
        logger.info(
            "compliance_run_completed as_of=%s violations=%d created=%d updated=%d errors=%d failed_rules=%s",
            day,
            len(result.violations),
            result.created,
            result.updated,
            result.errors,
            ",".join(result.failed_rules) or "none",
        )
        return result

    async def list_violations(self, **filters) -> list[ComplianceViolation]:
        return await self._store.list_violations(**filters)

    async def resolve_violation(self, violation_id: int) -> ComplianceViolation | None:
        return await self._store.resolve_violation(violation_id)

    async def get_user_compliance_score(self, user_id: int) -> int:
        return await self._store.get_user_compliance_score(user_id)

    async def _write_log(self, result: ComplianceRunResult, *, started: datetime, error_samples: list[str]) -> None:
        error_message = None
        if result.failed_rules:
            error_message = f"failed rules: {', '.join(result.failed_rules)}"
        elif error_samples:
            error_message = error_samples[0]
        try:
            async with self._session_factory() as session:
                await sync_logs_repo.create_sync_log(
                    session,
                    sync_type="compliance",
                    entity_type=None,
                    status=result.status,
                    records_synced=result.stored,
                    errors=result.errors,
                    started_at=started,
                    completed_at=utc_now(),
                    error_message=error_message,
                    metadata_json={
                        "as_of": result.as_of.isoformat(),
                        "violations": len(result.violations),
                        "created": result.created,
                        "updated": result.updated,
                        "failed_rules": result.failed_rules,
                    },
                )
                await session.commit()
        except Exception as exc:  # noqa: BLE001 - the run log is best-effort
            logger.warning("compliance_log_write_failed error=%s", exc)
