from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from timeledger.core.errors import ConfigValidationError
from timeledger.persistence.repos import system_config as system_config_repo


logger = logging.getLogger(__name__)

COMPLIANCE_RULES_KEY = "compliance_rules"
DEFAULT_OVERRUN_THRESHOLD = 150.0


def _upscale_legacy_overrun(value: Any) -> Any:
    # Legacy callers stored a multiplier (1.5); values below 10 are read as that form.
    if value is None:
        return value
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return value
    if 0 < numeric < 10:
        return round(numeric * 100, 4)
    return numeric


class ComplianceRuleConfig(BaseModel):
    """Thresholds for the compliance detectors.

    Stored blobs may use camelCase keys; missing or falsy values fall back to
    the defaults below.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    missing_entry_days: int = 7
    bulk_logging_threshold: int = 3
    late_entry_days: int = 3
    late_entry_check_days: int = 30
    stale_task_days: int = 14
    # Percentage of the estimate; 150 means 1.5x.
    overrun_threshold: float = DEFAULT_OVERRUN_THRESHOLD
    # Stored and validated for reporting only; no detector reads these two.
    stale_task_months: int = 2
    max_spent_hours: int = 350

    @model_validator(mode="before")
    @classmethod
    def _drop_empty(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {key: value for key, value in data.items() if value not in (None, "", 0)}
        return data

    @field_validator("overrun_threshold", mode="before")
    @classmethod
    def _normalize_overrun(cls, value: Any) -> Any:
        return _upscale_legacy_overrun(value)

    @property
    def overrun_multiplier(self) -> float:
        return self.overrun_threshold / 100.0


class ComplianceRuleUpdate(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    missing_entry_days: int | None = Field(default=None, ge=1)
    bulk_logging_threshold: int | None = Field(default=None, ge=1)
    late_entry_days: int | None = Field(default=None, ge=1, le=30)
    late_entry_check_days: int | None = Field(default=None, ge=1, le=365)
    stale_task_days: int | None = Field(default=None, ge=1)
    overrun_threshold: float | None = Field(default=None, ge=100, le=1000)
    stale_task_months: int | None = Field(default=None, ge=1, le=12)
    max_spent_hours: int | None = Field(default=None, ge=1, le=10000)

    @field_validator("overrun_threshold", mode="before")
    @classmethod
    def _normalize_overrun(cls, value: Any) -> Any:
        return _upscale_legacy_overrun(value)


class ComplianceConfigProvider:
    """Read and update the compliance thresholds kept in ``system_config``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_compliance_rule_config(self) -> ComplianceRuleConfig:
        async with self._session_factory() as session:
            stored = await system_config_repo.get_value(session, COMPLIANCE_RULES_KEY)
        try:
            return ComplianceRuleConfig.model_validate(stored or {})
        except ValidationError as exc:
            # A corrupt blob must not stop compliance runs; defaults are safe.
            logger.warning("compliance_config_invalid errors=%d using=defaults", exc.error_count())
            return ComplianceRuleConfig()

    async def get_overrun_multiplier(self) -> float:
        config = await self.get_compliance_rule_config()
        return config.overrun_multiplier

    async def update_compliance_rules(self, updates: dict[str, Any]) -> ComplianceRuleConfig:
        try:
            parsed = ComplianceRuleUpdate.model_validate(updates)
        except ValidationError as exc:
            raise ConfigValidationError(str(exc)) from exc
        changes = parsed.model_dump(exclude_none=True)
        current = await self.get_compliance_rule_config()
        merged = current.model_copy(update=changes)
        async with self._session_factory() as session:
            await system_config_repo.set_value(session, COMPLIANCE_RULES_KEY, merged.model_dump())
            await session.commit()
        logger.info("compliance_config_updated fields=%s", ",".join(sorted(changes)) or "none")
        return merged
