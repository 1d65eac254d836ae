from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError


logger = logging.getLogger(__name__)


class MissingEntryEvidence(BaseModel):
    kind: Literal["missing_entry"] = "missing_entry"
    window_days: int
    days_without_entry: int | None = None
    last_entry_date: date | None = None


class BulkLoggingEvidence(BaseModel):
    kind: Literal["bulk_logging"] = "bulk_logging"
    created_on: datetime
    entry_count: int
    distinct_days: int
    total_hours: Decimal
    spent_dates: list[date] = Field(default_factory=list)


class LateEntryEvidence(BaseModel):
    kind: Literal["late_entry"] = "late_entry"
    time_entry_id: int
    issue_id: int | None = None
    spent_on: date
    created_on: datetime
    days_late: int
    hours: Decimal


class RoundNumbersEvidence(BaseModel):
    kind: Literal["round_numbers"] = "round_numbers"
    round_entry_count: int
    window_days: int
    total_hours: Decimal


class StaleTaskEvidence(BaseModel):
    kind: Literal["stale_task"] = "stale_task"
    issue_id: int
    subject: str
    project_id: int
    status: str
    stale_days: int
    last_entry_date: date | None = None


class OverrunEvidence(BaseModel):
    kind: Literal["overrun_task"] = "overrun_task"
    issue_id: int
    subject: str
    estimated: Decimal
    spent: Decimal
    # Overrun beyond the estimate, in whole percent.
    percentage: int
    threshold_percent: float


class PartialEntryEvidence(BaseModel):
    kind: Literal["partial_entry"] = "partial_entry"
    week_start: date
    hours: Decimal
    project_id: int
    project_name: str | None = None
    issue_id: int | None = None
    issue_subject: str | None = None


ViolationEvidence = Annotated[
    Union[
        MissingEntryEvidence,
        BulkLoggingEvidence,
        LateEntryEvidence,
        RoundNumbersEvidence,
        StaleTaskEvidence,
        OverrunEvidence,
        PartialEntryEvidence,
    ],
    Field(discriminator="kind"),
]

_EVIDENCE_ADAPTER: TypeAdapter[ViolationEvidence] = TypeAdapter(ViolationEvidence)


def dump_evidence(evidence: BaseModel) -> dict[str, Any]:
    return evidence.model_dump(mode="json")


def parse_evidence(data: dict[str, Any] | None) -> ViolationEvidence | None:
    # Rows written before typed evidence existed may not parse; callers get None.
    if not data:
        return None
    try:
        return _EVIDENCE_ADAPTER.validate_python(data)
    except ValidationError:
        logger.debug("violation_evidence_unparsed kind=%s", data.get("kind"))
        return None
