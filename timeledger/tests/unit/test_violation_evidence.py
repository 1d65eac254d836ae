from __future__ import annotations

from datetime import date
from decimal import Decimal

from timeledger.services.compliance.evidence import (
    OverrunEvidence,
    PartialEntryEvidence,
    dump_evidence,
    parse_evidence,
)


def test_evidence_is_tagged_with_violation_type() -> None:
    evidence = OverrunEvidence(
        issue_id=7,
        subject="Build",
        estimated=Decimal("10"),
        spent=Decimal("15.01"),
        percentage=50,
        threshold_percent=150.0,
    )

    data = dump_evidence(evidence)

    assert data["kind"] == "overrun_task"
    assert data["spent"] == "15.01"
    parsed = parse_evidence(data)
    assert isinstance(parsed, OverrunEvidence)
    assert parsed.spent == Decimal("15.01")


def test_parse_selects_model_by_kind() -> None:
    parsed = parse_evidence(
        {"kind": "partial_entry", "week_start": "2026-10-12", "hours": "39.5", "project_id": 3}
    )

    assert isinstance(parsed, PartialEntryEvidence)
    assert parsed.week_start == date(2026, 10, 12)
    assert parsed.issue_id is None


def test_unparseable_evidence_returns_none() -> None:
    assert parse_evidence(None) is None
    assert parse_evidence({"kind": "unknown"}) is None
    assert parse_evidence({"kind": "overrun_task", "issue_id": 1}) is None
