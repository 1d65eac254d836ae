from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from timeledger.domain.models import Severity, ViolationType
from timeledger.services.compliance.config import ComplianceRuleConfig
from timeledger.services.compliance.engine import Rule, RuleContext, registry, run_rules
from timeledger.services.compliance.evidence import OverrunEvidence
from timeledger.services.compliance.rules import (
    BulkLoggingRule,
    LateEntryRule,
    MissingEntryRule,
    OverrunTaskRule,
    PartialEntryRule,
    RoundNumbersRule,
    StaleTaskRule,
)
from timeledger.services.compliance.snapshot import (
    ComplianceSnapshot,
    SnapshotEntry,
    SnapshotIssue,
    SnapshotUser,
)


# A Wednesday, so the recent week spans two ISO weeks.
AS_OF = date(2026, 10, 14)


def _snapshot(*users: SnapshotUser) -> ComplianceSnapshot:
    snapshot = ComplianceSnapshot()
    for user in users or (SnapshotUser(1, "Ada Lovelace", "active"),):
        snapshot.users[user.id] = user
    snapshot.project_names[10] = "Apollo"
    return snapshot


def _entry(
    entry_id: int,
    *,
    spent_on: date,
    hours: str = "8",
    user_id: int = 1,
    project_id: int = 10,
    issue_id: int | None = None,
    created_on: datetime | None = None,
) -> SnapshotEntry:
    created = created_on or datetime(spent_on.year, spent_on.month, spent_on.day, 17, tzinfo=timezone.utc)
    return SnapshotEntry(entry_id, user_id, project_id, issue_id, Decimal(hours), spent_on, created)


def _add(snapshot: ComplianceSnapshot, *entries: SnapshotEntry) -> None:
    for entry in entries:
        snapshot.entries.append(entry)
        previous = snapshot.last_entry_by_user.get(entry.user_id)
        if previous is None or entry.spent_on > previous:
            snapshot.last_entry_by_user[entry.user_id] = entry.spent_on
        if entry.issue_id is not None:
            snapshot.issue_hours[entry.issue_id] = snapshot.issue_hours.get(entry.issue_id, Decimal("0")) + entry.hours


def _ctx(snapshot: ComplianceSnapshot, **config) -> RuleContext:
    return RuleContext(snapshot=snapshot, config=ComplianceRuleConfig(**config), as_of=AS_OF)


def test_every_detector_is_registered() -> None:
    assert set(registry.ids()) == {violation.value for violation in ViolationType}


def test_missing_entry_flags_only_users_past_the_window() -> None:
    snapshot = _snapshot(
        SnapshotUser(1, "Ada Lovelace", "active"),
        SnapshotUser(2, "Alan Turing", "active"),
        SnapshotUser(3, "Grace Hopper", "locked"),
    )
    _add(
        snapshot,
        _entry(1, user_id=1, spent_on=AS_OF - timedelta(days=10)),
        _entry(2, user_id=2, spent_on=AS_OF - timedelta(days=5)),
    )

    candidates = MissingEntryRule().evaluate(_ctx(snapshot))

    assert [candidate.user_id for candidate in candidates] == [1]
    candidate = candidates[0]
    assert candidate.severity == Severity.HIGH
    assert candidate.date == AS_OF
    assert candidate.evidence.days_without_entry == 10
    assert candidate.evidence.last_entry_date == AS_OF - timedelta(days=10)


def test_missing_entry_for_user_who_never_logged() -> None:
    candidates = MissingEntryRule().evaluate(_ctx(_snapshot()))

    assert len(candidates) == 1
    assert candidates[0].evidence.days_without_entry is None


def test_bulk_logging_requires_three_distinct_days() -> None:
    saved_at = datetime(2026, 10, 12, 16, 30, tzinfo=timezone.utc)
    snapshot = _snapshot()
    _add(
        snapshot,
        _entry(1, spent_on=date(2026, 10, 6), created_on=saved_at),
        _entry(2, spent_on=date(2026, 10, 7), created_on=saved_at),
        _entry(3, spent_on=date(2026, 10, 8), created_on=saved_at),
    )

    candidates = BulkLoggingRule().evaluate(_ctx(snapshot))

    assert len(candidates) == 1
    evidence = candidates[0].evidence
    assert candidates[0].severity == Severity.MEDIUM
    assert evidence.entry_count == 3
    assert evidence.distinct_days == 3
    assert evidence.total_hours == Decimal("24")


def test_bulk_logging_ignores_same_save_over_two_days() -> None:
    saved_at = datetime(2026, 10, 12, 16, 30, tzinfo=timezone.utc)
    snapshot = _snapshot()
    _add(
        snapshot,
        _entry(1, spent_on=date(2026, 10, 6), created_on=saved_at),
        _entry(2, spent_on=date(2026, 10, 6), created_on=saved_at),
        _entry(3, spent_on=date(2026, 10, 7), created_on=saved_at),
    )

    assert BulkLoggingRule().evaluate(_ctx(snapshot)) == []


def test_late_entry_severity_follows_the_gap() -> None:
    created = datetime(2026, 10, 13, 9, tzinfo=timezone.utc)
    snapshot = _snapshot()
    _add(
        snapshot,
        _entry(1, spent_on=date(2026, 10, 3), created_on=created),
        _entry(2, spent_on=date(2026, 10, 8), created_on=created),
        _entry(3, spent_on=date(2026, 10, 10), created_on=created),
    )

    candidates = LateEntryRule().evaluate(_ctx(snapshot))

    by_entry = {candidate.evidence.time_entry_id: candidate for candidate in candidates}
    assert set(by_entry) == {1, 2}
    assert by_entry[1].severity == Severity.HIGH
    assert by_entry[1].evidence.days_late == 10
    assert by_entry[1].date == date(2026, 10, 3)
    assert by_entry[2].severity == Severity.MEDIUM
    assert by_entry[2].evidence.days_late == 5


def test_round_numbers_needs_five_even_entries() -> None:
    snapshot = _snapshot()
    _add(
        snapshot,
        *(_entry(index, spent_on=AS_OF - timedelta(days=index), hours=hours) for index, hours in enumerate(["2", "4", "6", "8", "4"], start=1)),
        _entry(9, spent_on=AS_OF, hours="3"),
    )

    candidates = RoundNumbersRule().evaluate(_ctx(snapshot))

    assert len(candidates) == 1
    assert candidates[0].severity == Severity.LOW
    assert candidates[0].evidence.round_entry_count == 5


def test_round_numbers_below_threshold() -> None:
    snapshot = _snapshot()
    _add(
        snapshot,
        *(_entry(index, spent_on=AS_OF - timedelta(days=index), hours="4") for index in range(1, 5)),
        _entry(8, spent_on=AS_OF, hours="1"),
        _entry(9, spent_on=AS_OF, hours="2.5"),
    )

    assert RoundNumbersRule().evaluate(_ctx(snapshot)) == []


def test_stale_task_skips_closed_and_recently_worked_issues() -> None:
    snapshot = _snapshot()
    snapshot.issues = {
        100: SnapshotIssue(100, 10, 1, "Forgotten", "In Progress", None),
        101: SnapshotIssue(101, 10, 1, "Done", "CLOSED", None),
        102: SnapshotIssue(102, 10, 1, "Active", "New", None),
        103: SnapshotIssue(103, 10, None, "Unassigned", "New", None),
    }
    _add(snapshot, _entry(1, spent_on=AS_OF - timedelta(days=3), issue_id=102))

    candidates = StaleTaskRule().evaluate(_ctx(snapshot))

    assert [candidate.evidence.issue_id for candidate in candidates] == [100]
    assert candidates[0].user_id == 1
    assert candidates[0].severity == Severity.MEDIUM


def test_reporting_only_thresholds_do_not_change_detection() -> None:
    snapshot = _snapshot()
    snapshot.issues = {
        100: SnapshotIssue(100, 10, 1, "Forgotten", "In Progress", None),
        101: SnapshotIssue(101, 10, 1, "Build", "In Progress", Decimal("10")),
    }
    snapshot.issue_hours = {101: Decimal("400")}
    _add(snapshot, _entry(1, spent_on=AS_OF - timedelta(days=20)))

    baseline = run_rules(_ctx(snapshot), registry.create_all()).candidates
    tightened = run_rules(_ctx(snapshot, stale_task_months=1, max_spent_hours=1), registry.create_all()).candidates

    assert baseline
    assert tightened == baseline


@pytest.mark.parametrize(
    ("spent", "expected"),
    [
        ("15.00", None),
        ("15.01", Severity.MEDIUM),
        ("20.00", Severity.MEDIUM),
        ("20.01", Severity.HIGH),
    ],
)
def test_overrun_boundaries(spent: str, expected: Severity | None) -> None:
    snapshot = _snapshot()
    snapshot.issues = {100: SnapshotIssue(100, 10, 1, "Build", "In Progress", Decimal("10"))}
    snapshot.issue_hours = {100: Decimal(spent)}

    candidates = OverrunTaskRule().evaluate(_ctx(snapshot))

    if expected is None:
        assert candidates == []
        return
    assert len(candidates) == 1
    assert candidates[0].severity == expected
    assert isinstance(candidates[0].evidence, OverrunEvidence)
    assert candidates[0].evidence.spent == Decimal(spent)


def test_overrun_reports_whole_percentage() -> None:
    snapshot = _snapshot()
    snapshot.issues = {100: SnapshotIssue(100, 10, 1, "Build", "In Progress", Decimal("10"))}
    snapshot.issue_hours = {100: Decimal("15.01")}

    candidate = OverrunTaskRule().evaluate(_ctx(snapshot))[0]

    assert candidate.evidence.percentage == 50
    assert candidate.evidence.threshold_percent == 150.0


def test_overrun_reads_legacy_multiplier() -> None:
    snapshot = _snapshot()
    snapshot.issues = {100: SnapshotIssue(100, 10, 1, "Build", "In Progress", Decimal("10"))}
    snapshot.issue_hours = {100: Decimal("12.5")}

    assert OverrunTaskRule().evaluate(_ctx(snapshot, overrun_threshold=1.2)) != []
    assert OverrunTaskRule().evaluate(_ctx(snapshot, overrun_threshold=1.3)) == []


def test_partial_entry_groups_by_issue_and_week() -> None:
    snapshot = _snapshot()
    snapshot.issues = {
        100: SnapshotIssue(100, 10, 1, "Short week", "In Progress", None),
        101: SnapshotIssue(101, 10, 1, "Full week", "In Progress", None),
    }
    monday = date(2026, 10, 12)
    _add(
        snapshot,
        _entry(1, spent_on=monday, hours="20", issue_id=100),
        _entry(2, spent_on=monday + timedelta(days=1), hours="19.5", issue_id=100),
        _entry(3, spent_on=monday, hours="20", issue_id=101),
        _entry(4, spent_on=monday + timedelta(days=1), hours="20", issue_id=101),
    )

    candidates = PartialEntryRule().evaluate(_ctx(snapshot))

    assert len(candidates) == 1
    candidate = candidates[0]
    assert candidate.date == monday
    assert candidate.evidence.hours == Decimal("39.5")
    assert candidate.evidence.issue_subject == "Short week"
    assert candidate.evidence.project_name == "Apollo"


def test_partial_entry_splits_weeks() -> None:
    snapshot = _snapshot()
    _add(
        snapshot,
        _entry(1, spent_on=date(2026, 10, 9), hours="8"),
        _entry(2, spent_on=date(2026, 10, 13), hours="8"),
    )

    candidates = PartialEntryRule().evaluate(_ctx(snapshot))

    assert [candidate.date for candidate in candidates] == [date(2026, 10, 5), date(2026, 10, 12)]
    assert all(candidate.evidence.issue_id is None for candidate in candidates)


def test_run_rules_isolates_a_failing_detector() -> None:
    class BrokenRule(Rule):
        rule_id = "broken"

        def evaluate(self, ctx):
            raise RuntimeError("boom")

    snapshot = _snapshot()

    outcome = run_rules(_ctx(snapshot), [BrokenRule(), MissingEntryRule()])

    assert outcome.failed_rules == ["broken"]
    assert [candidate.violation_type for candidate in outcome.candidates] == [ViolationType.MISSING_ENTRY]
