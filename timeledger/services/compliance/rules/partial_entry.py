from __future__ import annotations

from collections import defaultdict
from datetime import date, timedelta
from decimal import Decimal

from timeledger.core.dates import week_start
from timeledger.domain.models import Severity, ViolationType
from timeledger.services.compliance.engine import Rule, RuleContext, ViolationCandidate, register_rule
from timeledger.services.compliance.evidence import PartialEntryEvidence
from timeledger.services.compliance.snapshot import RECENT_WINDOW_DAYS


FULL_WEEK_HOURS = Decimal("40")


@register_rule
class PartialEntryRule(Rule):
    rule_id = ViolationType.PARTIAL_ENTRY.value
    rule_title = "Less than a full week logged"

    def evaluate(self, ctx: RuleContext) -> list[ViolationCandidate]:
        window_start = ctx.as_of - timedelta(days=RECENT_WINDOW_DAYS)
        active = {user.id for user in ctx.snapshot.active_users()}
        weekly: dict[tuple[int, int, int | None, date], Decimal] = defaultdict(Decimal)
        for entry in ctx.snapshot.entries:
            if entry.user_id not in active or not (window_start <= entry.spent_on <= ctx.as_of):
                continue
            key = (entry.user_id, entry.project_id, entry.issue_id, week_start(entry.spent_on))
            weekly[key] += entry.hours

        candidates: list[ViolationCandidate] = []
        for (user_id, project_id, issue_id, monday), hours in sorted(weekly.items(), key=_sort_key):
            if hours >= FULL_WEEK_HOURS:
                continue
            issue = ctx.snapshot.issues.get(issue_id) if issue_id is not None else None
            candidates.append(
                ViolationCandidate(
                    user_id=user_id,
                    violation_type=ViolationType.PARTIAL_ENTRY,
                    date=monday,
                    severity=Severity.LOW,
                    evidence=PartialEntryEvidence(
                        week_start=monday,
                        hours=hours,
                        project_id=project_id,
                        project_name=ctx.snapshot.project_names.get(project_id),
                        issue_id=issue_id,
                        issue_subject=issue.subject if issue else None,
                    ),
                )
            )
        return candidates


def _sort_key(item: tuple[tuple[int, int, int | None, date], Decimal]) -> tuple[int, int, int, date]:
    (user_id, project_id, issue_id, monday), _ = item
    return (user_id, project_id, issue_id if issue_id is not None else -1, monday)
