from __future__ import annotations

from datetime import timedelta

from timeledger.core.dates import start_of_day
from timeledger.domain.models import Severity, ViolationType
from timeledger.services.compliance.engine import Rule, RuleContext, ViolationCandidate, register_rule
from timeledger.services.compliance.evidence import LateEntryEvidence


# Gaps longer than a week are treated as high severity.
HIGH_SEVERITY_GAP_DAYS = 7


@register_rule
class LateEntryRule(Rule):
    rule_id = ViolationType.LATE_ENTRY.value
    rule_title = "Time logged long after the work"

    def evaluate(self, ctx: RuleContext) -> list[ViolationCandidate]:
        created_since = start_of_day(ctx.as_of - timedelta(days=ctx.config.late_entry_check_days))
        created_until = start_of_day(ctx.as_of + timedelta(days=1))
        candidates: list[ViolationCandidate] = []
        for entry in sorted(ctx.snapshot.entries, key=lambda item: item.id):
            if not (created_since <= entry.created_on < created_until):
                continue
            days_late = (entry.created_on.date() - entry.spent_on).days
            if days_late <= ctx.config.late_entry_days:
                continue
            candidates.append(
                ViolationCandidate(
                    user_id=entry.user_id,
                    violation_type=ViolationType.LATE_ENTRY,
                    date=entry.spent_on,
                    severity=Severity.HIGH if days_late > HIGH_SEVERITY_GAP_DAYS else Severity.MEDIUM,
                    evidence=LateEntryEvidence(
                        time_entry_id=entry.id,
                        issue_id=entry.issue_id,
                        spent_on=entry.spent_on,
                        created_on=entry.created_on,
                        days_late=days_late,
                        hours=entry.hours,
                    ),
                )
            )
        return candidates
