from __future__ import annotations

from datetime import timedelta

from timeledger.domain.models import Severity, ViolationType
from timeledger.services.compliance.engine import Rule, RuleContext, ViolationCandidate, register_rule
from timeledger.services.compliance.evidence import MissingEntryEvidence


@register_rule
class MissingEntryRule(Rule):
    rule_id = ViolationType.MISSING_ENTRY.value
    rule_title = "No time logged recently"

    def evaluate(self, ctx: RuleContext) -> list[ViolationCandidate]:
        window_days = ctx.config.missing_entry_days
        window_start = ctx.as_of - timedelta(days=window_days)
        logged: set[int] = {
            entry.user_id for entry in ctx.snapshot.entries if window_start <= entry.spent_on <= ctx.as_of
        }
        candidates: list[ViolationCandidate] = []
        for user in ctx.snapshot.active_users():
            if user.id in logged:
                continue
            last_entry = ctx.snapshot.last_entry_by_user.get(user.id)
            candidates.append(
                ViolationCandidate(
                    user_id=user.id,
                    violation_type=ViolationType.MISSING_ENTRY,
                    date=ctx.as_of,
                    severity=Severity.HIGH,
                    evidence=MissingEntryEvidence(
                        window_days=window_days,
                        days_without_entry=(ctx.as_of - last_entry).days if last_entry else None,
                        last_entry_date=last_entry,
                    ),
                )
            )
        return candidates
