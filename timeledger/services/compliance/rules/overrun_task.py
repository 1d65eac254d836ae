from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from timeledger.domain.models import Severity, ViolationType
from timeledger.services.compliance.engine import Rule, RuleContext, ViolationCandidate, register_rule
from timeledger.services.compliance.evidence import OverrunEvidence


HIGH_SEVERITY_MULTIPLIER = Decimal("2")


@register_rule
class OverrunTaskRule(Rule):
    rule_id = ViolationType.OVERRUN_TASK.value
    rule_title = "Logged hours exceed estimate"

    def evaluate(self, ctx: RuleContext) -> list[ViolationCandidate]:
        # Decimal keeps the boundary exact: spent must be strictly above the threshold.
        threshold_percent = Decimal(str(ctx.config.overrun_threshold))
        candidates: list[ViolationCandidate] = []
        for issue in sorted(ctx.snapshot.issues.values(), key=lambda item: item.id):
            estimated = issue.estimated_hours
            if estimated is None or estimated <= 0 or issue.assignee_id is None:
                continue
            spent = ctx.snapshot.issue_hours.get(issue.id, Decimal("0"))
            if spent <= estimated * threshold_percent / 100:
                continue
            overrun = ((spent - estimated) / estimated * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
            candidates.append(
                ViolationCandidate(
                    user_id=issue.assignee_id,
                    violation_type=ViolationType.OVERRUN_TASK,
                    date=ctx.as_of,
                    severity=Severity.HIGH if spent > estimated * HIGH_SEVERITY_MULTIPLIER else Severity.MEDIUM,
                    evidence=OverrunEvidence(
                        issue_id=issue.id,
                        subject=issue.subject,
                        estimated=estimated,
                        spent=spent,
                        percentage=int(overrun),
                        threshold_percent=float(threshold_percent),
                    ),
                )
            )
        return candidates
