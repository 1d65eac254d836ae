from __future__ import annotations

from datetime import timedelta

from timeledger.domain.models import Severity, ViolationType
from timeledger.services.compliance.engine import Rule, RuleContext, ViolationCandidate, register_rule
from timeledger.services.compliance.evidence import StaleTaskEvidence


CLOSED_STATUSES = frozenset({"closed", "resolved", "rejected"})


def is_open_status(status: str | None) -> bool:
    return (status or "").strip().lower() not in CLOSED_STATUSES


@register_rule
class StaleTaskRule(Rule):
    rule_id = ViolationType.STALE_TASK.value
    rule_title = "Open task without recent time"

    def evaluate(self, ctx: RuleContext) -> list[ViolationCandidate]:
        stale_days = ctx.config.stale_task_days
        window_start = ctx.as_of - timedelta(days=stale_days)
        active_issue_ids = {
            entry.issue_id
            for entry in ctx.snapshot.entries
            if entry.issue_id is not None and window_start <= entry.spent_on <= ctx.as_of
        }
        candidates: list[ViolationCandidate] = []
        for issue in sorted(ctx.snapshot.issues.values(), key=lambda item: item.id):
            if issue.assignee_id is None or not is_open_status(issue.status):
                continue
            if issue.id in active_issue_ids:
                continue
            candidates.append(
                ViolationCandidate(
                    user_id=issue.assignee_id,
                    violation_type=ViolationType.STALE_TASK,
                    date=ctx.as_of,
                    severity=Severity.MEDIUM,
                    evidence=StaleTaskEvidence(
                        issue_id=issue.id,
                        subject=issue.subject,
                        project_id=issue.project_id,
                        status=issue.status,
                        stale_days=stale_days,
                        last_entry_date=ctx.snapshot.last_entry_by_issue.get(issue.id),
                    ),
                )
            )
        return candidates
