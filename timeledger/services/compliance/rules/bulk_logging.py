from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta
from decimal import Decimal

from timeledger.core.dates import start_of_day
from timeledger.domain.models import Severity, ViolationType
from timeledger.services.compliance.engine import Rule, RuleContext, ViolationCandidate, register_rule
from timeledger.services.compliance.evidence import BulkLoggingEvidence
from timeledger.services.compliance.snapshot import RECENT_WINDOW_DAYS, SnapshotEntry


# Back-filling shows up as one save touching at least this many distinct days.
MIN_DISTINCT_DAYS = 3


@register_rule
class BulkLoggingRule(Rule):
    rule_id = ViolationType.BULK_LOGGING.value
    rule_title = "Many days logged in one save"

    def evaluate(self, ctx: RuleContext) -> list[ViolationCandidate]:
        since = start_of_day(ctx.as_of - timedelta(days=RECENT_WINDOW_DAYS))
        until = start_of_day(ctx.as_of + timedelta(days=1))
        groups: dict[tuple[int, datetime], list[SnapshotEntry]] = defaultdict(list)
        for entry in ctx.snapshot.entries:
            if since <= entry.created_on < until:
                groups[(entry.user_id, entry.created_on)].append(entry)

        candidates: list[ViolationCandidate] = []
        for (user_id, created_on), entries in sorted(groups.items()):
            spent_dates = sorted({entry.spent_on for entry in entries})
            if len(entries) < ctx.config.bulk_logging_threshold or len(spent_dates) < MIN_DISTINCT_DAYS:
                continue
            candidates.append(
                ViolationCandidate(
                    user_id=user_id,
                    violation_type=ViolationType.BULK_LOGGING,
                    date=ctx.as_of,
                    severity=Severity.MEDIUM,
                    evidence=BulkLoggingEvidence(
                        created_on=created_on,
                        entry_count=len(entries),
                        distinct_days=len(spent_dates),
                        total_hours=sum((entry.hours for entry in entries), start=Decimal("0")),
                        spent_dates=spent_dates,
                    ),
                )
            )
        return candidates
