from __future__ import annotations

from collections import defaultdict
from datetime import timedelta
from decimal import Decimal

from timeledger.domain.models import Severity, ViolationType
from timeledger.services.compliance.engine import Rule, RuleContext, ViolationCandidate, register_rule
from timeledger.services.compliance.evidence import RoundNumbersEvidence
from timeledger.services.compliance.snapshot import RECENT_WINDOW_DAYS


MIN_ROUND_HOURS = Decimal("2")
MIN_ROUND_ENTRIES = 5


def is_round(hours: Decimal) -> bool:
    # Whole, even and at least two hours.
    return hours >= MIN_ROUND_HOURS and hours % 2 == 0


@register_rule
class RoundNumbersRule(Rule):
    rule_id = ViolationType.ROUND_NUMBERS.value
    rule_title = "Suspiciously round hours"

    def evaluate(self, ctx: RuleContext) -> list[ViolationCandidate]:
        window_start = ctx.as_of - timedelta(days=RECENT_WINDOW_DAYS)
        round_hours: dict[int, list[Decimal]] = defaultdict(list)
        for entry in ctx.snapshot.entries:
            if window_start <= entry.spent_on <= ctx.as_of and is_round(entry.hours):
                round_hours[entry.user_id].append(entry.hours)

        candidates: list[ViolationCandidate] = []
        for user_id, hours in sorted(round_hours.items()):
            if len(hours) < MIN_ROUND_ENTRIES:
                continue
            candidates.append(
                ViolationCandidate(
                    user_id=user_id,
                    violation_type=ViolationType.ROUND_NUMBERS,
                    date=ctx.as_of,
                    severity=Severity.LOW,
                    evidence=RoundNumbersEvidence(
                        round_entry_count=len(hours),
                        window_days=RECENT_WINDOW_DAYS,
                        total_hours=sum(hours, start=Decimal("0")),
                    ),
                )
            )
        return candidates
