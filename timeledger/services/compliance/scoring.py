from __future__ import annotations

from typing import Iterable

from timeledger.domain.models import Severity
from timeledger.services.compliance.engine import ViolationCandidate


PENALTIES: dict[str, int] = {
    Severity.LOW.value: 2,
    Severity.MEDIUM.value: 5,
    Severity.HIGH.value: 10,
}
MAX_SCORE = 100


def score_from_severities(severities: Iterable[str]) -> int:
    # Unknown severities carry no penalty rather than failing the whole score.
    penalty = sum(PENALTIES.get(str(severity), 0) for severity in severities)
    return max(0, MAX_SCORE - penalty)


def compute_scores(candidates: Iterable[ViolationCandidate], user_ids: Iterable[int]) -> dict[int, int]:
    """Score each listed user from this run's candidates; users without any score 100."""
    severities: dict[int, list[str]] = {user_id: [] for user_id in user_ids}
    for candidate in candidates:
        if candidate.user_id in severities:
            severities[candidate.user_id].append(candidate.severity.value)
    return {user_id: score_from_severities(found) for user_id, found in severities.items()}
