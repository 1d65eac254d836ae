from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from typing import Dict, Iterable, Type

from timeledger.domain.models import Severity, ViolationType
from timeledger.services.compliance.config import ComplianceRuleConfig
from timeledger.services.compliance.evidence import ViolationEvidence
from timeledger.services.compliance.snapshot import ComplianceSnapshot


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ViolationCandidate:
    user_id: int
    violation_type: ViolationType
    date: date
    severity: Severity
    evidence: ViolationEvidence


@dataclass(frozen=True)
class RuleContext:
    snapshot: ComplianceSnapshot
    config: ComplianceRuleConfig
    as_of: date


class Rule(ABC):
    rule_id: str
    rule_title: str = ""

    @abstractmethod
    def evaluate(self, ctx: RuleContext) -> list[ViolationCandidate]:
        raise NotImplementedError


class RuleRegistry:
    def __init__(self) -> None:
        self._rules: Dict[str, Type[Rule]] = {}

    def register(self, rule_cls: Type[Rule]) -> None:
        rule_id = getattr(rule_cls, "rule_id", None)
        if not rule_id:
            raise ValueError("Rule class missing rule_id")
        if rule_id in self._rules:
            raise ValueError(f"Duplicate rule_id registered: {rule_id}")
        self._rules[rule_id] = rule_cls

    def create_all(self) -> list[Rule]:
        return [cls() for cls in self._rules.values()]

    def get(self, rule_id: str) -> Type[Rule]:
        return self._rules[rule_id]

    def ids(self) -> Iterable[str]:
        return self._rules.keys()


registry = RuleRegistry()


def register_rule(rule_cls: Type[Rule]) -> Type[Rule]:
    registry.register(rule_cls)
    return rule_cls


@dataclass(frozen=True)
class RuleRunOutcome:
    candidates: list[ViolationCandidate]
    failed_rules: list[str]


def run_rules(ctx: RuleContext, rules: Iterable[Rule]) -> RuleRunOutcome:
    """Evaluate every detector independently and union their candidates."""
    candidates: list[ViolationCandidate] = []
    failed: list[str] = []
    for rule in rules:
        try:
            found = rule.evaluate(ctx)
        except Exception:  # noqa: BLE001 - one broken detector must not hide the others
            logger.exception("compliance_rule_failed rule=%s", rule.rule_id)
            failed.append(rule.rule_id)
            continue
        logger.info("compliance_rule_evaluated rule=%s candidates=%d", rule.rule_id, len(found))
        candidates.extend(found)
    return RuleRunOutcome(candidates=candidates, failed_rules=failed)
