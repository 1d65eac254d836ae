from timeledger.services.compliance.config import (
    ComplianceConfigProvider,
    ComplianceRuleConfig,
    ComplianceRuleUpdate,
)
from timeledger.services.compliance.engine import (
    Rule,
    RuleContext,
    RuleRegistry,
    ViolationCandidate,
    register_rule,
    registry,
    run_rules,
)
from timeledger.services.compliance.scoring import compute_scores, score_from_severities
from timeledger.services.compliance.service import ComplianceRunResult, ComplianceService
from timeledger.services.compliance.store import StoreResult, ViolationStore


__all__ = [
    "ComplianceConfigProvider",
    "ComplianceRuleConfig",
    "ComplianceRuleUpdate",
    "ComplianceRunResult",
    "ComplianceService",
    "Rule",
    "RuleContext",
    "RuleRegistry",
    "StoreResult",
    "ViolationCandidate",
    "ViolationStore",
    "compute_scores",
    "register_rule",
    "registry",
    "run_rules",
    "score_from_severities",
]
