from timeledger.services.compliance.rules.bulk_logging import BulkLoggingRule
from timeledger.services.compliance.rules.late_entry import LateEntryRule
from timeledger.services.compliance.rules.missing_entry import MissingEntryRule
from timeledger.services.compliance.rules.overrun_task import OverrunTaskRule
from timeledger.services.compliance.rules.partial_entry import PartialEntryRule
from timeledger.services.compliance.rules.round_numbers import RoundNumbersRule
from timeledger.services.compliance.rules.stale_task import StaleTaskRule


__all__ = [
    "BulkLoggingRule",
    "LateEntryRule",
    "MissingEntryRule",
    "OverrunTaskRule",
    "PartialEntryRule",
    "RoundNumbersRule",
    "StaleTaskRule",
]
