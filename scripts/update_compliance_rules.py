from __future__ import annotations

import argparse
import asyncio
import json

from timeledger.core.errors import ConfigValidationError
from timeledger.persistence.db import SessionLocal
from timeledger.services.compliance.config import ComplianceConfigProvider


async def _update_rules(updates: dict) -> int:
    # Persist threshold changes; an empty update just prints the current config.
    provider = ComplianceConfigProvider(SessionLocal)
    if not updates:
        config = await provider.get_compliance_rule_config()
    else:
        try:
            config = await provider.update_compliance_rules(updates)
        except ConfigValidationError as exc:
            print(f"error={exc}")
            return 2
    print(json.dumps(config.model_dump(by_alias=True), indent=2, sort_keys=True))
    return 0


def main() -> None:
    # Parse CLI flags for compliance threshold updates.
    parser = argparse.ArgumentParser(description="Show or update compliance rule thresholds")
    parser.add_argument("--missing-entry-days", type=int)
    parser.add_argument("--bulk-logging-threshold", type=int)
    parser.add_argument("--late-entry-days", type=int)
    parser.add_argument("--late-entry-check-days", type=int)
    parser.add_argument("--stale-task-days", type=int)
    parser.add_argument("--overrun-threshold", type=float, help="Percent of estimate, e.g. 150")
    parser.add_argument("--stale-task-months", type=int)
    parser.add_argument("--max-spent-hours", type=int)
    args = parser.parse_args()
    updates = {key: value for key, value in vars(args).items() if value is not None}
    raise SystemExit(asyncio.run(_update_rules(updates)))


if __name__ == "__main__":
    main()
