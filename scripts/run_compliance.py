from __future__ import annotations

import argparse
import asyncio
from datetime import date

from timeledger.core.config import get_settings
from timeledger.core.logging import configure_logging
from timeledger.services.compliance.service import ComplianceService


async def _run_checks(as_of: date | None, show_scores: bool) -> None:
    # Evaluate the detectors against the current mirror.
    result = await ComplianceService().run_compliance_checks(as_of)
    print(f"as_of={result.as_of.isoformat()}")
    print(f"violations={len(result.violations)} created={result.created} updated={result.updated}")
    print(f"errors={result.errors} failed_rules={','.join(result.failed_rules) or 'none'}")
    if show_scores:
        for user_id, score in sorted(result.scores.items(), key=lambda item: (item[1], item[0])):
            print(f"user_id={user_id} score={score}")


def main() -> None:
    # Parse CLI flags for a manual compliance run.
    parser = argparse.ArgumentParser(description="Run time-logging compliance checks")
    parser.add_argument("--as-of", type=date.fromisoformat, default=None, help="Evaluation day (YYYY-MM-DD)")
    parser.add_argument("--scores", action="store_true", help="Print per-user scores")
    args = parser.parse_args()

    configure_logging(get_settings().log_level)
    asyncio.run(_run_checks(args.as_of, args.scores))


if __name__ == "__main__":
    main()
