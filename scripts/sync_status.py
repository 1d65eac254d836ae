from __future__ import annotations

import argparse
import asyncio
import json

from timeledger.services.sync.jobs import get_sync_status


async def _show_status(limit: int, check_connection: bool, as_json: bool) -> None:
    # Print cursors and recent runs for operators.
    status = await get_sync_status(log_limit=limit, check_connection=check_connection)
    if as_json:
        print(json.dumps(status, indent=2, sort_keys=True))
        return
    print(f"connected={status['connected']}")
    for entity, cursor in status["cursors"].items():
        print(f"cursor entity={entity} last_synced_at={cursor}")
    for log in status["recent_logs"]:
        print(
            f"log id={log['id']} type={log['sync_type']} entity={log['entity_type'] or 'all'} "
            f"status={log['status']} synced={log['records_synced']} errors={log['errors']} "
            f"started_at={log['started_at']}"
        )


def main() -> None:
    parser = argparse.ArgumentParser(description="Show sync cursors and recent runs")
    parser.add_argument("--limit", type=int, default=20)
    parser.add_argument("--skip-connection", action="store_true")
    parser.add_argument("--json", action="store_true")
    args = parser.parse_args()
    asyncio.run(_show_status(args.limit, not args.skip_connection, args.json))


if __name__ == "__main__":
    main()
