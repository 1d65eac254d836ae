from __future__ import annotations

import argparse
import asyncio

from timeledger.core.config import SYNC_ENTITY_TYPES, get_settings
from timeledger.core.logging import configure_logging
from timeledger.services.sync.orchestrator import SyncOrchestrator


async def _run_sync(
    mode: str,
    entity_type: str | None,
    days_back: int | None,
    project_id: int | None,
    members: bool,
) -> int:
    # Run a pass in-process so operators see the outcome directly.
    orchestrator = SyncOrchestrator()
    try:
        if entity_type is not None:
            result = await orchestrator.run_entity_sync(
                entity_type, mode, project_external_id=project_id, days_back=days_back
            )
            print(f"{entity_type} status={result.status} synced={result.synced} errors={result.errors}")
            status = result.status
        else:
            run = await orchestrator.run_full_sync() if mode == "full" else await orchestrator.run_incremental_sync()
            for entity, result in run.results.items():
                print(f"{entity} status={result.status} synced={result.synced} errors={result.errors}")
            print(f"status={run.status} total_synced={run.total_synced}")
            status = run.status
        if members:
            member_result = await orchestrator.sync_project_members()
            print(f"project_members status={member_result.status} synced={member_result.synced}")
    finally:
        await orchestrator.aclose()
    return 1 if status == "failed" else 0


def main() -> None:
    # Parse CLI flags for a manual sync pass.
    parser = argparse.ArgumentParser(description="Mirror Redmine into the local store")
    parser.add_argument("--mode", default="incremental", choices=["full", "incremental"])
    parser.add_argument("--entity", default=None, choices=list(SYNC_ENTITY_TYPES))
    parser.add_argument("--days-back", type=int, default=None)
    parser.add_argument("--project-id", type=int, default=None, help="Redmine project id to scope the pass")
    parser.add_argument("--members", action="store_true", help="Also mirror project memberships")
    args = parser.parse_args()
    if (args.days_back is not None or args.project_id is not None) and args.entity is None:
        parser.error("--days-back and --project-id require --entity")

    configure_logging(get_settings().log_level)
    raise SystemExit(asyncio.run(_run_sync(args.mode, args.entity, args.days_back, args.project_id, args.members)))


if __name__ == "__main__":
    main()
