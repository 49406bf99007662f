from __future__ import annotations

import argparse
import asyncio

from tenantvault.core.logging import configure_logging
from tenantvault.persistence.db import ModuleRegistry
from tenantvault.providers.artifacts.factory import get_artifact_producer
from tenantvault.services.retention import RetentionSweeper


async def _run_prune(fail_stale: bool, stale_hours: int | None) -> None:
    # Prune completed jobs beyond retention for catalog hygiene.
    registry = ModuleRegistry()
    try:
        sweeper = RetentionSweeper(registry, producer=get_artifact_producer(registry))
        if fail_stale:
            orphaned = await sweeper.fail_stale_running_jobs(max_age_hours=stale_hours)
            print(f"orphaned_jobs_failed={orphaned}")
        pruned = await sweeper.cleanup_old_backups()
        print(f"pruned_backups={pruned}")
    finally:
        await registry.dispose_all()


def main() -> None:
    # Parse CLI flags for backup retention pruning.
    parser = argparse.ArgumentParser(description="Prune backup jobs beyond retention")
    parser.add_argument("--fail-stale", action="store_true", help="Also fail jobs stuck in running")
    parser.add_argument("--stale-hours", type=int, default=None)
    args = parser.parse_args()
    configure_logging()
    asyncio.run(_run_prune(args.fail_stale, args.stale_hours))


if __name__ == "__main__":
    main()
