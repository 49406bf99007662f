from __future__ import annotations

import argparse
import asyncio

from tenantvault.core.errors import TenantVaultError
from tenantvault.core.logging import configure_logging
from tenantvault.persistence.db import ModuleRegistry
from tenantvault.providers.artifacts.factory import get_artifact_producer
from tenantvault.services.backup import BackupEngine


async def _run_backup(config_id: str) -> int:
    # Execute a backup job from the CLI for operator workflows.
    registry = ModuleRegistry()
    try:
        engine = BackupEngine(registry, get_artifact_producer(registry))
        job = await engine.execute_backup_job(config_id)
    except TenantVaultError as exc:
        print(f"error_code={exc.code}")
        print(f"error={exc}")
        return 1
    finally:
        await registry.dispose_all()
    print(f"backup_job_id={job.id}")
    print(f"files_count={job.files_count}")
    print(f"checksum={job.checksum}")
    print(f"backup_location={job.backup_location}")
    return 0


def main() -> None:
    # Parse CLI flags for a manual backup trigger.
    parser = argparse.ArgumentParser(description="Run a backup job for one backup config")
    parser.add_argument("--config-id", required=True)
    args = parser.parse_args()
    configure_logging()
    raise SystemExit(asyncio.run(_run_backup(args.config_id)))


if __name__ == "__main__":
    main()
