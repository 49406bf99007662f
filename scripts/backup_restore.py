from __future__ import annotations

import argparse
import asyncio

from tenantvault.core.errors import TenantVaultError
from tenantvault.core.logging import configure_logging
from tenantvault.persistence.db import ModuleRegistry
from tenantvault.providers.artifacts.factory import get_artifact_producer
from tenantvault.services.restore import RestoreService


async def _run_restore(job_id: str, module: str | None, tenant_id: str | None) -> int:
    registry = ModuleRegistry()
    try:
        service = RestoreService(registry, get_artifact_producer(registry))
        log = await service.restore_backup(job_id, module=module, tenant_id=tenant_id)
    except TenantVaultError as exc:
        print(f"error_code={exc.code}")
        print(f"error={exc}")
        return 1
    finally:
        await registry.dispose_all()
    print(f"restore_id={log.id}")
    print(f"restore_type={log.restore_type}")
    print(f"restored_files={log.restored_files_count}")
    return 0


def main() -> None:
    # Parse CLI flags for restoring a completed backup job.
    parser = argparse.ArgumentParser(description="Restore a completed backup job")
    parser.add_argument("--job-id", required=True)
    parser.add_argument("--module", default=None, help="Restrict the restore to one module")
    parser.add_argument("--tenant-id", default=None, help="Restore a single tenant's artifacts")
    args = parser.parse_args()
    configure_logging()
    raise SystemExit(asyncio.run(_run_restore(args.job_id, args.module, args.tenant_id)))


if __name__ == "__main__":
    main()
