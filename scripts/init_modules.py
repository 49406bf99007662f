from __future__ import annotations

import argparse
import asyncio

from tenantvault.core.logging import configure_logging
from tenantvault.persistence.db import ModuleRegistry
from tenantvault.providers.artifacts.factory import get_artifact_producer
from tenantvault.services.backup import BackupEngine
from tenantvault.services.modules import initialize_all_modules, initialize_module


async def _run_init(modules: list[str], seed_configs: bool) -> int:
    # Apply core migrations per module; one failing module does not stop the rest.
    registry = ModuleRegistry()
    failures = 0
    try:
        if modules:
            results = {module: await initialize_module(registry, module) for module in modules}
        else:
            results = await initialize_all_modules(registry)
        for module, result in results.items():
            print(f"module={module} success={str(result.success).lower()} applied={result.migrations_applied}")
            for error in result.errors:
                print(f"module={module} error={error}")
            failures += 0 if result.success else 1
        if seed_configs and failures == 0:
            engine = BackupEngine(registry, get_artifact_producer(registry))
            created = await engine.create_default_backup_configs()
            print(f"default_backup_configs_created={len(created)}")
    finally:
        await registry.dispose_all()
    return failures


def main() -> None:
    # Parse CLI flags for module bootstrap.
    parser = argparse.ArgumentParser(description="Initialize module databases")
    parser.add_argument("--module", action="append", default=[], help="Repeatable; defaults to every module")
    parser.add_argument("--seed-backup-configs", action="store_true")
    args = parser.parse_args()
    configure_logging()
    failures = asyncio.run(_run_init(args.module, args.seed_backup_configs))
    raise SystemExit(1 if failures else 0)


if __name__ == "__main__":
    main()
