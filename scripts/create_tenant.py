from __future__ import annotations

import argparse
import asyncio

from tenantvault.core.errors import TenantVaultError
from tenantvault.core.logging import configure_logging
from tenantvault.domain.types import ISOLATION_LEVELS
from tenantvault.persistence.db import ModuleRegistry
from tenantvault.services.tenants import TenantProvisioner


async def _run_create(args: argparse.Namespace) -> int:
    registry = ModuleRegistry()
    settings = registry.settings
    limits = {
        "max_users": args.max_users if args.max_users is not None else settings.tenant_default_max_users,
        "max_storage_mb": (
            args.max_storage_mb if args.max_storage_mb is not None else settings.tenant_default_max_storage_mb
        ),
        "max_api_calls_per_day": (
            args.max_api_calls if args.max_api_calls is not None else settings.tenant_default_max_api_calls_per_day
        ),
    }
    try:
        tenant = await TenantProvisioner(registry).create_tenant(
            name=args.name,
            module=args.module,
            limits=limits,
            isolation_level=args.isolation_level,
            subscription_plan=args.plan,
        )
    except TenantVaultError as exc:
        print(f"error_code={exc.code}")
        print(f"error={exc}")
        return 1
    finally:
        await registry.dispose_all()
    print(f"tenant_id={tenant.id}")
    print(f"schema_prefix={tenant.schema_prefix}")
    print(f"module={tenant.module}")
    return 0


def main() -> None:
    # Parse CLI flags for tenant provisioning.
    parser = argparse.ArgumentParser(description="Provision an isolated tenant")
    parser.add_argument("--name", required=True)
    parser.add_argument("--module", default=None)
    parser.add_argument("--plan", default="basic")
    parser.add_argument("--isolation-level", default="schema", choices=sorted(ISOLATION_LEVELS))
    parser.add_argument("--max-users", type=int, default=None)
    parser.add_argument("--max-storage-mb", type=int, default=None)
    parser.add_argument("--max-api-calls", type=int, default=None)
    args = parser.parse_args()
    configure_logging()
    raise SystemExit(asyncio.run(_run_create(args)))


if __name__ == "__main__":
    main()
