from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import func, inspect, select

from tenantvault.core.errors import TenantVaultError
from tenantvault.domain.models import (
    BACKUP_SCHEMA,
    TENANT_SCHEMA,
    BackupJob,
    BackupConfig,
    Tenant,
    as_utc,
)
from tenantvault.persistence.db import ModuleRegistry
from tenantvault.services.migrations import MigrationRunner, MigrationStatus


logger = logging.getLogger(__name__)

# Catalog tables a fully initialized module must expose, by namespace.
_CATALOG_TABLES: dict[str, tuple[str, ...]] = {
    TENANT_SCHEMA: ("tenants", "tenant_users", "tenant_usage", "tenant_names"),
    BACKUP_SCHEMA: ("backup_configs", "backup_jobs", "backup_files", "restore_logs"),
}

# Health score weights.
_SCORE_CONNECTION = 50
_SCORE_MIGRATIONS = 30
_SCORE_TABLES = 20


@dataclass(frozen=True)
class InitializationResult:
    module: str
    success: bool
    migrations_applied: int
    errors: list[str] = field(default_factory=list)
    timing: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ModuleStatus:
    module: str
    connected: bool
    catalog_tables_present: bool
    migrations: MigrationStatus | None
    tenant_count: int
    last_backup_at: datetime | None
    health_score: int
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["last_backup_at"] = self.last_backup_at.isoformat() if self.last_backup_at else None
        return payload


def _missing_catalog_tables(conn: Any) -> list[str]:
    inspector = inspect(conn)
    postgres = conn.dialect.name == "postgresql"
    missing: list[str] = []
    for schema, tables in _CATALOG_TABLES.items():
        for table in tables:
            # Inspector ignores schema_translate_map, so pass the physical schema.
            if not inspector.has_table(table, schema=schema if postgres else None):
                missing.append(f"{schema}.{table}")
    return missing


async def initialize_module(
    registry: ModuleRegistry, module: str, *, runner: MigrationRunner | None = None
) -> InitializationResult:
    module = registry.resolve(module)
    runner = runner or MigrationRunner(registry)
    errors: list[str] = []
    timing: dict[str, int] = {}
    applied = 0

    started = time.perf_counter()
    try:
        await registry.test_connection(module)
    except TenantVaultError as exc:
        timing["connection_ms"] = int((time.perf_counter() - started) * 1000)
        logger.error("module_init_connection_failed module=%s", module)
        return InitializationResult(
            module=module, success=False, migrations_applied=0, errors=[str(exc)], timing=timing
        )
    timing["connection_ms"] = int((time.perf_counter() - started) * 1000)

    started = time.perf_counter()
    try:
        results = await runner.apply_all_core_migrations(module)
        applied = sum(1 for result in results if result.applied and result.success)
        errors.extend(f"{result.migration_id}: {result.error}" for result in results if not result.success)
    except TenantVaultError as exc:
        errors.append(str(exc))
    timing["migrations_ms"] = int((time.perf_counter() - started) * 1000)

    success = not errors
    logger.info("module_initialized module=%s success=%s applied=%s", module, success, applied)
    return InitializationResult(
        module=module, success=success, migrations_applied=applied, errors=errors, timing=timing
    )


async def initialize_all_modules(registry: ModuleRegistry) -> dict[str, InitializationResult]:
    # Modules live in disjoint databases, so they initialize in parallel.
    runner = MigrationRunner(registry)
    results = await asyncio.gather(
        *(initialize_module(registry, module, runner=runner) for module in registry.modules)
    )
    return {result.module: result for result in results}


async def get_module_status(
    registry: ModuleRegistry, module: str, *, runner: MigrationRunner | None = None
) -> ModuleStatus:
    module = registry.resolve(module)
    runner = runner or MigrationRunner(registry)
    try:
        await registry.test_connection(module)
    except TenantVaultError as exc:
        return ModuleStatus(
            module=module,
            connected=False,
            catalog_tables_present=False,
            migrations=None,
            tenant_count=0,
            last_backup_at=None,
            health_score=0,
            error=str(exc),
        )

    score = _SCORE_CONNECTION
    migrations = await runner.get_migration_status(module)
    if migrations.history_present and not migrations.pending:
        score += _SCORE_MIGRATIONS

    engine = registry.get_engine(module)
    async with engine.connect() as conn:
        missing = await conn.run_sync(_missing_catalog_tables)
    tables_present = not missing
    tenant_count = 0
    last_backup_at: datetime | None = None
    if tables_present:
        score += _SCORE_TABLES
        async with registry.session(module) as session:
            tenant_count = int(
                await session.scalar(select(func.count()).select_from(Tenant).where(Tenant.active.is_(True)))
                or 0
            )
            # Latest completed backup whose config covers this module.
            rows = await session.execute(
                select(BackupJob.completed_at, BackupConfig.modules)
                .join(BackupConfig, BackupConfig.id == BackupJob.backup_config_id)
                .where(BackupJob.status == "completed")
                .order_by(BackupJob.completed_at.desc())
            )
            for completed_at, modules in rows:
                if module in (modules or []):
                    last_backup_at = as_utc(completed_at)
                    break

    return ModuleStatus(
        module=module,
        connected=True,
        catalog_tables_present=tables_present,
        migrations=migrations,
        tenant_count=tenant_count,
        last_backup_at=last_backup_at,
        health_score=score,
        error=None if tables_present else f"Missing catalog tables: {', '.join(missing)}",
    )
