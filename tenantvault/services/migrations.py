from __future__ import annotations

import asyncio
import hashlib
import inspect as pyinspect
import logging
import time
from dataclasses import dataclass, field
from types import ModuleType
from typing import Callable, Sequence

from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import inspect, insert, select, text
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import AsyncEngine

from tenantvault.core.errors import MigrationError
from tenantvault.domain.models import MIGRATION_SCHEMA, MigrationHistory, utc_now
from tenantvault.persistence.core_migrations import (
    m0001_tenant_management,
    m0002_backup_management,
    m0003_backup_running_guard,
    m0004_tenant_name_registry,
)
from tenantvault.persistence.db import ModuleRegistry


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CoreMigration:
    migration_id: str
    name: str
    description: str
    upgrade: Callable[[Operations], None]

    @classmethod
    def from_module(cls, module: ModuleType) -> CoreMigration:
        return cls(
            migration_id=module.migration_id,
            name=module.name,
            description=module.description,
            upgrade=module.upgrade,
        )

    @property
    def checksum(self) -> str:
        # Hash the upgrade body so edits to an applied migration are detectable.
        try:
            source = pyinspect.getsource(self.upgrade)
        except (OSError, TypeError):
            source = self.description
        return hashlib.sha256(f"{self.migration_id}\n{source}".encode("utf-8")).hexdigest()


CORE_MIGRATIONS: tuple[CoreMigration, ...] = tuple(
    CoreMigration.from_module(module)
    for module in (
        m0001_tenant_management,
        m0002_backup_management,
        m0003_backup_running_guard,
        m0004_tenant_name_registry,
    )
)


@dataclass(frozen=True)
class MigrationResult:
    migration_id: str
    name: str
    success: bool
    # False when the migration was already recorded as applied.
    applied: bool
    execution_time_ms: int = 0
    error: str | None = None


@dataclass(frozen=True)
class ModuleMigrationReport:
    module: str
    results: list[MigrationResult] = field(default_factory=list)
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None and all(result.success for result in self.results)

    @property
    def applied_count(self) -> int:
        return sum(1 for result in self.results if result.applied and result.success)


@dataclass(frozen=True)
class MigrationStatus:
    module: str
    applied: list[str]
    failed: list[str]
    pending: list[str]
    history_present: bool


def _history_schema(conn: Connection) -> str | None:
    return MIGRATION_SCHEMA if conn.dialect.name == "postgresql" else None


def _create_history_table(conn: Connection) -> None:
    schema = _history_schema(conn)
    if schema:
        conn.execute(text(f'CREATE SCHEMA IF NOT EXISTS "{schema}"'))
    MigrationHistory.__table__.create(conn, checkfirst=True)


def _history_exists(conn: Connection) -> bool:
    # Inspector ignores schema_translate_map, so pass the physical schema.
    return inspect(conn).has_table(MigrationHistory.__tablename__, schema=_history_schema(conn))


def _run_upgrade(conn: Connection, migration: CoreMigration) -> None:
    context = MigrationContext.configure(conn)
    migration.upgrade(Operations(context))


class MigrationRunner:
    def __init__(self, registry: ModuleRegistry, migrations: Sequence[CoreMigration] | None = None) -> None:
        self._registry = registry
        self._migrations = tuple(migrations if migrations is not None else CORE_MIGRATIONS)

    @property
    def migrations(self) -> tuple[CoreMigration, ...]:
        return self._migrations

    async def _applied_ids(self, engine: AsyncEngine) -> set[str]:
        async with engine.connect() as conn:
            rows = await conn.execute(
                select(MigrationHistory.migration_id).where(MigrationHistory.success.is_(True))
            )
            return {row[0] for row in rows}

    async def _record_failure(
        self, engine: AsyncEngine, migration: CoreMigration, error: str, elapsed_ms: int
    ) -> None:
        try:
            async with engine.begin() as conn:
                await conn.execute(
                    insert(MigrationHistory).values(
                        migration_id=migration.migration_id,
                        name=migration.name,
                        checksum=migration.checksum,
                        success=False,
                        execution_time_ms=elapsed_ms,
                        error_message=error,
                        applied_at=utc_now(),
                    )
                )
        except Exception as exc:  # noqa: BLE001 - the original failure is what callers need
            logger.warning(
                "migration_failure_record_failed migration=%s", migration.migration_id, exc_info=exc
            )

    async def apply_migration(self, module: str, migration: CoreMigration) -> MigrationResult:
        engine = self._registry.get_engine(module)
        started = time.perf_counter()
        try:
            # DDL and its history row commit together or not at all.
            async with engine.begin() as conn:
                await conn.run_sync(_run_upgrade, migration)
                elapsed_ms = int((time.perf_counter() - started) * 1000)
                await conn.execute(
                    insert(MigrationHistory).values(
                        migration_id=migration.migration_id,
                        name=migration.name,
                        checksum=migration.checksum,
                        success=True,
                        execution_time_ms=elapsed_ms,
                        applied_at=utc_now(),
                    )
                )
        except Exception as exc:  # noqa: BLE001 - failures are recorded and reported per module
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            message = f"{type(exc).__name__}: {exc}"
            logger.error("migration_failed module=%s migration=%s", module, migration.migration_id, exc_info=exc)
            await self._record_failure(engine, migration, message, elapsed_ms)
            return MigrationResult(
                migration_id=migration.migration_id,
                name=migration.name,
                success=False,
                applied=False,
                execution_time_ms=elapsed_ms,
                error=message,
            )
        logger.info(
            "migration_applied module=%s migration=%s elapsed_ms=%s", module, migration.migration_id, elapsed_ms
        )
        return MigrationResult(
            migration_id=migration.migration_id,
            name=migration.name,
            success=True,
            applied=True,
            execution_time_ms=elapsed_ms,
        )

    async def apply_all_core_migrations(self, module: str) -> list[MigrationResult]:
        module = self._registry.resolve(module)
        engine = self._registry.get_engine(module)
        try:
            async with engine.begin() as conn:
                await conn.run_sync(_create_history_table)
            applied = await self._applied_ids(engine)
        except Exception as exc:  # noqa: BLE001 - surfaced as a migration error for this module
            raise MigrationError(f"Cannot prepare migration history for module {module}: {exc}") from exc

        results: list[MigrationResult] = []
        for migration in self._migrations:
            if migration.migration_id in applied:
                results.append(
                    MigrationResult(
                        migration_id=migration.migration_id,
                        name=migration.name,
                        success=True,
                        applied=False,
                    )
                )
                continue
            result = await self.apply_migration(module, migration)
            results.append(result)
            if not result.success:
                # Later migrations may depend on this one; stop this module only.
                break
        return results

    async def apply_core_migrations_all_modules(self) -> dict[str, ModuleMigrationReport]:
        async def _one(module: str) -> ModuleMigrationReport:
            try:
                results = await self.apply_all_core_migrations(module)
            except Exception as exc:  # noqa: BLE001 - one module's failure must not block siblings
                logger.error("module_migrations_failed module=%s", module, exc_info=exc)
                return ModuleMigrationReport(module=module, error=str(exc))
            return ModuleMigrationReport(module=module, results=results)

        reports = await asyncio.gather(*(_one(module) for module in self._registry.modules))
        return {report.module: report for report in reports}

    async def get_migration_status(self, module: str) -> MigrationStatus:
        module = self._registry.resolve(module)
        engine = self._registry.get_engine(module)
        known = [migration.migration_id for migration in self._migrations]
        async with engine.connect() as conn:
            present = await conn.run_sync(_history_exists)
            if not present:
                return MigrationStatus(module=module, applied=[], failed=[], pending=known, history_present=False)
            rows = (
                await conn.execute(
                    select(MigrationHistory.migration_id, MigrationHistory.success).order_by(
                        MigrationHistory.id
                    )
                )
            ).all()
        applied = {migration_id for migration_id, success in rows if success}
        failed = {migration_id for migration_id, success in rows if not success} - applied
        return MigrationStatus(
            module=module,
            applied=[mid for mid in known if mid in applied],
            failed=[mid for mid in known if mid in failed],
            pending=[mid for mid in known if mid not in applied],
            history_present=True,
        )
