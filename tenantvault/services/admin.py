from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from tenantvault.core.errors import TenantVaultError
from tenantvault.domain.models import Tenant
from tenantvault.domain.schemas import BackupConfigOut, BackupJobOut, RestoreLogOut, TenantOut
from tenantvault.domain.types import ResourceLimits, UsageDelta
from tenantvault.persistence.db import ModuleRegistry
from tenantvault.providers.artifacts.base import BackupArtifactProducer
from tenantvault.providers.artifacts.factory import get_artifact_producer
from tenantvault.services.backup import BackupEngine
from tenantvault.services.identity import IdentityProvisioner
from tenantvault.services.messaging import MessagingGateway
from tenantvault.services.migrations import MigrationRunner
from tenantvault.services.modules import get_module_status, initialize_module
from tenantvault.services.quota import QuotaService
from tenantvault.services.restore import RestoreService
from tenantvault.services.retention import RetentionSweeper
from tenantvault.services.tenants import TenantProvisioner


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class OperationError(BaseModel):
    code: str
    message: str


class OperationResult(BaseModel):
    # Uniform outcome of every administrative call; driver errors never leak past it.
    success: bool
    data: Any | None = None
    error: OperationError | None = None
    timestamp: datetime = Field(default_factory=_utc_now)
    # HTTP status hint for transports; not part of the serialized body.
    status_code: int = Field(default=200, exclude=True)


class AdminService:
    def __init__(
        self,
        registry: ModuleRegistry,
        *,
        producer: BackupArtifactProducer | None = None,
        messenger: MessagingGateway | None = None,
        identity: IdentityProvisioner | None = None,
        quota: QuotaService | None = None,
    ) -> None:
        self._registry = registry
        self._producer = producer or get_artifact_producer(registry)
        self._messenger = messenger or MessagingGateway(registry.settings)
        self._identity = identity or IdentityProvisioner(registry.settings)
        self._quota = quota or QuotaService()
        self._migrations = MigrationRunner(registry)
        self._provisioner = TenantProvisioner(registry, on_created=[self._after_tenant_created])
        self._backups = BackupEngine(registry, self._producer, notifier=self._messenger.notify_admin)
        self._sweeper = RetentionSweeper(registry, producer=self._producer)
        self._restores = RestoreService(registry, self._producer)

    @property
    def registry(self) -> ModuleRegistry:
        return self._registry

    @property
    def backups(self) -> BackupEngine:
        return self._backups

    @property
    def sweeper(self) -> RetentionSweeper:
        return self._sweeper

    async def _after_tenant_created(self, tenant: Tenant) -> None:
        if self._identity.enabled:
            await self._identity.create_realm(tenant)
        await self._messenger.notify_admin(f"Tenant '{tenant.name}' provisioned in module {tenant.module}")

    async def _run(self, operation: str, call: Callable[[], Awaitable[Any]]) -> OperationResult:
        try:
            data = await call()
        except TenantVaultError as exc:
            logger.info("admin_operation_rejected operation=%s code=%s", operation, exc.code)
            return OperationResult(
                success=False,
                error=OperationError(code=exc.code, message=str(exc)),
                status_code=exc.http_status,
            )
        except SQLAlchemyError as exc:
            logger.error("admin_operation_db_error operation=%s", operation, exc_info=exc)
            return OperationResult(
                success=False,
                error=OperationError(code="DATABASE_ERROR", message="Database operation failed"),
                status_code=503,
            )
        except Exception as exc:  # noqa: BLE001 - the admin boundary converts everything
            logger.exception("admin_operation_failed operation=%s", operation)
            return OperationResult(
                success=False,
                error=OperationError(code="INTERNAL_ERROR", message=str(exc) or type(exc).__name__),
                status_code=500,
            )
        return OperationResult(success=True, data=data)

    async def initialize_module(self, module: str) -> OperationResult:
        async def _call() -> dict[str, Any]:
            result = await initialize_module(self._registry, module, runner=self._migrations)
            return result.to_dict()

        return await self._run("initialize_module", _call)

    async def get_module_status(self, module: str) -> OperationResult:
        async def _call() -> dict[str, Any]:
            status = await get_module_status(self._registry, module, runner=self._migrations)
            return status.to_dict()

        return await self._run("get_module_status", _call)

    async def create_tenant(
        self,
        *,
        name: str,
        module: str | None = None,
        limits: ResourceLimits | dict[str, Any] | None = None,
        isolation_level: str = "schema",
        subscription_plan: str = "basic",
        tenant_config: dict[str, Any] | None = None,
    ) -> OperationResult:
        async def _call() -> dict[str, Any]:
            tenant = await self._provisioner.create_tenant(
                name=name,
                module=module,
                limits=limits,
                isolation_level=isolation_level,
                subscription_plan=subscription_plan,
                tenant_config=tenant_config,
            )
            return TenantOut.model_validate(tenant).model_dump(mode="json")

        return await self._run("create_tenant", _call)

    async def get_tenant_stats(self, tenant_id: str, *, module: str | None = None) -> OperationResult:
        async def _call() -> dict[str, Any]:
            async with self._registry.session(module) as session:
                stats = await self._quota.get_tenant_stats(session, tenant_id)
            return stats.to_dict()

        return await self._run("get_tenant_stats", _call)

    async def check_tenant_limits(self, tenant_id: str, *, module: str | None = None) -> OperationResult:
        async def _call() -> dict[str, Any]:
            async with self._registry.session(module) as session:
                check = await self._quota.check_limits(session, tenant_id)
            return check.to_dict()

        return await self._run("check_tenant_limits", _call)

    async def record_usage(
        self, tenant_id: str, delta: UsageDelta, *, module: str | None = None
    ) -> OperationResult:
        async def _call() -> dict[str, Any]:
            async with self._registry.session(module) as session:
                await self._quota.record_usage(session, tenant_id, delta)
            return {"tenant_id": tenant_id, "recorded": True}

        return await self._run("record_usage", _call)

    async def create_backup_config(self, **fields: Any) -> OperationResult:
        async def _call() -> dict[str, Any]:
            config = await self._backups.create_backup_config(**fields)
            return BackupConfigOut.model_validate(config).model_dump(mode="json")

        return await self._run("create_backup_config", _call)

    async def execute_backup_job(self, config_id: str) -> OperationResult:
        async def _call() -> dict[str, Any]:
            job = await self._backups.execute_backup_job(config_id)
            return BackupJobOut.model_validate(job).model_dump(mode="json")

        return await self._run("execute_backup_job", _call)

    async def list_backups(self, *, limit: int = 10) -> OperationResult:
        async def _call() -> list[dict[str, Any]]:
            jobs = await self._backups.list_backups(limit=limit)
            return [BackupJobOut.model_validate(job).model_dump(mode="json") for job in jobs]

        return await self._run("list_backups", _call)

    async def get_backup_metrics(self) -> OperationResult:
        async def _call() -> dict[str, Any]:
            metrics = await self._backups.get_backup_metrics()
            return metrics.to_dict()

        return await self._run("get_backup_metrics", _call)

    async def restore_backup(
        self, job_id: str, *, module: str | None = None, tenant_id: str | None = None
    ) -> OperationResult:
        async def _call() -> dict[str, Any]:
            log = await self._restores.restore_backup(job_id, module=module, tenant_id=tenant_id)
            return RestoreLogOut.model_validate(log).model_dump(mode="json")

        return await self._run("restore_backup", _call)

    async def cleanup_old_backups(self) -> OperationResult:
        async def _call() -> dict[str, Any]:
            deleted = await self._sweeper.cleanup_old_backups()
            return {"deleted_count": deleted}

        return await self._run("cleanup_old_backups", _call)
