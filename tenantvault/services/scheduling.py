from __future__ import annotations

import logging
from datetime import datetime

from croniter import croniter
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantvault.core.errors import TenantVaultError
from tenantvault.domain.models import BackupConfig
from tenantvault.persistence.db import ModuleRegistry
from tenantvault.services.quota import QuotaService
from tenantvault.services.tenants import list_active_tenants


logger = logging.getLogger(__name__)


def is_due(schedule: str | None, now: datetime) -> bool:
    # Cron resolution is one minute; the dispatcher ticks once per minute.
    if not schedule:
        return False
    return bool(croniter.match(schedule, now.replace(second=0, microsecond=0)))


async def due_backup_configs(session: AsyncSession, now: datetime) -> list[BackupConfig]:
    result = await session.execute(
        select(BackupConfig)
        .where(BackupConfig.active.is_(True), BackupConfig.schedule.is_not(None))
        .order_by(BackupConfig.created_at)
    )
    due: list[BackupConfig] = []
    for config in result.scalars().all():
        try:
            if is_due(config.schedule, now):
                due.append(config)
        except (ValueError, KeyError) as exc:
            logger.warning("backup_schedule_invalid config_id=%s schedule=%s", config.id, config.schedule, exc_info=exc)
    return due


async def collect_tenant_usage(registry: ModuleRegistry, quota: QuotaService) -> int:
    """Record live user and storage gauges for every active tenant.

    Modules that are unreachable or not initialized are skipped and
    logged; the pass continues with the rest. Returns the number of
    tenants sampled.
    """
    sampled = 0
    for module in registry.modules:
        try:
            async with registry.session(module) as session:
                tenants = await list_active_tenants(session)
                for tenant in tenants:
                    await quota.sample_live_usage(session, tenant)
                    sampled += 1
        except (TenantVaultError, SQLAlchemyError, OSError) as exc:
            logger.warning("usage_collection_skipped module=%s", module, exc_info=exc)
        except Exception as exc:  # noqa: BLE001 - one broken module must not stop the pass
            logger.error("usage_collection_failed module=%s", module, exc_info=exc)
    logger.info("usage_collection_done tenants=%s", sampled)
    return sampled
