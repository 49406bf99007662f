from __future__ import annotations

import logging
from datetime import datetime, timezone

from arq import cron
from arq.connections import RedisSettings

from tenantvault.core.config import get_settings
from tenantvault.core.errors import (
    BackupAlreadyRunning,
    BackupExecutionError,
    BackupJobNotFound,
    ConfigNotFoundOrInactive,
    InvalidJobTransition,
)
from tenantvault.core.logging import configure_logging
from tenantvault.persistence.db import ModuleRegistry
from tenantvault.services.admin import AdminService
from tenantvault.services.quota import QuotaService
from tenantvault.services.retention import RetentionSweeper
from tenantvault.services.scheduling import collect_tenant_usage, due_backup_configs

logger = logging.getLogger(__name__)


async def run_backup_job(ctx, config_id: str, job_id: str | None = None) -> str:
    # Execute one queued backup; failures are already persisted on the job row.
    admin: AdminService = ctx["admin"]
    try:
        job = await admin.backups.execute_backup_job(config_id, job_id=job_id)
    except BackupAlreadyRunning:
        logger.info("scheduled_backup_skipped config_id=%s reason=running", config_id)
        return "skipped"
    except ConfigNotFoundOrInactive:
        logger.info("scheduled_backup_skipped config_id=%s reason=inactive", config_id)
        return "skipped"
    except (InvalidJobTransition, BackupJobNotFound):
        # Redelivered or pruned job; whatever ran first owns the outcome.
        logger.info("scheduled_backup_skipped config_id=%s job_id=%s reason=stale", config_id, job_id)
        return "skipped"
    except BackupExecutionError:
        return "failed"
    return job.status


async def dispatch_due_backups(ctx) -> int:
    # Queue a pending job for every config whose cron expression matches this minute.
    settings = get_settings()
    if not settings.scheduler_dispatch_enabled:
        return 0
    admin: AdminService = ctx["admin"]
    now = datetime.now(timezone.utc)
    async with admin.registry.session(admin.backups.catalog_module) as session:
        due = await due_backup_configs(session, now)
    for config in due:
        job = await admin.backups.create_pending_job(config.id)
        await ctx["redis"].enqueue_job("run_backup_job", config.id, job.id)
        logger.info("scheduled_backup_queued config_id=%s job_id=%s", config.id, job.id)
    return len(due)


async def sweep_retention(ctx) -> int:
    sweeper: RetentionSweeper = ctx["admin"].sweeper
    orphaned = await sweeper.fail_stale_running_jobs()
    deleted = await sweeper.cleanup_old_backups()
    logger.info("retention_sweep_done deleted=%s orphaned=%s", deleted, orphaned)
    return deleted


async def collect_usage(ctx) -> int:
    admin: AdminService = ctx["admin"]
    return await collect_tenant_usage(admin.registry, ctx["quota"])


async def _startup(ctx) -> None:
    configure_logging()
    ctx["admin"] = AdminService(ModuleRegistry())
    ctx["quota"] = QuotaService()


async def _shutdown(ctx) -> None:
    # Dispose module pools so the worker exits without dangling connections.
    admin: AdminService | None = ctx.get("admin")
    if admin is not None:
        await admin.registry.dispose_all()


def _collector_minutes(interval: int) -> set[int]:
    interval = min(max(1, interval), 60)
    return set(range(0, 60, interval))


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.scheduler_queue_name
    # Backups are never retried automatically; operators re-trigger failed jobs.
    max_tries = 1
    functions = [run_backup_job]
    cron_jobs = [
        cron(dispatch_due_backups, second=0, run_at_startup=False),
        cron(sweep_retention, hour={settings.retention_sweep_hour}, minute={0}, second=0),
        cron(
            collect_usage,
            minute=_collector_minutes(settings.usage_collector_interval_minutes),
            second=0,
        ),
    ]
    on_startup = _startup
    on_shutdown = _shutdown
