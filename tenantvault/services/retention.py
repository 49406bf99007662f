from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy import delete, exists, select

from tenantvault.domain.models import BackupConfig, BackupJob, RestoreLog
from tenantvault.domain.types import IN_FLIGHT_STATUSES
from tenantvault.persistence.db import ModuleRegistry
from tenantvault.providers.artifacts.base import BackupArtifactProducer
from tenantvault.services.backup import transition


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RetentionSweeper:
    def __init__(
        self,
        registry: ModuleRegistry,
        *,
        producer: BackupArtifactProducer | None = None,
        catalog_module: str | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._registry = registry
        self._producer = producer
        self._catalog_module = registry.resolve(catalog_module)
        self._time_provider = time_provider or _utc_now

    async def cleanup_old_backups(self) -> int:
        """Delete completed jobs past their config's retention window.

        Running and failed jobs are never touched, and neither is a job
        that an in-flight restore is reading from. Files cascade with
        their job. Returns the number of deleted jobs.
        """
        now = self._time_provider()
        restore_in_flight = exists().where(
            RestoreLog.job_id == BackupJob.id,
            RestoreLog.status.in_(IN_FLIGHT_STATUSES),
        )
        deleted_ids: list[str] = []
        async with self._registry.session(self._catalog_module) as session:
            async with session.begin():
                configs = (
                    await session.execute(
                        select(BackupConfig.id, BackupConfig.retention_days).where(
                            BackupConfig.active.is_(True)
                        )
                    )
                ).all()
                for config_id, retention_days in configs:
                    cutoff = now - timedelta(days=int(retention_days))
                    prunable = (
                        BackupJob.backup_config_id == config_id,
                        BackupJob.status == "completed",
                        BackupJob.completed_at < cutoff,
                        ~restore_in_flight,
                    )
                    expired = (await session.execute(select(BackupJob.id).where(*prunable))).scalars().all()
                    if not expired:
                        continue
                    # Re-check at delete time; a restore may have started since the scan.
                    await session.execute(
                        delete(BackupJob)
                        .where(BackupJob.id.in_(expired), *prunable)
                        .execution_options(synchronize_session=False)
                    )
                    kept = set(
                        (
                            await session.execute(select(BackupJob.id).where(BackupJob.id.in_(expired)))
                        ).scalars().all()
                    )
                    pruned = [job_id for job_id in expired if job_id not in kept]
                    deleted_ids.extend(pruned)
                    logger.info(
                        "retention_pruned config_id=%s deleted=%s cutoff=%s",
                        config_id,
                        len(pruned),
                        cutoff.isoformat(),
                    )

        if self._producer is not None:
            for job_id in deleted_ids:
                try:
                    await self._producer.discard(job_id)
                except Exception as exc:  # noqa: BLE001 - catalog rows are already gone
                    logger.warning("retention_artifact_discard_failed job_id=%s", job_id, exc_info=exc)
        return len(deleted_ids)

    async def fail_stale_running_jobs(self, *, max_age_hours: int | None = None) -> int:
        # A crashed worker leaves its job running forever and blocks the config; close it out.
        hours = max_age_hours or self._registry.settings.backup_stale_running_after_hours
        now = self._time_provider()
        cutoff = now - timedelta(hours=hours)
        async with self._registry.session(self._catalog_module) as session:
            stale = (
                await session.execute(
                    select(BackupJob).where(BackupJob.status == "running", BackupJob.started_at < cutoff)
                )
            ).scalars().all()
            for job in stale:
                transition(job, "failed")
                job.completed_at = now
                job.error_message = f"Orphaned: still running after {hours}h"
            await session.commit()
        if stale:
            logger.warning("backup_jobs_orphaned count=%s", len(stale))
        return len(stale)
