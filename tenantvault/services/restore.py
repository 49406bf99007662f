from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from tenantvault.core.errors import BackupJobNotFound, RestoreError, ValidationError
from tenantvault.domain.models import BackupFile, BackupJob, RestoreLog, new_id
from tenantvault.persistence.db import ModuleRegistry
from tenantvault.providers.artifacts.base import BackupArtifactProducer, StoredArtifact
from tenantvault.services.backup import aggregate_checksum


logger = logging.getLogger(__name__)

_RESTORABLE_TYPES = ("schema", "data", "tenant", "changes")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _stored(job: BackupJob, row: BackupFile) -> StoredArtifact:
    manifest = (job.job_data or {}).get("manifest") or {}
    return StoredArtifact(
        job_id=job.id,
        file_name=row.file_name,
        file_path=row.file_path,
        file_type=row.file_type,
        module_name=row.module_name,
        tenant_id=row.tenant_id,
        checksum=row.checksum,
        compressed=bool(manifest.get("compression", True)),
        encrypted=bool(manifest.get("encryption", False)),
    )


class RestoreService:
    def __init__(
        self,
        registry: ModuleRegistry,
        producer: BackupArtifactProducer,
        *,
        catalog_module: str | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._registry = registry
        self._producer = producer
        self._catalog_module = registry.resolve(catalog_module)
        self._time_provider = time_provider or _utc_now

    async def _finish(self, log_id: str, *, status: str, restored: int, error: str | None = None) -> RestoreLog:
        async with self._registry.session(self._catalog_module) as session:
            log = await session.get(RestoreLog, log_id)
            log.status = status
            log.completed_at = self._time_provider()
            log.restored_files_count = restored
            log.error_message = error
            await session.commit()
        return log

    async def restore_backup(
        self,
        job_id: str,
        *,
        module: str | None = None,
        tenant_id: str | None = None,
    ) -> RestoreLog:
        if module is not None:
            module = self._registry.resolve(module)
        restore_type = "tenant" if tenant_id else "module" if module else "full"

        async with self._registry.session(self._catalog_module) as session:
            job = await session.get(BackupJob, job_id)
            if job is None:
                raise BackupJobNotFound(f"Backup job not found: {job_id}")
            if job.status != "completed":
                raise ValidationError(f"Only completed backups can be restored; job {job_id} is {job.status}")
            files = list(
                (
                    await session.execute(
                        select(BackupFile).where(BackupFile.job_id == job.id).order_by(BackupFile.file_name)
                    )
                ).scalars().all()
            )

            # The in-flight log pins the job against the retention sweeper.
            log = RestoreLog(
                id=new_id(),
                job_id=job.id,
                restore_type=restore_type,
                target_module=module,
                target_tenant_id=tenant_id,
                status="running",
                started_at=self._time_provider(),
                restored_files_count=0,
            )
            session.add(log)
            try:
                await session.commit()
            except IntegrityError as exc:
                raise RestoreError(f"Backup job {job_id} was pruned before the restore started") from exc

        try:
            if aggregate_checksum(row.checksum for row in files) != job.checksum:
                raise RestoreError(f"Checksum mismatch for backup job {job_id}")
            selected = [
                row
                for row in files
                if row.file_type in _RESTORABLE_TYPES
                and (module is None or row.module_name == module)
                and (tenant_id is None or row.tenant_id == tenant_id)
            ]
            if not selected:
                raise RestoreError(f"No artifacts in job {job_id} match the restore target")
            # Definitions before data, tenant schemas last.
            order = {"schema": 0, "data": 1, "changes": 2, "tenant": 3}
            selected.sort(key=lambda row: (order.get(row.file_type, 9), row.file_name))
            for row in selected:
                await self._producer.restore(_stored(job, row), target_module=row.module_name)
        except Exception as exc:  # noqa: BLE001 - recorded durably, then surfaced as RestoreError
            logger.error("restore_failed job_id=%s log_id=%s", job_id, log.id, exc_info=exc)
            await self._finish(log.id, status="failed", restored=0, error=f"{type(exc).__name__}: {exc}")
            if isinstance(exc, RestoreError):
                raise
            raise RestoreError(f"Restore of backup job {job_id} failed: {exc}") from exc

        log = await self._finish(log.id, status="completed", restored=len(selected))
        logger.info("restore_completed job_id=%s files=%s type=%s", job_id, len(selected), restore_type)
        return log
