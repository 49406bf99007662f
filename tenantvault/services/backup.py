from __future__ import annotations

import hashlib
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Iterable

from croniter import croniter
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantvault.core.config import Settings
from tenantvault.core.errors import (
    BackupAlreadyRunning,
    BackupExecutionError,
    BackupJobNotFound,
    ConfigNotFoundOrInactive,
    InvalidJobTransition,
    ValidationError,
)
from tenantvault.domain.models import BackupConfig, BackupFile, BackupJob, Tenant, as_utc, new_id
from tenantvault.domain.types import BACKUP_TYPES, STATUS_TRANSITIONS
from tenantvault.persistence.db import ModuleRegistry
from tenantvault.providers.artifacts.base import (
    ArtifactRequest,
    BackupArtifactProducer,
    ProducedArtifact,
    job_location,
)
from tenantvault.services.tenants import list_active_tenants


logger = logging.getLogger(__name__)

MANIFEST_VERSION = 1

Notifier = Callable[[str], Awaitable[Any]]

# Fields frozen once any job references the config.
_ALWAYS_MUTABLE_FIELDS = {"active", "retention_days"}
_CONFIG_FIELDS = {
    "name",
    "backup_type",
    "modules",
    "include_tenants",
    "compression",
    "encryption",
    "retention_days",
    "schedule",
    "active",
}

DEFAULT_BACKUP_CONFIGS: tuple[dict[str, Any], ...] = (
    {
        "name": "Weekly Full Backup",
        "backup_type": "full",
        "modules": ["platform", "analytics", "crm"],
        "include_tenants": True,
        "compression": True,
        "encryption": True,
        "retention_days": 90,
        "schedule": "0 2 * * 0",
    },
    {
        "name": "Daily Incremental Backup",
        "backup_type": "incremental",
        "modules": ["platform"],
        "include_tenants": True,
        "compression": True,
        "encryption": True,
        "retention_days": 30,
        "schedule": "0 1 * * 1-6",
    },
    {
        "name": "Analytics Incremental Backup",
        "backup_type": "incremental",
        "modules": ["analytics", "marketing", "social"],
        "include_tenants": False,
        "compression": True,
        "encryption": False,
        "retention_days": 14,
        "schedule": "0 3 * * *",
    },
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def aggregate_checksum(checksums: Iterable[str]) -> str:
    # Order-independent job checksum: SHA-256 over the sorted artifact checksums.
    return hashlib.sha256("".join(sorted(checksums)).encode("utf-8")).hexdigest()


def transition(job: BackupJob, target: str) -> None:
    if target not in STATUS_TRANSITIONS.get(job.status, frozenset()):
        raise InvalidJobTransition(f"Backup job {job.id} cannot move from {job.status} to {target}")
    job.status = target


@dataclass(frozen=True)
class CompressionPolicy:
    # Retained size fractions applied when the producer did not measure compression.
    full_ratio: float = 0.3
    incremental_ratio: float = 0.2

    @classmethod
    def from_settings(cls, settings: Settings) -> CompressionPolicy:
        return cls(
            full_ratio=settings.backup_full_compression_ratio,
            incremental_ratio=settings.backup_incremental_compression_ratio,
        )

    def retained_fraction(self, backup_type: str) -> float:
        return self.full_ratio if backup_type == "full" else self.incremental_ratio

    def compressed_size(self, artifacts: Iterable[ProducedArtifact], backup_type: str, enabled: bool) -> float:
        fraction = self.retained_fraction(backup_type)
        total = 0.0
        for artifact in artifacts:
            if not enabled:
                total += artifact.size_mb
            elif artifact.compressed_size_mb is not None:
                total += artifact.compressed_size_mb
            else:
                total += artifact.size_mb * fraction
        return round(total, 3)


@dataclass(frozen=True)
class BackupManifest:
    job_id: str
    config_id: str
    backup_type: str
    created_at: str
    watermark: str | None
    compression: bool
    encryption: bool
    checksum: str
    artifacts: list[dict[str, Any]] = field(default_factory=list)
    manifest_version: int = MANIFEST_VERSION

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class BackupMetrics:
    window_days: int
    total_backups: int
    successful_backups: int
    failed_backups: int
    running_backups: int
    total_size_gb: float
    avg_duration_minutes: float
    last_completed_at: datetime | None
    last_completed_job_id: str | None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["last_completed_at"] = self.last_completed_at.isoformat() if self.last_completed_at else None
        return payload


def validate_schedule(schedule: str | None) -> str | None:
    if schedule is None:
        return None
    cleaned = schedule.strip()
    if len(cleaned.split()) != 5 or not croniter.is_valid(cleaned):
        raise ValidationError(f"Invalid cron schedule: {schedule!r}")
    return cleaned


class BackupEngine:
    def __init__(
        self,
        registry: ModuleRegistry,
        producer: BackupArtifactProducer,
        *,
        catalog_module: str | None = None,
        compression: CompressionPolicy | None = None,
        notifier: Notifier | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._registry = registry
        self._producer = producer
        # Configs and jobs live in one catalog module; artifacts may span many modules.
        self._catalog_module = registry.resolve(catalog_module)
        self._compression = compression or CompressionPolicy.from_settings(registry.settings)
        self._notifier = notifier
        self._time_provider = time_provider or _utc_now

    @property
    def catalog_module(self) -> str:
        return self._catalog_module

    def _validated_config_fields(self, fields: dict[str, Any]) -> dict[str, Any]:
        values = dict(fields)
        if "name" in values and not (values["name"] or "").strip():
            raise ValidationError("Backup config name is required")
        if "backup_type" in values and values["backup_type"] not in BACKUP_TYPES:
            raise ValidationError(f"Unsupported backup type: {values['backup_type']}")
        if "modules" in values:
            modules = list(values["modules"] or [])
            if not modules:
                raise ValidationError("Backup config needs at least one module")
            values["modules"] = [self._registry.resolve(module) for module in dict.fromkeys(modules)]
        if "retention_days" in values:
            retention = values["retention_days"]
            if isinstance(retention, bool) or not isinstance(retention, int) or retention < 1:
                raise ValidationError("retention_days must be a positive integer")
        if "schedule" in values:
            values["schedule"] = validate_schedule(values["schedule"])
        return values

    async def create_backup_config(
        self,
        *,
        name: str,
        backup_type: str,
        modules: list[str],
        include_tenants: bool = True,
        compression: bool = True,
        encryption: bool = False,
        retention_days: int = 30,
        schedule: str | None = None,
        active: bool = True,
    ) -> BackupConfig:
        values = self._validated_config_fields(
            {
                "name": name,
                "backup_type": backup_type,
                "modules": modules,
                "include_tenants": include_tenants,
                "compression": compression,
                "encryption": encryption,
                "retention_days": retention_days,
                "schedule": schedule,
                "active": active,
            }
        )
        now = self._time_provider()
        config = BackupConfig(id=new_id(), created_at=now, updated_at=now, **values)
        async with self._registry.session(self._catalog_module) as session:
            session.add(config)
            await session.commit()
        logger.info("backup_config_created config_id=%s type=%s", config.id, config.backup_type)
        return config

    async def update_backup_config(self, config_id: str, **changes: Any) -> BackupConfig:
        unknown = set(changes) - _CONFIG_FIELDS
        if unknown:
            raise ValidationError(f"Unknown backup config fields: {sorted(unknown)}")
        values = self._validated_config_fields(changes)
        async with self._registry.session(self._catalog_module) as session:
            config = await session.get(BackupConfig, config_id)
            if config is None:
                raise ConfigNotFoundOrInactive(f"Backup config not found: {config_id}")
            frozen = set(values) - _ALWAYS_MUTABLE_FIELDS
            if frozen:
                referenced = await session.scalar(
                    select(func.count()).select_from(BackupJob).where(BackupJob.backup_config_id == config.id)
                )
                if referenced:
                    raise ValidationError(
                        f"Backup config {config.id} has jobs; only active and retention_days may change"
                    )
            for key, value in values.items():
                setattr(config, key, value)
            config.updated_at = self._time_provider()
            await session.commit()
        return config

    async def create_default_backup_configs(self) -> list[BackupConfig]:
        # Idempotent by name; modules missing from this deployment are dropped.
        async with self._registry.session(self._catalog_module) as session:
            existing = set((await session.execute(select(BackupConfig.name))).scalars().all())
        created: list[BackupConfig] = []
        for template in DEFAULT_BACKUP_CONFIGS:
            if template["name"] in existing:
                continue
            modules = [module for module in template["modules"] if module in self._registry.modules]
            if not modules:
                continue
            created.append(await self.create_backup_config(**{**template, "modules": modules}))
        return created

    async def create_pending_job(self, config_id: str) -> BackupJob:
        # Queued trigger: the worker later moves the row to running.
        async with self._registry.session(self._catalog_module) as session:
            config = await session.get(BackupConfig, config_id)
            if config is None or not config.active:
                raise ConfigNotFoundOrInactive(f"Backup config not found or inactive: {config_id}")
            job = BackupJob(
                id=new_id(),
                backup_config_id=config.id,
                status="pending",
                files_count=0,
                created_at=self._time_provider(),
            )
            session.add(job)
            await session.commit()
        return job

    async def _start_job(self, config_id: str, job_id: str | None) -> tuple[BackupConfig, BackupJob]:
        async with self._registry.session(self._catalog_module) as session:
            config = await session.get(BackupConfig, config_id)
            if config is None or not config.active:
                raise ConfigNotFoundOrInactive(f"Backup config not found or inactive: {config_id}")

            pending: BackupJob | None = None
            if job_id is not None:
                pending = await session.get(BackupJob, job_id)
                if pending is None or pending.backup_config_id != config.id:
                    raise BackupJobNotFound(f"Backup job not found: {job_id}")

            running = await session.scalar(
                select(BackupJob.id)
                .where(BackupJob.backup_config_id == config.id, BackupJob.status == "running")
                .limit(1)
            )
            if running is not None:
                if pending is not None and pending.status == "pending":
                    transition(pending, "failed")
                    pending.completed_at = self._time_provider()
                    pending.error_message = f"Superseded: job {running} was already running"
                    await session.commit()
                raise BackupAlreadyRunning(f"Backup config {config.id} already has running job {running}")

            now = self._time_provider()
            if pending is None:
                job = BackupJob(
                    id=new_id(),
                    backup_config_id=config.id,
                    status="running",
                    started_at=now,
                    files_count=0,
                    created_at=now,
                )
                session.add(job)
            else:
                job = pending
                transition(job, "running")
                job.started_at = now
            try:
                await session.commit()
            except IntegrityError as exc:
                # The partial unique index caught a concurrent starter.
                await session.rollback()
                raise BackupAlreadyRunning(f"Backup config {config.id} already has a running job") from exc
        logger.info("backup_job_started job_id=%s config_id=%s type=%s", job.id, config.id, config.backup_type)
        return config, job

    async def _last_completed_at(self, session: AsyncSession, config: BackupConfig) -> datetime | None:
        if config.backup_type == "incremental":
            value = await session.scalar(
                select(func.max(BackupJob.completed_at)).where(
                    BackupJob.backup_config_id == config.id,
                    BackupJob.status == "completed",
                )
            )
            return as_utc(value)
        # Differential: newest completed full job covering at least the same modules.
        rows = await session.execute(
            select(BackupJob.completed_at, BackupConfig.modules)
            .join(BackupConfig, BackupConfig.id == BackupJob.backup_config_id)
            .where(BackupConfig.backup_type == "full", BackupJob.status == "completed")
            .order_by(BackupJob.completed_at.desc())
        )
        wanted = set(config.modules)
        for completed_at, modules in rows:
            if wanted.issubset(set(modules or [])):
                return as_utc(completed_at)
        return None

    async def _watermark(self, config: BackupConfig) -> datetime | None:
        if config.backup_type == "full":
            return None
        async with self._registry.session(self._catalog_module) as session:
            last = await self._last_completed_at(session, config)
        if last is not None:
            return last
        window = timedelta(hours=self._registry.settings.backup_incremental_default_window_hours)
        return self._time_provider() - window

    def _file_name(self, stem: str, config: BackupConfig, stamp: str, extension: str) -> str:
        suffix = f"{extension}.gz" if config.compression else extension
        return f"{stem}_{stamp}{suffix}"

    async def _active_tenants(self) -> list[tuple[str, Tenant]]:
        found: list[tuple[str, Tenant]] = []
        for module in self._registry.modules:
            async with self._registry.session(module) as session:
                found.extend((module, tenant) for tenant in await list_active_tenants(session))
        return found

    async def _build_requests(
        self, config: BackupConfig, job_id: str, watermark: datetime | None
    ) -> list[ArtifactRequest]:
        stamp = self._time_provider().strftime("%Y%m%dT%H%M%SZ")
        common = {
            "job_id": job_id,
            "backup_type": config.backup_type,
            "compression": config.compression,
            "encryption": config.encryption,
        }
        requests: list[ArtifactRequest] = []
        if config.backup_type == "full":
            for module in config.modules:
                requests.append(
                    ArtifactRequest(
                        file_name=self._file_name(f"{module}_schema", config, stamp, ".sql"),
                        file_type="schema",
                        module=module,
                        **common,
                    )
                )
                requests.append(
                    ArtifactRequest(
                        file_name=self._file_name(f"{module}_data", config, stamp, ".sql"),
                        file_type="data",
                        module=module,
                        **common,
                    )
                )
            if config.include_tenants:
                # Tenant schemas are covered wherever they live, not only in the listed modules.
                for module, tenant in await self._active_tenants():
                    requests.append(
                        ArtifactRequest(
                            file_name=self._file_name(f"tenant_{tenant.schema_prefix}", config, stamp, ".sql"),
                            file_type="tenant",
                            module=module,
                            tenant_id=tenant.id,
                            schema_prefix=tenant.schema_prefix,
                            **common,
                        )
                    )
            return requests
        for module in config.modules:
            requests.append(
                ArtifactRequest(
                    file_name=self._file_name(f"{module}_changes", config, stamp, ".json"),
                    file_type="changes",
                    module=module,
                    since=watermark,
                    **common,
                )
            )
        return requests

    async def _complete_job(
        self,
        config: BackupConfig,
        job_id: str,
        artifacts: list[ProducedArtifact],
        watermark: datetime | None,
    ) -> BackupJob:
        now = self._time_provider()
        total_size = round(sum(artifact.size_mb for artifact in artifacts), 3)
        checksum = aggregate_checksum(artifact.checksum for artifact in artifacts)
        manifest = BackupManifest(
            job_id=job_id,
            config_id=config.id,
            backup_type=config.backup_type,
            created_at=now.isoformat(),
            watermark=watermark.isoformat() if watermark else None,
            compression=config.compression,
            encryption=config.encryption,
            checksum=checksum,
            artifacts=[artifact.to_dict() for artifact in artifacts],
        )
        async with self._registry.session(self._catalog_module) as session:
            job = await session.get(BackupJob, job_id)
            if job is None:
                raise BackupJobNotFound(f"Backup job disappeared while running: {job_id}")
            # Job row and its file rows commit together; any error rolls both back.
            transition(job, "completed")
            job.completed_at = now
            job.total_size_mb = total_size
            job.compressed_size_mb = self._compression.compressed_size(
                artifacts, config.backup_type, config.compression
            )
            job.files_count = len(artifacts)
            job.checksum = checksum
            job.backup_location = job_location(job_id)
            job.error_message = None
            job.job_data = {"manifest": manifest.to_dict(), "watermark": manifest.watermark}
            for artifact in artifacts:
                session.add(
                    BackupFile(
                        id=new_id(),
                        job_id=job_id,
                        file_name=artifact.file_name,
                        file_path=artifact.file_path,
                        file_type=artifact.file_type,
                        module_name=artifact.module_name,
                        tenant_id=artifact.tenant_id,
                        size_mb=artifact.size_mb,
                        checksum=artifact.checksum,
                        created_at=now,
                    )
                )
            await session.commit()
        return job

    async def _fail_job(self, job_id: str, exc: BaseException) -> None:
        message = f"{type(exc).__name__}: {exc}"
        try:
            async with self._registry.session(self._catalog_module) as session:
                job = await session.get(BackupJob, job_id)
                if job is None or job.status in ("completed", "failed"):
                    return
                transition(job, "failed")
                job.completed_at = self._time_provider()
                job.error_message = message
                await session.commit()
        except Exception as write_exc:  # noqa: BLE001 - the original error is what callers see
            logger.error("backup_job_fail_write_failed job_id=%s", job_id, exc_info=write_exc)

    async def _notify(self, text: str) -> None:
        if self._notifier is None:
            return
        try:
            await self._notifier(text)
        except Exception as exc:  # noqa: BLE001 - notifications never affect job state
            logger.warning("backup_notification_failed", exc_info=exc)

    async def execute_backup_job(self, config_id: str, *, job_id: str | None = None) -> BackupJob:
        config, job = await self._start_job(config_id, job_id)
        try:
            watermark = await self._watermark(config)
            requests = await self._build_requests(config, job.id, watermark)
            artifacts: list[ProducedArtifact] = []
            for request in requests:
                artifacts.append(await self._producer.produce(request))
            job = await self._complete_job(config, job.id, artifacts, watermark)
        except Exception as exc:  # noqa: BLE001 - persisted as failed, then surfaced
            logger.error("backup_job_failed job_id=%s config_id=%s", job.id, config.id, exc_info=exc)
            await self._fail_job(job.id, exc)
            await self._notify(f"Backup '{config.name}' failed (job {job.id}): {exc}")
            raise BackupExecutionError(f"Backup job {job.id} failed: {exc}") from exc

        logger.info(
            "backup_job_completed job_id=%s files=%s total_mb=%s",
            job.id,
            job.files_count,
            job.total_size_mb,
        )
        await self._notify(
            f"Backup '{config.name}' completed (job {job.id}): {job.files_count} files, "
            f"{job.compressed_size_mb} MB stored"
        )
        return job

    async def list_backups(self, *, limit: int = 10) -> list[BackupJob]:
        limit = max(1, min(int(limit), 500))
        async with self._registry.session(self._catalog_module) as session:
            result = await session.execute(
                select(BackupJob).order_by(BackupJob.created_at.desc()).limit(limit)
            )
            return list(result.scalars().all())

    async def get_backup_job(self, job_id: str) -> BackupJob:
        async with self._registry.session(self._catalog_module) as session:
            job = await session.get(BackupJob, job_id)
        if job is None:
            raise BackupJobNotFound(f"Backup job not found: {job_id}")
        return job

    async def list_backup_files(self, job_id: str) -> list[BackupFile]:
        async with self._registry.session(self._catalog_module) as session:
            result = await session.execute(
                select(BackupFile).where(BackupFile.job_id == job_id).order_by(BackupFile.file_name)
            )
            return list(result.scalars().all())

    async def get_backup_metrics(self) -> BackupMetrics:
        window_days = self._registry.settings.backup_metrics_window_days
        since = self._time_provider() - timedelta(days=window_days)
        async with self._registry.session(self._catalog_module) as session:
            jobs = (
                await session.execute(select(BackupJob).where(BackupJob.created_at >= since))
            ).scalars().all()
            last = await session.scalar(
                select(BackupJob)
                .where(BackupJob.status == "completed")
                .order_by(BackupJob.completed_at.desc())
                .limit(1)
            )
        completed = [job for job in jobs if job.status == "completed"]
        durations = [
            (as_utc(job.completed_at) - as_utc(job.started_at)).total_seconds() / 60.0
            for job in completed
            if job.started_at and job.completed_at
        ]
        return BackupMetrics(
            window_days=window_days,
            total_backups=len(jobs),
            successful_backups=len(completed),
            failed_backups=sum(1 for job in jobs if job.status == "failed"),
            running_backups=sum(1 for job in jobs if job.status == "running"),
            total_size_gb=round(sum(job.total_size_mb or 0.0 for job in completed) / 1024, 3),
            avg_duration_minutes=round(sum(durations) / len(durations), 2) if durations else 0.0,
            last_completed_at=as_utc(last.completed_at) if last else None,
            last_completed_job_id=last.id if last else None,
        )
