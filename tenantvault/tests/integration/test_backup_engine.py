from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from tenantvault.core.errors import (
    BackupAlreadyRunning,
    BackupExecutionError,
    ConfigNotFoundOrInactive,
    UnknownModuleError,
    ValidationError,
)
from tenantvault.persistence.db import ModuleRegistry
from tenantvault.providers.artifacts.base import ArtifactRequest, ProducedArtifact
from tenantvault.providers.artifacts.fake import FakeArtifactProducer
from tenantvault.services.backup import BackupEngine, aggregate_checksum
from tenantvault.services.tenants import TenantProvisioner


T0 = datetime(2026, 10, 19, 2, 0, tzinfo=timezone.utc)


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class _GatedProducer(FakeArtifactProducer):
    # Holds every artifact until the test releases it.
    def __init__(self) -> None:
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def produce(self, request: ArtifactRequest) -> ProducedArtifact:
        self.started.set()
        await self.release.wait()
        return await super().produce(request)


class _FailingProducer(FakeArtifactProducer):
    async def produce(self, request: ArtifactRequest) -> ProducedArtifact:
        if request.file_type == "data":
            raise OSError("pg_dump exited with status 1")
        return await super().produce(request)


@pytest.mark.asyncio
async def test_full_backup_covers_modules_and_tenants(migrated_registry: ModuleRegistry) -> None:
    provisioner = TenantProvisioner(migrated_registry)
    acme = await provisioner.create_tenant(name="Acme")
    globex = await provisioner.create_tenant(name="Globex")
    producer = FakeArtifactProducer()
    engine = BackupEngine(migrated_registry, producer, time_provider=_Clock(T0))

    config = await engine.create_backup_config(
        name="nightly", backup_type="full", modules=["platform", "analytics"], retention_days=30
    )
    job = await engine.execute_backup_job(config.id)

    assert job.status == "completed"
    assert job.files_count == 6
    assert job.backup_location == f"backups/{job.id}"
    assert job.total_size_mb > 0

    files = await engine.list_backup_files(job.id)
    assert len(files) == 6
    assert job.checksum == aggregate_checksum(row.checksum for row in files)
    assert job.total_size_mb == pytest.approx(sum(row.size_mb for row in files), abs=0.01)
    assert job.compressed_size_mb == pytest.approx(job.total_size_mb * 0.3, abs=0.01)
    assert sorted(row.tenant_id for row in files if row.file_type == "tenant") == sorted([acme.id, globex.id])
    assert {(row.module_name, row.file_type) for row in files if row.file_type != "tenant"} == {
        ("platform", "schema"),
        ("platform", "data"),
        ("analytics", "schema"),
        ("analytics", "data"),
    }
    assert all(row.file_name.endswith(".sql.gz") for row in files)

    manifest = job.job_data["manifest"]
    assert manifest["checksum"] == job.checksum
    assert manifest["watermark"] is None
    assert len(manifest["artifacts"]) == 6


@pytest.mark.asyncio
async def test_full_backup_includes_tenants_outside_listed_modules(migrated_registry: ModuleRegistry) -> None:
    provisioner = TenantProvisioner(migrated_registry)
    local = await provisioner.create_tenant(name="Local")
    remote = await provisioner.create_tenant(name="Remote", module="analytics")
    engine = BackupEngine(migrated_registry, FakeArtifactProducer(), time_provider=_Clock(T0))

    config = await engine.create_backup_config(name="platform only", backup_type="full", modules=["platform"])
    job = await engine.execute_backup_job(config.id)

    tenant_files = [row for row in await engine.list_backup_files(job.id) if row.file_type == "tenant"]
    assert job.files_count == 4
    assert {(row.tenant_id, row.module_name) for row in tenant_files} == {
        (local.id, "platform"),
        (remote.id, "analytics"),
    }

    skipped = await engine.create_backup_config(
        name="no tenants", backup_type="full", modules=["platform"], include_tenants=False
    )
    assert (await engine.execute_backup_job(skipped.id)).files_count == 2


@pytest.mark.asyncio
async def test_incremental_backups_advance_the_watermark(migrated_registry: ModuleRegistry) -> None:
    clock = _Clock(T0)
    producer = FakeArtifactProducer()
    engine = BackupEngine(migrated_registry, producer, time_provider=clock)
    config = await engine.create_backup_config(name="hourly", backup_type="incremental", modules=["platform"])

    first = await engine.execute_backup_job(config.id)
    assert first.status == "completed"
    assert first.files_count == 1
    assert first.total_size_mb > 0
    # First run looks back over the default window.
    assert producer.produced[-1].since == T0 - timedelta(hours=24)
    assert producer.produced[-1].file_type == "changes"

    clock.now = T0 + timedelta(hours=1)
    second = await engine.execute_backup_job(config.id)
    assert second.id != first.id
    assert second.status == "completed"
    assert second.files_count == 1
    assert second.checksum
    assert producer.produced[-1].since == T0
    assert second.job_data["watermark"] == T0.isoformat()
    assert second.compressed_size_mb == pytest.approx(second.total_size_mb * 0.2, abs=0.01)


@pytest.mark.asyncio
async def test_differential_uses_the_last_full_backup(migrated_registry: ModuleRegistry) -> None:
    clock = _Clock(T0)
    producer = FakeArtifactProducer()
    engine = BackupEngine(migrated_registry, producer, time_provider=clock)
    full = await engine.create_backup_config(name="weekly", backup_type="full", modules=["platform"])
    diff = await engine.create_backup_config(name="daily-diff", backup_type="differential", modules=["platform"])

    await engine.execute_backup_job(full.id)
    clock.now = T0 + timedelta(days=1)
    await engine.execute_backup_job(diff.id)
    clock.now = T0 + timedelta(days=2)
    await engine.execute_backup_job(diff.id)

    # Both differentials reach back to the full backup, not to each other.
    assert producer.produced[-1].since == T0
    assert producer.produced[-2].since == T0


@pytest.mark.asyncio
async def test_second_start_is_rejected_while_a_job_runs(migrated_registry: ModuleRegistry) -> None:
    producer = _GatedProducer()
    engine = BackupEngine(migrated_registry, producer)
    config = await engine.create_backup_config(
        name="slow", backup_type="full", modules=["platform"], include_tenants=False
    )

    running = asyncio.create_task(engine.execute_backup_job(config.id))
    await asyncio.wait_for(producer.started.wait(), timeout=5)
    with pytest.raises(BackupAlreadyRunning):
        await engine.execute_backup_job(config.id)

    # A queued pending job that loses the race is closed out as failed.
    pending = await engine.create_pending_job(config.id)
    with pytest.raises(BackupAlreadyRunning):
        await engine.execute_backup_job(config.id, job_id=pending.id)
    superseded = await engine.get_backup_job(pending.id)
    assert superseded.status == "failed"
    assert "Superseded" in superseded.error_message

    producer.release.set()
    job = await asyncio.wait_for(running, timeout=5)
    assert job.status == "completed"
    assert [row.status for row in await engine.list_backups(limit=10)].count("completed") == 1

    # Once the first job finishes the config can run again, including from a pending row.
    queued = await engine.create_pending_job(config.id)
    rerun = await engine.execute_backup_job(config.id, job_id=queued.id)
    assert rerun.id == queued.id
    assert rerun.status == "completed"


@pytest.mark.asyncio
async def test_failed_backup_is_recorded_and_does_not_block_reruns(migrated_registry: ModuleRegistry) -> None:
    notes: list[str] = []

    async def _notify(text: str) -> None:
        notes.append(text)

    engine = BackupEngine(migrated_registry, _FailingProducer(), notifier=_notify)
    config = await engine.create_backup_config(
        name="fragile", backup_type="full", modules=["platform"], include_tenants=False
    )

    with pytest.raises(BackupExecutionError):
        await engine.execute_backup_job(config.id)

    [job] = await engine.list_backups(limit=5)
    assert job.status == "failed"
    assert "pg_dump exited with status 1" in job.error_message
    assert job.completed_at is not None
    assert await engine.list_backup_files(job.id) == []
    assert any("failed" in note for note in notes)

    healthy = BackupEngine(migrated_registry, FakeArtifactProducer())
    assert (await healthy.execute_backup_job(config.id)).status == "completed"


@pytest.mark.asyncio
async def test_inactive_or_missing_configs_are_rejected(migrated_registry: ModuleRegistry) -> None:
    engine = BackupEngine(migrated_registry, FakeArtifactProducer())
    config = await engine.create_backup_config(
        name="paused", backup_type="incremental", modules=["platform"], active=False
    )
    with pytest.raises(ConfigNotFoundOrInactive):
        await engine.execute_backup_job(config.id)
    with pytest.raises(ConfigNotFoundOrInactive):
        await engine.execute_backup_job("00000000-0000-0000-0000-000000000000")
    assert await engine.list_backups() == []


@pytest.mark.asyncio
async def test_config_validation_and_freeze(migrated_registry: ModuleRegistry) -> None:
    engine = BackupEngine(migrated_registry, FakeArtifactProducer())
    with pytest.raises(ValidationError):
        await engine.create_backup_config(name="bad", backup_type="snapshot", modules=["platform"])
    with pytest.raises(ValidationError):
        await engine.create_backup_config(name="bad", backup_type="full", modules=[])
    with pytest.raises(UnknownModuleError):
        await engine.create_backup_config(name="bad", backup_type="full", modules=["billing"])
    with pytest.raises(ValidationError):
        await engine.create_backup_config(name="bad", backup_type="full", modules=["platform"], schedule="daily")
    with pytest.raises(ValidationError):
        await engine.create_backup_config(name="bad", backup_type="full", modules=["platform"], retention_days=0)

    config = await engine.create_backup_config(
        name="frozen", backup_type="incremental", modules=["platform"], schedule="0 1 * * *"
    )
    # Unreferenced configs can still change shape.
    config = await engine.update_backup_config(config.id, modules=["platform", "analytics"])
    assert config.modules == ["platform", "analytics"]

    await engine.execute_backup_job(config.id)
    with pytest.raises(ValidationError):
        await engine.update_backup_config(config.id, backup_type="full")
    updated = await engine.update_backup_config(config.id, retention_days=7, active=False)
    assert updated.retention_days == 7
    assert updated.active is False


@pytest.mark.asyncio
async def test_default_configs_are_idempotent_and_fit_the_deployment(migrated_registry: ModuleRegistry) -> None:
    engine = BackupEngine(migrated_registry, FakeArtifactProducer())
    created = await engine.create_default_backup_configs()
    by_name = {config.name: config for config in created}

    assert set(by_name) == {"Weekly Full Backup", "Daily Incremental Backup", "Analytics Incremental Backup"}
    # Modules missing from this deployment are dropped from the templates.
    assert by_name["Weekly Full Backup"].modules == ["platform", "analytics"]
    assert by_name["Analytics Incremental Backup"].modules == ["analytics"]
    assert by_name["Weekly Full Backup"].schedule == "0 2 * * 0"
    assert await engine.create_default_backup_configs() == []


@pytest.mark.asyncio
async def test_metrics_summarize_recent_jobs(migrated_registry: ModuleRegistry) -> None:
    clock = _Clock(datetime.now(timezone.utc))
    engine = BackupEngine(migrated_registry, FakeArtifactProducer(), time_provider=clock)
    config = await engine.create_backup_config(
        name="metrics", backup_type="full", modules=["platform"], include_tenants=False
    )
    job = await engine.execute_backup_job(config.id)
    failing = BackupEngine(migrated_registry, _FailingProducer(), time_provider=clock)
    with pytest.raises(BackupExecutionError):
        await failing.execute_backup_job(config.id)

    metrics = await engine.get_backup_metrics()
    assert metrics.total_backups == 2
    assert metrics.successful_backups == 1
    assert metrics.failed_backups == 1
    assert metrics.running_backups == 0
    assert metrics.last_completed_job_id == job.id
    assert metrics.total_size_gb == pytest.approx(job.total_size_mb / 1024, abs=0.001)
    assert metrics.to_dict()["last_completed_at"] == clock.now.isoformat()
