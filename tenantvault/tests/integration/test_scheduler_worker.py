from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from sqlalchemy import select, update

from tenantvault.domain.models import BackupConfig, TenantUsage
from tenantvault.persistence.db import ModuleRegistry
from tenantvault.providers.artifacts.base import ArtifactRequest, ProducedArtifact
from tenantvault.providers.artifacts.fake import FakeArtifactProducer
from tenantvault.services.admin import AdminService
from tenantvault.services.backup import BackupEngine
from tenantvault.services.quota import QuotaService
from tenantvault.services.scheduling import collect_tenant_usage, due_backup_configs
from tenantvault.services.tenants import TenantProvisioner, create_isolated_user
from tenantvault.workers.scheduler import (
    WorkerSettings,
    collect_usage,
    dispatch_due_backups,
    run_backup_job,
    sweep_retention,
)


class _FakeRedis:
    def __init__(self) -> None:
        self.enqueued: list[tuple[Any, ...]] = []

    async def enqueue_job(self, function: str, *args: Any) -> None:
        self.enqueued.append((function, *args))


class _BrokenProducer(FakeArtifactProducer):
    async def produce(self, request: ArtifactRequest) -> ProducedArtifact:
        raise OSError("no space left on device")


def _ctx(registry: ModuleRegistry, producer: FakeArtifactProducer | None = None) -> dict[str, Any]:
    return {
        "admin": AdminService(registry, producer=producer or FakeArtifactProducer()),
        "quota": QuotaService(),
        "redis": _FakeRedis(),
    }


@pytest.mark.asyncio
async def test_due_configs_follow_their_cron_expression(migrated_registry: ModuleRegistry) -> None:
    engine = BackupEngine(migrated_registry, FakeArtifactProducer())
    nightly = await engine.create_backup_config(
        name="nightly", backup_type="full", modules=["platform"], schedule="30 2 * * *"
    )
    await engine.create_backup_config(name="manual", backup_type="full", modules=["platform"])
    await engine.create_backup_config(
        name="paused", backup_type="full", modules=["platform"], schedule="30 2 * * *", active=False
    )
    corrupt = await engine.create_backup_config(
        name="corrupt", backup_type="full", modules=["platform"], schedule="30 2 * * *"
    )
    async with migrated_registry.session() as session:
        # Bypass validation to simulate a row written by an older release.
        await session.execute(
            update(BackupConfig).where(BackupConfig.id == corrupt.id).values(schedule="61 * * * *")
        )
        await session.commit()

    at = datetime(2026, 10, 19, 2, 30, 45, tzinfo=timezone.utc)
    async with migrated_registry.session() as session:
        due = await due_backup_configs(session, at)
        later = await due_backup_configs(session, at + timedelta(minutes=1))

    assert [config.id for config in due] == [nightly.id]
    assert later == []


@pytest.mark.asyncio
async def test_dispatch_queues_pending_jobs_for_the_worker(migrated_registry: ModuleRegistry) -> None:
    ctx = _ctx(migrated_registry)
    admin: AdminService = ctx["admin"]
    every_minute = await admin.backups.create_backup_config(
        name="continuous", backup_type="incremental", modules=["platform"], schedule="* * * * *"
    )
    await admin.backups.create_backup_config(name="manual", backup_type="incremental", modules=["platform"])

    assert await dispatch_due_backups(ctx) == 1
    [(function, config_id, job_id)] = ctx["redis"].enqueued
    assert function == "run_backup_job"
    assert config_id == every_minute.id
    assert (await admin.backups.get_backup_job(job_id)).status == "pending"

    assert await run_backup_job(ctx, config_id, job_id) == "completed"
    assert (await admin.backups.get_backup_job(job_id)).status == "completed"


@pytest.mark.asyncio
async def test_dispatch_can_be_switched_off(migrated_registry: ModuleRegistry, monkeypatch) -> None:
    monkeypatch.setenv("SCHEDULER_DISPATCH_ENABLED", "false")
    ctx = _ctx(migrated_registry)
    await ctx["admin"].backups.create_backup_config(
        name="continuous", backup_type="incremental", modules=["platform"], schedule="* * * * *"
    )
    assert await dispatch_due_backups(ctx) == 0
    assert ctx["redis"].enqueued == []


@pytest.mark.asyncio
async def test_worker_job_outcomes(migrated_registry: ModuleRegistry) -> None:
    ctx = _ctx(migrated_registry)
    backups = ctx["admin"].backups
    paused = await backups.create_backup_config(
        name="paused", backup_type="full", modules=["platform"], active=False
    )
    assert await run_backup_job(ctx, paused.id) == "skipped"

    broken_ctx = _ctx(migrated_registry, producer=_BrokenProducer())
    config = await backups.create_backup_config(name="doomed", backup_type="incremental", modules=["platform"])
    assert await run_backup_job(broken_ctx, config.id) == "failed"
    assert await run_backup_job(ctx, config.id) == "completed"


@pytest.mark.asyncio
async def test_redelivered_or_pruned_jobs_are_skipped(migrated_registry: ModuleRegistry) -> None:
    ctx = _ctx(migrated_registry)
    backups = ctx["admin"].backups
    config = await backups.create_backup_config(name="hourly", backup_type="incremental", modules=["platform"])
    job = await backups.create_pending_job(config.id)

    assert await run_backup_job(ctx, config.id, job.id) == "completed"
    # A second delivery of the same message finds the job already terminal.
    assert await run_backup_job(ctx, config.id, job.id) == "skipped"
    assert (await backups.get_backup_job(job.id)).status == "completed"

    assert await run_backup_job(ctx, config.id, "00000000-0000-0000-0000-000000000000") == "skipped"


@pytest.mark.asyncio
async def test_retention_sweep_task_prunes_expired_jobs(migrated_registry: ModuleRegistry) -> None:
    ctx = _ctx(migrated_registry)
    old_clock = datetime.now(timezone.utc) - timedelta(days=45)
    engine = BackupEngine(migrated_registry, FakeArtifactProducer(), time_provider=lambda: old_clock)
    config = await engine.create_backup_config(
        name="short", backup_type="incremental", modules=["platform"], retention_days=30
    )
    await engine.execute_backup_job(config.id)

    assert await sweep_retention(ctx) == 1
    assert await engine.list_backups() == []


@pytest.mark.asyncio
async def test_usage_collection_samples_every_module(migrated_registry: ModuleRegistry) -> None:
    provisioner = TenantProvisioner(migrated_registry)
    platform_tenant = await provisioner.create_tenant(name="Busy")
    await provisioner.create_tenant(name="Quiet", module="analytics")
    async with migrated_registry.session() as session:
        await create_isolated_user(session, platform_tenant, full_name="One")
        await create_isolated_user(session, platform_tenant, full_name="Two")

    ctx = _ctx(migrated_registry)
    assert await collect_usage(ctx) == 2

    async with migrated_registry.session() as session:
        row = await session.scalar(select(TenantUsage).where(TenantUsage.tenant_id == platform_tenant.id))
    assert row.active_users == 2


@pytest.mark.asyncio
async def test_usage_collection_skips_uninitialized_modules(registry: ModuleRegistry) -> None:
    # Catalog tables do not exist yet anywhere; the pass completes with nothing sampled.
    assert await collect_tenant_usage(registry, QuotaService()) == 0


def test_worker_settings_register_tasks() -> None:
    assert WorkerSettings.functions == [run_backup_job]
    assert WorkerSettings.max_tries == 1
    assert len(WorkerSettings.cron_jobs) == 3
