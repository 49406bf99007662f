from __future__ import annotations

import gzip
import hashlib
import json
import os
from pathlib import Path

import pytest

from tenantvault.core.errors import ProducerConfigError, RestoreError
from tenantvault.persistence.db import ModuleRegistry
from tenantvault.providers.artifacts.factory import get_artifact_producer
from tenantvault.providers.artifacts.fake import FakeArtifactProducer
from tenantvault.providers.artifacts.pg_dump import PgDumpArtifactProducer, _decrypt_file, _encrypt_file
from tenantvault.services.backup import BackupEngine
from tenantvault.services.restore import RestoreService
from tenantvault.services.tenants import TenantProvisioner
from tenantvault.tests.utils.settings import make_settings


_DUMP = b"CREATE TABLE demo (id int);\n" * 64


def _fake_dump(calls: list[list[str]]):
    def _runner(extra_args: list[str], db_url: str, output_path: Path, compress: bool) -> int:
        calls.append(extra_args)
        opener = gzip.open if compress else open
        with opener(output_path, "wb") as handle:
            handle.write(_DUMP)
        return len(_DUMP)

    return _runner


def test_factory_selects_producer_from_settings(tmp_path) -> None:
    assert isinstance(get_artifact_producer(ModuleRegistry(make_settings(tmp_path))), FakeArtifactProducer)
    real = get_artifact_producer(ModuleRegistry(make_settings(tmp_path, backup_artifact_producer="pg_dump")))
    assert isinstance(real, PgDumpArtifactProducer)
    with pytest.raises(ProducerConfigError):
        get_artifact_producer(ModuleRegistry(make_settings(tmp_path, backup_artifact_producer="s3")))


def test_encrypted_artifacts_round_trip(tmp_path) -> None:
    key = os.urandom(32)
    plain = tmp_path / "plain.sql"
    plain.write_bytes(_DUMP)
    sealed = tmp_path / "plain.sql.enc"
    opened = tmp_path / "opened.sql"

    _encrypt_file(plain, sealed, key)
    assert sealed.read_bytes() != _DUMP
    # nonce + ciphertext + tag
    assert sealed.stat().st_size == len(_DUMP) + 28

    _decrypt_file(sealed, opened, key)
    assert opened.read_bytes() == _DUMP


@pytest.mark.asyncio
async def test_full_backup_writes_checksummed_files(migrated_registry: ModuleRegistry, tmp_path) -> None:
    tenant = await TenantProvisioner(migrated_registry).create_tenant(name="Dumped")
    calls: list[list[str]] = []
    base_dir = tmp_path / "artifacts"
    producer = PgDumpArtifactProducer(migrated_registry, base_dir=base_dir, dump_runner=_fake_dump(calls))
    engine = BackupEngine(migrated_registry, producer)
    config = await engine.create_backup_config(name="dump", backup_type="full", modules=["platform"])

    job = await engine.execute_backup_job(config.id)

    assert job.status == "completed"
    assert calls == [["--schema-only"], ["--data-only"], [f"--schema={tenant.schema_prefix}"]]
    for row in await engine.list_backup_files(job.id):
        path = base_dir / row.file_path
        assert path.exists()
        assert row.checksum == hashlib.sha256(path.read_bytes()).hexdigest()
        with gzip.open(path, "rb") as handle:
            assert handle.read() == _DUMP
    # Measured gzip sizes replace the configured ratio.
    assert job.compressed_size_mb < job.total_size_mb

    await producer.discard(job.id)
    assert not (base_dir / "backups" / job.id).exists()


@pytest.mark.asyncio
async def test_change_snapshots_capture_catalog_rows(migrated_registry: ModuleRegistry, tmp_path) -> None:
    tenant = await TenantProvisioner(migrated_registry).create_tenant(name="Changed")
    base_dir = tmp_path / "artifacts"
    producer = PgDumpArtifactProducer(migrated_registry, base_dir=base_dir, dump_runner=_fake_dump([]))
    engine = BackupEngine(migrated_registry, producer)
    config = await engine.create_backup_config(name="changes", backup_type="incremental", modules=["platform"])

    job = await engine.execute_backup_job(config.id)
    [row] = await engine.list_backup_files(job.id)
    with gzip.open(base_dir / row.file_path, "rb") as handle:
        snapshot = json.loads(handle.read())

    assert snapshot["module"] == "platform"
    assert [item["id"] for item in snapshot["tenants"]] == [tenant.id]
    assert [item["id"] for item in snapshot["backup_configs"]] == [config.id]

    # Change snapshots are verified but not replayed.
    log = await RestoreService(migrated_registry, producer).restore_backup(job.id)
    assert log.status == "completed"
    assert log.restored_files_count == 1

    (base_dir / row.file_path).write_bytes(b"tampered")
    with pytest.raises(RestoreError):
        await RestoreService(migrated_registry, producer).restore_backup(job.id)
