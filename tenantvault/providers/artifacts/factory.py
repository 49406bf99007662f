from __future__ import annotations

from pathlib import Path

from tenantvault.core.errors import ProducerConfigError
from tenantvault.persistence.db import ModuleRegistry
from tenantvault.providers.artifacts.base import BackupArtifactProducer
from tenantvault.providers.artifacts.fake import FakeArtifactProducer
from tenantvault.providers.artifacts.pg_dump import PgDumpArtifactProducer


def get_artifact_producer(registry: ModuleRegistry) -> BackupArtifactProducer:
    settings = registry.settings
    producer = (settings.backup_artifact_producer or "").lower()

    if producer == "fake":
        return FakeArtifactProducer()
    if producer == "pg_dump":
        return PgDumpArtifactProducer(
            registry,
            base_dir=Path(settings.backup_local_dir),
            encryption_key=settings.backup_encryption_key,
        )

    raise ProducerConfigError(f"Unsupported backup artifact producer: {producer or 'none'}")
