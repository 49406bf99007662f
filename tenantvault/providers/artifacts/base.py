from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Protocol


def job_location(job_id: str) -> str:
    return f"backups/{job_id}"


@dataclass(frozen=True)
class ArtifactRequest:
    # Everything a producer needs to write one artifact of a job.
    job_id: str
    file_name: str
    file_type: str
    module: str
    backup_type: str
    compression: bool = True
    encryption: bool = False
    tenant_id: str | None = None
    schema_prefix: str | None = None
    # Lower bound for change capture in incremental and differential jobs.
    since: datetime | None = None

    @property
    def location(self) -> str:
        return f"{job_location(self.job_id)}/{self.file_name}"


@dataclass(frozen=True)
class ProducedArtifact:
    file_name: str
    file_path: str
    file_type: str
    module_name: str
    size_mb: float
    checksum: str
    tenant_id: str | None = None
    # Measured size when the producer compressed the bytes itself.
    compressed_size_mb: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class StoredArtifact:
    # Catalog view of a produced artifact handed back for restores.
    job_id: str
    file_name: str
    file_path: str
    file_type: str
    module_name: str
    checksum: str
    tenant_id: str | None = None
    compressed: bool = True
    encrypted: bool = False


class BackupArtifactProducer(Protocol):
    name: str

    async def produce(self, request: ArtifactRequest) -> ProducedArtifact:
        ...

    async def restore(self, artifact: StoredArtifact, *, target_module: str) -> None:
        ...

    async def discard(self, job_id: str) -> None:
        ...
