from __future__ import annotations

import hashlib

from tenantvault.providers.artifacts.base import ArtifactRequest, ProducedArtifact, StoredArtifact


# Size bands per artifact type, in MB.
_SIZE_RANGES_MB = {
    "schema": (5.0, 15.0),
    "data": (50.0, 150.0),
    "tenant": (10.0, 60.0),
    "changes": (2.0, 22.0),
}


class FakeArtifactProducer:
    name = "fake"

    def __init__(self) -> None:
        # Record calls so tests can assert on what the engine asked for.
        self.produced: list[ArtifactRequest] = []
        self.restored: list[StoredArtifact] = []
        self.discarded: list[str] = []

    async def produce(self, request: ArtifactRequest) -> ProducedArtifact:
        # Derive size and checksum from the artifact identity so reruns are reproducible.
        digest = hashlib.sha256(f"{request.job_id}:{request.file_name}".encode("utf-8")).hexdigest()
        low, high = _SIZE_RANGES_MB[request.file_type]
        fraction = int(digest[:8], 16) / 0xFFFFFFFF
        self.produced.append(request)
        return ProducedArtifact(
            file_name=request.file_name,
            file_path=request.location,
            file_type=request.file_type,
            module_name=request.module,
            tenant_id=request.tenant_id,
            size_mb=round(low + (high - low) * fraction, 3),
            checksum=digest,
        )

    async def restore(self, artifact: StoredArtifact, *, target_module: str) -> None:
        _ = target_module
        self.restored.append(artifact)

    async def discard(self, job_id: str) -> None:
        self.discarded.append(job_id)
