from __future__ import annotations

from datetime import datetime, timezone

import pytest

from tenantvault.core.errors import InvalidJobTransition, ValidationError
from tenantvault.domain.models import BackupJob
from tenantvault.providers.artifacts.base import ArtifactRequest, ProducedArtifact
from tenantvault.providers.artifacts.fake import FakeArtifactProducer
from tenantvault.services.backup import (
    CompressionPolicy,
    aggregate_checksum,
    transition,
    validate_schedule,
)
from tenantvault.services.scheduling import is_due


def _artifact(size_mb: float, compressed_size_mb: float | None = None) -> ProducedArtifact:
    return ProducedArtifact(
        file_name="platform_data.sql.gz",
        file_path="backups/j/platform_data.sql.gz",
        file_type="data",
        module_name="platform",
        size_mb=size_mb,
        checksum="a" * 64,
        compressed_size_mb=compressed_size_mb,
    )


def test_aggregate_checksum_ignores_artifact_order() -> None:
    checksums = ["c" * 64, "a" * 64, "b" * 64]
    assert aggregate_checksum(checksums) == aggregate_checksum(sorted(checksums))
    assert aggregate_checksum(checksums) != aggregate_checksum(checksums[:2])
    assert len(aggregate_checksum(checksums)) == 64


@pytest.mark.parametrize(
    ("current", "target"),
    [("pending", "running"), ("pending", "failed"), ("running", "completed"), ("running", "failed")],
)
def test_allowed_job_transitions(current: str, target: str) -> None:
    job = BackupJob(id="job-1", status=current)
    transition(job, target)
    assert job.status == target


@pytest.mark.parametrize(
    ("current", "target"),
    [
        ("completed", "running"),
        ("completed", "failed"),
        ("failed", "running"),
        ("failed", "completed"),
        ("pending", "completed"),
    ],
)
def test_terminal_and_skipping_transitions_are_rejected(current: str, target: str) -> None:
    # Terminal states never change and running cannot be skipped.
    job = BackupJob(id="job-1", status=current)
    with pytest.raises(InvalidJobTransition):
        transition(job, target)
    assert job.status == current


def test_compression_policy_uses_type_specific_ratio() -> None:
    policy = CompressionPolicy(full_ratio=0.3, incremental_ratio=0.2)
    artifacts = [_artifact(100.0), _artifact(50.0)]
    assert policy.compressed_size(artifacts, "full", True) == pytest.approx(45.0)
    assert policy.compressed_size(artifacts, "incremental", True) == pytest.approx(30.0)
    assert policy.compressed_size(artifacts, "differential", True) == pytest.approx(30.0)


def test_compression_policy_prefers_measured_sizes_and_respects_disabled() -> None:
    policy = CompressionPolicy()
    artifacts = [_artifact(100.0, compressed_size_mb=12.5), _artifact(10.0)]
    assert policy.compressed_size(artifacts, "full", True) == pytest.approx(15.5)
    assert policy.compressed_size(artifacts, "full", False) == pytest.approx(110.0)


def test_validate_schedule() -> None:
    assert validate_schedule(None) is None
    assert validate_schedule(" 0 2 * * 0 ") == "0 2 * * 0"
    with pytest.raises(ValidationError):
        validate_schedule("every sunday")
    with pytest.raises(ValidationError):
        # Six-field (seconds) expressions are not accepted.
        validate_schedule("0 0 2 * * 0")


def test_schedule_due_matching_is_minute_granular() -> None:
    sunday_2am = datetime(2026, 10, 18, 2, 0, 42, tzinfo=timezone.utc)
    assert is_due("0 2 * * 0", sunday_2am)
    assert not is_due("0 2 * * 0", sunday_2am.replace(minute=1))
    assert not is_due("0 1 * * 1-6", sunday_2am.replace(hour=1))
    assert not is_due(None, sunday_2am)


@pytest.mark.asyncio
async def test_fake_producer_is_deterministic_per_artifact() -> None:
    producer = FakeArtifactProducer()
    request = ArtifactRequest(
        job_id="job-1",
        file_name="platform_schema_20261019T000000Z.sql.gz",
        file_type="schema",
        module="platform",
        backup_type="full",
    )
    first = await producer.produce(request)
    second = await producer.produce(request)
    other = await producer.produce(
        ArtifactRequest(
            job_id="job-2",
            file_name=request.file_name,
            file_type="schema",
            module="platform",
            backup_type="full",
        )
    )

    assert first == second
    assert first.checksum != other.checksum
    assert 5.0 <= first.size_mb <= 15.0
    assert first.file_path == f"backups/job-1/{request.file_name}"
    assert len(producer.produced) == 3
