from __future__ import annotations

import asyncio
import base64
import gzip
import hashlib
import json
import logging
import os
import shutil
import subprocess
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from sqlalchemy import or_, select
from sqlalchemy.engine import make_url

from tenantvault.domain.models import BackupConfig, Tenant, TenantUsage
from tenantvault.persistence.db import ModuleRegistry
from tenantvault.providers.artifacts.base import (
    ArtifactRequest,
    ProducedArtifact,
    StoredArtifact,
    job_location,
)


logger = logging.getLogger(__name__)

_MB = 1024 * 1024
_CHUNK = 1024 * 1024

DumpRunner = Callable[[list[str], str, Path, bool], int]


def _decode_key(raw: str) -> bytes:
    # Accept hex or base64 encoded keys to align with operator tooling.
    cleaned = raw.strip()
    try:
        return bytes.fromhex(cleaned)
    except ValueError:
        return base64.b64decode(cleaned)


def _sha256_file(path: Path) -> str:
    # Compute streaming checksums for large backup artifacts.
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _encrypt_file(source: Path, destination: Path, key: bytes) -> None:
    # AES-GCM layout on disk: nonce(12) | ciphertext | tag(16).
    nonce = os.urandom(12)
    encryptor = Cipher(algorithms.AES(key), modes.GCM(nonce)).encryptor()
    with source.open("rb") as input_handle, destination.open("wb") as output_handle:
        output_handle.write(nonce)
        for chunk in iter(lambda: input_handle.read(_CHUNK), b""):
            output_handle.write(encryptor.update(chunk))
        output_handle.write(encryptor.finalize())
        output_handle.write(encryptor.tag)


def _decrypt_file(source: Path, destination: Path, key: bytes) -> None:
    total_size = source.stat().st_size
    if total_size < 28:
        raise ValueError("Encrypted artifact is too small to contain nonce + tag")
    with source.open("rb") as input_handle:
        nonce = input_handle.read(12)
        input_handle.seek(total_size - 16)
        tag = input_handle.read(16)
        input_handle.seek(12)
        decryptor = Cipher(algorithms.AES(key), modes.GCM(nonce, tag)).decryptor()
        remaining = total_size - 28
        with destination.open("wb") as output_handle:
            while remaining > 0:
                chunk = input_handle.read(min(_CHUNK, remaining))
                if not chunk:
                    break
                remaining -= len(chunk)
                output_handle.write(decryptor.update(chunk))
            output_handle.write(decryptor.finalize())


def _libpq_url(db_url: str) -> str:
    # pg_dump/psql speak libpq URLs, not SQLAlchemy driver URLs.
    parsed = make_url(db_url)
    if "+" in parsed.drivername:
        parsed = parsed.set(drivername=parsed.drivername.split("+", 1)[0])
    return parsed.render_as_string(hide_password=False)


def _default_dump_runner(extra_args: list[str], db_url: str, output_path: Path, compress: bool) -> int:
    # Stream pg_dump output to disk and return the uncompressed byte count.
    args = ["pg_dump", "--no-owner", "--no-privileges", *extra_args, _libpq_url(db_url)]
    raw_bytes = 0
    with subprocess.Popen(args, stdout=subprocess.PIPE, stderr=subprocess.PIPE) as proc:
        if proc.stdout is None:
            raise RuntimeError("pg_dump produced no stdout stream")
        opener = gzip.open if compress else open
        with opener(output_path, "wb") as handle:
            for chunk in iter(lambda: proc.stdout.read(_CHUNK), b""):
                raw_bytes += len(chunk)
                handle.write(chunk)
        stderr = proc.stderr.read() if proc.stderr else b""
    if proc.returncode != 0:
        raise RuntimeError(f"pg_dump failed: {stderr.decode('utf-8', errors='ignore')}")
    return raw_bytes


def _restore_sql_dump(path: Path, db_url: str, compressed: bool) -> None:
    # Apply SQL dumps via psql to the target database.
    opener = gzip.open if compressed else open
    with opener(path, "rb") as handle:
        process = subprocess.Popen(
            ["psql", "--set", "ON_ERROR_STOP=1", _libpq_url(db_url)],
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
        _, stderr = process.communicate(handle.read())
    if process.returncode != 0:
        raise RuntimeError(stderr.decode("utf-8", errors="ignore"))


def _dump_args(request: ArtifactRequest) -> list[str]:
    if request.file_type == "schema":
        return ["--schema-only"]
    if request.file_type == "data":
        return ["--data-only"]
    if request.file_type == "tenant":
        if not request.schema_prefix:
            raise ValueError("Tenant artifacts require a schema prefix")
        return [f"--schema={request.schema_prefix}"]
    raise ValueError(f"pg_dump cannot produce {request.file_type} artifacts")


def _row_payload(row: Any, columns: list[str]) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for column in columns:
        value = getattr(row, column)
        payload[column] = value.isoformat() if hasattr(value, "isoformat") else value
    return payload


class PgDumpArtifactProducer:
    name = "pg_dump"

    def __init__(
        self,
        registry: ModuleRegistry,
        *,
        base_dir: Path,
        encryption_key: str | None = None,
        dump_runner: DumpRunner | None = None,
    ) -> None:
        self._registry = registry
        self._base_dir = base_dir
        self._encryption_key = encryption_key
        # Tests swap the runner to avoid shelling out to pg_dump.
        self._dump_runner = dump_runner or _default_dump_runner

    def _key(self) -> bytes:
        if not self._encryption_key:
            raise ValueError("BACKUP_ENCRYPTION_KEY is required when encryption is enabled")
        key = _decode_key(self._encryption_key)
        if len(key) not in {16, 24, 32}:
            raise ValueError("BACKUP_ENCRYPTION_KEY must be 128/192/256-bit")
        return key

    async def _collect_changes(self, module: str, since: datetime | None) -> dict[str, Any]:
        # Catalog rows touched since the watermark; tenant data itself is captured by full jobs.
        async with self._registry.session(module) as session:
            tenant_query = select(Tenant)
            usage_query = select(TenantUsage)
            config_query = select(BackupConfig)
            if since is not None:
                tenant_query = tenant_query.where(
                    or_(Tenant.created_at >= since, Tenant.last_activity >= since)
                )
                usage_query = usage_query.where(TenantUsage.updated_at >= since)
                config_query = config_query.where(BackupConfig.updated_at >= since)
            tenants = (await session.execute(tenant_query)).scalars().all()
            usage = (await session.execute(usage_query)).scalars().all()
            configs = (await session.execute(config_query)).scalars().all()
        return {
            "module": module,
            "since": since.isoformat() if since else None,
            "tenants": [
                _row_payload(row, ["id", "name", "schema_prefix", "active", "resource_limits", "last_activity"])
                for row in tenants
            ],
            "tenant_usage": [
                _row_payload(
                    row,
                    ["tenant_id", "usage_date", "api_calls", "bandwidth_mb", "storage_used_mb", "active_users"],
                )
                for row in usage
            ],
            "backup_configs": [
                _row_payload(row, ["id", "name", "backup_type", "modules", "retention_days", "active"])
                for row in configs
            ],
        }

    async def produce(self, request: ArtifactRequest) -> ProducedArtifact:
        target = self._base_dir / request.location
        target.parent.mkdir(parents=True, exist_ok=True)

        if request.file_type == "changes":
            payload = await self._collect_changes(request.module, request.since)
            encoded = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
            opener = gzip.open if request.compression else open
            with opener(target, "wb") as handle:
                handle.write(encoded)
            raw_bytes = len(encoded)
        else:
            db_url = self._registry.database_url(request.module)
            raw_bytes = await asyncio.to_thread(
                self._dump_runner, _dump_args(request), db_url, target, request.compression
            )

        if request.encryption:
            key = self._key()
            encrypted = target.with_name(f"{target.name}.enc")
            await asyncio.to_thread(_encrypt_file, target, encrypted, key)
            encrypted.replace(target)

        checksum = await asyncio.to_thread(_sha256_file, target)
        stored_bytes = target.stat().st_size
        logger.info(
            "artifact_written job_id=%s file=%s raw_bytes=%s stored_bytes=%s",
            request.job_id,
            request.file_name,
            raw_bytes,
            stored_bytes,
        )
        return ProducedArtifact(
            file_name=request.file_name,
            file_path=request.location,
            file_type=request.file_type,
            module_name=request.module,
            tenant_id=request.tenant_id,
            size_mb=round(raw_bytes / _MB, 6),
            checksum=checksum,
            compressed_size_mb=round(stored_bytes / _MB, 6) if request.compression else None,
        )

    async def restore(self, artifact: StoredArtifact, *, target_module: str) -> None:
        source = self._base_dir / artifact.file_path
        if not source.exists():
            raise FileNotFoundError(f"Artifact missing: {artifact.file_path}")
        checksum = await asyncio.to_thread(_sha256_file, source)
        if checksum != artifact.checksum:
            raise ValueError(f"Checksum mismatch for {artifact.file_name}")
        if artifact.file_type == "changes":
            # Catalog change snapshots are kept for audit; there is nothing to replay.
            logger.warning("artifact_restore_skipped file=%s type=changes", artifact.file_name)
            return

        with tempfile.TemporaryDirectory() as tmp_dir:
            plain = source
            if artifact.encrypted:
                plain = Path(tmp_dir) / artifact.file_name
                await asyncio.to_thread(_decrypt_file, source, plain, self._key())
            db_url = self._registry.database_url(target_module)
            await asyncio.to_thread(_restore_sql_dump, plain, db_url, artifact.compressed)
        logger.info("artifact_restored file=%s module=%s", artifact.file_name, target_module)

    async def discard(self, job_id: str) -> None:
        job_dir = self._base_dir / job_location(job_id)
        await asyncio.to_thread(shutil.rmtree, job_dir, True)
