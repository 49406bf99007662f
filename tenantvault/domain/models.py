from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


TENANT_SCHEMA = "tenant_management"
BACKUP_SCHEMA = "backup_management"
MIGRATION_SCHEMA = "migration_management"

# JSONB on PostgreSQL, plain JSON elsewhere.
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; every stored timestamp is UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def new_id() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    pass


class Tenant(Base):
    __tablename__ = "tenants"
    __table_args__ = (
        Index("ix_tenants_module", "module"),
        Index("ix_tenants_active", "active"),
        {"schema": TENANT_SCHEMA},
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255), unique=True)
    # Module database that hosts this tenant's isolated schema.
    module: Mapped[str] = mapped_column(String(50))
    schema_prefix: Mapped[str] = mapped_column(String(63), unique=True)
    isolation_level: Mapped[str] = mapped_column(String(20), default="schema")
    subscription_plan: Mapped[str] = mapped_column(String(50), default="basic")
    # {max_users, max_storage_mb, max_api_calls_per_day}
    resource_limits: Mapped[dict[str, Any]] = mapped_column(JSONType)
    tenant_config: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    # Tenants are deactivated, never hard-deleted.
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    last_activity: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class TenantName(Base):
    __tablename__ = "tenant_names"
    __table_args__ = ({"schema": TENANT_SCHEMA},)

    # Held in the catalog module only; claims a name for a tenant hosted in any module.
    name: Mapped[str] = mapped_column(String(255), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(36), unique=True)
    module: Mapped[str] = mapped_column(String(50))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class TenantUser(Base):
    __tablename__ = "tenant_users"
    __table_args__ = (
        UniqueConstraint("tenant_id", "user_id", name="uq_tenant_users_tenant_user"),
        {"schema": TENANT_SCHEMA},
    )

    # Map platform users onto tenants with a tenant-scoped role.
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(
        String(36), ForeignKey(f"{TENANT_SCHEMA}.tenants.id", ondelete="CASCADE"), index=True
    )
    user_id: Mapped[str] = mapped_column(String(255))
    user_role: Mapped[str] = mapped_column(String(50), default="user")
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class TenantUsage(Base):
    __tablename__ = "tenant_usage"
    __table_args__ = ({"schema": TENANT_SCHEMA},)

    # One row per tenant and UTC day; the composite key is the upsert target.
    tenant_id: Mapped[str] = mapped_column(
        String(36), ForeignKey(f"{TENANT_SCHEMA}.tenants.id", ondelete="CASCADE"), primary_key=True
    )
    usage_date: Mapped[date] = mapped_column(Date, primary_key=True)
    # Counters: summed across updates within the day.
    api_calls: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    bandwidth_mb: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    # Gauges: the day keeps the highest observed value.
    storage_used_mb: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    active_users: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class BackupConfig(Base):
    __tablename__ = "backup_configs"
    __table_args__ = (
        Index("ix_backup_configs_active", "active"),
        {"schema": BACKUP_SCHEMA},
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255))
    backup_type: Mapped[str] = mapped_column(String(20))
    modules: Mapped[list[str]] = mapped_column(JSONType)
    include_tenants: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    compression: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    encryption: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    retention_days: Mapped[int] = mapped_column(Integer, default=30, nullable=False)
    # Five-field cron expression evaluated in UTC.
    schedule: Mapped[str | None] = mapped_column(String(100), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class BackupJob(Base):
    __tablename__ = "backup_jobs"
    __table_args__ = (
        Index("ix_backup_jobs_config_status", "backup_config_id", "status"),
        Index("ix_backup_jobs_created_at", "created_at"),
        # At most one running job per config, enforced by the database as well.
        Index(
            "uq_backup_jobs_one_running",
            "backup_config_id",
            unique=True,
            postgresql_where=text("status = 'running'"),
            sqlite_where=text("status = 'running'"),
        ),
        {"schema": BACKUP_SCHEMA},
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    backup_config_id: Mapped[str] = mapped_column(
        String(36), ForeignKey(f"{BACKUP_SCHEMA}.backup_configs.id", ondelete="CASCADE")
    )
    # pending -> running -> completed | failed; terminal states never change.
    status: Mapped[str] = mapped_column(String(20), default="pending")
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    total_size_mb: Mapped[float | None] = mapped_column(Float, nullable=True)
    compressed_size_mb: Mapped[float | None] = mapped_column(Float, nullable=True)
    files_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    checksum: Mapped[str | None] = mapped_column(String(64), nullable=True)
    backup_location: Mapped[str | None] = mapped_column(String(500), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Watermark and manifest of the run.
    job_data: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class BackupFile(Base):
    __tablename__ = "backup_files"
    __table_args__ = (
        Index("ix_backup_files_job_id", "job_id"),
        {"schema": BACKUP_SCHEMA},
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    # Files go away with their job.
    job_id: Mapped[str] = mapped_column(
        String(36), ForeignKey(f"{BACKUP_SCHEMA}.backup_jobs.id", ondelete="CASCADE")
    )
    file_name: Mapped[str] = mapped_column(String(255))
    file_path: Mapped[str] = mapped_column(String(500))
    # schema | data | tenant | changes
    file_type: Mapped[str] = mapped_column(String(20))
    module_name: Mapped[str] = mapped_column(String(50))
    tenant_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    size_mb: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    checksum: Mapped[str] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class RestoreLog(Base):
    __tablename__ = "restore_logs"
    __table_args__ = (
        Index("ix_restore_logs_job_status", "job_id", "status"),
        {"schema": BACKUP_SCHEMA},
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    # Survives pruning of the job it restored from.
    job_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey(f"{BACKUP_SCHEMA}.backup_jobs.id", ondelete="SET NULL"), nullable=True
    )
    # full | module | tenant
    restore_type: Mapped[str] = mapped_column(String(20))
    target_module: Mapped[str | None] = mapped_column(String(50), nullable=True)
    target_tenant_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="pending")
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    restored_files_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class MigrationHistory(Base):
    __tablename__ = "migration_history"
    __table_args__ = (
        Index("ix_migration_history_migration_id", "migration_id"),
        {"schema": MIGRATION_SCHEMA},
    )

    # Failed attempts are kept too; only success rows count as applied.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    migration_id: Mapped[str] = mapped_column(String(100))
    name: Mapped[str] = mapped_column(String(255))
    checksum: Mapped[str] = mapped_column(String(64))
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    execution_time_ms: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
