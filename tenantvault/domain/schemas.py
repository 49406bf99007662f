from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TenantOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    module: str
    schema_prefix: str
    isolation_level: str
    subscription_plan: str
    resource_limits: dict[str, Any]
    active: bool
    created_at: datetime
    last_activity: datetime


class BackupConfigOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    backup_type: str
    modules: list[str]
    include_tenants: bool
    compression: bool
    encryption: bool
    retention_days: int
    schedule: str | None
    active: bool


class BackupJobOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    backup_config_id: str
    status: str
    started_at: datetime | None
    completed_at: datetime | None
    total_size_mb: float | None
    compressed_size_mb: float | None
    files_count: int
    checksum: str | None
    backup_location: str | None
    error_message: str | None
    created_at: datetime


class RestoreLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    job_id: str | None
    restore_type: str
    target_module: str | None
    target_tenant_id: str | None
    status: str
    started_at: datetime | None
    completed_at: datetime | None
    restored_files_count: int
    error_message: str | None


class ResourceLimitsIn(BaseModel):
    max_users: int = Field(default=100, ge=0)
    max_storage_mb: int = Field(default=1000, ge=0)
    max_api_calls_per_day: int = Field(default=10000, ge=0)


class TenantCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    module: str | None = None
    isolation_level: str = "schema"
    subscription_plan: str = "basic"
    resource_limits: ResourceLimitsIn | None = None
    tenant_config: dict[str, Any] | None = None


class UsageRecordRequest(BaseModel):
    api_calls: int = Field(default=0, ge=0)
    storage_used_mb: float = Field(default=0.0, ge=0)
    active_users: int = Field(default=0, ge=0)
    bandwidth_mb: float = Field(default=0.0, ge=0)


class BackupConfigCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    backup_type: str
    modules: list[str] = Field(min_length=1)
    include_tenants: bool = True
    compression: bool = True
    encryption: bool = False
    retention_days: int = Field(default=30, ge=1)
    schedule: str | None = None
    active: bool = True

    @field_validator("backup_type")
    @classmethod
    def _known_type(cls, value: str) -> str:
        if value not in {"full", "incremental", "differential"}:
            raise ValueError("backup_type must be full, incremental or differential")
        return value


class RestoreRequest(BaseModel):
    module: str | None = None
    tenant_id: str | None = None
