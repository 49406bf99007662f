"""backup catalog

Migration ID: 0002_backup_management
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic.operations import Operations

from tenantvault.persistence.core_migrations.common import JSON_COLUMN, catalog_schema, column_ref


migration_id = "0002_backup_management"
name = "backup_management"
description = "Backup configs, jobs, files and restore logs"


def upgrade(op: Operations) -> None:
    schema = catalog_schema(op, "backup_management")

    op.create_table(
        "backup_configs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("backup_type", sa.String(20), nullable=False),
        sa.Column("modules", JSON_COLUMN, nullable=False),
        sa.Column("include_tenants", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("compression", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("encryption", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("retention_days", sa.Integer(), server_default=sa.text("30"), nullable=False),
        sa.Column("schedule", sa.String(100), nullable=True),
        sa.Column("active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        schema=schema,
    )
    op.create_index("ix_backup_configs_active", "backup_configs", ["active"], schema=schema)

    op.create_table(
        "backup_jobs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("backup_config_id", sa.String(36), nullable=False),
        sa.Column("status", sa.String(20), server_default=sa.text("'pending'"), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_size_mb", sa.Float(), nullable=True),
        sa.Column("compressed_size_mb", sa.Float(), nullable=True),
        sa.Column("files_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("checksum", sa.String(64), nullable=True),
        sa.Column("backup_location", sa.String(500), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("job_data", JSON_COLUMN, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.ForeignKeyConstraint(
            ["backup_config_id"], [column_ref(schema, "backup_configs")], ondelete="CASCADE"
        ),
        schema=schema,
    )
    op.create_index(
        "ix_backup_jobs_config_status", "backup_jobs", ["backup_config_id", "status"], schema=schema
    )
    op.create_index("ix_backup_jobs_created_at", "backup_jobs", ["created_at"], schema=schema)

    # Artifact rows are owned by their job.
    op.create_table(
        "backup_files",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("job_id", sa.String(36), nullable=False),
        sa.Column("file_name", sa.String(255), nullable=False),
        sa.Column("file_path", sa.String(500), nullable=False),
        sa.Column("file_type", sa.String(20), nullable=False),
        sa.Column("module_name", sa.String(50), nullable=False),
        sa.Column("tenant_id", sa.String(36), nullable=True),
        sa.Column("size_mb", sa.Float(), server_default=sa.text("0"), nullable=False),
        sa.Column("checksum", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["job_id"], [column_ref(schema, "backup_jobs")], ondelete="CASCADE"),
        schema=schema,
    )
    op.create_index("ix_backup_files_job_id", "backup_files", ["job_id"], schema=schema)

    # Restore history outlives pruned jobs.
    op.create_table(
        "restore_logs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("job_id", sa.String(36), nullable=True),
        sa.Column("restore_type", sa.String(20), nullable=False),
        sa.Column("target_module", sa.String(50), nullable=True),
        sa.Column("target_tenant_id", sa.String(36), nullable=True),
        sa.Column("status", sa.String(20), server_default=sa.text("'pending'"), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("restored_files_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["job_id"], [column_ref(schema, "backup_jobs")], ondelete="SET NULL"),
        schema=schema,
    )
    op.create_index("ix_restore_logs_job_status", "restore_logs", ["job_id", "status"], schema=schema)
