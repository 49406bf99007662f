"""tenant catalog

Migration ID: 0001_tenant_management
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic.operations import Operations

from tenantvault.persistence.core_migrations.common import JSON_COLUMN, catalog_schema, column_ref


migration_id = "0001_tenant_management"
name = "tenant_management"
description = "Tenant catalog, tenant user mapping and daily usage rows"


def upgrade(op: Operations) -> None:
    schema = catalog_schema(op, "tenant_management")

    # Catalog of tenants; names and schema prefixes are unique across the module.
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False, unique=True),
        sa.Column("module", sa.String(50), nullable=False),
        sa.Column("schema_prefix", sa.String(63), nullable=False, unique=True),
        sa.Column("isolation_level", sa.String(20), server_default=sa.text("'schema'"), nullable=False),
        sa.Column("subscription_plan", sa.String(50), server_default=sa.text("'basic'"), nullable=False),
        sa.Column("resource_limits", JSON_COLUMN, nullable=False),
        sa.Column("tenant_config", JSON_COLUMN, nullable=True),
        sa.Column("active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("last_activity", sa.DateTime(timezone=True), server_default=sa.func.now()),
        schema=schema,
    )
    op.create_index("ix_tenants_module", "tenants", ["module"], schema=schema)
    op.create_index("ix_tenants_active", "tenants", ["active"], schema=schema)

    op.create_table(
        "tenant_users",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(36), nullable=False),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("user_role", sa.String(50), server_default=sa.text("'user'"), nullable=False),
        sa.Column("active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["tenant_id"], [column_ref(schema, "tenants")], ondelete="CASCADE"),
        sa.UniqueConstraint("tenant_id", "user_id", name="uq_tenant_users_tenant_user"),
        schema=schema,
    )
    op.create_index("ix_tenant_users_tenant_id", "tenant_users", ["tenant_id"], schema=schema)

    # Composite key doubles as the upsert conflict target.
    op.create_table(
        "tenant_usage",
        sa.Column("tenant_id", sa.String(36), nullable=False),
        sa.Column("usage_date", sa.Date(), nullable=False),
        sa.Column("api_calls", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("bandwidth_mb", sa.Float(), server_default=sa.text("0"), nullable=False),
        sa.Column("storage_used_mb", sa.Float(), server_default=sa.text("0"), nullable=False),
        sa.Column("active_users", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["tenant_id"], [column_ref(schema, "tenants")], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("tenant_id", "usage_date", name="pk_tenant_usage"),
        schema=schema,
    )
