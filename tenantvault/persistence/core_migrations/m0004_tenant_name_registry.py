"""tenant name registry

Migration ID: 0004_tenant_name_registry
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic.operations import Operations

from tenantvault.persistence.core_migrations.common import catalog_schema


migration_id = "0004_tenant_name_registry"
name = "tenant_name_registry"
description = "Name reservations held by the catalog module across every module database"


def upgrade(op: Operations) -> None:
    schema = catalog_schema(op, "tenant_management")

    # The primary key is the cross-module uniqueness guard for tenant names.
    op.create_table(
        "tenant_names",
        sa.Column("name", sa.String(255), primary_key=True),
        sa.Column("tenant_id", sa.String(36), nullable=False, unique=True),
        sa.Column("module", sa.String(50), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        schema=schema,
    )

    # Names provisioned before the registry existed keep their claim.
    tenants = sa.table("tenants", sa.column("id"), sa.column("name"), sa.column("module"), schema=schema)
    names = sa.table(
        "tenant_names", sa.column("name"), sa.column("tenant_id"), sa.column("module"), schema=schema
    )
    op.execute(
        names.insert().from_select(
            ["name", "tenant_id", "module"], sa.select(tenants.c.name, tenants.c.id, tenants.c.module)
        )
    )
