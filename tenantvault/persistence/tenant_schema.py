from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import DateTime, bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from tenantvault.persistence.guards import quote_identifier, require_tenant_id, validate_identifier


TENANT_TABLES = ("users", "sessions", "tenant_data")

_POSTGRES_TABLES = {
    "users": """
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        tenant_id UUID NOT NULL DEFAULT '{tenant_id}'::uuid,
        phone_number VARCHAR(20) UNIQUE,
        email VARCHAR(255) UNIQUE,
        full_name VARCHAR(255) NOT NULL,
        tenant_role VARCHAR(50) NOT NULL DEFAULT 'user',
        active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    """,
    "sessions": """
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        tenant_id UUID NOT NULL DEFAULT '{tenant_id}'::uuid,
        user_id UUID NOT NULL REFERENCES {users}(id) ON DELETE CASCADE,
        session_token TEXT NOT NULL UNIQUE,
        device_info JSONB,
        active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        expires_at TIMESTAMPTZ
    """,
    "tenant_data": """
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        tenant_id UUID NOT NULL DEFAULT '{tenant_id}'::uuid,
        data_type VARCHAR(100) NOT NULL,
        data_content JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    """,
}

_SQLITE_TABLES = {
    "users": """
        id VARCHAR(36) PRIMARY KEY,
        tenant_id VARCHAR(36) NOT NULL DEFAULT '{tenant_id}',
        phone_number VARCHAR(20) UNIQUE,
        email VARCHAR(255) UNIQUE,
        full_name VARCHAR(255) NOT NULL,
        tenant_role VARCHAR(50) NOT NULL DEFAULT 'user',
        active BOOLEAN NOT NULL DEFAULT 1,
        created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
    """,
    "sessions": """
        id VARCHAR(36) PRIMARY KEY,
        tenant_id VARCHAR(36) NOT NULL DEFAULT '{tenant_id}',
        user_id VARCHAR(36) NOT NULL REFERENCES {users}(id) ON DELETE CASCADE,
        session_token TEXT NOT NULL UNIQUE,
        device_info JSON,
        active BOOLEAN NOT NULL DEFAULT 1,
        created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
        expires_at DATETIME
    """,
    "tenant_data": """
        id VARCHAR(36) PRIMARY KEY,
        tenant_id VARCHAR(36) NOT NULL DEFAULT '{tenant_id}',
        data_type VARCHAR(100) NOT NULL,
        data_content JSON,
        created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
    """,
}


@dataclass(frozen=True)
class TenantSchemaLayout:
    """Physical naming of one tenant's isolated tables.

    PostgreSQL gets a real schema named after the prefix plus row-level
    security. SQLite has no schemas, so tables are flattened to
    ``<prefix>__<table>`` and isolation relies on the naming alone.
    """

    schema_prefix: str
    dialect: str

    def __post_init__(self) -> None:
        validate_identifier(self.schema_prefix)

    @property
    def uses_schemas(self) -> bool:
        return self.dialect == "postgresql"

    def table(self, name: str) -> str:
        if name not in TENANT_TABLES:
            raise ValueError(f"Unknown tenant table: {name}")
        if self.uses_schemas:
            return f"{quote_identifier(self.schema_prefix)}.{quote_identifier(name)}"
        return quote_identifier(f"{self.schema_prefix}__{name}")

    def _index_name(self, table: str) -> str:
        # Index names are schema-local on PostgreSQL but database-global on SQLite.
        if self.uses_schemas:
            return quote_identifier(f"ix_{table}_tenant_id")
        return quote_identifier(f"ix_{self.schema_prefix}__{table}_tenant_id")

    def create_statements(self, tenant_id: str) -> list[str]:
        tenant_id = require_tenant_id(tenant_id)
        templates = _POSTGRES_TABLES if self.uses_schemas else _SQLITE_TABLES
        statements: list[str] = []
        if self.uses_schemas:
            statements.append(f"CREATE SCHEMA {quote_identifier(self.schema_prefix)}")
        for name in TENANT_TABLES:
            table = self.table(name)
            columns = templates[name].format(tenant_id=tenant_id, users=self.table("users"))
            statements.append(f"CREATE TABLE {table} ({columns.strip()})")
            statements.append(f"CREATE INDEX {self._index_name(name)} ON {table} (tenant_id)")
            if self.uses_schemas:
                policy = quote_identifier(f"tenant_isolation_{name}")
                predicate = f"tenant_id = '{tenant_id}'::uuid"
                statements.append(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
                statements.append(f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY")
                statements.append(
                    f"CREATE POLICY {policy} ON {table} FOR ALL USING ({predicate}) WITH CHECK ({predicate})"
                )
        return statements

    async def count_active_users(self, session: AsyncSession) -> int:
        result = await session.execute(text(f"SELECT COUNT(*) FROM {self.table('users')} WHERE active"))
        return int(result.scalar_one())

    async def count_active_sessions(self, session: AsyncSession, *, now: datetime) -> int:
        stmt = text(
            f"SELECT COUNT(*) FROM {self.table('sessions')} WHERE active AND expires_at > :now"
        ).bindparams(bindparam("now", type_=DateTime(timezone=True)))
        result = await session.execute(stmt, {"now": now})
        return int(result.scalar_one())

    async def measure_storage_mb(self, session: AsyncSession) -> float:
        # Relation sizes are only observable on PostgreSQL.
        if not self.uses_schemas:
            return 0.0
        result = await session.execute(
            text(
                "SELECT COALESCE(SUM(pg_total_relation_size(c.oid)), 0) "
                "FROM pg_class c JOIN pg_namespace n ON n.oid = c.relnamespace "
                "WHERE n.nspname = :schema AND c.relkind = 'r'"
            ),
            {"schema": self.schema_prefix},
        )
        return round(float(result.scalar_one()) / (1024 * 1024), 3)


async def create_tenant_schema(session: AsyncSession, layout: TenantSchemaLayout, tenant_id: str) -> None:
    # Runs inside the caller's transaction so a failure rolls back the catalog row too.
    for statement in layout.create_statements(tenant_id):
        await session.execute(text(statement))
