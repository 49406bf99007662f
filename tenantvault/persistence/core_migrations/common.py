from __future__ import annotations

import sqlalchemy as sa
from alembic.operations import Operations
from sqlalchemy.dialects import postgresql


# JSONB on PostgreSQL, plain JSON elsewhere.
JSON_COLUMN = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def is_postgres(op: Operations) -> bool:
    return op.get_bind().dialect.name == "postgresql"


def catalog_schema(op: Operations, name: str) -> str | None:
    # Schemas only exist on PostgreSQL; other engines keep catalog tables in the main namespace.
    if not is_postgres(op):
        return None
    op.execute(sa.text(f'CREATE SCHEMA IF NOT EXISTS "{name}"'))
    return name


def column_ref(schema: str | None, table: str, column: str = "id") -> str:
    return f"{schema}.{table}.{column}" if schema else f"{table}.{column}"
