"""one running job per config

Migration ID: 0003_backup_running_guard
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic.operations import Operations

from tenantvault.persistence.core_migrations.common import is_postgres


migration_id = "0003_backup_running_guard"
name = "backup_running_guard"
description = "Partial unique index allowing a single running job per backup config"


def upgrade(op: Operations) -> None:
    schema = "backup_management" if is_postgres(op) else None
    op.create_index(
        "uq_backup_jobs_one_running",
        "backup_jobs",
        ["backup_config_id"],
        unique=True,
        schema=schema,
        postgresql_where=sa.text("status = 'running'"),
        sqlite_where=sa.text("status = 'running'"),
    )
