from __future__ import annotations

import asyncio

import pytest

from tenantvault.core.config import get_settings
from tenantvault.core.errors import UnknownModuleError
from tenantvault.persistence.db import ModuleRegistry
from tenantvault.services.resilience import RetryPolicy, retry_async
from tenantvault.tests.utils.settings import make_settings


def test_module_map_and_template_come_from_environment(monkeypatch) -> None:
    # Env overrides feed the module map and URL template.
    monkeypatch.setenv("DATABASE_MODULES", '{"platform": "app_platform", "crm": "app_crm"}')
    monkeypatch.setenv("DATABASE_URL_TEMPLATE", "postgresql+asyncpg://u:p@db:5432/{database}")
    get_settings.cache_clear()

    registry = ModuleRegistry()
    assert registry.modules == ("platform", "crm")
    assert registry.database_url("crm") == "postgresql+asyncpg://u:p@db:5432/app_crm"
    assert registry.resolve(None) == "platform"
    with pytest.raises(UnknownModuleError):
        registry.resolve("billing")


def test_postgres_engine_options_bound_the_pool(tmp_path) -> None:
    registry = ModuleRegistry(
        make_settings(
            tmp_path,
            database_url_template="postgresql+asyncpg://u:p@db:5432/{database}",
            db_pool_size=4,
            db_max_overflow=2,
            db_statement_timeout_ms=1500,
        )
    )
    kwargs = registry._engine_kwargs(registry.database_url("platform"))
    assert kwargs["pool_size"] == 4
    assert kwargs["max_overflow"] == 2
    assert kwargs["connect_args"]["server_settings"] == {"statement_timeout": "1500"}
    assert "execution_options" not in kwargs


def test_sqlite_engine_options_collapse_catalog_schemas(tmp_path) -> None:
    registry = ModuleRegistry(make_settings(tmp_path))
    kwargs = registry._engine_kwargs(registry.database_url("analytics"))
    translate = kwargs["execution_options"]["schema_translate_map"]
    assert translate == {
        "tenant_management": None,
        "backup_management": None,
        "migration_management": None,
    }
    assert "pool_size" not in kwargs


@pytest.mark.asyncio
async def test_retry_async_retries_transient_errors_only() -> None:
    calls = {"count": 0}

    async def _flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 3:
            raise ConnectionError("reset by peer")
        return "ok"

    policy = RetryPolicy(timeout_ms=1000, max_attempts=3, backoff_ms=1)
    assert await retry_async(_flaky, policy=policy, label="test") == "ok"
    assert calls["count"] == 3

    async def _broken() -> None:
        calls["count"] += 1
        raise ValueError("bad input")

    calls["count"] = 0
    with pytest.raises(ValueError):
        await retry_async(_broken, policy=policy, label="test")
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_retry_async_enforces_attempt_timeout() -> None:
    async def _slow() -> None:
        await asyncio.sleep(1)

    policy = RetryPolicy(timeout_ms=10, max_attempts=2, backoff_ms=1)
    with pytest.raises(asyncio.TimeoutError):
        await retry_async(_slow, policy=policy, label="slow")
