from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy import event, text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from tenantvault.core.config import Settings, get_settings
from tenantvault.core.errors import ConnectionTimeoutError, ModuleConnectionError, UnknownModuleError
from tenantvault.services.resilience import connection_retry_policy, retry_async


logger = logging.getLogger(__name__)

# Catalog namespaces created by the core migrations in every module database.
CATALOG_SCHEMAS = ("tenant_management", "backup_management", "migration_management")


def dialect_name(session: AsyncSession) -> str:
    return session.bind.dialect.name


def _install_sqlite_hooks(engine: AsyncEngine) -> None:
    # pysqlite defers BEGIN and commits before DDL; hand transaction control to SQLAlchemy.
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, _record: Any) -> None:
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")


class ModuleRegistry:
    """Owns one lazily created connection pool per configured module."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._engines: dict[str, AsyncEngine] = {}
        self._sessionmakers: dict[str, async_sessionmaker[AsyncSession]] = {}

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def modules(self) -> tuple[str, ...]:
        return tuple(self._settings.database_modules)

    @property
    def default_module(self) -> str:
        return self._settings.default_module

    def resolve(self, module: str | None) -> str:
        # Fall back to the catalog module and reject names outside the configured map.
        name = module or self._settings.default_module
        if name not in self._settings.database_modules:
            raise UnknownModuleError(f"Unknown module: {name}")
        return name

    def database_url(self, module: str) -> str:
        name = self.resolve(module)
        return self._settings.database_url_template.format(database=self._settings.database_modules[name])

    def _engine_kwargs(self, url: str) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"pool_pre_ping": True}
        if url.startswith("sqlite"):
            # SQLite has no schemas; catalog namespaces collapse into the main database.
            kwargs["execution_options"] = {"schema_translate_map": {name: None for name in CATALOG_SCHEMAS}}
            return kwargs
        # Configure bounded asyncpg pools for predictable latency under load.
        kwargs["pool_size"] = max(1, int(self._settings.db_pool_size))
        kwargs["max_overflow"] = max(0, int(self._settings.db_max_overflow))
        kwargs["pool_timeout"] = self._settings.db_pool_timeout_s
        kwargs["pool_recycle"] = self._settings.db_pool_recycle_s
        connect_args: dict[str, Any] = {"timeout": self._settings.db_connect_timeout_s}
        if self._settings.db_statement_timeout_ms > 0:
            connect_args["server_settings"] = {
                "statement_timeout": str(int(self._settings.db_statement_timeout_ms))
            }
        kwargs["connect_args"] = connect_args
        return kwargs

    def get_engine(self, module: str | None = None) -> AsyncEngine:
        name = self.resolve(module)
        engine = self._engines.get(name)
        if engine is None:
            url = self.database_url(name)
            engine = create_async_engine(url, **self._engine_kwargs(url))
            if url.startswith("sqlite"):
                _install_sqlite_hooks(engine)
            self._engines[name] = engine
            self._sessionmakers[name] = async_sessionmaker(engine, expire_on_commit=False)
            logger.info("module_pool_created module=%s dialect=%s", name, engine.dialect.name)
        return engine

    def sessionmaker(self, module: str | None = None) -> async_sessionmaker[AsyncSession]:
        name = self.resolve(module)
        self.get_engine(name)
        return self._sessionmakers[name]

    @asynccontextmanager
    async def session(self, module: str | None = None) -> AsyncIterator[AsyncSession]:
        name = self.resolve(module)
        async with self.sessionmaker(name)() as session:
            try:
                yield session
            except PoolTimeoutError as exc:
                raise ConnectionTimeoutError(f"Timed out waiting for a connection to module {name}") from exc
            except DBAPIError as exc:
                if exc.connection_invalidated:
                    raise ModuleConnectionError(f"Lost connection to module {name}") from exc
                raise

    async def test_connection(self, module: str | None = None) -> bool:
        name = self.resolve(module)
        engine = self.get_engine(name)

        async def _ping() -> None:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))

        try:
            await retry_async(_ping, policy=connection_retry_policy(self._settings), label=f"connect:{name}")
        except PoolTimeoutError as exc:
            raise ConnectionTimeoutError(f"Timed out waiting for a connection to module {name}") from exc
        except (DBAPIError, OSError, asyncio.TimeoutError) as exc:
            logger.warning("module_connection_failed module=%s", name, exc_info=exc)
            raise ModuleConnectionError(f"Cannot connect to module {name}: {exc}") from exc
        return True

    async def dispose_all(self) -> None:
        engines = list(self._engines.items())
        self._engines.clear()
        self._sessionmakers.clear()
        for name, engine in engines:
            await engine.dispose()
            logger.info("module_pool_disposed module=%s", name)


_registry: ModuleRegistry | None = None


def get_registry() -> ModuleRegistry:
    # Share one registry per process so pools are reused across callers.
    global _registry
    if _registry is None:
        _registry = ModuleRegistry()
    return _registry
