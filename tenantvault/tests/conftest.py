from __future__ import annotations

from pathlib import Path
from typing import AsyncIterator

import pytest

from tenantvault.core.config import Settings, get_settings
from tenantvault.persistence.db import ModuleRegistry
from tenantvault.providers.artifacts.fake import FakeArtifactProducer
from tenantvault.services.migrations import MigrationRunner
from tenantvault.tests.utils.settings import make_settings


@pytest.fixture(autouse=True)
def _reset_cached_singletons() -> None:
    # Clear settings caches between tests to avoid env leakage.
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
async def registry(settings: Settings) -> AsyncIterator[ModuleRegistry]:
    registry = ModuleRegistry(settings)
    yield registry
    # Dispose pools so aiosqlite threads do not outlive the test loop.
    await registry.dispose_all()


@pytest.fixture
async def migrated_registry(registry: ModuleRegistry) -> ModuleRegistry:
    runner = MigrationRunner(registry)
    for module in registry.modules:
        results = await runner.apply_all_core_migrations(module)
        assert all(result.success for result in results), results
    return registry


@pytest.fixture
def producer() -> FakeArtifactProducer:
    return FakeArtifactProducer()
