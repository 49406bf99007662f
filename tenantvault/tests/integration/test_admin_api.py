from __future__ import annotations

from typing import AsyncIterator

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from tenantvault.apps.api.main import create_app
from tenantvault.core.errors import DuplicateTenantName
from tenantvault.persistence.db import ModuleRegistry
from tenantvault.providers.artifacts.fake import FakeArtifactProducer
from tenantvault.services.admin import AdminService
from tenantvault.tests.utils.settings import make_settings


def _client(admin: AdminService) -> httpx.AsyncClient:
    app = create_app(admin)
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


@pytest.fixture
async def client(registry: ModuleRegistry) -> AsyncIterator[httpx.AsyncClient]:
    admin = AdminService(registry, producer=FakeArtifactProducer())
    async with _client(admin) as http:
        yield http


async def _initialize(client: httpx.AsyncClient) -> None:
    for module in ("platform", "analytics"):
        response = await client.post(f"/v1/admin/modules/{module}/initialize")
        assert response.status_code == 200
        assert response.json()["data"]["success"] is True


@pytest.mark.asyncio
async def test_initialize_and_inspect_modules(client: httpx.AsyncClient) -> None:
    await _initialize(client)
    response = await client.get("/v1/admin/modules/platform/status", headers={"X-Request-Id": "req-42"})
    body = response.json()

    assert response.status_code == 200
    assert response.headers["X-Request-Id"] == "req-42"
    assert body["success"] is True
    assert body["error"] is None
    assert body["data"]["health_score"] == 100
    assert body["meta"] == {"request_id": "req-42", "api_version": "v1"}
    assert "status_code" not in body

    unknown = await client.get("/v1/admin/modules/billing/status")
    assert unknown.status_code == 400
    assert unknown.json()["error"]["code"] == "UNKNOWN_MODULE"


@pytest.mark.asyncio
async def test_tenant_lifecycle_over_http(client: httpx.AsyncClient) -> None:
    await _initialize(client)
    created = await client.post(
        "/v1/admin/tenants",
        json={"name": "AcmeCorp", "resource_limits": {"max_users": 10, "max_storage_mb": 10}},
    )
    assert created.status_code == 201
    tenant = created.json()["data"]
    assert tenant["schema_prefix"].startswith("tenant_acmecorp_")
    assert tenant["resource_limits"]["max_users"] == 10

    duplicate = await client.post("/v1/admin/tenants", json={"name": "AcmeCorp"})
    assert duplicate.status_code == 409
    assert duplicate.json()["success"] is False
    assert duplicate.json()["error"]["code"] == "DUPLICATE_TENANT_NAME"

    usage = await client.post(f"/v1/admin/tenants/{tenant['id']}/usage", json={"api_calls": 3, "storage_used_mb": 12})
    assert usage.status_code == 200

    stats = (await client.get(f"/v1/admin/tenants/{tenant['id']}/stats")).json()["data"]
    assert stats["api_calls_today"] == 3
    assert stats["storage_used_mb"] == 12

    limits = (await client.get(f"/v1/admin/tenants/{tenant['id']}/limits")).json()["data"]
    assert limits["within_limits"] is False
    assert limits["exceeded"] == ["storage (12MB/10MB)"]

    missing = await client.get("/v1/admin/tenants/6f1c1a8e-0f0c-4f57-9f7a-0b1df1d1c111/stats")
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "TENANT_NOT_FOUND"


@pytest.mark.asyncio
async def test_backup_flow_over_http(client: httpx.AsyncClient) -> None:
    await _initialize(client)
    await client.post("/v1/admin/tenants", json={"name": "Globex"})

    config = await client.post(
        "/v1/admin/backups/configs",
        json={"name": "nightly", "backup_type": "full", "modules": ["platform"], "schedule": "0 2 * * *"},
    )
    assert config.status_code == 201
    config_id = config.json()["data"]["id"]

    executed = await client.post(f"/v1/admin/backups/configs/{config_id}/execute")
    assert executed.status_code == 200
    job = executed.json()["data"]
    assert job["status"] == "completed"
    assert job["files_count"] == 3

    listed = (await client.get("/v1/admin/backups", params={"limit": 5})).json()["data"]
    assert [row["id"] for row in listed] == [job["id"]]

    metrics = (await client.get("/v1/admin/backups/metrics")).json()["data"]
    assert metrics["successful_backups"] == 1

    restored = await client.post(f"/v1/admin/backups/{job['id']}/restore", json={"module": "platform"})
    assert restored.status_code == 200
    assert restored.json()["data"]["restored_files_count"] == 3

    # An empty body means a full restore.
    full = await client.post(f"/v1/admin/backups/{job['id']}/restore")
    assert full.json()["data"]["restore_type"] == "full"

    cleanup = await client.post("/v1/admin/backups/cleanup")
    assert cleanup.json()["data"] == {"deleted_count": 0}

    missing = await client.post("/v1/admin/backups/configs/00000000-0000-0000-0000-000000000000/execute")
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "BACKUP_CONFIG_NOT_FOUND"


@pytest.mark.asyncio
async def test_request_validation_uses_the_result_shape(client: httpx.AsyncClient) -> None:
    response = await client.post(
        "/v1/admin/backups/configs", json={"name": "bad", "backup_type": "snapshot", "modules": []}
    )
    body = response.json()
    assert response.status_code == 422
    assert body["success"] is False
    assert body["error"]["code"] == "REQUEST_VALIDATION_ERROR"
    assert body["error"]["details"]["errors"]


@pytest.mark.asyncio
async def test_admin_token_is_enforced_when_configured(tmp_path) -> None:
    registry = ModuleRegistry(make_settings(tmp_path, admin_api_token="s3cret"))
    try:
        async with _client(AdminService(registry, producer=FakeArtifactProducer())) as http:
            anonymous = await http.get("/v1/admin/modules/platform/status")
            assert anonymous.status_code == 401
            assert anonymous.json()["error"]["code"] == "AUTH_UNAUTHORIZED"

            wrong = await http.get(
                "/v1/admin/modules/platform/status", headers={"Authorization": "Bearer nope"}
            )
            assert wrong.status_code == 401

            allowed = await http.get(
                "/v1/admin/modules/platform/status", headers={"Authorization": "Bearer s3cret"}
            )
            assert allowed.status_code == 200
    finally:
        await registry.dispose_all()


@pytest.mark.asyncio
async def test_operation_results_map_failures(registry: ModuleRegistry) -> None:
    admin = AdminService(registry, producer=FakeArtifactProducer())

    async def _duplicate() -> None:
        raise DuplicateTenantName("Tenant 'x' already exists")

    async def _driver_error() -> None:
        raise OperationalError("SELECT 1", {}, Exception("connection reset"))

    async def _bug() -> None:
        raise KeyError("oops")

    async def _ok() -> dict[str, int]:
        return {"value": 1}

    rejected = await admin._run("test", _duplicate)
    assert rejected.success is False
    assert rejected.error.code == "DUPLICATE_TENANT_NAME"
    assert rejected.status_code == 409

    # Driver details stay out of the result.
    database = await admin._run("test", _driver_error)
    assert database.error.code == "DATABASE_ERROR"
    assert "connection reset" not in database.error.message
    assert database.status_code == 503

    crashed = await admin._run("test", _bug)
    assert crashed.error.code == "INTERNAL_ERROR"
    assert crashed.status_code == 500

    ok = await admin._run("test", _ok)
    assert ok.success is True
    assert ok.data == {"value": 1}
    assert "status_code" not in ok.model_dump()


@pytest.mark.asyncio
async def test_malformed_limits_are_validation_errors(registry: ModuleRegistry) -> None:
    admin = AdminService(registry, producer=FakeArtifactProducer())
    for limits in ({"max_users": "ten"}, {"max_storage_mb": 10.9}, {"max_api_calls_per_day": True}):
        result = await admin.create_tenant(name="Kramerica", limits=limits)
        assert result.success is False
        assert result.error.code == "VALIDATION_ERROR"
        assert result.status_code == 400
