from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from tenantvault.apps.api.deps import get_admin_service, require_admin_token
from tenantvault.apps.api.response import operation_response
from tenantvault.domain.schemas import (
    BackupConfigCreateRequest,
    RestoreRequest,
    TenantCreateRequest,
    UsageRecordRequest,
)
from tenantvault.domain.types import UsageDelta
from tenantvault.services.admin import AdminService


router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin_token)])


@router.post("/modules/{module}/initialize")
async def initialize_module(
    module: str, request: Request, admin: AdminService = Depends(get_admin_service)
) -> JSONResponse:
    return operation_response(request, await admin.initialize_module(module))


@router.get("/modules/{module}/status")
async def module_status(
    module: str, request: Request, admin: AdminService = Depends(get_admin_service)
) -> JSONResponse:
    return operation_response(request, await admin.get_module_status(module))


@router.post("/tenants")
async def create_tenant(
    payload: TenantCreateRequest, request: Request, admin: AdminService = Depends(get_admin_service)
) -> JSONResponse:
    result = await admin.create_tenant(
        name=payload.name,
        module=payload.module,
        limits=payload.resource_limits.model_dump() if payload.resource_limits else None,
        isolation_level=payload.isolation_level,
        subscription_plan=payload.subscription_plan,
        tenant_config=payload.tenant_config,
    )
    if result.success:
        result.status_code = 201
    return operation_response(request, result)


@router.get("/tenants/{tenant_id}/stats")
async def tenant_stats(
    tenant_id: str,
    request: Request,
    module: str | None = Query(default=None),
    admin: AdminService = Depends(get_admin_service),
) -> JSONResponse:
    return operation_response(request, await admin.get_tenant_stats(tenant_id, module=module))


@router.get("/tenants/{tenant_id}/limits")
async def tenant_limits(
    tenant_id: str,
    request: Request,
    module: str | None = Query(default=None),
    admin: AdminService = Depends(get_admin_service),
) -> JSONResponse:
    return operation_response(request, await admin.check_tenant_limits(tenant_id, module=module))


@router.post("/tenants/{tenant_id}/usage")
async def record_usage(
    tenant_id: str,
    payload: UsageRecordRequest,
    request: Request,
    module: str | None = Query(default=None),
    admin: AdminService = Depends(get_admin_service),
) -> JSONResponse:
    delta = UsageDelta(**payload.model_dump())
    return operation_response(request, await admin.record_usage(tenant_id, delta, module=module))


@router.post("/backups/configs")
async def create_backup_config(
    payload: BackupConfigCreateRequest, request: Request, admin: AdminService = Depends(get_admin_service)
) -> JSONResponse:
    result = await admin.create_backup_config(**payload.model_dump())
    if result.success:
        result.status_code = 201
    return operation_response(request, result)


@router.post("/backups/configs/{config_id}/execute")
async def execute_backup(
    config_id: str, request: Request, admin: AdminService = Depends(get_admin_service)
) -> JSONResponse:
    return operation_response(request, await admin.execute_backup_job(config_id))


@router.get("/backups")
async def list_backups(
    request: Request,
    limit: int = Query(default=10, ge=1, le=500),
    admin: AdminService = Depends(get_admin_service),
) -> JSONResponse:
    return operation_response(request, await admin.list_backups(limit=limit))


@router.get("/backups/metrics")
async def backup_metrics(request: Request, admin: AdminService = Depends(get_admin_service)) -> JSONResponse:
    return operation_response(request, await admin.get_backup_metrics())


@router.post("/backups/{job_id}/restore")
async def restore_backup(
    job_id: str,
    request: Request,
    payload: RestoreRequest | None = None,
    admin: AdminService = Depends(get_admin_service),
) -> JSONResponse:
    payload = payload or RestoreRequest()
    result = await admin.restore_backup(job_id, module=payload.module, tenant_id=payload.tenant_id)
    return operation_response(request, result)


@router.post("/backups/cleanup")
async def cleanup_backups(request: Request, admin: AdminService = Depends(get_admin_service)) -> JSONResponse:
    return operation_response(request, await admin.cleanup_old_backups())
