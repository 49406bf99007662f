from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantvault.apps.api.errors import (
    http_exception_handler,
    tenantvault_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from tenantvault.apps.api.response import API_VERSION
from tenantvault.apps.api.routes.admin import router as admin_router
from tenantvault.core.errors import TenantVaultError
from tenantvault.core.logging import configure_logging
from tenantvault.persistence.db import get_registry
from tenantvault.services.admin import AdminService


def create_app(admin: AdminService | None = None) -> FastAPI:
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        # Release every module pool on shutdown.
        await app.state.admin.registry.dispose_all()

    app = FastAPI(title="tenantvault admin API", lifespan=lifespan)
    app.state.admin = admin or AdminService(get_registry())

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(TenantVaultError, tenantvault_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(admin_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
