from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from tenantvault.services.admin import OperationResult


API_VERSION = "v1"


class ResponseMeta(BaseModel):
    # Include request/version metadata for consistent client tracing.
    request_id: str
    api_version: str = Field(default=API_VERSION)


def get_request_id(request: Request) -> str:
    # Use existing request IDs when provided to preserve traceability.
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    header_request_id = request.headers.get("X-Request-Id")
    if header_request_id:
        request.state.request_id = header_request_id
        return header_request_id
    generated = str(uuid4())
    request.state.request_id = generated
    return generated


def operation_response(request: Request, result: OperationResult) -> JSONResponse:
    # Administrative results keep their {success, data, error} shape over HTTP.
    payload = result.model_dump(mode="json")
    payload["meta"] = ResponseMeta(request_id=get_request_id(request)).model_dump()
    return JSONResponse(content=payload, status_code=result.status_code)


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    # Errors raised outside the admin service use the same result shape.
    error: dict[str, Any] = {"code": code, "message": message}
    if details:
        error["details"] = details
    return {
        "success": False,
        "data": None,
        "error": error,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "meta": ResponseMeta(request_id=get_request_id(request)).model_dump(),
    }
