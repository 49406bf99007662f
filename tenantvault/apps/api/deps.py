from __future__ import annotations

import hmac

from fastapi import Header, HTTPException, Request

from tenantvault.services.admin import AdminService


def get_admin_service(request: Request) -> AdminService:
    return request.app.state.admin


async def require_admin_token(
    request: Request,
    authorization: str | None = Header(default=None),
) -> None:
    # Open when no token is configured (local development).
    expected = get_admin_service(request).registry.settings.admin_api_token
    if not expected:
        return
    supplied = (authorization or "").removeprefix("Bearer ").strip()
    if not supplied or not hmac.compare_digest(supplied, expected):
        raise HTTPException(
            status_code=401,
            detail={"code": "AUTH_UNAUTHORIZED", "message": "Missing or invalid admin token"},
        )
