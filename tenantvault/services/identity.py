from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass

import httpx

from tenantvault.core.config import Settings, get_settings
from tenantvault.core.errors import IntegrationError
from tenantvault.domain.models import Tenant
from tenantvault.services.resilience import integration_retry_policy, retry_async


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RealmCredentials:
    realm: str
    client_id: str
    client_secret: str


def _retryable(exc: Exception) -> bool:
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return False


class IdentityProvisioner:
    """Creates one IAM realm per tenant through the identity provider's admin API."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self._settings.identity_enabled and self._settings.identity_admin_url)

    async def create_realm(self, tenant: Tenant) -> RealmCredentials:
        settings = self._settings
        if not self.enabled:
            raise IntegrationError("Identity provisioning is disabled or not configured")

        # Realm names reuse the sanitized schema prefix so they are URL and identifier safe.
        realm = tenant.schema_prefix
        credentials = RealmCredentials(
            realm=realm,
            client_id=f"{realm}-app",
            client_secret=secrets.token_urlsafe(32),
        )
        payload = {
            "realm": realm,
            "displayName": tenant.name,
            "enabled": True,
            "clients": [
                {
                    "clientId": credentials.client_id,
                    "secret": credentials.client_secret,
                    "publicClient": False,
                }
            ],
            "attributes": {"tenant_id": tenant.id, "module": tenant.module},
        }
        headers = {}
        if settings.identity_admin_token:
            headers["Authorization"] = f"Bearer {settings.identity_admin_token}"
        url = f"{settings.identity_admin_url.rstrip('/')}/realms"
        timeout = settings.ext_call_timeout_ms / 1000.0

        async def _call() -> httpx.Response:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.post(url, json=payload, headers=headers)
            response.raise_for_status()
            return response

        try:
            await retry_async(
                _call,
                policy=integration_retry_policy(settings),
                retryable=_retryable,
                label="identity.create_realm",
            )
        except Exception as exc:  # noqa: BLE001 - mapped to a stable integration error
            logger.warning("identity_realm_create_failed tenant_id=%s", tenant.id, exc_info=exc)
            raise IntegrationError(f"Failed to create realm {realm}: {exc}") from exc
        logger.info("identity_realm_created tenant_id=%s realm=%s", tenant.id, realm)
        return credentials
