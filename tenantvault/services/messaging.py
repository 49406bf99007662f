from __future__ import annotations

import json
import logging
from dataclasses import dataclass

import httpx

from tenantvault.core.config import Settings, get_settings
from tenantvault.services.resilience import integration_retry_policy, retry_async


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MessageResult:
    # Summarize delivery so callers can log without ever failing on it.
    sent: bool
    status_code: int | None
    message: str


def _retryable(exc: Exception) -> bool:
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return False


class MessagingGateway:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        # Tests pass httpx.MockTransport to observe outbound calls.
        self._transport = transport

    async def send_message(self, recipient: str, text: str) -> MessageResult:
        settings = self._settings
        if not settings.messaging_enabled:
            return MessageResult(sent=False, status_code=None, message="Messaging is disabled")
        if not settings.messaging_gateway_url:
            return MessageResult(sent=False, status_code=None, message="Messaging is not configured")

        body = json.dumps({"recipient": recipient, "text": text}, ensure_ascii=False).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if settings.messaging_api_token:
            headers["Authorization"] = f"Bearer {settings.messaging_api_token}"
        timeout = settings.ext_call_timeout_ms / 1000.0

        async def _call() -> httpx.Response:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.post(settings.messaging_gateway_url, content=body, headers=headers)
            if response.status_code >= 500:
                response.raise_for_status()
            return response

        try:
            response = await retry_async(
                _call, policy=integration_retry_policy(settings), retryable=_retryable, label="messaging"
            )
        except Exception as exc:  # noqa: BLE001 - notifications are non-fatal
            logger.warning("messaging_send_failed recipient=%s", recipient, exc_info=exc)
            return MessageResult(sent=False, status_code=None, message=str(exc))

        if response.status_code >= 400:
            logger.warning("messaging_send_rejected status=%s", response.status_code)
            return MessageResult(
                sent=False,
                status_code=response.status_code,
                message=f"Gateway returned {response.status_code}",
            )
        return MessageResult(sent=True, status_code=response.status_code, message="sent")

    async def notify_admin(self, text: str) -> MessageResult:
        recipient = self._settings.messaging_admin_recipient
        if not recipient:
            return MessageResult(sent=False, status_code=None, message="No admin recipient configured")
        return await self.send_message(recipient, text)
