from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from sqlalchemy.exc import DBAPIError

from tenantvault.core.config import Settings, get_settings


logger = logging.getLogger(__name__)


def is_transient(exc: Exception) -> bool:
    # Network drops, timeouts, invalidated pool connections and 5xx replies are worth another try.
    if isinstance(exc, (TimeoutError, ConnectionError, OSError)):
        return True
    if isinstance(exc, DBAPIError):
        return bool(exc.connection_invalidated)
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and status >= 500


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int
    max_backoff_ms: int = 5000

    def delay_s(self, attempt: int) -> float:
        # Exponential growth from backoff_ms, capped, with +/-50% jitter.
        capped = min(self.backoff_ms * (2 ** (attempt - 1)), self.max_backoff_ms)
        return capped * random.uniform(0.5, 1.5) / 1000.0


def integration_retry_policy(settings: Settings | None = None) -> RetryPolicy:
    settings = settings or get_settings()
    return RetryPolicy(
        timeout_ms=settings.ext_call_timeout_ms,
        max_attempts=settings.ext_retry_max_attempts,
        backoff_ms=settings.ext_retry_backoff_ms,
    )


def connection_retry_policy(settings: Settings | None = None) -> RetryPolicy:
    settings = settings or get_settings()
    return RetryPolicy(
        timeout_ms=int(settings.db_connect_timeout_s * 1000),
        max_attempts=settings.db_connect_retry_attempts,
        backoff_ms=settings.db_connect_retry_backoff_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] = is_transient,
    label: str = "call",
) -> Any:
    """Await ``func`` until it succeeds or the policy gives up.

    Each attempt is bounded by ``policy.timeout_ms``. The last error is
    re-raised unchanged so callers map it to their own domain error.
    """
    policy = policy or integration_retry_policy()
    attempts = max(policy.max_attempts, 1)
    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - re-raised below unless another attempt is allowed
            if attempt == attempts or not retryable(exc):
                raise
            delay = policy.delay_s(attempt)
            logger.info(
                "retry_scheduled label=%s attempt=%s/%s delay_s=%.3f error=%s",
                label,
                attempt,
                attempts,
                delay,
                type(exc).__name__,
            )
            await asyncio.sleep(delay)
