from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable

from sqlalchemy import case, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from tenantvault.core.errors import ValidationError
from tenantvault.domain.models import Tenant, TenantUsage, as_utc
from tenantvault.domain.types import ResourceLimits, UsageDelta
from tenantvault.persistence.db import dialect_name
from tenantvault.services.tenants import layout_for, require_tenant


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TenantStats:
    # Live counts come from the tenant's own tables; the rest from today's usage row.
    total_users: int
    active_sessions: int
    storage_used_mb: float
    api_calls_today: int
    bandwidth_mb_today: float
    last_activity: datetime | None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["last_activity"] = self.last_activity.isoformat() if self.last_activity else None
        return payload


@dataclass(frozen=True)
class LimitCheck:
    within_limits: bool
    exceeded: list[str]
    usage: TenantStats
    limits: ResourceLimits

    def to_dict(self) -> dict[str, Any]:
        return {
            "within_limits": self.within_limits,
            "exceeded": list(self.exceeded),
            "usage": self.usage.to_dict(),
            "limits": self.limits.to_dict(),
        }


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _usage_day(now: datetime) -> date:
    return now.astimezone(timezone.utc).date()


def _fmt(value: float | int) -> str:
    # 10.0 renders as "10", 12.5 stays "12.5".
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _greatest(existing: Any, incoming: Any) -> Any:
    # Portable GREATEST(); SQLite only has the multi-argument max().
    return case((existing >= incoming, existing), else_=incoming)


def _validate_delta(delta: UsageDelta) -> None:
    for field_name, value in asdict(delta).items():
        if value < 0:
            raise ValidationError(f"Usage field {field_name} must not be negative")


class QuotaService:
    def __init__(self, *, time_provider: Callable[[], datetime] | None = None) -> None:
        # Allow time injection for deterministic day-rollover tests.
        self._time_provider = time_provider or _utc_now

    async def record_usage(self, session: AsyncSession, tenant_id: str, delta: UsageDelta) -> None:
        _validate_delta(delta)
        tenant = await require_tenant(session, tenant_id)
        now = self._time_provider()
        today = _usage_day(now)

        dialect = dialect_name(session)
        insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
        table = TenantUsage.__table__
        stmt = insert(table).values(
            tenant_id=tenant.id,
            usage_date=today,
            api_calls=delta.api_calls,
            bandwidth_mb=delta.bandwidth_mb,
            storage_used_mb=delta.storage_used_mb,
            active_users=delta.active_users,
            updated_at=now,
        )
        # Counters sum; gauges keep the day's maximum.
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.tenant_id, table.c.usage_date],
            set_={
                "api_calls": table.c.api_calls + stmt.excluded.api_calls,
                "bandwidth_mb": table.c.bandwidth_mb + stmt.excluded.bandwidth_mb,
                "storage_used_mb": _greatest(table.c.storage_used_mb, stmt.excluded.storage_used_mb),
                "active_users": _greatest(table.c.active_users, stmt.excluded.active_users),
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await session.execute(stmt)
        tenant.last_activity = now
        await session.commit()

    async def get_tenant_stats(self, session: AsyncSession, tenant_id: str) -> TenantStats:
        tenant = await require_tenant(session, tenant_id)
        now = self._time_provider()
        layout = layout_for(session, tenant)
        total_users = await layout.count_active_users(session)
        active_sessions = await layout.count_active_sessions(session, now=now)
        usage = await session.scalar(
            select(TenantUsage)
            .where(
                TenantUsage.tenant_id == tenant.id,
                TenantUsage.usage_date == _usage_day(now),
            )
            .execution_options(populate_existing=True)
        )
        return TenantStats(
            total_users=total_users,
            active_sessions=active_sessions,
            storage_used_mb=float(usage.storage_used_mb) if usage else 0.0,
            api_calls_today=int(usage.api_calls) if usage else 0,
            bandwidth_mb_today=float(usage.bandwidth_mb) if usage else 0.0,
            last_activity=as_utc(tenant.last_activity),
        )

    async def check_limits(self, session: AsyncSession, tenant_id: str) -> LimitCheck:
        tenant = await require_tenant(session, tenant_id)
        limits = ResourceLimits.from_dict(tenant.resource_limits)
        stats = await self.get_tenant_stats(session, tenant.id)

        # Reaching a limit is allowed; only going past it counts as exceeded.
        exceeded: list[str] = []
        if stats.total_users > limits.max_users:
            exceeded.append(f"users ({stats.total_users}/{limits.max_users})")
        if stats.storage_used_mb > limits.max_storage_mb:
            exceeded.append(
                f"storage ({_fmt(stats.storage_used_mb)}MB/{_fmt(limits.max_storage_mb)}MB)"
            )
        if stats.api_calls_today > limits.max_api_calls_per_day:
            exceeded.append(f"API calls ({stats.api_calls_today}/{limits.max_api_calls_per_day})")
        if exceeded:
            logger.info("tenant_limits_exceeded tenant_id=%s exceeded=%s", tenant.id, exceeded)
        return LimitCheck(within_limits=not exceeded, exceeded=exceeded, usage=stats, limits=limits)

    async def sample_live_usage(self, session: AsyncSession, tenant: Tenant) -> UsageDelta:
        # Feed the gauges from what the tenant's schema actually holds right now.
        layout = layout_for(session, tenant)
        delta = UsageDelta(
            active_users=await layout.count_active_users(session),
            storage_used_mb=await layout.measure_storage_mb(session),
        )
        await self.record_usage(session, tenant.id, delta)
        return delta
