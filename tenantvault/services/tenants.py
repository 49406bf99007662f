from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from sqlalchemy import DateTime, bindparam, delete, select, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantvault.core.config import Settings
from tenantvault.core.errors import (
    DuplicateTenantName,
    InvalidIdentifierError,
    SchemaCreationError,
    TenantNotFound,
    TenantVaultError,
    ValidationError,
)
from tenantvault.domain.models import Tenant, TenantName, TenantUser, new_id, utc_now
from tenantvault.domain.types import ISOLATION_LEVELS, ResourceLimits
from tenantvault.persistence.db import ModuleRegistry, dialect_name
from tenantvault.persistence.guards import derive_schema_prefix, require_tenant_id
from tenantvault.persistence.tenant_schema import TenantSchemaLayout, create_tenant_schema


logger = logging.getLogger(__name__)

TENANT_NAME_MAX_LENGTH = 255

SchemaBuilder = Callable[[AsyncSession, TenantSchemaLayout, str], Awaitable[None]]
TenantHook = Callable[[Tenant], Awaitable[Any]]


def default_limits(settings: Settings) -> ResourceLimits:
    return ResourceLimits(
        max_users=settings.tenant_default_max_users,
        max_storage_mb=settings.tenant_default_max_storage_mb,
        max_api_calls_per_day=settings.tenant_default_max_api_calls_per_day,
    )


def validate_tenant_name(name: str | None) -> str:
    # Names must survive sanitization with at least one usable character.
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("Tenant name is required")
    if len(cleaned) > TENANT_NAME_MAX_LENGTH:
        raise ValidationError(f"Tenant name exceeds {TENANT_NAME_MAX_LENGTH} characters")
    if not any(char.isascii() and char.isalnum() for char in cleaned):
        raise ValidationError("Tenant name must contain at least one letter or digit")
    return cleaned


def validate_limits(limits: ResourceLimits) -> ResourceLimits:
    for field_name, value in limits.to_dict().items():
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValidationError(f"Resource limit {field_name} must be a non-negative integer")
    return limits


def layout_for(session: AsyncSession, tenant: Tenant) -> TenantSchemaLayout:
    return TenantSchemaLayout(schema_prefix=tenant.schema_prefix, dialect=dialect_name(session))


class TenantProvisioner:
    def __init__(
        self,
        registry: ModuleRegistry,
        *,
        catalog_module: str | None = None,
        schema_builder: SchemaBuilder | None = None,
        on_created: list[TenantHook] | None = None,
    ) -> None:
        self._registry = registry
        self._settings = registry.settings
        # Module whose tenant_names table arbitrates names for every module.
        self._catalog_module = registry.resolve(catalog_module)
        # Injectable so provisioning failures can be exercised without a broken database.
        self._schema_builder = schema_builder or create_tenant_schema
        self._on_created = list(on_created or [])

    async def create_tenant(
        self,
        *,
        name: str,
        module: str | None = None,
        limits: ResourceLimits | dict[str, Any] | None = None,
        isolation_level: str = "schema",
        subscription_plan: str = "basic",
        tenant_config: dict[str, Any] | None = None,
    ) -> Tenant:
        name = validate_tenant_name(name)
        module = self._registry.resolve(module)
        if isolation_level not in ISOLATION_LEVELS:
            raise ValidationError(f"Unsupported isolation level: {isolation_level}")
        if isinstance(limits, ResourceLimits):
            resolved_limits = limits
        else:
            resolved_limits = ResourceLimits.from_dict(limits, defaults=default_limits(self._settings))
        validate_limits(resolved_limits)
        try:
            schema_prefix = derive_schema_prefix(name, max_length=self._settings.tenant_schema_prefix_max_length)
        except InvalidIdentifierError as exc:
            raise ValidationError(f"Cannot derive a schema name from {name!r}") from exc

        # Without the name registry there is no safe way to claim a name.
        await self._registry.test_connection(self._catalog_module)
        # Cheap pre-check; the registry primary key settles concurrent races below.
        if await self._name_taken(module, name):
            raise DuplicateTenantName(f"Tenant name already exists: {name}")

        now = utc_now()
        tenant = Tenant(
            id=new_id(),
            name=name,
            module=module,
            schema_prefix=schema_prefix,
            isolation_level=isolation_level,
            subscription_plan=subscription_plan,
            resource_limits=resolved_limits.to_dict(),
            tenant_config=tenant_config or {},
            active=True,
            created_at=now,
            last_activity=now,
        )
        if module == self._catalog_module:
            # Reservation, catalog row and DDL share one transaction.
            await self._provision(tenant, reserve=True)
        else:
            await self._reserve_name(tenant)
            try:
                await self._provision(tenant, reserve=False)
            except Exception:
                await self._release_name(tenant)
                raise

        logger.info(
            "tenant_created tenant_id=%s module=%s schema_prefix=%s", tenant.id, module, schema_prefix
        )
        for hook in self._on_created:
            try:
                await hook(tenant)
            except Exception as exc:  # noqa: BLE001 - side effects never undo a committed tenant
                logger.warning("tenant_post_create_hook_failed tenant_id=%s", tenant.id, exc_info=exc)
        return tenant

    async def _provision(self, tenant: Tenant, *, reserve: bool) -> None:
        async with self._registry.session(tenant.module) as session:
            try:
                async with session.begin():
                    if reserve:
                        session.add(_reservation_for(tenant))
                        await session.flush()
                    session.add(tenant)
                    await session.flush()
                    await self._schema_builder(session, layout_for(session, tenant), tenant.id)
            except IntegrityError as exc:
                if await self._name_taken(tenant.module, tenant.name, exclude_tenant_id=tenant.id):
                    raise DuplicateTenantName(f"Tenant name already exists: {tenant.name}") from exc
                raise SchemaCreationError(f"Failed to provision tenant {tenant.name}: {exc.orig}") from exc
            except TenantVaultError:
                raise
            except Exception as exc:  # noqa: BLE001 - every provisioning failure rolls back as one error
                logger.error(
                    "tenant_provisioning_failed name=%s module=%s", tenant.name, tenant.module, exc_info=exc
                )
                raise SchemaCreationError(f"Failed to provision tenant {tenant.name}: {exc}") from exc

    async def _reserve_name(self, tenant: Tenant) -> None:
        async with self._registry.session(self._catalog_module) as session:
            session.add(_reservation_for(tenant))
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise DuplicateTenantName(f"Tenant name already exists: {tenant.name}") from exc
        logger.info("tenant_name_reserved name=%s module=%s", tenant.name, tenant.module)

    async def _release_name(self, tenant: Tenant) -> None:
        try:
            async with self._registry.session(self._catalog_module) as session:
                await session.execute(
                    delete(TenantName).where(TenantName.name == tenant.name, TenantName.tenant_id == tenant.id)
                )
                await session.commit()
        except (SQLAlchemyError, TenantVaultError, OSError) as exc:
            # The name stays blocked until an operator removes the orphaned row.
            logger.error("tenant_name_release_failed name=%s tenant_id=%s", tenant.name, tenant.id, exc_info=exc)
            return
        logger.info("tenant_name_released name=%s module=%s", tenant.name, tenant.module)

    async def _name_taken(self, module: str, name: str, *, exclude_tenant_id: str | None = None) -> bool:
        reserved = select(TenantName.tenant_id).where(TenantName.name == name)
        if exclude_tenant_id is not None:
            reserved = reserved.where(TenantName.tenant_id != exclude_tenant_id)
        async with self._registry.session(self._catalog_module) as session:
            if await session.scalar(reserved.limit(1)) is not None:
                return True
        # Rows written before the registry existed only live in their own module.
        async with self._registry.session(module) as session:
            local = select(Tenant.id).where(Tenant.name == name)
            if exclude_tenant_id is not None:
                local = local.where(Tenant.id != exclude_tenant_id)
            return await session.scalar(local.limit(1)) is not None


def _reservation_for(tenant: Tenant) -> TenantName:
    return TenantName(name=tenant.name, tenant_id=tenant.id, module=tenant.module, created_at=tenant.created_at)


async def get_tenant(session: AsyncSession, tenant_id: str) -> Tenant | None:
    # Inactive tenants are invisible to lookups.
    try:
        tenant_id = require_tenant_id(tenant_id)
    except ValidationError:
        return None
    return await session.scalar(select(Tenant).where(Tenant.id == tenant_id, Tenant.active.is_(True)))


async def require_tenant(session: AsyncSession, tenant_id: str) -> Tenant:
    tenant = await get_tenant(session, tenant_id)
    if tenant is None:
        raise TenantNotFound(f"Tenant not found: {tenant_id}")
    return tenant


async def get_tenant_by_name(session: AsyncSession, name: str) -> Tenant | None:
    return await session.scalar(select(Tenant).where(Tenant.name == name, Tenant.active.is_(True)))


async def list_active_tenants(session: AsyncSession) -> list[Tenant]:
    result = await session.execute(
        select(Tenant).where(Tenant.active.is_(True)).order_by(Tenant.created_at.desc())
    )
    return list(result.scalars().all())


async def add_user_to_tenant(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    role: str = "user",
) -> TenantUser:
    tenant = await require_tenant(session, tenant_id)
    mapping = await session.scalar(
        select(TenantUser).where(TenantUser.tenant_id == tenant.id, TenantUser.user_id == user_id)
    )
    if mapping is None:
        mapping = TenantUser(id=new_id(), tenant_id=tenant.id, user_id=user_id, user_role=role, active=True)
        session.add(mapping)
    else:
        mapping.user_role = role
        mapping.active = True
    tenant.last_activity = utc_now()
    await session.commit()
    return mapping


async def deactivate_tenant(session: AsyncSession, tenant_id: str) -> Tenant:
    # Schemas and history stay in place; the tenant just disappears from lookups.
    tenant = await require_tenant(session, tenant_id)
    tenant.active = False
    await session.commit()
    logger.info("tenant_deactivated tenant_id=%s", tenant.id)
    return tenant


async def update_resource_limits(
    session: AsyncSession, tenant_id: str, limits: ResourceLimits | dict[str, Any]
) -> Tenant:
    tenant = await require_tenant(session, tenant_id)
    current = ResourceLimits.from_dict(tenant.resource_limits)
    if isinstance(limits, ResourceLimits):
        resolved = limits
    else:
        resolved = ResourceLimits.from_dict(limits, defaults=current)
    tenant.resource_limits = validate_limits(resolved).to_dict()
    await session.commit()
    return tenant


async def create_isolated_user(
    session: AsyncSession,
    tenant: Tenant,
    *,
    full_name: str,
    email: str | None = None,
    phone_number: str | None = None,
    role: str = "user",
) -> str:
    # Writes land in the tenant's own users table; tenant_id comes from the column default.
    layout = layout_for(session, tenant)
    user_id = new_id()
    await session.execute(
        text(
            f"INSERT INTO {layout.table('users')} (id, full_name, email, phone_number, tenant_role) "
            "VALUES (:id, :full_name, :email, :phone_number, :role)"
        ),
        {"id": user_id, "full_name": full_name, "email": email, "phone_number": phone_number, "role": role},
    )
    await session.commit()
    return user_id


async def create_isolated_session(
    session: AsyncSession,
    tenant: Tenant,
    *,
    user_id: str,
    session_token: str,
    ttl: timedelta = timedelta(hours=8),
    now: datetime | None = None,
) -> str:
    layout = layout_for(session, tenant)
    session_id = new_id()
    expires_at = (now or utc_now()) + ttl
    stmt = text(
        f"INSERT INTO {layout.table('sessions')} (id, user_id, session_token, expires_at) "
        "VALUES (:id, :user_id, :session_token, :expires_at)"
    ).bindparams(bindparam("expires_at", type_=DateTime(timezone=True)))
    await session.execute(
        stmt,
        {"id": session_id, "user_id": user_id, "session_token": session_token, "expires_at": expires_at},
    )
    await session.commit()
    return session_id
