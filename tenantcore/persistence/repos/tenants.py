from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantcore.domain.context import TenantScope
from tenantcore.domain.models import Tenant, TenantStatus


async def get_tenant(session: AsyncSession, *, tenant_id: str) -> Tenant | None:
    result = await session.execute(select(Tenant).where(Tenant.id == tenant_id))
    return result.scalar_one_or_none()


async def get_tenant_by_slug(session: AsyncSession, *, slug: str) -> Tenant | None:
    result = await session.execute(select(Tenant).where(Tenant.slug == slug))
    return result.scalar_one_or_none()


async def get_tenant_scope(session: AsyncSession, *, tenant_id: str) -> TenantScope | None:
    # Lifecycle lookup used before any tenant-scoped work; tenants are not row-secured.
    result = await session.execute(select(Tenant.id, Tenant.status).where(Tenant.id == tenant_id))
    row = result.first()
    if row is None:
        return None
    return TenantScope(tenant_id=row.id, status=row.status)


async def create_tenant(
    session: AsyncSession,
    *,
    tenant_id: str,
    name: str,
    slug: str,
    now: datetime,
) -> Tenant:
    tenant = Tenant(
        id=tenant_id,
        name=name,
        slug=slug,
        status=TenantStatus.ACTIVE.value,
        created_at=now,
        updated_at=now,
    )
    session.add(tenant)
    await session.flush()
    return tenant


async def set_tenant_status(session: AsyncSession, *, tenant_id: str, status: TenantStatus, now: datetime) -> bool:
    tenant = await get_tenant(session, tenant_id=tenant_id)
    if tenant is None:
        return False
    tenant.status = status.value
    tenant.updated_at = now
    await session.flush()
    return True
