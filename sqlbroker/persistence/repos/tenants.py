from __future__ import annotations

from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from sqlbroker.domain.models import ConnectionDefinition, Tenant


def new_tenant_id() -> str:
    return f"tenant_{uuid4().hex[:12]}"


async def create_tenant(session: AsyncSession, *, name: str, tenant_id: str | None = None) -> Tenant:
    tenant = Tenant(id=tenant_id or new_tenant_id(), name=name, is_active=True)
    session.add(tenant)
    await session.flush()
    return tenant


async def get_tenant(session: AsyncSession, tenant_id: str) -> Tenant | None:
    result = await session.execute(select(Tenant).where(Tenant.id == tenant_id))
    return result.scalar_one_or_none()


async def get_active_tenant(session: AsyncSession, tenant_id: str) -> Tenant | None:
    result = await session.execute(select(Tenant).where(Tenant.id == tenant_id, Tenant.is_active.is_(True)))
    return result.scalar_one_or_none()


async def list_tenants(
    session: AsyncSession,
    *,
    include_inactive: bool = False,
    offset: int = 0,
    limit: int = 50,
) -> list[Tenant]:
    stmt = select(Tenant)
    if not include_inactive:
        stmt = stmt.where(Tenant.is_active.is_(True))
    stmt = stmt.order_by(Tenant.created_at, Tenant.id).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def update_tenant(session: AsyncSession, tenant_id: str, *, name: str | None = None) -> Tenant | None:
    tenant = await get_tenant(session, tenant_id)
    if tenant is None:
        return None
    if name is not None:
        tenant.name = name
    await session.flush()
    return tenant


async def deactivate_tenant(session: AsyncSession, tenant_id: str) -> bool:
    # Soft delete: the row and its connection definitions stay for audit joins.
    tenant = await get_tenant(session, tenant_id)
    if tenant is None or not tenant.is_active:
        return False
    tenant.is_active = False
    await session.flush()
    return True


async def delete_tenant(session: AsyncSession, tenant_id: str) -> bool:
    # Hard delete removes the tenant's connection definitions first.
    await session.execute(delete(ConnectionDefinition).where(ConnectionDefinition.tenant_id == tenant_id))
    result = await session.execute(delete(Tenant).where(Tenant.id == tenant_id))
    return bool(result.rowcount)
