from __future__ import annotations

from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from sqlbroker.domain.models import ConnectionDefinition
from sqlbroker.persistence.guards import require_tenant_id, scoped


def new_connection_id() -> str:
    return f"conn_{uuid4().hex[:8]}"


async def insert_connection(session: AsyncSession, connection: ConnectionDefinition) -> ConnectionDefinition:
    require_tenant_id(connection.tenant_id)
    if not connection.id:
        connection.id = new_connection_id()
    session.add(connection)
    await session.flush()
    return connection


async def get_connection(
    session: AsyncSession,
    *,
    tenant_id: str,
    connection_id: str,
    include_inactive: bool = False,
) -> ConnectionDefinition | None:
    # A connection id from another tenant resolves to nothing.
    stmt = scoped(select(ConnectionDefinition), ConnectionDefinition, tenant_id).where(
        ConnectionDefinition.id == connection_id
    )
    if not include_inactive:
        stmt = stmt.where(ConnectionDefinition.is_active.is_(True))
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_connections(
    session: AsyncSession,
    *,
    tenant_id: str,
    include_inactive: bool = False,
) -> list[ConnectionDefinition]:
    stmt = scoped(select(ConnectionDefinition), ConnectionDefinition, tenant_id)
    if not include_inactive:
        stmt = stmt.where(ConnectionDefinition.is_active.is_(True))
    stmt = stmt.order_by(ConnectionDefinition.created_at, ConnectionDefinition.id)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_all_connections(session: AsyncSession) -> list[ConnectionDefinition]:
    # Unscoped; maintenance only (master key rotation).
    result = await session.execute(select(ConnectionDefinition).order_by(ConnectionDefinition.id))
    return list(result.scalars().all())


async def active_connection_ids(session: AsyncSession, *, tenant_id: str, connection_ids: list[str]) -> set[str]:
    if not connection_ids:
        return set()
    stmt = scoped(select(ConnectionDefinition.id), ConnectionDefinition, tenant_id).where(
        ConnectionDefinition.id.in_(connection_ids),
        ConnectionDefinition.is_active.is_(True),
    )
    result = await session.execute(stmt)
    return set(result.scalars().all())


async def deactivate_connection(session: AsyncSession, *, tenant_id: str, connection_id: str) -> bool:
    connection = await get_connection(session, tenant_id=tenant_id, connection_id=connection_id)
    if connection is None:
        return False
    connection.is_active = False
    await session.flush()
    return True


async def delete_connection(session: AsyncSession, *, tenant_id: str, connection_id: str) -> bool:
    result = await session.execute(
        delete(ConnectionDefinition).where(
            ConnectionDefinition.id == connection_id,
            ConnectionDefinition.tenant_id == require_tenant_id(tenant_id),
        )
    )
    return bool(result.rowcount)
