from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import case, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from sqlbroker.domain.models import ConnectionAuditLog
from sqlbroker.persistence.guards import scoped


async def list_logs(
    session: AsyncSession,
    *,
    tenant_id: str,
    connection_id: str | None = None,
    action: str | None = None,
    success: bool | None = None,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[ConnectionAuditLog]:
    # Scope all audit queries to a tenant to prevent cross-tenant leakage.
    stmt = scoped(select(ConnectionAuditLog), ConnectionAuditLog, tenant_id)
    if connection_id:
        stmt = stmt.where(ConnectionAuditLog.connection_id == connection_id)
    if action:
        stmt = stmt.where(ConnectionAuditLog.action == action)
    if success is not None:
        stmt = stmt.where(ConnectionAuditLog.success.is_(success))
    if occurred_from:
        stmt = stmt.where(ConnectionAuditLog.occurred_at >= occurred_from)
    if occurred_to:
        stmt = stmt.where(ConnectionAuditLog.occurred_at <= occurred_to)

    stmt = stmt.order_by(ConnectionAuditLog.occurred_at.desc(), ConnectionAuditLog.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_log_by_id(session: AsyncSession, *, tenant_id: str, log_id: int) -> ConnectionAuditLog | None:
    stmt = scoped(select(ConnectionAuditLog), ConnectionAuditLog, tenant_id).where(ConnectionAuditLog.id == log_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def stats_by_connection(
    session: AsyncSession,
    *,
    tenant_id: str,
    connection_id: str | None = None,
) -> list[dict[str, Any]]:
    # Aggregate outcome counts, mean latency and row totals per connection.
    stmt = scoped(
        select(
            ConnectionAuditLog.connection_id,
            func.count().label("total"),
            func.sum(case((ConnectionAuditLog.success.is_(True), 1), else_=0)).label("successful"),
            func.sum(case((ConnectionAuditLog.success.is_(False), 1), else_=0)).label("failed"),
            func.avg(func.coalesce(ConnectionAuditLog.execution_time_ms, 0)).label("avg_execution_ms"),
            func.sum(func.coalesce(ConnectionAuditLog.rows_affected, 0)).label("total_rows"),
        ),
        ConnectionAuditLog,
        tenant_id,
    )
    if connection_id:
        stmt = stmt.where(ConnectionAuditLog.connection_id == connection_id)
    stmt = stmt.group_by(ConnectionAuditLog.connection_id).order_by(ConnectionAuditLog.connection_id)
    result = await session.execute(stmt)
    return [
        {
            "connection_id": row.connection_id,
            "total": int(row.total or 0),
            "successful": int(row.successful or 0),
            "failed": int(row.failed or 0),
            "avg_execution_ms": float(row.avg_execution_ms or 0.0),
            "total_rows": int(row.total_rows or 0),
        }
        for row in result
    ]


async def delete_logs_before(session: AsyncSession, *, cutoff: datetime) -> int:
    result = await session.execute(delete(ConnectionAuditLog).where(ConnectionAuditLog.occurred_at < cutoff))
    return int(result.rowcount or 0)
