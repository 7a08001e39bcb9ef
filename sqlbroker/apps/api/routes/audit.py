from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from sqlbroker.apps.api.deps import get_db, require_capability
from sqlbroker.domain.models import ConnectionAuditLog, as_utc
from sqlbroker.persistence.repos import audit as audit_repo
from sqlbroker.services.tokens.claims import CapabilityClaims


router = APIRouter(prefix="/audit", tags=["audit"])


class AuditLogResponse(BaseModel):
    id: int
    tenant_id: str | None
    connection_id: str | None
    action: str
    query_hash: str | None
    success: bool
    error_message: str | None
    error_code: str | None
    execution_time_ms: int
    rows_affected: int
    occurred_at: str


class AuditLogPage(BaseModel):
    items: list[AuditLogResponse]
    next_offset: int | None


class ConnectionStats(BaseModel):
    connection_id: str | None
    total: int
    successful: int
    failed: int
    avg_execution_ms: float
    total_rows: int


def _to_response(entry: ConnectionAuditLog) -> AuditLogResponse:
    # Serialize audit datetimes to ISO 8601 for API clients.
    return AuditLogResponse(
        id=entry.id,
        tenant_id=entry.tenant_id,
        connection_id=entry.connection_id,
        action=entry.action,
        query_hash=entry.query_hash,
        success=entry.success,
        error_message=entry.error_message,
        error_code=entry.error_code,
        execution_time_ms=entry.execution_time_ms,
        rows_affected=entry.rows_affected,
        occurred_at=as_utc(entry.occurred_at).isoformat(),
    )


@router.get("/logs")
async def list_audit_logs(
    connection_id: str | None = None,
    action: str | None = None,
    success: bool | None = None,
    occurred_from: datetime | None = Query(default=None, alias="from"),
    occurred_to: datetime | None = Query(default=None, alias="to"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    claims: CapabilityClaims = Depends(require_capability),
    db: AsyncSession = Depends(get_db),
) -> AuditLogPage:
    # Audit visibility is always scoped to the token's tenant.
    try:
        entries = await audit_repo.list_logs(
            db,
            tenant_id=claims.tenant_id,
            connection_id=connection_id,
            action=action,
            success=success,
            occurred_from=occurred_from,
            occurred_to=occurred_to,
            offset=offset,
            limit=limit + 1,
        )
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching audit logs") from exc

    next_offset = None
    if len(entries) > limit:
        entries = entries[:limit]
        next_offset = offset + limit
    return AuditLogPage(items=[_to_response(entry) for entry in entries], next_offset=next_offset)


@router.get("/logs/{log_id}")
async def get_audit_log(
    log_id: int,
    claims: CapabilityClaims = Depends(require_capability),
    db: AsyncSession = Depends(get_db),
) -> AuditLogResponse:
    try:
        entry = await audit_repo.get_log_by_id(db, tenant_id=claims.tenant_id, log_id=log_id)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching audit log") from exc
    if entry is None:
        raise HTTPException(status_code=404, detail="Audit log not found")
    return _to_response(entry)


@router.get("/stats")
async def audit_stats(
    connection_id: str | None = None,
    claims: CapabilityClaims = Depends(require_capability),
    db: AsyncSession = Depends(get_db),
) -> list[ConnectionStats]:
    try:
        rows = await audit_repo.stats_by_connection(db, tenant_id=claims.tenant_id, connection_id=connection_id)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while computing audit stats") from exc
    return [ConnectionStats(**row) for row in rows]
