from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sqlbroker.core.errors import AuditWriteError
from sqlbroker.domain.models import ConnectionAuditLog
from sqlbroker.persistence.db import SessionLocal
from sqlbroker.services.crypto.utils import sha256_hex


logger = logging.getLogger(__name__)

_ERROR_MESSAGE_LIMIT = 1000


class AuditAction(str, Enum):
    QUERY = "query"
    SCHEMA = "schema"
    CONNECT = "connect"


def hash_query(query: str | None) -> str | None:
    # Persist only a digest so sensitive literals never reach the audit store.
    if query is None:
        return None
    return sha256_hex(query.encode("utf-8"))


async def record_operation(
    *,
    session_factory: async_sessionmaker[AsyncSession] = SessionLocal,
    tenant_id: str | None,
    connection_id: str | None,
    action: AuditAction,
    query: str | None = None,
    success: bool,
    error_message: str | None = None,
    error_code: str | None = None,
    execution_time_ms: int = 0,
    rows_affected: int = 0,
    occurred_at: datetime | None = None,
    best_effort: bool = False,
) -> ConnectionAuditLog | None:
    """Append one audit row for a brokered operation in its own transaction.

    Brokered operations fail closed: unless ``best_effort`` is set a failed
    write raises ``AuditWriteError`` so the caller never returns an unaudited
    result.
    """
    entry = ConnectionAuditLog(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        tenant_id=tenant_id,
        connection_id=connection_id,
        action=action.value,
        query_hash=hash_query(query),
        success=success,
        error_message=error_message[:_ERROR_MESSAGE_LIMIT] if error_message else None,
        error_code=error_code,
        execution_time_ms=max(0, int(execution_time_ms)),
        rows_affected=max(0, int(rows_affected)),
    )
    async with session_factory() as audit_session:
        try:
            audit_session.add(entry)
            await audit_session.commit()
        except SQLAlchemyError as exc:
            await audit_session.rollback()
            level = logger.warning if best_effort else logger.error
            level(
                "audit_write_failed action=%s tenant_id=%s connection_id=%s",
                action.value,
                tenant_id,
                connection_id,
                exc_info=exc,
            )
            if best_effort:
                return None
            raise AuditWriteError("audit trail unavailable") from exc
    return entry
