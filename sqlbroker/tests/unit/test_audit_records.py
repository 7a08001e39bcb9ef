from __future__ import annotations

import hashlib
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from sqlbroker.core.errors import AuditWriteError
from sqlbroker.services.audit import AuditAction, hash_query, record_operation
from sqlbroker.tests.utils.broker import audit_rows


class _BrokenSession:
    def add(self, entry) -> None:
        return None

    async def commit(self) -> None:
        raise OperationalError("INSERT", {}, Exception("disk I/O error"))

    async def rollback(self) -> None:
        return None

    async def __aenter__(self) -> "_BrokenSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        return None


def test_query_hash_is_sha256_hex() -> None:
    assert hash_query("SELECT 1") == hashlib.sha256(b"SELECT 1").hexdigest()
    assert hash_query(None) is None


@pytest.mark.asyncio
async def test_record_operation_persists_hash_not_text() -> None:
    tenant_id = f"tenant_{uuid4().hex[:8]}"
    await record_operation(
        tenant_id=tenant_id,
        connection_id="conn_a",
        action=AuditAction.QUERY,
        query="SELECT secret FROM vault WHERE pin = '1234'",
        success=True,
        execution_time_ms=12,
        rows_affected=3,
    )
    rows = await audit_rows(tenant_id=tenant_id)
    assert len(rows) == 1
    assert rows[0].query_hash == hash_query("SELECT secret FROM vault WHERE pin = '1234'")
    assert rows[0].action == "query"
    assert rows[0].rows_affected == 3


@pytest.mark.asyncio
async def test_record_operation_fails_closed() -> None:
    with pytest.raises(AuditWriteError):
        await record_operation(
            session_factory=_BrokenSession,
            tenant_id="tenant_a",
            connection_id="conn_a",
            action=AuditAction.CONNECT,
            success=True,
        )


@pytest.mark.asyncio
async def test_record_operation_best_effort_swallows_store_errors() -> None:
    result = await record_operation(
        session_factory=_BrokenSession,
        tenant_id="tenant_a",
        connection_id="conn_a",
        action=AuditAction.CONNECT,
        success=False,
        best_effort=True,
    )
    assert result is None
