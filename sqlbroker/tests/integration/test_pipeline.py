from __future__ import annotations

import asyncio
from datetime import timedelta
import time

import duckdb
import pytest

from sqlbroker.core.errors import AuditWriteError
from sqlbroker.domain.models import ConnectionDefinition
from sqlbroker.persistence.db import SessionLocal
from sqlbroker.persistence.repos import tenants as tenants_repo
from sqlbroker.services.audit import hash_query
from sqlbroker.services.broker.adapters.base import PoolLimits
from sqlbroker.services.broker.manager import ConnectionBroker
from sqlbroker.services.pipeline import RequestContext
from sqlbroker.services.runtime import BrokerRuntime, build_runtime
from sqlbroker.services.tokens import service as token_service
from sqlbroker.services.tokens.claims import PermissionGrant, full_access_grant, read_only_grant, read_write_grant
from sqlbroker.services.tokens.signing import utc_now
from sqlbroker.tests.utils.broker import (
    RecordingFactory,
    audit_rows,
    create_connection,
    create_tenant,
    issue,
    make_signer,
)


_LIMITS = PoolLimits(max_open=2, max_idle=1, connect_timeout_s=2.0)


async def _runtime(factory: RecordingFactory | None = None) -> BrokerRuntime:
    broker = ConnectionBroker(limits=_LIMITS, factory=factory) if factory is not None else ConnectionBroker(limits=_LIMITS)
    return await build_runtime(broker=broker)


async def _context(tenant_id: str, connection_ids: list[str], grant: PermissionGrant) -> RequestContext:
    issued = await issue(tenant_id=tenant_id, connection_ids=connection_ids, permissions=grant)
    return RequestContext.from_claims(issued.claims, timeout_s=5.0)


@pytest.mark.asyncio
async def test_select_allowed_and_insert_denied_on_read_only_token() -> None:
    factory = RecordingFactory()
    runtime = await _runtime(factory)
    tenant_id = await create_tenant()
    connection_id = await create_connection(tenant_id=tenant_id, dsn="postgres://app:pw@db.internal:5432/orders")
    ctx = await _context(tenant_id, [connection_id], read_only_grant())

    selected = await runtime.pipeline.execute_query(ctx, connection_id, "SELECT 1")
    assert selected.success is True
    assert selected.row_count == 1
    assert selected.value.rows == [{"?column?": 1}]

    inserted = await runtime.pipeline.execute_query(ctx, connection_id, "INSERT INTO users (name) VALUES ('x')")
    assert inserted.success is False
    assert "access denied" in inserted.error
    assert inserted.error_code == "ACCESS_DENIED"

    adapter = factory.built[0][2]
    assert [call[0] for call in adapter.calls] == ["query"]
    rows = await audit_rows(tenant_id=tenant_id)
    assert [(row.action, row.success) for row in rows] == [("query", True), ("query", False)]
    assert rows[1].query_hash == hash_query("INSERT INTO users (name) VALUES ('x')")
    await runtime.close()


@pytest.mark.asyncio
async def test_connection_outside_allow_list_is_denied_and_audited_once() -> None:
    factory = RecordingFactory()
    runtime = await _runtime(factory)
    tenant_id = await create_tenant()
    allowed = await create_connection(tenant_id=tenant_id, dsn="postgres://u:p@h/allowed")
    other = await create_connection(tenant_id=tenant_id, dsn="postgres://u:p@h/other")
    ctx = await _context(tenant_id, [allowed], full_access_grant())

    result = await runtime.pipeline.execute_query(ctx, other, "SELECT 1")
    assert result.success is False
    assert result.error_code == "ACCESS_DENIED"
    assert factory.built == []
    rows = await audit_rows(tenant_id=tenant_id, connection_id=other)
    assert len(rows) == 1
    assert rows[0].success is False
    assert rows[0].error_code == "ACCESS_DENIED"


@pytest.mark.asyncio
async def test_missing_context_is_audited_without_tenant() -> None:
    runtime = await _runtime(RecordingFactory())
    marker = f"conn_anonymous_{time.monotonic_ns()}"
    result = await runtime.pipeline.execute_query(None, marker, "SELECT 1")
    assert result.success is False
    assert result.error_code == "UNAUTHORIZED"
    rows = await audit_rows(connection_id=marker)
    assert len(rows) == 1
    assert rows[0].tenant_id is None


@pytest.mark.asyncio
async def test_revoked_token_is_rejected_at_use_time() -> None:
    runtime = await _runtime(RecordingFactory())
    tenant_id = await create_tenant()
    connection_id = await create_connection(tenant_id=tenant_id, dsn="postgres://u:p@h/db")
    ctx = await _context(tenant_id, [connection_id], read_only_grant())
    async with SessionLocal() as session:
        await token_service.revoke_token(session, tenant_id=tenant_id, jti=ctx.claims.jti)

    result = await runtime.pipeline.execute_query(ctx, connection_id, "SELECT 1")
    assert result.success is False
    assert result.error_code == "TOKEN_REVOKED"
    rows = await audit_rows(tenant_id=tenant_id)
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_operation_allow_list_and_permission_flags() -> None:
    runtime = await _runtime(RecordingFactory())
    tenant_id = await create_tenant()
    connection_id = await create_connection(tenant_id=tenant_id, dsn="postgres://u:p@h/db")
    ctx = await _context(
        tenant_id,
        [connection_id],
        PermissionGrant(read=True, write=True, allowed_ops=["SELECT", "INSERT"]),
    )
    assert (await runtime.pipeline.execute_query(ctx, connection_id, "INSERT INTO t VALUES (1)")).success
    deleted = await runtime.pipeline.execute_query(ctx, connection_id, "DELETE FROM t")
    assert deleted.success is False
    assert "DELETE" in deleted.error
    # A data-modifying CTE needs the write verb it hides.
    hidden = await runtime.pipeline.execute_query(
        ctx, connection_id, "WITH d AS (DELETE FROM t RETURNING *) SELECT * FROM d"
    )
    assert hidden.success is False
    ddl = await runtime.pipeline.execute_query(ctx, connection_id, "DROP TABLE t")
    assert ddl.success is False
    assert len(await audit_rows(tenant_id=tenant_id)) == 4


@pytest.mark.asyncio
async def test_read_only_connection_rejects_writes() -> None:
    runtime = await _runtime(RecordingFactory())
    tenant_id = await create_tenant()
    connection_id = await create_connection(tenant_id=tenant_id, dsn="postgres://u:p@h/replica", read_only=True)
    ctx = await _context(tenant_id, [connection_id], read_write_grant())
    result = await runtime.pipeline.execute_query(ctx, connection_id, "UPDATE t SET a = 1")
    assert result.success is False
    assert "read-only" in result.error


@pytest.mark.asyncio
async def test_max_rows_truncates_results() -> None:
    factory = RecordingFactory(rows=[{"id": index} for index in range(5)])
    runtime = await _runtime(factory)
    tenant_id = await create_tenant()
    connection_id = await create_connection(tenant_id=tenant_id, dsn="postgres://u:p@h/db")
    ctx = await _context(tenant_id, [connection_id], read_only_grant(max_rows=2))
    result = await runtime.pipeline.execute_query(ctx, connection_id, "SELECT id FROM t")
    assert result.success is True
    assert result.row_count == 2
    assert result.value.truncated is True


@pytest.mark.asyncio
async def test_unknown_connection_for_wildcard_token() -> None:
    runtime = await _runtime(RecordingFactory())
    tenant_id = await create_tenant()
    ctx = await _context(tenant_id, ["*"], read_only_grant())
    result = await runtime.pipeline.execute_query(ctx, "conn_nothere", "SELECT 1")
    assert result.success is False
    assert result.error_code == "CREDENTIAL_UNAVAILABLE"


@pytest.mark.asyncio
async def test_unreachable_backend_reports_backend_unavailable() -> None:
    runtime = await _runtime(RecordingFactory(fail_health=True))
    tenant_id = await create_tenant()
    connection_id = await create_connection(tenant_id=tenant_id, dsn="postgres://u:p@down/db")
    ctx = await _context(tenant_id, [connection_id], read_only_grant())
    result = await runtime.pipeline.check_connection(ctx, connection_id)
    assert result.success is False
    assert result.error_code == "BACKEND_UNAVAILABLE"
    rows = await audit_rows(tenant_id=tenant_id)
    assert [row.action for row in rows] == ["connect"]


@pytest.mark.asyncio
async def test_deadline_expiry_is_a_failed_audited_result() -> None:
    runtime = await _runtime(RecordingFactory(delay_s=1.0))
    tenant_id = await create_tenant()
    connection_id = await create_connection(tenant_id=tenant_id, dsn="postgres://u:p@h/slow")
    issued = await issue(tenant_id=tenant_id, connection_ids=[connection_id], permissions=read_only_grant())
    ctx = RequestContext.from_claims(issued.claims, timeout_s=0.2)
    result = await runtime.pipeline.execute_query(ctx, connection_id, "SELECT pg_sleep(10)")
    assert result.success is False
    assert "deadline" in result.error
    rows = await audit_rows(tenant_id=tenant_id)
    assert len(rows) == 1
    assert rows[0].success is False


@pytest.mark.asyncio
async def test_cancellation_writes_audit_row_then_propagates() -> None:
    runtime = await _runtime(RecordingFactory(delay_s=2.0))
    tenant_id = await create_tenant()
    connection_id = await create_connection(tenant_id=tenant_id, dsn="postgres://u:p@h/slow")
    ctx = await _context(tenant_id, [connection_id], read_only_grant())

    task = asyncio.create_task(runtime.pipeline.execute_query(ctx, connection_id, "SELECT 1"))
    await asyncio.sleep(0.2)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    rows = await audit_rows(tenant_id=tenant_id)
    assert len(rows) == 1
    assert rows[0].error_code == "CANCELLED"


@pytest.mark.asyncio
async def test_audit_store_failure_fails_closed(monkeypatch) -> None:
    async def _broken_record(**kwargs):
        raise AuditWriteError("audit trail unavailable")

    monkeypatch.setattr("sqlbroker.services.pipeline.record_operation", _broken_record)
    runtime = await _runtime(RecordingFactory())
    tenant_id = await create_tenant()
    connection_id = await create_connection(tenant_id=tenant_id, dsn="postgres://u:p@h/db")
    ctx = await _context(tenant_id, [connection_id], read_only_grant())
    result = await runtime.pipeline.execute_query(ctx, connection_id, "SELECT 1")
    assert result.success is False
    assert result.value is None
    assert result.error_code == "AUDIT_UNAVAILABLE"


@pytest.mark.asyncio
async def test_schema_operations_require_schema_permission() -> None:
    runtime = await _runtime(RecordingFactory())
    tenant_id = await create_tenant()
    connection_id = await create_connection(tenant_id=tenant_id, dsn="postgres://u:p@h/db")
    no_schema = await _context(tenant_id, [connection_id], PermissionGrant(read=True, allowed_ops=["SELECT"]))
    denied = await runtime.pipeline.list_tables(no_schema, connection_id)
    assert denied.success is False
    assert denied.error_code == "ACCESS_DENIED"

    with_schema = await _context(tenant_id, [connection_id], read_only_grant())
    tables = await runtime.pipeline.list_tables(with_schema, connection_id)
    assert tables.success is True
    assert [table.name for table in tables.value] == ["users"]
    described = await runtime.pipeline.describe_table(with_schema, connection_id, "users")
    assert described.success is True
    assert described.value.columns[0].primary_key is True
    rows = await audit_rows(tenant_id=tenant_id)
    assert [row.action for row in rows] == ["schema", "schema", "schema"]


@pytest.mark.asyncio
async def test_sqlite_file_backend_end_to_end(tmp_path) -> None:
    runtime = await _runtime()
    tenant_id = await create_tenant()
    connection_id = await create_connection(
        tenant_id=tenant_id,
        dialect="sqlite",
        dsn=f"sqlite:///{tmp_path / 'orders.db'}",
    )
    ctx = await _context(tenant_id, [connection_id], full_access_grant())
    created = await runtime.pipeline.execute_query(
        ctx, connection_id, "CREATE TABLE orders (id INTEGER PRIMARY KEY, total REAL NOT NULL)"
    )
    assert created.success is True, created.error
    inserted = await runtime.pipeline.execute_query(
        ctx, connection_id, "INSERT INTO orders (total) VALUES (?), (?)", [9.5, 12.0]
    )
    assert inserted.success is True
    assert inserted.row_count == 2

    selected = await runtime.pipeline.execute_query(ctx, connection_id, "SELECT id, total FROM orders ORDER BY id")
    assert selected.value.columns == ["id", "total"]
    assert selected.value.rows == [{"id": 1, "total": 9.5}, {"id": 2, "total": 12.0}]

    tables = await runtime.pipeline.list_tables(ctx, connection_id)
    assert "orders" in [table.name for table in tables.value]
    described = await runtime.pipeline.describe_table(ctx, connection_id, "orders")
    columns = {column.name: column for column in described.value.columns}
    assert columns["id"].primary_key is True
    assert columns["total"].nullable is False

    failed = await runtime.pipeline.execute_query(ctx, connection_id, "SELECT * FROM missing_table")
    assert failed.success is False
    assert failed.error_code == "EXECUTION_FAILED"
    await runtime.close()


@pytest.mark.asyncio
async def test_expired_token_is_rejected_and_audited_once() -> None:
    factory = RecordingFactory()
    runtime = await _runtime(factory)
    tenant_id = await create_tenant()
    connection_id = await create_connection(tenant_id=tenant_id, dsn="postgres://u:p@h/db")
    async with SessionLocal() as session:
        issued = await token_service.issue_token(
            session,
            signer=make_signer(),
            tenant_id=tenant_id,
            connection_ids=[connection_id],
            permissions=read_only_grant(),
            ttl_s=600,
            clock=lambda: utc_now() - timedelta(hours=1),
        )
    ctx = RequestContext.from_claims(issued.claims, timeout_s=5.0)

    result = await runtime.pipeline.execute_query(ctx, connection_id, "SELECT 1")
    assert result.success is False
    assert result.error_code == "TOKEN_EXPIRED"
    assert factory.built == []
    rows = await audit_rows(tenant_id=tenant_id)
    assert len(rows) == 1
    assert rows[0].success is False
    assert rows[0].error_code == "TOKEN_EXPIRED"


@pytest.mark.asyncio
async def test_deactivated_tenant_cannot_resolve_credentials() -> None:
    factory = RecordingFactory()
    runtime = await _runtime(factory)
    tenant_id = await create_tenant()
    connection_id = await create_connection(tenant_id=tenant_id, dsn="postgres://u:p@h/db")
    ctx = await _context(tenant_id, [connection_id], read_only_grant())
    assert (await runtime.pipeline.execute_query(ctx, connection_id, "SELECT 1")).success is True

    async with SessionLocal() as session:
        assert await tenants_repo.deactivate_tenant(session, tenant_id) is True
        await session.commit()

    result = await runtime.pipeline.execute_query(ctx, connection_id, "SELECT 1")
    assert result.success is False
    assert result.error_code == "CREDENTIAL_UNAVAILABLE"
    rows = await audit_rows(tenant_id=tenant_id)
    assert [row.success for row in rows] == [True, False]
    await runtime.close()


@pytest.mark.asyncio
async def test_envelope_copied_to_another_tenant_does_not_decrypt() -> None:
    factory = RecordingFactory()
    runtime = await _runtime(factory)
    owner = await create_tenant()
    intruder = await create_tenant()
    owned = await create_connection(tenant_id=owner, dsn="postgres://owner:secret@h/db")
    target = await create_connection(tenant_id=intruder, dsn="postgres://intruder:pw@h/db")
    async with SessionLocal() as session:
        source = await session.get(ConnectionDefinition, owned)
        copy = await session.get(ConnectionDefinition, target)
        copy.dsn_ciphertext_hex = source.dsn_ciphertext_hex
        copy.wrapped_key_hex = source.wrapped_key_hex
        await session.commit()

    ctx = await _context(intruder, [target], read_only_grant())
    result = await runtime.pipeline.execute_query(ctx, target, "SELECT 1")
    assert result.success is False
    assert result.error_code == "CREDENTIAL_UNAVAILABLE"
    assert factory.built == []


@pytest.mark.asyncio
async def test_explain_analyze_cannot_smuggle_writes_on_duckdb(tmp_path) -> None:
    path = tmp_path / "events.duckdb"
    seed = duckdb.connect(str(path))
    seed.execute("CREATE TABLE events (id INTEGER)")
    seed.execute("INSERT INTO events VALUES (1), (2), (3)")
    seed.close()

    runtime = await _runtime()
    tenant_id = await create_tenant()
    connection_id = await create_connection(
        tenant_id=tenant_id,
        dialect="duckdb",
        dsn=f"duckdb:///{path}",
        read_only=True,
    )
    explain_only = await _context(
        tenant_id,
        [connection_id],
        PermissionGrant(read=True, write=False, allowed_ops=("SELECT", "EXPLAIN")),
    )
    any_verb = await _context(tenant_id, [connection_id], PermissionGrant(read=True, allowed_ops=("*",)))

    plain = await runtime.pipeline.execute_query(explain_only, connection_id, "DELETE FROM events")
    assert plain.error_code == "ACCESS_DENIED"
    wrapped = await runtime.pipeline.execute_query(explain_only, connection_id, "EXPLAIN ANALYZE DELETE FROM events")
    assert wrapped.success is False
    assert wrapped.error_code == "ACCESS_DENIED"
    unrestricted_ops = await runtime.pipeline.execute_query(
        any_verb, connection_id, "EXPLAIN ANALYZE DELETE FROM events"
    )
    assert unrestricted_ops.success is False
    assert unrestricted_ops.error_code == "ACCESS_DENIED"

    explained = await runtime.pipeline.execute_query(explain_only, connection_id, "EXPLAIN SELECT * FROM events")
    assert explained.success is True, explained.error
    remaining = await runtime.pipeline.execute_query(explain_only, connection_id, "SELECT count(*) AS n FROM events")
    assert remaining.value.rows == [{"n": 3}]
    await runtime.close()
