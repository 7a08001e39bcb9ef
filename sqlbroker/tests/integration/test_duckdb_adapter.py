from __future__ import annotations

import pytest

from sqlbroker.core.errors import ExecutionError
from sqlbroker.services.broker.adapters.base import PoolLimits
from sqlbroker.services.broker.adapters.duckdb_adapter import DuckDBAdapter
from sqlbroker.services.broker.adapters.factory import build_adapter
from sqlbroker.services.broker.dialects import Dialect


_LIMITS = PoolLimits(max_open=2, max_idle=1)


@pytest.mark.asyncio
async def test_duckdb_roundtrip(tmp_path) -> None:
    adapter = build_adapter(Dialect.DUCKDB, f"duckdb:///{tmp_path / 'analytics.duckdb'}", _LIMITS)
    assert isinstance(adapter, DuckDBAdapter)
    try:
        await adapter.health_check()
        await adapter.execute("CREATE TABLE events (id INTEGER PRIMARY KEY, kind VARCHAR NOT NULL)")
        await adapter.execute("CREATE UNIQUE INDEX events_kind_idx ON events (kind)")
        inserted = await adapter.execute("INSERT INTO events VALUES (?, ?), (?, ?)", [1, "open", 2, "close"])
        assert inserted.rows_affected == 2

        result = await adapter.query("SELECT id, kind FROM events ORDER BY id", max_rows=1)
        assert result.columns == ["id", "kind"]
        assert result.rows == [{"id": 1, "kind": "open"}]
        assert result.truncated is True

        tables = await adapter.list_tables()
        assert [table.name for table in tables] == ["events"]

        described = await adapter.describe_table("events")
        columns = {column.name: column for column in described.columns}
        assert columns["id"].primary_key is True
        assert columns["kind"].nullable is False
        assert any(index.name == "events_kind_idx" and index.unique for index in described.indexes)
    finally:
        await adapter.close()


@pytest.mark.asyncio
async def test_duckdb_errors_map_to_execution_error() -> None:
    adapter = DuckDBAdapter(":memory:", _LIMITS)
    try:
        with pytest.raises(ExecutionError):
            await adapter.query("SELECT * FROM nowhere")
        with pytest.raises(ExecutionError, match="table not found"):
            await adapter.describe_table("nowhere")
    finally:
        await adapter.close()
