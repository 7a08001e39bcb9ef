from __future__ import annotations

import asyncio
import threading
from typing import Any, Callable, Sequence, TypeVar

import duckdb

from sqlbroker.core.errors import ExecutionError
from sqlbroker.services.broker.adapters.base import (
    ColumnInfo,
    ExecResult,
    IndexInfo,
    PoolLimits,
    QueryResult,
    TableInfo,
    TableSchema,
)
from sqlbroker.services.broker.dialects import Dialect


T = TypeVar("T")

_DEFAULT_SCHEMA = "main"
_ERROR_MESSAGE_LIMIT = 300


def _database_path(dsn: str) -> str:
    if dsn.startswith("duckdb://"):
        rest = dsn[len("duckdb://"):]
        # URL form follows SQLite: three slashes for relative paths, four for absolute.
        path = rest[1:] if rest.startswith("/") else rest
    else:
        path = dsn
    return path or ":memory:"


def _split_expressions(value: Any) -> list[str]:
    # duckdb_indexes() reports expressions as a list or as its "[a, b]" rendering.
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(item).strip('"') for item in value]
    text = str(value).strip().strip("[]")
    return [part.strip().strip("'\"") for part in text.split(",") if part.strip()]


class DuckDBAdapter:
    """DuckDB backend; blocking calls run on worker threads, bounded by ``max_open``."""

    dialect = Dialect.DUCKDB

    def __init__(self, dsn: str, limits: PoolLimits) -> None:
        self.limits = limits
        self._database = _database_path(dsn)
        self._conn: duckdb.DuckDBPyConnection | None = None
        self._conn_lock = threading.Lock()
        self._slots = asyncio.Semaphore(limits.max_open)

    def _cursor(self) -> duckdb.DuckDBPyConnection:
        # Each call gets its own cursor over one shared database handle.
        with self._conn_lock:
            if self._conn is None:
                self._conn = duckdb.connect(self._database)
            return self._conn.cursor()

    async def _call(self, fn: Callable[..., T], *args: Any) -> T:
        async with self._slots:
            try:
                return await asyncio.to_thread(fn, *args)
            except duckdb.Error as exc:
                lines = str(exc).strip().splitlines()
                raise ExecutionError((lines[0] if lines else "duckdb error")[:_ERROR_MESSAGE_LIMIT]) from exc

    @staticmethod
    def _execute(cursor: duckdb.DuckDBPyConnection, sql: str, params: Sequence[Any]) -> None:
        if params:
            cursor.execute(sql, list(params))
        else:
            cursor.execute(sql)

    def _query_sync(self, sql: str, params: Sequence[Any], max_rows: int) -> QueryResult:
        cursor = self._cursor()
        try:
            self._execute(cursor, sql, params)
            if cursor.description is None:
                return QueryResult(columns=[], rows=[])
            columns = [column[0] for column in cursor.description]
            fetched = cursor.fetchmany(max_rows + 1) if max_rows > 0 else cursor.fetchall()
        finally:
            cursor.close()
        truncated = max_rows > 0 and len(fetched) > max_rows
        if truncated:
            fetched = fetched[:max_rows]
        return QueryResult(
            columns=columns,
            rows=[dict(zip(columns, row)) for row in fetched],
            truncated=truncated,
        )

    def _execute_sync(self, sql: str, params: Sequence[Any]) -> ExecResult:
        cursor = self._cursor()
        try:
            self._execute(cursor, sql, params)
            # DML reports its affected row count as a single "Count" row.
            if cursor.description and str(cursor.description[0][0]).lower() == "count":
                row = cursor.fetchone()
                return ExecResult(rows_affected=int(row[0]) if row else 0)
            return ExecResult(rows_affected=0)
        finally:
            cursor.close()

    def _list_tables_sync(self, schema: str | None) -> list[TableInfo]:
        cursor = self._cursor()
        try:
            cursor.execute(
                "SELECT table_schema, table_name, table_type FROM information_schema.tables "
                "WHERE table_schema = ? ORDER BY table_name",
                [schema or _DEFAULT_SCHEMA],
            )
            rows = cursor.fetchall()
        finally:
            cursor.close()
        return [
            TableInfo(name=name, schema=table_schema, table_type="view" if table_type == "VIEW" else "table")
            for table_schema, name, table_type in rows
        ]

    def _describe_table_sync(self, name: str, schema: str | None) -> TableSchema:
        resolved_schema = schema or _DEFAULT_SCHEMA
        cursor = self._cursor()
        try:
            cursor.execute(
                "SELECT column_name, data_type, is_nullable, column_default FROM information_schema.columns "
                "WHERE table_schema = ? AND table_name = ? ORDER BY ordinal_position",
                [resolved_schema, name],
            )
            column_rows = cursor.fetchall()
            if not column_rows:
                raise ExecutionError(f"table not found: {name}")
            cursor.execute(
                "SELECT constraint_column_names FROM duckdb_constraints() "
                "WHERE schema_name = ? AND table_name = ? AND constraint_type = 'PRIMARY KEY'",
                [resolved_schema, name],
            )
            pk_columns = {column for (names,) in cursor.fetchall() for column in _split_expressions(names)}
            cursor.execute(
                "SELECT index_name, is_unique, expressions FROM duckdb_indexes() "
                "WHERE schema_name = ? AND table_name = ?",
                [resolved_schema, name],
            )
            index_rows = cursor.fetchall()
        finally:
            cursor.close()
        return TableSchema(
            name=name,
            schema=resolved_schema,
            columns=[
                ColumnInfo(
                    name=column_name,
                    data_type=str(data_type),
                    nullable=str(is_nullable).upper() == "YES",
                    default=None if default is None else str(default),
                    primary_key=column_name in pk_columns,
                )
                for column_name, data_type, is_nullable, default in column_rows
            ],
            indexes=[
                IndexInfo(name=index_name, columns=_split_expressions(expressions), unique=bool(is_unique))
                for index_name, is_unique, expressions in index_rows
            ],
        )

    def _close_sync(self) -> None:
        with self._conn_lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    async def query(self, sql: str, params: Sequence[Any] = (), *, max_rows: int = 0) -> QueryResult:
        return await self._call(self._query_sync, sql, params, max_rows)

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> ExecResult:
        return await self._call(self._execute_sync, sql, params)

    async def list_tables(self, schema: str | None = None) -> list[TableInfo]:
        return await self._call(self._list_tables_sync, schema)

    async def describe_table(self, name: str, schema: str | None = None) -> TableSchema:
        return await self._call(self._describe_table_sync, name, schema)

    async def health_check(self) -> None:
        await self._call(self._query_sync, "SELECT 1", (), 1)

    async def close(self) -> None:
        await asyncio.to_thread(self._close_sync)
