from __future__ import annotations

from typing import Any, Sequence

from sqlalchemy import inspect
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError, NoSuchTableError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from sqlbroker.core.errors import BackendUnavailableError, ExecutionError
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


_ERROR_MESSAGE_LIMIT = 300


def _driver_message(exc: SQLAlchemyError) -> str:
    # Prefer the DBAPI message; the SQLAlchemy wrapper text echoes the statement.
    source = getattr(exc, "orig", None) or exc
    message = str(source).strip().splitlines()
    text = message[0] if message else exc.__class__.__name__
    return text[:_ERROR_MESSAGE_LIMIT]


def _postgres_url(dsn: str) -> str:
    scheme, sep, _rest = dsn.partition("://")
    if not sep or scheme.split("+")[0] not in {"postgres", "postgresql"}:
        raise BackendUnavailableError("postgresql dsn must be a postgres:// URL")
    url = make_url(f"postgresql+asyncpg://{_rest}")
    # asyncpg takes ``ssl`` where libpq DSNs carry ``sslmode``.
    query = dict(url.query)
    if "sslmode" in query:
        query["ssl"] = query.pop("sslmode")
    return url.set(query=query).render_as_string(hide_password=False)


def _sqlite_url(dsn: str) -> tuple[str, bool]:
    if "://" in dsn:
        _scheme, _sep, rest = dsn.partition("://")
        path = rest[1:] if rest.startswith("/") else rest
    else:
        path = dsn
    in_memory = path in {"", ":memory:"}
    return f"sqlite+aiosqlite:///{':memory:' if in_memory else path}", in_memory


class SQLAlchemyAdapter:
    """PostgreSQL and SQLite backends on SQLAlchemy's async engine."""

    def __init__(self, dialect: Dialect, dsn: str, limits: PoolLimits) -> None:
        self.dialect = dialect
        self.limits = limits
        self._engine = self._create_engine(dialect, dsn, limits)

    @staticmethod
    def _create_engine(dialect: Dialect, dsn: str, limits: PoolLimits) -> AsyncEngine:
        engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
        try:
            if dialect is Dialect.POSTGRESQL:
                url = _postgres_url(dsn)
                # Persistent connections are capped at max_idle; overflow closes on return.
                engine_kwargs["pool_size"] = max(1, limits.max_idle)
                engine_kwargs["max_overflow"] = max(0, limits.max_open - max(1, limits.max_idle))
                engine_kwargs["pool_recycle"] = min(limits.max_lifetime_s, limits.idle_timeout_s) or -1
                engine_kwargs["pool_timeout"] = limits.connect_timeout_s
                engine_kwargs["connect_args"] = {"timeout": limits.connect_timeout_s}
            elif dialect is Dialect.SQLITE:
                url, in_memory = _sqlite_url(dsn)
                if in_memory:
                    engine_kwargs["poolclass"] = StaticPool
            else:
                raise BackendUnavailableError(f"{dialect.value} is not served by the SQLAlchemy adapter")
            return create_async_engine(url, **engine_kwargs)
        except ArgumentError as exc:
            raise BackendUnavailableError(f"invalid {dialect.value} dsn") from exc

    async def _run(self, conn: AsyncConnection, sql: str, params: Sequence[Any]):
        if params:
            return await conn.exec_driver_sql(sql, tuple(params))
        return await conn.exec_driver_sql(sql)

    async def query(self, sql: str, params: Sequence[Any] = (), *, max_rows: int = 0) -> QueryResult:
        try:
            # Reads never commit; the connection rolls back on release.
            async with self._engine.connect() as conn:
                result = await self._run(conn, sql, params)
                if not result.returns_rows:
                    return QueryResult(columns=[], rows=[])
                columns = list(result.keys())
                fetched = result.fetchmany(max_rows + 1) if max_rows > 0 else result.fetchall()
        except SQLAlchemyError as exc:
            raise ExecutionError(_driver_message(exc)) from exc
        truncated = max_rows > 0 and len(fetched) > max_rows
        if truncated:
            fetched = fetched[:max_rows]
        return QueryResult(columns=columns, rows=[dict(row._mapping) for row in fetched], truncated=truncated)

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> ExecResult:
        try:
            async with self._engine.begin() as conn:
                result = await self._run(conn, sql, params)
                rowcount = result.rowcount
        except SQLAlchemyError as exc:
            raise ExecutionError(_driver_message(exc)) from exc
        return ExecResult(rows_affected=max(int(rowcount or 0), 0))

    async def list_tables(self, schema: str | None = None) -> list[TableInfo]:
        def _list(sync_conn) -> list[TableInfo]:
            inspector = inspect(sync_conn)
            tables = [TableInfo(name=name, schema=schema) for name in inspector.get_table_names(schema=schema)]
            tables.extend(
                TableInfo(name=name, schema=schema, table_type="view")
                for name in inspector.get_view_names(schema=schema)
            )
            return tables

        try:
            async with self._engine.connect() as conn:
                return await conn.run_sync(_list)
        except SQLAlchemyError as exc:
            raise ExecutionError(_driver_message(exc)) from exc

    async def describe_table(self, name: str, schema: str | None = None) -> TableSchema:
        def _describe(sync_conn) -> TableSchema:
            inspector = inspect(sync_conn)
            if not inspector.has_table(name, schema=schema):
                raise NoSuchTableError(name)
            pk_columns = set(inspector.get_pk_constraint(name, schema=schema).get("constrained_columns") or [])
            columns = [
                ColumnInfo(
                    name=column["name"],
                    data_type=str(column["type"]),
                    nullable=bool(column.get("nullable", True)),
                    default=None if column.get("default") is None else str(column["default"]),
                    primary_key=column["name"] in pk_columns,
                )
                for column in inspector.get_columns(name, schema=schema)
            ]
            indexes = [
                IndexInfo(
                    name=index.get("name"),
                    columns=[column for column in index.get("column_names") or [] if column],
                    unique=bool(index.get("unique")),
                )
                for index in inspector.get_indexes(name, schema=schema)
            ]
            return TableSchema(name=name, schema=schema, columns=columns, indexes=indexes)

        try:
            async with self._engine.connect() as conn:
                return await conn.run_sync(_describe)
        except NoSuchTableError as exc:
            raise ExecutionError(f"table not found: {name}") from exc
        except SQLAlchemyError as exc:
            raise ExecutionError(_driver_message(exc)) from exc

    async def health_check(self) -> None:
        async with self._engine.connect() as conn:
            await conn.exec_driver_sql("SELECT 1")

    async def close(self) -> None:
        await self._engine.dispose()
