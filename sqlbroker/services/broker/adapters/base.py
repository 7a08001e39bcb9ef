from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

from sqlbroker.core.config import Settings, get_settings
from sqlbroker.services.broker.dialects import Dialect


@dataclass(frozen=True)
class PoolLimits:
    max_open: int = 5
    max_idle: int = 2
    idle_timeout_s: int = 300
    max_lifetime_s: int = 3600
    connect_timeout_s: float = 10.0

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> PoolLimits:
        settings = settings or get_settings()
        max_open = max(1, settings.broker_pool_max_open)
        return cls(
            max_open=max_open,
            max_idle=min(max_open, max(0, settings.broker_pool_max_idle)),
            idle_timeout_s=settings.broker_pool_idle_timeout_s,
            max_lifetime_s=settings.broker_pool_max_lifetime_s,
            connect_timeout_s=settings.broker_connect_timeout_s,
        )


@dataclass
class QueryResult:
    columns: list[str]
    rows: list[dict[str, Any]]
    truncated: bool = False

    @property
    def row_count(self) -> int:
        return len(self.rows)


@dataclass
class ExecResult:
    rows_affected: int


@dataclass
class TableInfo:
    name: str
    schema: str | None = None
    table_type: str = "table"


@dataclass
class ColumnInfo:
    name: str
    data_type: str
    nullable: bool = True
    default: str | None = None
    primary_key: bool = False


@dataclass
class IndexInfo:
    name: str | None
    columns: list[str] = field(default_factory=list)
    unique: bool = False


@dataclass
class TableSchema:
    name: str
    schema: str | None
    columns: list[ColumnInfo] = field(default_factory=list)
    indexes: list[IndexInfo] = field(default_factory=list)


class Adapter(Protocol):
    """Dialect-specific backend connector owned by the connection broker.

    ``params`` are positional and use the driver's native placeholder style
    (``$1`` for PostgreSQL, ``?`` for SQLite and DuckDB).
    """

    dialect: Dialect

    async def query(self, sql: str, params: Sequence[Any] = (), *, max_rows: int = 0) -> QueryResult:
        ...

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> ExecResult:
        ...

    async def list_tables(self, schema: str | None = None) -> list[TableInfo]:
        ...

    async def describe_table(self, name: str, schema: str | None = None) -> TableSchema:
        ...

    async def health_check(self) -> None:
        ...

    async def close(self) -> None:
        ...
