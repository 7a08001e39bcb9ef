from __future__ import annotations

from sqlbroker.services.broker.adapters.base import Adapter, PoolLimits
from sqlbroker.services.broker.adapters.duckdb_adapter import DuckDBAdapter
from sqlbroker.services.broker.adapters.sqlalchemy_adapter import SQLAlchemyAdapter
from sqlbroker.services.broker.dialects import Dialect


def build_adapter(dialect: Dialect, dsn: str, limits: PoolLimits) -> Adapter:
    # Closed set of backends; Dialect.parse already rejected anything else.
    if dialect is Dialect.DUCKDB:
        return DuckDBAdapter(dsn, limits)
    return SQLAlchemyAdapter(dialect, dsn, limits)
