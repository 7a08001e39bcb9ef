from __future__ import annotations

from enum import Enum

from sqlbroker.core.errors import InvalidDialectError


class Dialect(str, Enum):
    POSTGRESQL = "postgresql"
    SQLITE = "sqlite"
    DUCKDB = "duckdb"

    @classmethod
    def parse(cls, value: str | Dialect) -> Dialect:
        if isinstance(value, Dialect):
            return value
        normalized = str(value or "").strip().lower()
        resolved = _ALIASES.get(normalized)
        if resolved is None:
            raise InvalidDialectError(f"unsupported dialect: {value!r}")
        return resolved


_ALIASES = {
    "postgresql": Dialect.POSTGRESQL,
    "postgres": Dialect.POSTGRESQL,
    "pg": Dialect.POSTGRESQL,
    "sqlite": Dialect.SQLITE,
    "sqlite3": Dialect.SQLITE,
    "duckdb": Dialect.DUCKDB,
}
