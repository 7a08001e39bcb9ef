from __future__ import annotations

from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


WILDCARD = "*"


def _normalize_ops(values: Iterable[str]) -> tuple[str, ...]:
    # Operation names compare case-insensitively; keep first-seen order.
    seen: dict[str, None] = {}
    for value in values:
        op = str(value).strip().upper()
        if op:
            seen.setdefault(op, None)
    return tuple(seen)


class PermissionGrant(BaseModel):
    """Permission set carried by a capability token.

    An empty ``allowed_ops`` denies every operation and a ``"*"`` entry allows
    all of them. ``max_rows == 0`` means unbounded.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    read: bool = False
    write: bool = False
    schema_access: bool = Field(default=False, alias="schema")
    ddl: bool = False
    max_rows: int = Field(default=0, ge=0)
    allowed_ops: tuple[str, ...] = ()

    @field_validator("allowed_ops", mode="before")
    @classmethod
    def _ops(cls, value: Any) -> tuple[str, ...]:
        if value is None:
            return ()
        if isinstance(value, str):
            value = [value]
        return _normalize_ops(value)

    def allows_all_ops(self) -> bool:
        return WILDCARD in self.allowed_ops

    def can_execute_operation(self, op: str) -> bool:
        if not self.allowed_ops:
            return False
        return self.allows_all_ops() or op.strip().upper() in self.allowed_ops

    def is_within(self, parent: PermissionGrant) -> bool:
        # A derived grant never exceeds the grant of the token that issued it.
        if self.read and not parent.read:
            return False
        if self.write and not parent.write:
            return False
        if self.schema_access and not parent.schema_access:
            return False
        if self.ddl and not parent.ddl:
            return False
        if parent.max_rows > 0 and (self.max_rows == 0 or self.max_rows > parent.max_rows):
            return False
        if parent.allows_all_ops():
            return True
        return all(op in parent.allowed_ops for op in self.allowed_ops)

    def to_claim(self) -> dict[str, Any]:
        payload = self.model_dump(by_alias=True)
        payload["allowed_ops"] = list(self.allowed_ops)
        return payload


def read_only_grant(max_rows: int = 1000) -> PermissionGrant:
    return PermissionGrant(read=True, schema_access=True, max_rows=max_rows, allowed_ops=("SELECT",))


def read_write_grant() -> PermissionGrant:
    return PermissionGrant(
        read=True,
        write=True,
        schema_access=True,
        allowed_ops=("SELECT", "INSERT", "UPDATE", "DELETE"),
    )


def full_access_grant() -> PermissionGrant:
    return PermissionGrant(read=True, write=True, schema_access=True, ddl=True, allowed_ops=(WILDCARD,))


GRANT_PRESETS = {
    "read_only": read_only_grant,
    "read_write": read_write_grant,
    "full": full_access_grant,
}


class CapabilityClaims(BaseModel):
    """Decoded claim set of a capability token. Never mutated after issuance."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    sub: str = Field(min_length=1)
    tenant_id: str = Field(min_length=1)
    connection_ids: tuple[str, ...] = Field(min_length=1)
    permissions: PermissionGrant
    iat: int
    exp: int
    nbf: int
    jti: str = Field(min_length=1)
    iss: str = Field(min_length=1)

    @field_validator("connection_ids", mode="before")
    @classmethod
    def _connection_ids(cls, value: Any) -> Any:
        if isinstance(value, str):
            raise ValueError("connection_ids must be a list")
        return value

    @model_validator(mode="after")
    def _consistent(self) -> CapabilityClaims:
        if self.sub != self.tenant_id:
            raise ValueError("subject must equal tenant_id")
        if self.exp <= self.iat:
            raise ValueError("exp must be after iat")
        if any(not connection_id for connection_id in self.connection_ids):
            raise ValueError("connection_ids must not contain empty values")
        return self

    def has_wildcard_connection(self) -> bool:
        return WILDCARD in self.connection_ids

    def has_access_to_connection(self, connection_id: str) -> bool:
        return self.has_wildcard_connection() or connection_id in self.connection_ids

    def can_execute_operation(self, op: str) -> bool:
        return self.permissions.can_execute_operation(op)

    def covers_connections(self, requested: Iterable[str]) -> bool:
        # A wildcard request is only coverable by a wildcard holder.
        if self.has_wildcard_connection():
            return True
        return all(connection_id != WILDCARD and connection_id in self.connection_ids for connection_id in requested)

    def to_payload(self) -> dict[str, Any]:
        return {
            "sub": self.sub,
            "tenant_id": self.tenant_id,
            "connection_ids": list(self.connection_ids),
            "permissions": self.permissions.to_claim(),
            "iat": self.iat,
            "exp": self.exp,
            "nbf": self.nbf,
            "jti": self.jti,
            "iss": self.iss,
        }
