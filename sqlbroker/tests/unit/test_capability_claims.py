from __future__ import annotations

import pytest
from pydantic import ValidationError

from sqlbroker.services.tokens.claims import (
    WILDCARD,
    CapabilityClaims,
    PermissionGrant,
    full_access_grant,
    read_only_grant,
    read_write_grant,
)


def _claims(**overrides) -> CapabilityClaims:
    payload = {
        "sub": "tenant_a",
        "tenant_id": "tenant_a",
        "connection_ids": ["conn_1", "conn_2"],
        "permissions": {"read": True, "schema": True, "allowed_ops": ["select"]},
        "iat": 1_700_000_000,
        "exp": 1_700_003_600,
        "nbf": 1_700_000_000,
        "jti": "jti-1",
        "iss": "sqlbroker",
    }
    payload.update(overrides)
    return CapabilityClaims.model_validate(payload)


def test_allowed_ops_are_case_insensitive() -> None:
    grant = PermissionGrant(read=True, allowed_ops=["select", "Insert", "SELECT"])
    assert grant.allowed_ops == ("SELECT", "INSERT")
    assert grant.can_execute_operation("select")
    assert grant.can_execute_operation("INSERT")
    assert not grant.can_execute_operation("DELETE")


def test_empty_allow_list_denies_everything() -> None:
    grant = PermissionGrant(read=True, write=True)
    assert not grant.can_execute_operation("SELECT")


def test_wildcard_allows_any_operation() -> None:
    grant = full_access_grant()
    assert grant.allows_all_ops()
    assert grant.can_execute_operation("TRUNCATE")


def test_schema_flag_uses_wire_alias() -> None:
    grant = PermissionGrant.model_validate({"schema": True})
    assert grant.schema_access is True
    assert grant.to_claim()["schema"] is True
    with pytest.raises(ValidationError):
        PermissionGrant.model_validate({"read": True, "superuser": True})


def test_presets() -> None:
    assert read_only_grant().can_execute_operation("SELECT")
    assert not read_only_grant().write
    assert read_write_grant().can_execute_operation("DELETE")
    assert not read_write_grant().ddl


def test_connection_allow_list() -> None:
    claims = _claims()
    assert claims.has_access_to_connection("conn_1")
    assert not claims.has_access_to_connection("conn_3")
    assert _claims(connection_ids=[WILDCARD]).has_access_to_connection("anything")


def test_claims_reject_inconsistent_identity_and_lifetime() -> None:
    with pytest.raises(ValidationError):
        _claims(sub="tenant_b")
    with pytest.raises(ValidationError):
        _claims(exp=1_700_000_000)
    with pytest.raises(ValidationError):
        _claims(connection_ids=[])
    with pytest.raises(ValidationError):
        _claims(connection_ids="conn_1")


def test_payload_roundtrip_preserves_claims() -> None:
    claims = _claims()
    assert CapabilityClaims.model_validate(claims.to_payload()) == claims


def test_attenuated_grant_must_stay_within_parent() -> None:
    parent = PermissionGrant(read=True, schema_access=True, max_rows=100, allowed_ops=["SELECT"])
    assert PermissionGrant(read=True, max_rows=50, allowed_ops=["SELECT"]).is_within(parent)
    assert not PermissionGrant(read=True, write=True, max_rows=50, allowed_ops=["SELECT"]).is_within(parent)
    assert not PermissionGrant(read=True, max_rows=500, allowed_ops=["SELECT"]).is_within(parent)
    # Unbounded rows exceed any bounded parent.
    assert not PermissionGrant(read=True, max_rows=0, allowed_ops=["SELECT"]).is_within(parent)
    assert not PermissionGrant(read=True, max_rows=10, allowed_ops=["DELETE"]).is_within(parent)
    assert not PermissionGrant(read=True, max_rows=10, allowed_ops=[WILDCARD]).is_within(parent)
    assert read_write_grant().is_within(full_access_grant())


def test_covers_connections() -> None:
    claims = _claims()
    assert claims.covers_connections(["conn_1"])
    assert not claims.covers_connections(["conn_1", "conn_9"])
    assert not claims.covers_connections([WILDCARD])
    assert _claims(connection_ids=[WILDCARD]).covers_connections(["conn_9"])
