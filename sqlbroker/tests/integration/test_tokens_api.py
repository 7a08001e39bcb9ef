from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from sqlbroker.apps.api.main import create_app
from sqlbroker.services.broker.manager import ConnectionBroker
from sqlbroker.services.runtime import build_runtime
from sqlbroker.tests.utils.broker import ADMIN_HEADERS, RecordingFactory, bearer, create_connection, create_tenant


async def _app():
    runtime = await build_runtime(broker=ConnectionBroker(factory=RecordingFactory()))
    return create_app(runtime=runtime)


@pytest.mark.asyncio
async def test_bootstrap_issue_and_validation() -> None:
    app = await _app()
    tenant_id = await create_tenant()
    connection_id = await create_connection(tenant_id=tenant_id, dsn="postgres://u:p@h/db")
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        issued = await client.post(
            f"/v1/tenants/{tenant_id}/tokens",
            json={"connection_ids": [connection_id], "preset": "read_only", "ttl_s": 600},
            headers=ADMIN_HEADERS,
        )
        assert issued.status_code == 201
        data = issued.json()["data"]
        assert data["tenant_id"] == tenant_id
        assert data["connection_ids"] == [connection_id]
        assert data["permissions"]["allowed_ops"] == ["SELECT"]
        assert data["token"].count(".") == 2

        both = await client.post(
            f"/v1/tenants/{tenant_id}/tokens",
            json={"connection_ids": [connection_id], "preset": "full", "permissions": {"read": True}},
            headers=ADMIN_HEADERS,
        )
        assert both.status_code == 422

        short = await client.post(
            f"/v1/tenants/{tenant_id}/tokens",
            json={"connection_ids": [connection_id], "preset": "read_only", "ttl_s": 30},
            headers=ADMIN_HEADERS,
        )
        assert short.status_code == 400
        assert short.json()["error"]["code"] == "INVALID_TOKEN_REQUEST"

        unauthenticated = await client.post(
            f"/v1/tenants/{tenant_id}/tokens",
            json={"connection_ids": [connection_id], "preset": "read_only"},
        )
        assert unauthenticated.status_code == 401

        unknown_tenant = await client.post(
            "/v1/tenants/tenant_missing/tokens",
            json={"connection_ids": ["*"], "preset": "read_only"},
            headers=ADMIN_HEADERS,
        )
        assert unknown_tenant.status_code == 404


@pytest.mark.asyncio
async def test_derived_tokens_are_attenuated() -> None:
    app = await _app()
    tenant_id = await create_tenant()
    first = await create_connection(tenant_id=tenant_id, dsn="postgres://u:p@h/one")
    second = await create_connection(tenant_id=tenant_id, dsn="postgres://u:p@h/two")
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        parent = (
            await client.post(
                f"/v1/tenants/{tenant_id}/tokens",
                json={"connection_ids": [first, second], "preset": "read_write", "ttl_s": 3600},
                headers=ADMIN_HEADERS,
            )
        ).json()["data"]

        narrowed = await client.post(
            "/v1/tokens",
            json={
                "connection_ids": [first],
                "permissions": {"read": True, "schema": True, "max_rows": 10, "allowed_ops": ["select"]},
                "ttl_s": 300,
            },
            headers=bearer(parent["token"]),
        )
        assert narrowed.status_code == 201
        assert narrowed.json()["data"]["permissions"]["max_rows"] == 10

        escalated = await client.post(
            "/v1/tokens",
            json={"connection_ids": [first], "preset": "full", "ttl_s": 300},
            headers=bearer(parent["token"]),
        )
        assert escalated.status_code == 403
        assert escalated.json()["error"]["code"] == "ACCESS_DENIED"

        widened = await client.post(
            "/v1/tokens",
            json={"connection_ids": [first], "preset": "read_only", "ttl_s": 300},
            headers=bearer(narrowed.json()["data"]["token"]),
        )
        # max_rows 1000 exceeds the parent's bound of 10.
        assert widened.status_code == 403

        no_auth = await client.post("/v1/tokens", json={"connection_ids": [first], "preset": "read_only"})
        assert no_auth.status_code == 401


@pytest.mark.asyncio
async def test_list_and_revoke_own_tokens() -> None:
    app = await _app()
    tenant_id = await create_tenant()
    connection_id = await create_connection(tenant_id=tenant_id, dsn="postgres://u:p@h/db")
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        holder = (
            await client.post(
                f"/v1/tenants/{tenant_id}/tokens",
                json={"connection_ids": [connection_id], "preset": "read_only"},
                headers=ADMIN_HEADERS,
            )
        ).json()["data"]
        spare = (
            await client.post(
                f"/v1/tenants/{tenant_id}/tokens",
                json={"connection_ids": [connection_id], "preset": "read_only"},
                headers=ADMIN_HEADERS,
            )
        ).json()["data"]

        listed = await client.get("/v1/tokens", headers=bearer(holder["token"]))
        assert listed.status_code == 200
        page = listed.json()["data"]
        assert {item["token_id"] for item in page["items"]} == {holder["token_id"], spare["token_id"]}
        assert page["active_count"] == 2
        assert page["next_offset"] is None

        revoked = await client.delete(f"/v1/tokens/{spare['token_id']}", headers=bearer(holder["token"]))
        assert revoked.status_code == 204
        rejected = await client.get("/v1/tokens", headers=bearer(spare["token"]))
        assert rejected.status_code == 401
        assert rejected.json()["error"]["code"] == "TOKEN_REVOKED"

        missing = await client.delete("/v1/tokens/does-not-exist", headers=bearer(holder["token"]))
        assert missing.status_code == 404

        operator_revoke = await client.post(
            f"/v1/tenants/{tenant_id}/tokens/{holder['token_id']}/revoke", headers=ADMIN_HEADERS
        )
        assert operator_revoke.status_code == 204
        after = await client.get("/v1/tokens", headers=bearer(holder["token"]))
        assert after.status_code == 401
