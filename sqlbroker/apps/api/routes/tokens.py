from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, Field, model_validator
from sqlalchemy.ext.asyncio import AsyncSession

from sqlbroker.apps.api.deps import get_db, get_runtime, require_admin, require_capability
from sqlbroker.core.config import get_settings
from sqlbroker.domain.models import IssuedToken, as_utc
from sqlbroker.persistence.repos import tokens as tokens_repo
from sqlbroker.services.runtime import BrokerRuntime
from sqlbroker.services.tokens import service as token_service
from sqlbroker.services.tokens.claims import GRANT_PRESETS, CapabilityClaims, PermissionGrant


router = APIRouter(tags=["tokens"])


class TokenIssueRequest(BaseModel):
    connection_ids: list[str] = Field(min_length=1)
    permissions: PermissionGrant | None = None
    preset: Literal["read_only", "read_write", "full"] | None = None
    ttl_s: int | None = None

    @model_validator(mode="after")
    def _one_grant_source(self) -> TokenIssueRequest:
        if (self.permissions is None) == (self.preset is None):
            raise ValueError("provide exactly one of permissions or preset")
        return self

    def grant(self) -> PermissionGrant:
        if self.preset is not None:
            return GRANT_PRESETS[self.preset]()
        return self.permissions

    def ttl(self) -> int:
        return self.ttl_s if self.ttl_s is not None else get_settings().token_default_ttl_s


class TokenIssueResponse(BaseModel):
    token: str
    token_id: str
    tenant_id: str
    connection_ids: list[str]
    permissions: dict
    expires_at: str


class TokenRecordResponse(BaseModel):
    token_id: str
    tenant_id: str
    connection_ids: list[str]
    issued_at: str
    expires_at: str
    revoked: bool
    revoked_at: str | None
    is_expired: bool


class TokenPage(BaseModel):
    items: list[TokenRecordResponse]
    active_count: int
    next_offset: int | None


def _issue_response(issued: token_service.IssuedCapability) -> TokenIssueResponse:
    return TokenIssueResponse(
        token=issued.token,
        token_id=issued.claims.jti,
        tenant_id=issued.claims.tenant_id,
        connection_ids=list(issued.claims.connection_ids),
        permissions=issued.claims.permissions.to_claim(),
        expires_at=issued.expires_at.isoformat(),
    )


def _record_response(record: IssuedToken) -> TokenRecordResponse:
    return TokenRecordResponse(
        token_id=record.jti,
        tenant_id=record.tenant_id,
        connection_ids=list(record.connection_ids or []),
        issued_at=as_utc(record.issued_at).isoformat(),
        expires_at=as_utc(record.expires_at).isoformat(),
        revoked=record.revoked,
        revoked_at=as_utc(record.revoked_at).isoformat() if record.revoked_at else None,
        is_expired=token_service.is_expired(record),
    )


@router.post(
    "/tenants/{tenant_id}/tokens",
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)],
)
async def issue_bootstrap_token(
    tenant_id: str,
    payload: TokenIssueRequest,
    db: AsyncSession = Depends(get_db),
    runtime: BrokerRuntime = Depends(get_runtime),
) -> TokenIssueResponse:
    # Operator-authenticated issuance: the root of a tenant's delegation chain.
    issued = await token_service.issue_token(
        db,
        signer=runtime.signer,
        tenant_id=tenant_id,
        connection_ids=payload.connection_ids,
        permissions=payload.grant(),
        ttl_s=payload.ttl(),
    )
    return _issue_response(issued)


@router.post(
    "/tenants/{tenant_id}/tokens/{token_id}/revoke",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_admin)],
)
async def revoke_token_as_operator(tenant_id: str, token_id: str, db: AsyncSession = Depends(get_db)) -> Response:
    await token_service.revoke_token(db, tenant_id=tenant_id, jti=token_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/tokens", status_code=status.HTTP_201_CREATED)
async def derive_token(
    payload: TokenIssueRequest,
    claims: CapabilityClaims = Depends(require_capability),
    db: AsyncSession = Depends(get_db),
    runtime: BrokerRuntime = Depends(get_runtime),
) -> TokenIssueResponse:
    # A token holder mints an attenuated token for its own tenant.
    issued = await token_service.issue_token(
        db,
        signer=runtime.signer,
        tenant_id=claims.tenant_id,
        connection_ids=payload.connection_ids,
        permissions=payload.grant(),
        ttl_s=payload.ttl(),
        parent=claims,
    )
    return _issue_response(issued)


@router.get("/tokens")
async def list_tokens(
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    claims: CapabilityClaims = Depends(require_capability),
    db: AsyncSession = Depends(get_db),
) -> TokenPage:
    records = await tokens_repo.list_tokens_by_tenant(db, tenant_id=claims.tenant_id, offset=offset, limit=limit + 1)
    next_offset = None
    if len(records) > limit:
        records = records[:limit]
        next_offset = offset + limit
    active = await tokens_repo.count_active_tokens_by_tenant(db, tenant_id=claims.tenant_id)
    return TokenPage(
        items=[_record_response(record) for record in records],
        active_count=active,
        next_offset=next_offset,
    )


@router.delete("/tokens/{token_id}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_token(
    token_id: str,
    claims: CapabilityClaims = Depends(require_capability),
    db: AsyncSession = Depends(get_db),
) -> Response:
    # Holders may revoke any token of their own tenant, including the one presented.
    await token_service.revoke_token(db, tenant_id=claims.tenant_id, jti=token_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
