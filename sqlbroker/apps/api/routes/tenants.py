from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from sqlbroker.apps.api.deps import get_db, get_runtime, require_admin
from sqlbroker.domain.models import Tenant
from sqlbroker.persistence.repos import tenants as tenants_repo
from sqlbroker.services.credentials import purge_tenant
from sqlbroker.services.runtime import BrokerRuntime


router = APIRouter(prefix="/tenants", tags=["tenants"], dependencies=[Depends(require_admin)])


class TenantCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)


class TenantUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)


class TenantResponse(BaseModel):
    id: str
    name: str
    is_active: bool
    created_at: str
    updated_at: str


def _to_response(tenant: Tenant) -> TenantResponse:
    return TenantResponse(
        id=tenant.id,
        name=tenant.name,
        is_active=tenant.is_active,
        created_at=tenant.created_at.isoformat(),
        updated_at=tenant.updated_at.isoformat(),
    )


def _not_found() -> HTTPException:
    return HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Tenant not found"})


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_tenant(payload: TenantCreateRequest, db: AsyncSession = Depends(get_db)) -> TenantResponse:
    tenant = await tenants_repo.create_tenant(db, name=payload.name)
    await db.commit()
    return _to_response(tenant)


@router.get("")
async def list_tenants(
    include_inactive: bool = False,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
) -> list[TenantResponse]:
    tenants = await tenants_repo.list_tenants(db, include_inactive=include_inactive, offset=offset, limit=limit)
    return [_to_response(tenant) for tenant in tenants]


@router.get("/{tenant_id}")
async def get_tenant(tenant_id: str, db: AsyncSession = Depends(get_db)) -> TenantResponse:
    tenant = await tenants_repo.get_tenant(db, tenant_id)
    if tenant is None:
        raise _not_found()
    return _to_response(tenant)


@router.patch("/{tenant_id}")
async def update_tenant(
    tenant_id: str,
    payload: TenantUpdateRequest,
    db: AsyncSession = Depends(get_db),
) -> TenantResponse:
    tenant = await tenants_repo.update_tenant(db, tenant_id, name=payload.name)
    if tenant is None:
        raise _not_found()
    await db.commit()
    return _to_response(tenant)


@router.delete("/{tenant_id}", status_code=status.HTTP_204_NO_CONTENT)
async def deactivate_tenant(tenant_id: str, db: AsyncSession = Depends(get_db)) -> Response:
    # Soft delete: the tenant can no longer mint tokens; rows are retained.
    if not await tenants_repo.deactivate_tenant(db, tenant_id):
        raise _not_found()
    await db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{tenant_id}/purge", status_code=status.HTTP_204_NO_CONTENT)
async def purge_tenant_route(
    tenant_id: str,
    db: AsyncSession = Depends(get_db),
    runtime: BrokerRuntime = Depends(get_runtime),
) -> Response:
    # Hard delete is a separate, irreversible operation.
    await purge_tenant(db, runtime.cipher, runtime.broker, tenant_id=tenant_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
