from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from sqlbroker.apps.api.deps import get_db, get_runtime, require_admin
from sqlbroker.domain.models import ConnectionDefinition
from sqlbroker.persistence.repos import connections as connections_repo
from sqlbroker.services import credentials
from sqlbroker.services.credentials import MAX_CONNECTIONS_HINT
from sqlbroker.services.runtime import BrokerRuntime


router = APIRouter(
    prefix="/tenants/{tenant_id}/connections",
    tags=["connections"],
    dependencies=[Depends(require_admin)],
)


class ConnectionCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    dialect: str
    dsn: str = Field(min_length=1)
    description: str | None = None
    read_only: bool = False
    max_connections: int = Field(default=5, ge=1, le=MAX_CONNECTIONS_HINT)


class ConnectionUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    dialect: str | None = None
    dsn: str | None = Field(default=None, min_length=1)
    description: str | None = None
    read_only: bool | None = None
    max_connections: int | None = Field(default=None, ge=1, le=MAX_CONNECTIONS_HINT)


class ConnectionResponse(BaseModel):
    # The DSN never leaves the credential store through the API.
    id: str
    tenant_id: str
    name: str
    description: str | None
    dialect: str
    read_only: bool
    max_connections: int
    is_active: bool
    created_at: str
    updated_at: str


def _to_response(connection: ConnectionDefinition) -> ConnectionResponse:
    return ConnectionResponse(
        id=connection.id,
        tenant_id=connection.tenant_id,
        name=connection.name,
        description=connection.description,
        dialect=connection.dialect,
        read_only=connection.read_only,
        max_connections=connection.max_connections,
        is_active=connection.is_active,
        created_at=connection.created_at.isoformat(),
        updated_at=connection.updated_at.isoformat(),
    )


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_connection(
    tenant_id: str,
    payload: ConnectionCreateRequest,
    db: AsyncSession = Depends(get_db),
    runtime: BrokerRuntime = Depends(get_runtime),
) -> ConnectionResponse:
    connection = await credentials.create_connection(
        db,
        runtime.cipher,
        tenant_id=tenant_id,
        name=payload.name,
        dialect=payload.dialect,
        dsn=payload.dsn,
        read_only=payload.read_only,
        max_connections=payload.max_connections,
        description=payload.description,
    )
    return _to_response(connection)


@router.get("")
async def list_connections(
    tenant_id: str,
    include_inactive: bool = False,
    db: AsyncSession = Depends(get_db),
) -> list[ConnectionResponse]:
    connections = await connections_repo.list_connections(db, tenant_id=tenant_id, include_inactive=include_inactive)
    return [_to_response(connection) for connection in connections]


@router.get("/{connection_id}")
async def get_connection(tenant_id: str, connection_id: str, db: AsyncSession = Depends(get_db)) -> ConnectionResponse:
    connection = await connections_repo.get_connection(
        db, tenant_id=tenant_id, connection_id=connection_id, include_inactive=True
    )
    if connection is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Connection not found"})
    return _to_response(connection)


@router.patch("/{connection_id}")
async def update_connection(
    tenant_id: str,
    connection_id: str,
    payload: ConnectionUpdateRequest,
    db: AsyncSession = Depends(get_db),
    runtime: BrokerRuntime = Depends(get_runtime),
) -> ConnectionResponse:
    connection = await credentials.update_connection(
        db,
        runtime.cipher,
        runtime.broker,
        tenant_id=tenant_id,
        connection_id=connection_id,
        name=payload.name,
        description=payload.description,
        dialect=payload.dialect,
        dsn=payload.dsn,
        read_only=payload.read_only,
        max_connections=payload.max_connections,
    )
    return _to_response(connection)


@router.delete("/{connection_id}", status_code=status.HTTP_204_NO_CONTENT)
async def deactivate_connection(tenant_id: str, connection_id: str, db: AsyncSession = Depends(get_db)) -> Response:
    await credentials.deactivate_connection(db, tenant_id=tenant_id, connection_id=connection_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{connection_id}/purge", status_code=status.HTTP_204_NO_CONTENT)
async def purge_connection(
    tenant_id: str,
    connection_id: str,
    db: AsyncSession = Depends(get_db),
    runtime: BrokerRuntime = Depends(get_runtime),
) -> Response:
    await credentials.purge_connection(
        db, runtime.cipher, runtime.broker, tenant_id=tenant_id, connection_id=connection_id
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
