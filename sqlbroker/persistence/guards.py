from __future__ import annotations

from dataclasses import dataclass
from typing import TypeVar

from sqlalchemy import Select

from sqlbroker.core.config import get_settings


S = TypeVar("S", bound=Select)


@dataclass
class TenantScopeError(RuntimeError):
    # Raised when a tenant-scoped query is built without a tenant id.
    message: str


def require_tenant_id(tenant_id: str | None) -> str:
    if not tenant_id and get_settings().authz_require_tenant_predicate:
        raise TenantScopeError("tenant-scoped query built without a tenant_id")
    return tenant_id or ""


def scoped(stmt: S, model, tenant_id: str | None) -> S:
    """Attach the tenant predicate to a select over a tenant-owned model.

    Every repository read of tenant data goes through here so a missing tenant
    id is caught before any row leaves the store.
    """
    return stmt.where(model.tenant_id == require_tenant_id(tenant_id))
