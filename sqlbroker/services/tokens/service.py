from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from sqlbroker.core.config import get_settings
from sqlbroker.core.errors import AccessDeniedError, NotFoundError, TokenRequestError
from sqlbroker.domain.models import IssuedToken, as_utc
from sqlbroker.persistence.repos import connections as connections_repo
from sqlbroker.persistence.repos import tenants as tenants_repo
from sqlbroker.persistence.repos import tokens as tokens_repo
from sqlbroker.services.tokens.claims import WILDCARD, CapabilityClaims, PermissionGrant
from sqlbroker.services.tokens.signing import Clock, TokenSigner, utc_now


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuedCapability:
    token: str
    claims: CapabilityClaims

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.claims.exp, tz=timezone.utc)


def _dedupe(values: list[str]) -> list[str]:
    seen: dict[str, None] = {}
    for value in values:
        cleaned = value.strip()
        if cleaned:
            seen.setdefault(cleaned, None)
    return list(seen)


def validate_ttl(ttl_s: int) -> int:
    settings = get_settings()
    if ttl_s < settings.token_min_ttl_s or ttl_s > settings.token_max_ttl_s:
        raise TokenRequestError(
            f"ttl must be between {settings.token_min_ttl_s} and {settings.token_max_ttl_s} seconds"
        )
    return ttl_s


async def issue_token(
    session: AsyncSession,
    *,
    signer: TokenSigner,
    tenant_id: str,
    connection_ids: list[str],
    permissions: PermissionGrant,
    ttl_s: int,
    parent: CapabilityClaims | None = None,
    clock: Clock = utc_now,
) -> IssuedCapability:
    """Mint a capability token and commit its ledger row before returning it.

    ``parent`` is the verified capability of the caller. Without one the caller
    is the operator bootstrapping a tenant. A derived token stays within the
    parent's tenant, connection allow-list, grant and lifetime.
    """
    validate_ttl(ttl_s)
    requested = _dedupe(connection_ids)
    if not requested:
        raise TokenRequestError("at least one connection id is required")

    tenant = await tenants_repo.get_active_tenant(session, tenant_id)
    if tenant is None:
        raise NotFoundError("tenant not found or inactive")

    now = clock()
    issued_at = int(now.timestamp())
    expires_at = issued_at + ttl_s

    if parent is not None:
        if parent.tenant_id != tenant_id:
            raise AccessDeniedError("access denied: issuing token belongs to another tenant")
        if not parent.covers_connections(requested):
            raise AccessDeniedError("access denied: requested connections exceed the issuing token")
        if not permissions.is_within(parent.permissions):
            raise AccessDeniedError("access denied: requested permissions exceed the issuing token")
        if expires_at > parent.exp:
            raise TokenRequestError("requested ttl outlives the issuing token")

    if WILDCARD in requested and len(requested) > 1:
        raise TokenRequestError("wildcard connection grant cannot be combined with explicit ids")
    explicit = [connection_id for connection_id in requested if connection_id != WILDCARD]
    if explicit:
        active = await connections_repo.active_connection_ids(session, tenant_id=tenant_id, connection_ids=explicit)
        missing = [connection_id for connection_id in explicit if connection_id not in active]
        if missing:
            raise AccessDeniedError(f"access denied: unknown connections {', '.join(sorted(missing))}")

    claims = CapabilityClaims(
        sub=tenant_id,
        tenant_id=tenant_id,
        connection_ids=tuple(requested),
        permissions=permissions,
        iat=issued_at,
        exp=expires_at,
        nbf=issued_at,
        jti=uuid4().hex,
        iss=signer.issuer,
    )
    await tokens_repo.insert_token(
        session,
        jti=claims.jti,
        tenant_id=tenant_id,
        connection_ids=requested,
        issued_at=now,
        expires_at=now + timedelta(seconds=ttl_s),
    )
    # The ledger row is durable before the token exists anywhere else.
    await session.commit()
    logger.info(
        "capability_token_issued tenant_id=%s jti=%s derived=%s ttl_s=%s",
        tenant_id,
        claims.jti,
        parent is not None,
        ttl_s,
    )
    return IssuedCapability(token=signer.sign(claims), claims=claims)


async def revoke_token(session: AsyncSession, *, tenant_id: str, jti: str) -> None:
    revoked = await tokens_repo.revoke_token(session, tenant_id=tenant_id, jti=jti)
    if not revoked:
        raise NotFoundError("token not found")
    await session.commit()
    logger.info("capability_token_revoked tenant_id=%s jti=%s", tenant_id, jti)


def is_expired(token: IssuedToken, *, now: datetime | None = None) -> bool:
    return as_utc(token.expires_at) <= (now or utc_now())
