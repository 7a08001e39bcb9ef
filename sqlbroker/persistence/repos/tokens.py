from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from sqlbroker.domain.models import IssuedToken
from sqlbroker.persistence.guards import scoped


async def insert_token(
    session: AsyncSession,
    *,
    jti: str,
    tenant_id: str,
    connection_ids: list[str],
    issued_at: datetime,
    expires_at: datetime,
) -> IssuedToken:
    token = IssuedToken(
        jti=jti,
        tenant_id=tenant_id,
        connection_ids=list(connection_ids),
        issued_at=issued_at,
        expires_at=expires_at,
        revoked=False,
    )
    session.add(token)
    await session.flush()
    return token


async def get_token(session: AsyncSession, jti: str) -> IssuedToken | None:
    result = await session.execute(select(IssuedToken).where(IssuedToken.jti == jti))
    return result.scalar_one_or_none()


async def is_revoked(session: AsyncSession, jti: str) -> bool:
    # Unknown ids are not revoked; signature and expiry stay the primary gate.
    result = await session.execute(select(IssuedToken.revoked).where(IssuedToken.jti == jti))
    return bool(result.scalar_one_or_none())


async def revoke_token(session: AsyncSession, *, tenant_id: str, jti: str, now: datetime | None = None) -> bool:
    # Revocation is idempotent; the first revocation timestamp is kept.
    result = await session.execute(
        update(IssuedToken)
        .where(IssuedToken.jti == jti, IssuedToken.tenant_id == tenant_id, IssuedToken.revoked.is_(False))
        .values(revoked=True, revoked_at=now or datetime.now(timezone.utc))
    )
    if result.rowcount:
        return True
    existing = await get_token(session, jti)
    return existing is not None and existing.tenant_id == tenant_id


async def list_tokens_by_tenant(
    session: AsyncSession,
    *,
    tenant_id: str,
    offset: int = 0,
    limit: int = 50,
) -> list[IssuedToken]:
    stmt = (
        scoped(select(IssuedToken), IssuedToken, tenant_id)
        .order_by(IssuedToken.issued_at.desc(), IssuedToken.jti)
        .offset(offset)
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_active_tokens_by_tenant(session: AsyncSession, *, tenant_id: str, now: datetime | None = None) -> int:
    stmt = scoped(select(func.count()).select_from(IssuedToken), IssuedToken, tenant_id).where(
        IssuedToken.revoked.is_(False),
        IssuedToken.expires_at > (now or datetime.now(timezone.utc)),
    )
    result = await session.execute(stmt)
    return int(result.scalar() or 0)


async def delete_expired_tokens(session: AsyncSession, *, now: datetime | None = None) -> int:
    result = await session.execute(
        delete(IssuedToken).where(IssuedToken.expires_at < (now or datetime.now(timezone.utc)))
    )
    return int(result.rowcount or 0)
