from __future__ import annotations

import hmac
import logging
from typing import AsyncGenerator

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from sqlbroker.core.config import get_settings
from sqlbroker.core.errors import AuthenticationError
from sqlbroker.persistence.db import get_session
from sqlbroker.services.pipeline import RequestContext
from sqlbroker.services.runtime import BrokerRuntime
from sqlbroker.services.tokens.claims import CapabilityClaims


logger = logging.getLogger(__name__)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def get_runtime(request: Request) -> BrokerRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "SERVICE_UNAVAILABLE", "message": "Broker runtime is not initialized"},
        )
    return runtime


def _auth_error(message: str, code: str = "UNAUTHORIZED") -> HTTPException:
    # Normalize auth errors for clients without leaking internal details.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": code, "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


def require_admin(request: Request) -> None:
    # Operator routes use a static key compared in constant time.
    settings = get_settings()
    if not settings.admin_api_key:
        raise _auth_error("Operator API key is not configured")
    provided = request.headers.get(settings.admin_api_key_header) or ""
    if not hmac.compare_digest(provided.encode("utf-8"), settings.admin_api_key.encode("utf-8")):
        raise _auth_error("Invalid operator API key")


async def require_capability(
    authorization: str | None = Header(default=None),
    runtime: BrokerRuntime = Depends(get_runtime),
) -> CapabilityClaims:
    # Full use-time verification for management routes: signature, claims, revocation, expiry.
    token = _parse_bearer_token(authorization)
    if token is None:
        raise _auth_error("Missing or invalid bearer token")
    try:
        return await runtime.verifier.verify(token)
    except AuthenticationError as exc:
        raise _auth_error(str(exc), exc.code) from exc


def tool_context(
    authorization: str | None = Header(default=None),
    runtime: BrokerRuntime = Depends(get_runtime),
) -> RequestContext:
    """Authenticate a tool call without rejecting it.

    The token's signature and shape are checked here; revocation and expiry
    are checked by the pipeline so that every tool call, including ones with a
    missing or forged token, reaches the audit trail.
    """
    claims = None
    token = _parse_bearer_token(authorization)
    if token is not None:
        try:
            claims = runtime.signer.decode(token)
        except AuthenticationError as exc:
            logger.info("tool_token_rejected code=%s", exc.code)
    return RequestContext.from_claims(claims, timeout_s=get_settings().query_timeout_s)
