from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Callable

import jwt
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sqlbroker.core.config import Settings
from sqlbroker.core.errors import AuthenticationError, ConfigurationError, ExpiredTokenError, RevokedTokenError
from sqlbroker.persistence.repos import tokens as tokens_repo
from sqlbroker.services.tokens.claims import CapabilityClaims


logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
_REQUIRED_CLAIMS = ["sub", "tenant_id", "connection_ids", "permissions", "iat", "exp", "nbf", "jti", "iss"]

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TokenSigner:
    """HMAC signing and decoding of capability tokens under one shared secret."""

    def __init__(self, secret: str, *, issuer: str) -> None:
        if not secret:
            raise ConfigurationError("token signing secret is not configured")
        self._secret = secret
        self.issuer = issuer

    def __repr__(self) -> str:
        return f"TokenSigner(issuer={self.issuer!r})"

    def sign(self, claims: CapabilityClaims) -> str:
        return jwt.encode(claims.to_payload(), self._secret, algorithm=ALGORITHM)

    def decode(self, token: str) -> CapabilityClaims:
        # Signature first, then shape; time-based claims are checked by the verifier's clock.
        if not token:
            raise AuthenticationError("missing capability token")
        try:
            payload: dict[str, Any] = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                options={
                    "verify_exp": False,
                    "verify_nbf": False,
                    "verify_iat": False,
                    "verify_aud": False,
                    "require": _REQUIRED_CLAIMS,
                },
            )
        except jwt.InvalidSignatureError as exc:
            raise AuthenticationError("invalid token signature") from exc
        except jwt.InvalidTokenError as exc:
            raise AuthenticationError("malformed capability token") from exc
        try:
            claims = CapabilityClaims.model_validate(payload)
        except ValidationError as exc:
            raise AuthenticationError("malformed capability claims") from exc
        if claims.iss != self.issuer:
            raise AuthenticationError("unexpected token issuer")
        return claims


class TokenVerifier:
    """Use-time verification: signature, claims, revocation, then expiry."""

    def __init__(
        self,
        signer: TokenSigner,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Clock = utc_now,
        require_ledger_entry: bool = False,
    ) -> None:
        self._signer = signer
        self._session_factory = session_factory
        self._clock = clock
        self._require_ledger_entry = require_ledger_entry

    async def verify(self, token: str) -> CapabilityClaims:
        claims = self._signer.decode(token)
        return await self.check(claims)

    async def check(self, claims: CapabilityClaims) -> CapabilityClaims:
        # Re-run the stateful checks for claims decoded earlier in the request.
        await self._check_revocation(claims.jti)
        now = int(self._clock().timestamp())
        if now > claims.exp:
            raise ExpiredTokenError("capability token has expired")
        if now < claims.nbf:
            raise AuthenticationError("capability token is not yet valid")
        return claims

    async def _check_revocation(self, jti: str) -> None:
        try:
            async with self._session_factory() as session:
                if self._require_ledger_entry:
                    record = await tokens_repo.get_token(session, jti)
                    if record is None:
                        raise AuthenticationError("capability token is not recorded in the ledger")
                    revoked = record.revoked
                else:
                    revoked = await tokens_repo.is_revoked(session, jti)
        except SQLAlchemyError as exc:
            # The ledger is unreachable; treat the token as unverifiable.
            logger.error("token_ledger_lookup_failed", exc_info=exc)
            raise AuthenticationError("token ledger unavailable") from exc
        if revoked:
            raise RevokedTokenError("capability token has been revoked")


def build_signer(settings: Settings) -> TokenSigner:
    return TokenSigner(settings.token_signing_secret or "", issuer=settings.token_issuer)
