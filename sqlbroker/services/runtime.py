from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy.exc import SQLAlchemyError

from sqlbroker.core.config import Settings, get_settings
from sqlbroker.core.errors import ConfigurationError
from sqlbroker.persistence.db import SessionLocal, check_database
from sqlbroker.services.broker.adapters.base import PoolLimits
from sqlbroker.services.broker.manager import ConnectionBroker
from sqlbroker.services.crypto.envelope import EnvelopeCipher, build_cipher
from sqlbroker.services.pipeline import AuthorizationPipeline
from sqlbroker.services.tokens.signing import TokenSigner, TokenVerifier, build_signer


logger = logging.getLogger(__name__)


@dataclass
class BrokerRuntime:
    """Process-scoped collaborators built once at startup and passed explicitly."""

    cipher: EnvelopeCipher
    signer: TokenSigner
    verifier: TokenVerifier
    broker: ConnectionBroker
    pipeline: AuthorizationPipeline

    async def close(self) -> None:
        await self.broker.close_all()


async def build_runtime(
    settings: Settings | None = None,
    *,
    broker: ConnectionBroker | None = None,
) -> BrokerRuntime:
    # Any failure here is fatal: no master key, a malformed key, no signing secret or no credential store.
    settings = settings or get_settings()
    cipher = build_cipher(settings.master_key)
    signer = build_signer(settings)
    if settings.startup_check_database:
        try:
            await check_database()
        except (SQLAlchemyError, OSError) as exc:
            raise ConfigurationError("credential store is unreachable") from exc
    verifier = TokenVerifier(
        signer,
        SessionLocal,
        require_ledger_entry=settings.token_require_ledger_entry,
    )
    broker = broker or ConnectionBroker(limits=PoolLimits.from_settings(settings))
    pipeline = AuthorizationPipeline(
        broker=broker,
        verifier=verifier,
        cipher=cipher,
        session_factory=SessionLocal,
        default_timeout_s=settings.query_timeout_s,
    )
    logger.info("broker_runtime_ready issuer=%s", settings.token_issuer)
    return BrokerRuntime(cipher=cipher, signer=signer, verifier=verifier, broker=broker, pipeline=pipeline)
