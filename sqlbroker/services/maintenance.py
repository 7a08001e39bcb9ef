from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from sqlbroker.core.config import get_settings
from sqlbroker.domain.models import ConnectionDefinition
from sqlbroker.persistence.repos import audit as audit_repo
from sqlbroker.persistence.repos import connections as connections_repo
from sqlbroker.persistence.repos import tokens as tokens_repo
from sqlbroker.services.credentials import connection_binding
from sqlbroker.services.crypto.envelope import Envelope, EnvelopeCipher


logger = logging.getLogger(__name__)


async def prune_audit_events(session: AsyncSession, *, now: datetime | None = None) -> int:
    # Remove connection audit rows beyond the retention window.
    settings = get_settings()
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=settings.audit_retention_days)
    deleted = await audit_repo.delete_logs_before(session, cutoff=cutoff)
    logger.info("audit_pruned deleted=%s retention_days=%s", deleted, settings.audit_retention_days)
    return deleted


async def prune_expired_tokens(session: AsyncSession, *, now: datetime | None = None) -> int:
    # Expired tokens are rejected by their own exp claim; their ledger rows are dead weight.
    deleted = await tokens_repo.delete_expired_tokens(session, now=now)
    logger.info("expired_tokens_pruned deleted=%s", deleted)
    return deleted


async def rewrap_connection_keys(
    session: AsyncSession,
    *,
    current: EnvelopeCipher,
    target: EnvelopeCipher,
) -> int:
    """Re-wrap every stored data key under a new master key.

    DSN ciphertexts are untouched. All rows are rewrapped before anything is
    flushed, so a key that fails to unwrap aborts the rotation with no row
    changed.
    """
    connections = await connections_repo.list_all_connections(session)
    rewrapped: list[tuple[ConnectionDefinition, Envelope]] = []
    for connection in connections:
        envelope = Envelope(
            ciphertext_hex=connection.dsn_ciphertext_hex,
            wrapped_key_hex=connection.wrapped_key_hex,
        )
        binding = connection_binding(connection.tenant_id, connection.id)
        rewrapped.append((connection, current.rewrap(envelope, target, associated_data=binding)))
    for connection, envelope in rewrapped:
        connection.wrapped_key_hex = envelope.wrapped_key_hex
    await session.flush()
    logger.info("connection_keys_rewrapped count=%s", len(rewrapped))
    return len(rewrapped)
