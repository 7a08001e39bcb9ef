from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from sqlbroker.core.errors import (
    AuthenticationError,
    CredentialResolutionError,
    InvalidDialectError,
    InvalidRequestError,
    NotFoundError,
)
from sqlbroker.domain.models import ConnectionDefinition
from sqlbroker.persistence.repos import connections as connections_repo
from sqlbroker.persistence.repos import tenants as tenants_repo
from sqlbroker.services.broker.dialects import Dialect
from sqlbroker.services.broker.manager import ConnectionBroker
from sqlbroker.services.crypto.envelope import Envelope, EnvelopeCipher


logger = logging.getLogger(__name__)

MAX_CONNECTIONS_HINT = 100


@dataclass(frozen=True)
class ResolvedCredential:
    connection_id: str
    tenant_id: str
    dialect: Dialect
    dsn: str
    read_only: bool

    def __repr__(self) -> str:
        return (
            f"ResolvedCredential(connection_id={self.connection_id!r}, tenant_id={self.tenant_id!r}, "
            f"dialect={self.dialect.value!r}, read_only={self.read_only!r})"
        )


def _envelope(connection: ConnectionDefinition) -> Envelope:
    return Envelope(ciphertext_hex=connection.dsn_ciphertext_hex, wrapped_key_hex=connection.wrapped_key_hex)


def connection_binding(tenant_id: str, connection_id: str) -> bytes:
    # Associated data tying a DSN ciphertext to the row that owns it.
    return f"{tenant_id}|{connection_id}".encode("utf-8")


def _validate_max_connections(value: int) -> int:
    if value < 1 or value > MAX_CONNECTIONS_HINT:
        raise InvalidRequestError(f"max_connections must be between 1 and {MAX_CONNECTIONS_HINT}")
    return value


def decrypt_dsn(cipher: EnvelopeCipher, connection: ConnectionDefinition) -> str:
    try:
        binding = connection_binding(connection.tenant_id, connection.id)
        return cipher.decrypt(_envelope(connection), associated_data=binding).decode("utf-8")
    except (AuthenticationError, UnicodeDecodeError) as exc:
        logger.error("credential_decrypt_failed connection_id=%s", connection.id)
        raise CredentialResolutionError("connection credential could not be decrypted") from exc


async def create_connection(
    session: AsyncSession,
    cipher: EnvelopeCipher,
    *,
    tenant_id: str,
    name: str,
    dialect: str,
    dsn: str,
    read_only: bool = False,
    max_connections: int = 5,
    description: str | None = None,
) -> ConnectionDefinition:
    resolved = Dialect.parse(dialect)
    if not dsn:
        raise InvalidRequestError("dsn is required")
    if await tenants_repo.get_active_tenant(session, tenant_id) is None:
        raise NotFoundError("tenant not found or inactive")
    connection_id = connections_repo.new_connection_id()
    envelope = cipher.encrypt(dsn.encode("utf-8"), associated_data=connection_binding(tenant_id, connection_id))
    connection = ConnectionDefinition(
        id=connection_id,
        tenant_id=tenant_id,
        name=name,
        description=description,
        dialect=resolved.value,
        dsn_ciphertext_hex=envelope.ciphertext_hex,
        wrapped_key_hex=envelope.wrapped_key_hex,
        read_only=read_only,
        max_connections=_validate_max_connections(max_connections),
        is_active=True,
    )
    try:
        await connections_repo.insert_connection(session, connection)
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise InvalidRequestError("a connection with this name already exists for the tenant") from exc
    logger.info("connection_created tenant_id=%s connection_id=%s dialect=%s", tenant_id, connection.id, resolved.value)
    return connection


async def update_connection(
    session: AsyncSession,
    cipher: EnvelopeCipher,
    broker: ConnectionBroker,
    *,
    tenant_id: str,
    connection_id: str,
    name: str | None = None,
    description: str | None = None,
    dialect: str | None = None,
    dsn: str | None = None,
    read_only: bool | None = None,
    max_connections: int | None = None,
) -> ConnectionDefinition:
    connection = await connections_repo.get_connection(session, tenant_id=tenant_id, connection_id=connection_id)
    if connection is None:
        raise NotFoundError("connection not found")

    secret_changes = dsn is not None or (dialect is not None and Dialect.parse(dialect).value != connection.dialect)
    previous = (connection.dialect, decrypt_dsn(cipher, connection)) if secret_changes else None

    if name is not None:
        connection.name = name
    if description is not None:
        connection.description = description
    if dialect is not None:
        connection.dialect = Dialect.parse(dialect).value
    if dsn is not None:
        # A changed secret is sealed under a fresh data key; keys are never reused across versions.
        envelope = cipher.encrypt(dsn.encode("utf-8"), associated_data=connection_binding(tenant_id, connection_id))
        connection.dsn_ciphertext_hex = envelope.ciphertext_hex
        connection.wrapped_key_hex = envelope.wrapped_key_hex
    if read_only is not None:
        connection.read_only = read_only
    if max_connections is not None:
        connection.max_connections = _validate_max_connections(max_connections)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise InvalidRequestError("a connection with this name already exists for the tenant") from exc

    if previous is not None:
        await broker.evict(*previous)
    logger.info("connection_updated tenant_id=%s connection_id=%s secret_changed=%s", tenant_id, connection_id, bool(previous))
    return connection


async def deactivate_connection(session: AsyncSession, *, tenant_id: str, connection_id: str) -> None:
    # Soft delete; the definition stays for audit joins and can no longer be resolved.
    if not await connections_repo.deactivate_connection(session, tenant_id=tenant_id, connection_id=connection_id):
        raise NotFoundError("connection not found")
    await session.commit()
    logger.info("connection_deactivated tenant_id=%s connection_id=%s", tenant_id, connection_id)


async def purge_connection(
    session: AsyncSession,
    cipher: EnvelopeCipher,
    broker: ConnectionBroker,
    *,
    tenant_id: str,
    connection_id: str,
) -> None:
    """Irreversibly delete a connection definition and release its cached adapter."""
    connection = await connections_repo.get_connection(
        session, tenant_id=tenant_id, connection_id=connection_id, include_inactive=True
    )
    if connection is None:
        raise NotFoundError("connection not found")
    dialect = connection.dialect
    try:
        dsn = decrypt_dsn(cipher, connection)
    except CredentialResolutionError:
        # Without the plaintext DSN there is no cache key to evict.
        dsn = None
    await connections_repo.delete_connection(session, tenant_id=tenant_id, connection_id=connection_id)
    await session.commit()
    if dsn is not None:
        await broker.evict(dialect, dsn)
    logger.info("connection_purged tenant_id=%s connection_id=%s", tenant_id, connection_id)


async def resolve_credential(
    session: AsyncSession,
    cipher: EnvelopeCipher,
    *,
    tenant_id: str,
    connection_id: str,
) -> ResolvedCredential:
    """Decrypt the DSN of an active, tenant-owned connection definition.

    Unknown ids, ids owned by another tenant, inactive definitions and
    definitions of a deactivated tenant are all reported the same way so a
    caller cannot enumerate other tenants' ids.
    """
    if await tenants_repo.get_active_tenant(session, tenant_id) is None:
        raise CredentialResolutionError("connection not found for tenant")
    connection = await connections_repo.get_connection(session, tenant_id=tenant_id, connection_id=connection_id)
    if connection is None:
        raise CredentialResolutionError("connection not found for tenant")
    try:
        dialect = Dialect.parse(connection.dialect)
    except InvalidDialectError as exc:
        raise CredentialResolutionError("connection has an unsupported dialect") from exc
    return ResolvedCredential(
        connection_id=connection.id,
        tenant_id=connection.tenant_id,
        dialect=dialect,
        dsn=decrypt_dsn(cipher, connection),
        read_only=connection.read_only,
    )


async def purge_tenant(
    session: AsyncSession,
    cipher: EnvelopeCipher,
    broker: ConnectionBroker,
    *,
    tenant_id: str,
) -> None:
    """Irreversibly delete a tenant with all of its connection definitions."""
    if await tenants_repo.get_tenant(session, tenant_id) is None:
        raise NotFoundError("tenant not found")
    cache_entries: list[tuple[str, str]] = []
    for connection in await connections_repo.list_connections(session, tenant_id=tenant_id, include_inactive=True):
        try:
            cache_entries.append((connection.dialect, decrypt_dsn(cipher, connection)))
        except CredentialResolutionError:
            logger.warning("tenant_purge_undecryptable_connection connection_id=%s", connection.id)
    await tenants_repo.delete_tenant(session, tenant_id)
    await session.commit()
    for dialect, dsn in cache_entries:
        await broker.evict(dialect, dsn)
    logger.info("tenant_purged tenant_id=%s connections=%s", tenant_id, len(cache_entries))
