from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
import logging
import time
from typing import Any, Awaitable, Callable, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sqlbroker.core.errors import (
    AccessDeniedError,
    AuditWriteError,
    AuthenticationError,
    BrokerError,
    CredentialResolutionError,
    ExecutionError,
)
from sqlbroker.persistence.db import SessionLocal
from sqlbroker.services.audit import AuditAction, record_operation
from sqlbroker.services.broker.adapters.base import Adapter
from sqlbroker.services.broker.manager import ConnectionBroker
from sqlbroker.services.credentials import resolve_credential
from sqlbroker.services.crypto.envelope import EnvelopeCipher
from sqlbroker.services.sql_ops import OperationKind, classify_statement
from sqlbroker.services.tokens.claims import CapabilityClaims
from sqlbroker.services.tokens.signing import TokenVerifier


logger = logging.getLogger(__name__)

Authorize = Callable[[CapabilityClaims], OperationKind]
Perform = Callable[[Adapter, CapabilityClaims, OperationKind], Awaitable[tuple[Any, int]]]


class PipelineState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    TOKEN_VERIFIED = "token_verified"
    CONNECTION_AUTHORIZED = "connection_authorized"
    OPERATION_AUTHORIZED = "operation_authorized"
    CREDENTIAL_RESOLVED = "credential_resolved"
    EXECUTING = "executing"
    LOGGED = "logged"


@dataclass(frozen=True)
class RequestContext:
    """Per-request identity handed to the pipeline by the authentication layer.

    ``deadline`` is an absolute ``time.monotonic()`` value; ``None`` falls back
    to the pipeline's default timeout.
    """

    tenant_id: str | None
    claims: CapabilityClaims | None
    deadline: float | None = None

    @classmethod
    def from_claims(cls, claims: CapabilityClaims | None, *, timeout_s: float | None = None) -> RequestContext:
        deadline = time.monotonic() + timeout_s if timeout_s is not None else None
        return cls(tenant_id=claims.tenant_id if claims else None, claims=claims, deadline=deadline)

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())


@dataclass
class OperationResult:
    success: bool
    value: Any = None
    row_count: int = 0
    execution_ms: int = 0
    error: str | None = None
    error_code: str | None = None


@dataclass
class _Attempt:
    # Partial context carried to the audit row whatever state the request reached.
    action: AuditAction
    tenant_id: str | None
    connection_id: str | None
    query: str | None = None
    state: PipelineState = PipelineState.UNAUTHENTICATED
    execution_ms: int = 0
    rows: int = 0


class AuthorizationPipeline:
    """Composition point for every brokered operation.

    Each call walks ``Unauthenticated -> TokenVerified -> ConnectionAuthorized
    -> OperationAuthorized -> CredentialResolved -> Executing`` and always ends
    in ``Logged``: exactly one audit row is written per invocation, including
    short-circuit failures, deadline expiry and cancellation. Per-request
    errors come back as failed ``OperationResult`` values; only cancellation
    propagates, after its audit row is written.
    """

    def __init__(
        self,
        *,
        broker: ConnectionBroker,
        verifier: TokenVerifier,
        cipher: EnvelopeCipher,
        session_factory: async_sessionmaker[AsyncSession] = SessionLocal,
        default_timeout_s: float | None = None,
    ) -> None:
        self._broker = broker
        self._verifier = verifier
        self._cipher = cipher
        self._session_factory = session_factory
        self._default_timeout_s = default_timeout_s

    async def execute_query(
        self,
        ctx: RequestContext | None,
        connection_id: str,
        query: str,
        params: Sequence[Any] | None = None,
    ) -> OperationResult:
        bound = list(params or [])

        def authorize(claims: CapabilityClaims) -> OperationKind:
            info = classify_statement(query)
            for verb in info.verbs:
                if not claims.can_execute_operation(verb):
                    raise AccessDeniedError(f"access denied: operation {verb} is not permitted")
            grant = claims.permissions
            allowed = {
                OperationKind.READ: grant.read,
                OperationKind.WRITE: grant.write,
                OperationKind.DDL: grant.ddl,
            }[info.kind]
            if not allowed:
                raise AccessDeniedError(f"access denied: token lacks {info.kind.name.lower()} permission")
            return info.kind

        async def perform(adapter: Adapter, claims: CapabilityClaims, kind: OperationKind) -> tuple[Any, int]:
            if kind is OperationKind.READ:
                result = await adapter.query(query, bound, max_rows=claims.permissions.max_rows)
                return result, result.row_count
            executed = await adapter.execute(query, bound)
            return executed, executed.rows_affected

        attempt = self._attempt(ctx, AuditAction.QUERY, connection_id, query=query)
        return await self._run(ctx, attempt, authorize, perform)

    async def list_tables(
        self,
        ctx: RequestContext | None,
        connection_id: str,
        schema: str | None = None,
    ) -> OperationResult:
        async def perform(adapter: Adapter, claims: CapabilityClaims, kind: OperationKind) -> tuple[Any, int]:
            tables = await adapter.list_tables(schema)
            return tables, len(tables)

        attempt = self._attempt(ctx, AuditAction.SCHEMA, connection_id)
        return await self._run(ctx, attempt, _authorize_schema, perform)

    async def describe_table(
        self,
        ctx: RequestContext | None,
        connection_id: str,
        table_name: str,
        schema: str | None = None,
    ) -> OperationResult:
        async def perform(adapter: Adapter, claims: CapabilityClaims, kind: OperationKind) -> tuple[Any, int]:
            described = await adapter.describe_table(table_name, schema)
            return described, len(described.columns)

        attempt = self._attempt(ctx, AuditAction.SCHEMA, connection_id)
        return await self._run(ctx, attempt, _authorize_schema, perform)

    async def check_connection(self, ctx: RequestContext | None, connection_id: str) -> OperationResult:
        async def perform(adapter: Adapter, claims: CapabilityClaims, kind: OperationKind) -> tuple[Any, int]:
            await adapter.health_check()
            return {"reachable": True, "dialect": adapter.dialect.value}, 0

        attempt = self._attempt(ctx, AuditAction.CONNECT, connection_id)
        return await self._run(ctx, attempt, lambda claims: OperationKind.READ, perform)

    @staticmethod
    def _attempt(
        ctx: RequestContext | None,
        action: AuditAction,
        connection_id: str | None,
        *,
        query: str | None = None,
    ) -> _Attempt:
        return _Attempt(
            action=action,
            tenant_id=ctx.tenant_id if ctx is not None else None,
            connection_id=connection_id or None,
            query=query,
        )

    def _timeout_for(self, ctx: RequestContext | None) -> float | None:
        if ctx is not None and ctx.deadline is not None:
            return ctx.remaining()
        return self._default_timeout_s

    async def _run(
        self,
        ctx: RequestContext | None,
        attempt: _Attempt,
        authorize: Authorize,
        perform: Perform,
    ) -> OperationResult:
        try:
            value = await asyncio.wait_for(
                self._advance(ctx, attempt, authorize, perform),
                timeout=self._timeout_for(ctx),
            )
        except asyncio.CancelledError:
            try:
                await asyncio.shield(
                    self._log(attempt, success=False, error="operation cancelled", error_code="CANCELLED")
                )
            except AuditWriteError:
                logger.error(
                    "pipeline_cancel_audit_failed action=%s connection_id=%s",
                    attempt.action.value,
                    attempt.connection_id,
                )
            raise
        except asyncio.TimeoutError:
            outcome = self._failure(attempt, ExecutionError("deadline exceeded"))
        except BrokerError as exc:
            outcome = self._failure(attempt, exc)
        else:
            outcome = OperationResult(
                success=True,
                value=value,
                row_count=attempt.rows,
                execution_ms=attempt.execution_ms,
            )

        try:
            await self._log(attempt, success=outcome.success, error=outcome.error, error_code=outcome.error_code)
        except AuditWriteError as exc:
            # No result leaves the broker without its audit row.
            return OperationResult(success=False, error=str(exc), error_code=exc.code)
        return outcome

    async def _advance(
        self,
        ctx: RequestContext | None,
        attempt: _Attempt,
        authorize: Authorize,
        perform: Perform,
    ) -> Any:
        if ctx is None or not ctx.tenant_id or ctx.claims is None:
            raise AuthenticationError("missing tenant context")
        if ctx.claims.tenant_id != ctx.tenant_id:
            raise AuthenticationError("token tenant does not match request tenant")
        claims = await self._verifier.check(ctx.claims)
        attempt.state = PipelineState.TOKEN_VERIFIED

        if not attempt.connection_id or not claims.has_access_to_connection(attempt.connection_id):
            raise AccessDeniedError("access denied: connection is not permitted by this token")
        attempt.state = PipelineState.CONNECTION_AUTHORIZED

        kind = authorize(claims)
        attempt.state = PipelineState.OPERATION_AUTHORIZED

        try:
            async with self._session_factory() as session:
                credential = await resolve_credential(
                    session,
                    self._cipher,
                    tenant_id=claims.tenant_id,
                    connection_id=attempt.connection_id,
                )
        except SQLAlchemyError as exc:
            logger.error("credential_store_unavailable connection_id=%s", attempt.connection_id, exc_info=exc)
            raise CredentialResolutionError("credential store unavailable") from exc
        if credential.read_only and kind is not OperationKind.READ:
            raise AccessDeniedError("access denied: connection is read-only")
        attempt.state = PipelineState.CREDENTIAL_RESOLVED

        async with self._broker.lease(credential.dialect, credential.dsn) as adapter:
            attempt.state = PipelineState.EXECUTING
            started = time.perf_counter()
            try:
                value, rows = await perform(adapter, claims, kind)
            except BrokerError:
                raise
            except Exception as exc:
                logger.warning(
                    "backend_call_failed connection_id=%s dialect=%s",
                    attempt.connection_id,
                    credential.dialect.value,
                    exc_info=exc,
                )
                raise ExecutionError(f"backend call failed: {exc.__class__.__name__}") from exc
            finally:
                attempt.execution_ms = int((time.perf_counter() - started) * 1000)
        attempt.rows = rows
        return value

    def _failure(self, attempt: _Attempt, exc: BrokerError) -> OperationResult:
        logger.info(
            "pipeline_operation_failed action=%s tenant_id=%s connection_id=%s state=%s code=%s",
            attempt.action.value,
            attempt.tenant_id,
            attempt.connection_id,
            attempt.state.value,
            exc.code,
        )
        if attempt.state is not PipelineState.EXECUTING:
            attempt.execution_ms = 0
            attempt.rows = 0
        return OperationResult(
            success=False,
            execution_ms=attempt.execution_ms,
            error=str(exc),
            error_code=exc.code,
        )

    async def _log(
        self,
        attempt: _Attempt,
        *,
        success: bool,
        error: str | None,
        error_code: str | None,
    ) -> None:
        await record_operation(
            session_factory=self._session_factory,
            tenant_id=attempt.tenant_id,
            connection_id=attempt.connection_id,
            action=attempt.action,
            query=attempt.query,
            success=success,
            error_message=error,
            error_code=error_code,
            execution_time_ms=attempt.execution_ms,
            rows_affected=attempt.rows if success else 0,
        )
        attempt.state = PipelineState.LOGGED


def _authorize_schema(claims: CapabilityClaims) -> OperationKind:
    if not claims.permissions.schema_access:
        raise AccessDeniedError("access denied: token lacks schema permission")
    return OperationKind.READ
