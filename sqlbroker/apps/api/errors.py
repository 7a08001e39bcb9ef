from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from sqlbroker.apps.api.response import error_response
from sqlbroker.core.errors import (
    AccessDeniedError,
    AuditWriteError,
    AuthenticationError,
    BackendUnavailableError,
    BrokerError,
    CredentialResolutionError,
    ExecutionError,
    InvalidDialectError,
    InvalidRequestError,
    NotFoundError,
)
from sqlbroker.persistence.guards import TenantScopeError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "ACCESS_DENIED",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Most specific first; the first isinstance match wins.
_BROKER_ERROR_STATUS: tuple[tuple[type[BrokerError], int], ...] = (
    (AuthenticationError, 401),
    (AccessDeniedError, 403),
    (NotFoundError, 404),
    (CredentialResolutionError, 404),
    (InvalidDialectError, 400),
    (InvalidRequestError, 400),
    (BackendUnavailableError, 503),
    (AuditWriteError, 503),
    (ExecutionError, 502),
)


def broker_error_status(exc: BrokerError) -> int:
    for error_type, status_code in _BROKER_ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    fallback = _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")
    if isinstance(detail, dict):
        code = str(detail.get("code") or fallback)
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return fallback, detail, None
    return fallback, "Request failed", None


async def broker_exception_handler(request: Request, exc: BrokerError) -> JSONResponse:
    status_code = broker_error_status(exc)
    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    payload = error_response(request=request, code=exc.code, message=str(exc))
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


async def tenant_scope_exception_handler(request: Request, exc: TenantScopeError) -> JSONResponse:
    logger.error("tenant_scope_violation path=%s", request.url.path)
    payload = error_response(request=request, code="TENANT_SCOPE_REQUIRED", message=exc.message)
    return JSONResponse(content=payload, status_code=500)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.error("unhandled_exception path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
