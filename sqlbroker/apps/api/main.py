from __future__ import annotations

from contextlib import asynccontextmanager
import json
import logging
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from sqlbroker.apps.api.errors import (
    broker_exception_handler,
    http_exception_handler,
    tenant_scope_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from sqlbroker.apps.api.response import API_VERSION, envelope, is_enveloped
from sqlbroker.apps.api.routes.audit import router as audit_router
from sqlbroker.apps.api.routes.connections import router as connections_router
from sqlbroker.apps.api.routes.health import router as health_router
from sqlbroker.apps.api.routes.tenants import router as tenants_router
from sqlbroker.apps.api.routes.tokens import router as tokens_router
from sqlbroker.apps.api.routes.tools import router as tools_router
from sqlbroker.core.errors import BrokerError
from sqlbroker.core.logging import configure_logging
from sqlbroker.persistence.guards import TenantScopeError
from sqlbroker.services.runtime import BrokerRuntime, build_runtime


logger = logging.getLogger(__name__)

_ENVELOPE_EXEMPT_PREFIXES = (
    f"/{API_VERSION}/openapi.json",
    "/docs",
    "/redoc",
    "/openapi.json",
)


def create_app(runtime: BrokerRuntime | None = None) -> FastAPI:
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # A runtime that cannot be built is fatal; the server must not accept traffic.
        if getattr(app.state, "runtime", None) is None:
            app.state.runtime = await build_runtime()
        try:
            yield
        finally:
            await app.state.runtime.close()
            logger.info("broker_runtime_closed")

    app = FastAPI(title="sqlbroker API", lifespan=lifespan)
    app.state.runtime = runtime

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        # Wrap successful JSON responses in the standard success envelope.
        if (
            not request.url.path.startswith(_ENVELOPE_EXEMPT_PREFIXES)
            and response.status_code < 400
            and response.headers.get("content-type", "").startswith("application/json")
        ):
            raw_body = b"".join([chunk async for chunk in response.body_iterator])
            try:
                payload = json.loads(raw_body) if raw_body else None
            except (TypeError, ValueError):
                payload = None
            headers = {k: v for k, v in response.headers.items() if k.lower() != "content-length"}
            if payload is not None and not is_enveloped(payload):
                response = JSONResponse(
                    content=envelope(request_id, payload),
                    status_code=response.status_code,
                    headers=headers,
                )
            else:
                response = Response(content=raw_body, status_code=response.status_code, headers=headers)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(BrokerError, broker_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(TenantScopeError, tenant_scope_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    # Operator routes guarded by the admin API key.
    app.include_router(tenants_router, prefix=f"/{API_VERSION}")
    app.include_router(connections_router, prefix=f"/{API_VERSION}")
    # Capability-token routes.
    app.include_router(tokens_router, prefix=f"/{API_VERSION}")
    app.include_router(audit_router, prefix=f"/{API_VERSION}")
    app.include_router(tools_router, prefix=f"/{API_VERSION}")

    @app.get(f"/{API_VERSION}/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    def custom_openapi() -> dict:
        # Inject bearer auth and version metadata into the OpenAPI schema.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title="sqlbroker API", version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        public_paths = {f"/{API_VERSION}/health"}
        for path, operations in schema.get("paths", {}).items():
            if path in public_paths:
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
