from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from starlette.exceptions import HTTPException as StarletteHTTPException

from maestro.apps.api.errors import (
    http_exception_handler,
    maestro_error_handler,
    organization_scope_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from maestro.apps.api.response import API_VERSION
from maestro.apps.api.routes.access_admin import router as access_admin_router
from maestro.apps.api.routes.audit import router as audit_router
from maestro.apps.api.routes.crypto_admin import router as crypto_admin_router
from maestro.apps.api.routes.health import router as health_router
from maestro.apps.api.routes.retention_admin import router as retention_admin_router
from maestro.apps.api.routes.user_data import router as user_data_router
from maestro.core.config import Settings, get_settings
from maestro.core.errors import MaestroError
from maestro.core.logging import configure_logging
from maestro.persistence.db import dispose_engine, get_session_factory
from maestro.persistence.guards import OrganizationScopeError
from maestro.services.audit import request_context_from
from maestro.services.container import MaestroServices, build_services
from maestro.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def create_app(services: MaestroServices | None = None, *, settings: Settings | None = None) -> FastAPI:
    configure_logging()
    resolved_settings = settings or get_settings()
    # Building the service graph validates the master key; a missing key stops the process here.
    resolved_services = services or build_services(get_session_factory(), settings=resolved_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("api_started master_key_id=%s", resolved_services.keys.master_key_id)
        yield
        if services is None:
            await dispose_engine()

    app = FastAPI(title=resolved_settings.app_name, lifespan=lifespan)
    app.state.settings = resolved_settings
    app.state.services = resolved_services

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        increment_counter(f"http.status.{response.status_code // 100}xx")
        logger.debug(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
        )
        principal = getattr(request.state, "principal", None)
        if principal is not None:
            await resolved_services.audit.log_api_access(
                request.method,
                request.url.path,
                response.status_code,
                organization_id=principal.organization_id,
                user_id=principal.user_id,
                latency_ms=round(latency_ms, 1),
                context=request_context_from(request),
            )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(MaestroError, maestro_error_handler)
    app.add_exception_handler(OrganizationScopeError, organization_scope_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(StarletteHTTPException, starlette_http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(user_data_router, prefix=f"/{API_VERSION}")
    app.include_router(access_admin_router, prefix=f"/{API_VERSION}")
    app.include_router(audit_router, prefix=f"/{API_VERSION}")
    app.include_router(retention_admin_router, prefix=f"/{API_VERSION}")
    app.include_router(crypto_admin_router, prefix=f"/{API_VERSION}")

    def custom_openapi() -> dict:
        # Inject bearer auth into the OpenAPI schema.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title=resolved_settings.app_name, version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        components.setdefault("securitySchemes", {})["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        for path, operations in schema.get("paths", {}).items():
            if path == f"/{API_VERSION}/health":
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi  # type: ignore[method-assign]

    return app
