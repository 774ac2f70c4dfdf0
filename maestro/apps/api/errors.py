from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from maestro.apps.api.response import error_response
from maestro.core.errors import CryptoError, MaestroError, RateLimitExceeded
from maestro.persistence.guards import OrganizationScopeError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def maestro_error_handler(request: Request, exc: MaestroError) -> JSONResponse:
    headers: dict[str, str] = {}
    details: dict[str, Any] | None = exc.details or None
    if isinstance(exc, RateLimitExceeded):
        headers["Retry-After"] = str(exc.retry_after_s)
    if exc.status_code == 401:
        headers["WWW-Authenticate"] = "Bearer"
    if isinstance(exc, CryptoError):
        # Key ids and failure reasons stay in the server log.
        details = None
    payload = error_response(request=request, code=exc.code, message=exc.client_message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=headers or None)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Surface validation errors with structured details for SDK parsing.
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": _jsonable_errors(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


def _jsonable_errors(errors: Any) -> list[dict[str, Any]]:
    # Pydantic error contexts may carry exception instances.
    cleaned: list[dict[str, Any]] = []
    for error in errors:
        item = dict(error)
        if "ctx" in item:
            item["ctx"] = {key: str(value) for key, value in item["ctx"].items()}
        item.pop("url", None)
        cleaned.append(item)
    return cleaned


async def organization_scope_exception_handler(request: Request, exc: OrganizationScopeError) -> JSONResponse:
    logger.error("organization_scope_violation path=%s", request.url.path)
    payload = error_response(
        request=request,
        code="ORGANIZATION_SCOPE_REQUIRED",
        message="Organization scope is required for this operation",
    )
    return JSONResponse(content=payload, status_code=500)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
