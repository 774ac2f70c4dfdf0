from __future__ import annotations

from typing import Any

from maestro.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message, details=details)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response("Bad request", code="INVALID_CONFIRMATION_CODE", message="Invalid confirmation code"),
    401: _response("Unauthorized", code="AUTH_UNAUTHORIZED", message="Missing or invalid bearer token"),
    403: _response("Forbidden", code="AUTH_FORBIDDEN", message="Insufficient permissions for this operation"),
    404: _response("Not found", code="NOT_FOUND", message="deletion request not found"),
    409: _response("Conflict", code="INVALID_REQUEST_STATE", message="deletion request is completed, expected pending"),
    422: _response("Validation error", code="VALIDATION_ERROR", message="retention_days must be at least 1"),
    429: _response(
        "Rate limited",
        code="RATE_LIMITED",
        message="Only one data export is allowed per user every 24 hours",
        details={"retry_after_s": 3600},
    ),
    503: _response(
        "Service unavailable",
        code="AUDIT_UNAVAILABLE",
        message="Operation aborted because it could not be audited",
    ),
}
