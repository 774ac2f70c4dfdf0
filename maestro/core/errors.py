from __future__ import annotations

from typing import Any


class MaestroError(Exception):
    """Base error for Maestro."""

    code = "INTERNAL_ERROR"
    status_code = 500
    # Message safe to return to external callers; None means str(exc) is safe.
    public_message: str | None = None

    def __init__(self, message: str = "", *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.details = details or {}

    @property
    def client_message(self) -> str:
        return self.public_message if self.public_message is not None else str(self)


class AuthenticationRequired(MaestroError):
    """No valid session or credential was presented."""

    code = "AUTH_UNAUTHORIZED"
    status_code = 401
    public_message = "Authentication required"


class PermissionDenied(MaestroError):
    """Authenticated principal lacks the role or grant for this operation."""

    code = "AUTH_FORBIDDEN"
    status_code = 403
    public_message = "Insufficient permissions for this operation"


class CryptoError(MaestroError):
    """Cryptographic verification failure."""

    code = "CRYPTO_UNPROCESSABLE"
    status_code = 422
    public_message = "Unable to process encrypted payload"


class KeyUnwrapError(CryptoError):
    """Wrapped data key failed authentication or could not be resolved."""


class DecryptionError(CryptoError):
    """Envelope could not be decrypted for the requesting organization."""


class MasterKeyMissingError(MaestroError):
    """MASTER_ENCRYPTION_KEY is not configured."""

    code = "CRYPTO_MASTER_KEY_MISSING"
    status_code = 503
    public_message = "Encryption is not available"


class ValidationError(MaestroError):
    """Malformed or out-of-bounds input."""

    code = "VALIDATION_ERROR"
    status_code = 422


class ResourceNotFoundError(MaestroError):
    """Referenced record does not exist in the organization."""

    code = "NOT_FOUND"
    status_code = 404


class RateLimitExceeded(MaestroError):
    """Request throttled; retry after the indicated number of seconds."""

    code = "RATE_LIMITED"
    status_code = 429

    def __init__(self, message: str = "", *, retry_after_s: int, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, details={**(details or {}), "retry_after_s": retry_after_s})
        self.retry_after_s = retry_after_s


class InvalidConfirmationCode(MaestroError):
    """Deletion confirmation code does not match the request."""

    code = "INVALID_CONFIRMATION_CODE"
    status_code = 400
    public_message = "Invalid confirmation code"


class InvalidRequestState(MaestroError):
    """Request or resource is not in a state that allows this transition."""

    code = "INVALID_REQUEST_STATE"
    status_code = 409


class AuditWriteError(MaestroError):
    """Audit entry for a security-critical action could not be confirmed."""

    code = "AUDIT_UNAVAILABLE"
    status_code = 503
    public_message = "Operation aborted because it could not be audited"
