from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    used in the response envelope:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidTokenError(AuthenticationError):
    """A token failed verification (401).

    Callers only ever see the generic message. ``reason`` keeps the precise
    cause (expired, bad signature, ...) for logs and tests.
    """

    public_message = "invalid or expired token"

    def __init__(self, reason: str) -> None:
        super().__init__(self.public_message)
        self.reason = reason


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


AuthorizationError = ForbiddenError


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class SubjectNotFoundError(NotFoundError):
    """The identity a token asserts no longer exists."""


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


InternalError = ServerError


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidTokenError",
    "ForbiddenError",
    "AuthorizationError",
    "NotFoundError",
    "SubjectNotFoundError",
    "ConflictError",
    "ServerError",
    "InternalError",
]
