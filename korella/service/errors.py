from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - locked (423)
    - rate_limited (429)
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
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Credentials or session token missing, invalid or expired (401)."""

    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Credentials check out but the account may not proceed (403)."""

    status_code = 403
    error_code = "forbidden"


class ConflictError(ServiceError):
    """Duplicate registration or similar uniqueness clash (409)."""

    status_code = 409
    error_code = "conflict"


class AccountLockedError(ServiceError):
    """Account is inside a lockout window (423)."""

    status_code = 423
    error_code = "locked"


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "ConflictError",
    "AccountLockedError",
    "RateLimitedError",
    "ServerError",
]
