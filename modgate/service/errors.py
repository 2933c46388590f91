from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on; ``message`` is the human readable part.
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


class Unauthorized(AuthenticationError):
    """No usable credential could be resolved for the caller (401)."""


class InvalidCredentials(AuthenticationError):
    """Username/password pair rejected.

    The message is deliberately identical for unknown accounts, deleted
    accounts and wrong passwords.
    """
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidOrExpiredToken(ServiceError):
    """Single-use email/reset token or pre-auth token is unknown or expired."""
    status_code = 400
    error_code = "invalid_or_expired_token"


class TokenInvalid(AuthenticationError):
    """Signed token is malformed, badly signed or of the wrong type (401)."""
    error_code = "token_invalid"


class TokenExpired(AuthenticationError):
    """Signed token is past its expiry (401)."""
    error_code = "token_expired"


class LoginFailure(AuthenticationError):
    """Federated login could not be completed; internal cause is only logged."""
    error_code = "login_failure"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class AccountCollision(ConflictError):
    """External identity is already bound to a different account (409)."""
    error_code = "account_collision"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "Unauthorized",
    "InvalidCredentials",
    "InvalidOrExpiredToken",
    "TokenInvalid",
    "TokenExpired",
    "LoginFailure",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "AccountCollision",
    "RateLimitedError",
    "ServerError",
]
