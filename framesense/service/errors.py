from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries the HTTP ``status_code`` and a stable ``error_code``
    that clients branch on:

    - validation_error, duplicate_email, weak_password (400)
    - unauthorized, invalid_credentials, invalid_token, session_expired,
      user_not_found (401)
    - forbidden, quota_exceeded, model_not_permitted (403)
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


class DuplicateEmailError(ValidationError):
    """An account with this email already exists (400)."""
    error_code = "duplicate_email"


class WeakPasswordError(ValidationError):
    """Password does not satisfy the length policy (400)."""
    error_code = "weak_password"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; deliberately indistinguishable (401)."""
    error_code = "invalid_credentials"


class InvalidTokenError(AuthenticationError):
    """Token signature, shape, or expiry check failed (401)."""
    error_code = "invalid_token"


class SessionExpiredError(AuthenticationError):
    """Token verified but no live session backs it (401)."""
    error_code = "session_expired"


class UserNotFoundError(AuthenticationError):
    """Token and session are fine but the account is gone (401)."""
    error_code = "user_not_found"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class QuotaExceededError(ForbiddenError):
    """Daily request quota for the tier is used up (403)."""
    error_code = "quota_exceeded"


class ModelNotPermittedError(ForbiddenError):
    """Requested model needs a higher tier (403)."""
    error_code = "model_not_permitted"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "DuplicateEmailError",
    "WeakPasswordError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "SessionExpiredError",
    "UserNotFoundError",
    "ForbiddenError",
    "QuotaExceededError",
    "ModelNotPermittedError",
    "ServerError",
]
