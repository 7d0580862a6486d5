from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` rendered in the error envelope:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - account_locked (423)
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


class AuthenticationFailedError(ServiceError):
    """Credentials or token rejected (401).

    The message stays generic for credential failures so callers cannot tell
    an unknown email from a wrong password.
    """
    status_code = 401
    error_code = "unauthorized"


class AuthenticationLockedError(AuthenticationFailedError):
    """Account is locked until ``locked_until`` (423)."""
    status_code = 423
    error_code = "account_locked"

    def __init__(self, locked_until: datetime, message: Optional[str] = None) -> None:
        self.locked_until = locked_until
        super().__init__(
            message
            or "Account is locked until: {}. Try again later.".format(
                locked_until.strftime("%Y-%m-%d %H:%M")
            ),
            detail={"locked_until": locked_until.isoformat()},
        )


class InvalidTokenError(ServiceError):
    """Bearer token is malformed or its signature does not match (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConfigurationError(ServiceError):
    """Server-side misconfiguration, e.g. a missing or short signing key (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationFailedError",
    "AuthenticationLockedError",
    "InvalidTokenError",
    "ForbiddenError",
    "NotFoundError",
    "ConfigurationError",
]
