from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can match on:
    - validation_error (400)
    - unauthorized (401)
    - expired_or_revoked (401)
    - malformed_token (401)
    - forbidden (403)
    - inactive (403)
    - not_found (404)
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


class InvalidArgumentError(ServiceError):
    """A required field is missing or empty (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Credentials were rejected (401)."""
    status_code = 401
    error_code = "unauthorized"


class ExpiredOrRevokedError(AuthenticationError):
    """Token or session elapsed, was revoked, or was rotated away (401)."""
    error_code = "expired_or_revoked"


class MalformedTokenError(AuthenticationError):
    """Token failed signature verification or could not be parsed (401)."""
    error_code = "malformed_token"


class ForbiddenError(ServiceError):
    """Access denied - insufficient role (403)."""
    status_code = 403
    error_code = "forbidden"


class InactiveError(ForbiddenError):
    """Principal exists but is disabled (403)."""
    error_code = "inactive"


class NotFoundError(ServiceError):
    """Principal or session not found (404)."""
    status_code = 404
    error_code = "not_found"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class SigningError(ServerError):
    """Signing key material is absent or unusable (500)."""
    pass


__all__ = [
    "ServiceError",
    "InvalidArgumentError",
    "AuthenticationError",
    "ExpiredOrRevokedError",
    "MalformedTokenError",
    "ForbiddenError",
    "InactiveError",
    "NotFoundError",
    "ServerError",
    "SigningError",
]
