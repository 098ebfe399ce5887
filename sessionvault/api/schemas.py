from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "expired_or_revoked",
    "malformed_token",
    "forbidden",
    "inactive",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class LoginRequest(BaseModel):
    # Empty values are rejected by the authenticator with validation_error
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=128)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class TokenValidationRequest(BaseModel):
    token: str = Field(..., max_length=8192)


class SessionResponse(BaseModel):
    principal_id: str
    access_token: str
    refresh_token: str
    token_type: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    roles: List[str] = Field(default_factory=list)


class TokenValidationResponse(BaseModel):
    valid: bool
    roles: List[str] = Field(default_factory=list)


class PrincipalResponse(BaseModel):
    id: str
    email: str
    username: Optional[str] = None
    active: bool
    roles: List[str] = Field(default_factory=list)


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        if len(value) < 8:
            raise ValueError("password must be at least 8 characters")
        if len(value) > 128:
            raise ValueError("password must be at most 128 characters")
        return value


class PasswordChangeResponse(BaseModel):
    principal_id: str
    sessions_removed: int


class ActiveToggleRequest(BaseModel):
    active: bool
