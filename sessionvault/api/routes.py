from __future__ import annotations

import asyncio
import json
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse

from sessionvault.api.schemas import (
    ActiveToggleRequest,
    Envelope,
    ErrorBody,
    LoginRequest,
    PasswordChangeRequest,
    PasswordChangeResponse,
    PrincipalResponse,
    SessionResponse,
    TokenRefreshRequest,
    TokenValidationRequest,
    TokenValidationResponse,
)
from sessionvault.logging import get_logger
from sessionvault.service.errors import (
    AuthenticationError,
    ForbiddenError,
    InactiveError,
)
from sessionvault.service.runtime import get_runtime
from sessionvault.service.tokens import TokenClaims
from sessionvault.storage.models import Principal, SessionRecord

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

ADMIN_ROLE = "ADMIN"


def is_mobile(user_agent: Optional[str]) -> bool:
    return bool(user_agent) and "mobile" in user_agent.lower()


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def require_bearer(authorization: Optional[str] = Header(None)) -> str:
    token = _bearer_token(authorization)
    if token is None:
        raise AuthenticationError("missing bearer token")
    return token


def get_current_claims(token: str = Depends(require_bearer)) -> TokenClaims:
    return get_runtime().sessions.verify(token)


def get_admin_claims(claims: TokenClaims = Depends(get_current_claims)) -> TokenClaims:
    if ADMIN_ROLE not in claims.roles:
        raise ForbiddenError("admin role required")
    return claims


def _principal_to_response(principal: Principal) -> PrincipalResponse:
    return PrincipalResponse(
        id=principal.id,
        email=principal.email,
        username=principal.username,
        active=principal.active,
        roles=list(principal.roles),
    )


def _session_to_response(record: SessionRecord, principal: Principal) -> SessionResponse:
    return SessionResponse(
        principal_id=record.principal_id,
        access_token=record.token,
        refresh_token=record.refresh_token,
        token_type=record.token_type,
        access_expires_at=record.access_expiry,
        refresh_expires_at=record.refresh_expiry,
        roles=list(principal.roles),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
def login(body: LoginRequest, user_agent: Optional[str] = Header(None)):
    """Authenticate with email (or username) and password.

    Raises:
        400: If email or password is empty
        401: If credentials are invalid
        403: If the principal is inactive
        404: If no principal matches
    """
    runtime = get_runtime()
    token = runtime.authenticator.login(body.email, body.password)
    principal = runtime.principals.principal_from_token(token)
    record = runtime.sessions.add_session(principal, token, is_mobile(user_agent))
    return Envelope(status="ok", data=_session_to_response(record, principal))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
def refresh(body: TokenRefreshRequest):
    runtime = get_runtime()
    principal = runtime.principals.principal_from_refresh_token(body.refresh_token)
    if not principal.active:
        raise InactiveError("principal is inactive")
    record = runtime.sessions.rotate(body.refresh_token, principal)
    return Envelope(status="ok", data=_session_to_response(record, principal))


def _logout_token(raw: bytes) -> Optional[str]:
    """Pull a token out of an arbitrary logout body; anything else is ignored."""
    if not raw:
        return None
    try:
        payload = json.loads(raw)
    except (UnicodeDecodeError, ValueError):
        return None
    if not isinstance(payload, dict):
        return None
    token = payload.get("token")
    if isinstance(token, str) and token.strip():
        return token.strip()
    return None


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, authorization: Optional[str] = Header(None)):
    """Revoke the session of the given token. Always succeeds.

    The body is read leniently: a missing, unparseable or oddly shaped body
    falls back to the bearer header and then to ``revoked=False``.
    """
    token = _logout_token(await request.body()) or _bearer_token(authorization)
    revoked = False
    if token:
        revoked = await asyncio.to_thread(get_runtime().sessions.revoke, token)
    return Envelope(status="ok", data={"revoked": revoked})


@router.post("/auth/validate-token", response_model=Envelope, tags=["auth"])
def validate_token(body: TokenValidationRequest):
    result = get_runtime().sessions.validate_claims(body.token)
    data = TokenValidationResponse(valid=result.valid, roles=result.roles)
    if result.valid:
        return Envelope(status="ok", data=data)
    envelope = Envelope(
        status="error",
        data=data,
        error=ErrorBody(code="unauthorized", message="token is not valid"),
    )
    return JSONResponse(status_code=401, content=envelope.model_dump(mode="json"))


@router.get("/me", response_model=Envelope, tags=["principals"])
def me(claims: TokenClaims = Depends(get_current_claims)):
    principal = get_runtime().principals.find_by_id(claims.pid)
    return Envelope(status="ok", data=_principal_to_response(principal))


@router.post(
    "/users/{principal_id}/password", response_model=Envelope, tags=["principals"]
)
def change_password(
    principal_id: str,
    body: PasswordChangeRequest,
    token: str = Depends(require_bearer),
):
    runtime = get_runtime()
    principal = runtime.principals.find_by_id(principal_id)
    if not runtime.sessions.verify_record(token, principal):
        raise ForbiddenError("token does not grant access to this principal")
    removed = runtime.principals.change_password(
        principal, body.current_password, body.new_password
    )
    return Envelope(
        status="ok",
        data=PasswordChangeResponse(principal_id=principal.id, sessions_removed=removed),
    )


@router.post(
    "/admin/users/{principal_id}/active", response_model=Envelope, tags=["admin"]
)
def set_principal_active(
    principal_id: str,
    body: ActiveToggleRequest,
    claims: TokenClaims = Depends(get_admin_claims),
):
    principal = get_runtime().principals.set_active(principal_id, body.active)
    logger.info(
        "admin_set_active",
        actor_id=claims.pid,
        principal_id=principal_id,
        active=body.active,
    )
    return Envelope(status="ok", data=_principal_to_response(principal))
