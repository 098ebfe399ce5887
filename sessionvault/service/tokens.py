from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

from sessionvault.config import Settings
from sessionvault.logging import get_logger
from sessionvault.service.errors import MalformedTokenError, SigningError
from sessionvault.storage.models import Principal

logger = get_logger(__name__)

CLAIMS_VERSION = 1
MIN_SECRET_LENGTH = 32


@dataclass(frozen=True)
class TokenClaims:
    """Decoded access token claims.

    Unknown claim names are ignored and optional ones default, so tokens
    minted before a field was added keep parsing.
    """

    sub: str
    pid: str
    jti: str
    exp: int
    roles: List[str] = field(default_factory=list)
    iat: Optional[int] = None
    iss: Optional[str] = None
    aud: Optional[str] = None
    ver: int = CLAIMS_VERSION

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.exp, tz=timezone.utc)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TokenClaims":
        try:
            sub = payload["sub"]
            pid = payload["pid"]
            jti = payload["jti"]
            exp = int(payload["exp"])
        except KeyError as exc:
            raise MalformedTokenError(
                "token is missing a required claim", detail={"claim": exc.args[0]}
            ) from exc
        except (TypeError, ValueError) as exc:
            raise MalformedTokenError("token expiry is not numeric") from exc
        if not isinstance(sub, str) or not isinstance(pid, str) or not isinstance(jti, str):
            raise MalformedTokenError("token identity claims must be strings")
        roles = payload.get("roles") or []
        if not isinstance(roles, list):
            raise MalformedTokenError("token roles claim must be a list")
        aud = payload.get("aud")
        if isinstance(aud, list):
            aud = aud[0] if aud else None
        iat = payload.get("iat")
        return cls(
            sub=sub,
            pid=pid,
            jti=jti,
            exp=exp,
            roles=[str(role) for role in roles],
            iat=int(iat) if isinstance(iat, (int, float)) else None,
            iss=payload.get("iss"),
            aud=aud,
            ver=int(payload.get("ver", CLAIMS_VERSION)),
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "ver": self.ver,
            "iss": self.iss,
            "aud": self.aud,
            "sub": self.sub,
            "pid": self.pid,
            "roles": list(self.roles),
            "jti": self.jti,
            "iat": self.iat,
            "exp": self.exp,
        }


class TokenIssuer:
    """Stateless HS256 signer and verifier for access tokens."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _secret(self) -> bytes:
        secret = self.settings.jwt_secret
        if not secret:
            raise SigningError("signing key is not configured")
        if len(secret) < MIN_SECRET_LENGTH:
            raise SigningError(
                "signing key is too short",
                detail={"min_length": MIN_SECRET_LENGTH},
            )
        return secret.encode()

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret(), signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(self, principal: Principal) -> str:
        """Mint a signed access token for ``principal``."""
        now = self._now()
        claims = TokenClaims(
            sub=principal.subject,
            pid=principal.id,
            jti=str(uuid.uuid4()),
            exp=int(
                (now + timedelta(seconds=self.settings.access_token_ttl_seconds)).timestamp()
            ),
            roles=list(principal.roles),
            iat=int(now.timestamp()),
            iss=self.settings.jwt_issuer,
            aud=self.settings.jwt_audience,
        )
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(claims.to_payload(), separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def claims(self, token: str) -> TokenClaims:
        """Verify signature, issuer and audience, then parse claims.

        Expired tokens still parse; callers check expiry with ``is_expired``.
        """
        if not token or not isinstance(token, str):
            raise MalformedTokenError("token is empty")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise MalformedTokenError("token is not a compact JWS")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise MalformedTokenError("token header is not decodable")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise MalformedTokenError("unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise MalformedTokenError("token signature mismatch")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise MalformedTokenError("token payload is not decodable")
        if not isinstance(payload, dict):
            raise MalformedTokenError("token payload is not an object")

        if payload.get("iss") != self.settings.jwt_issuer:
            raise MalformedTokenError("token issuer mismatch")
        aud = payload.get("aud")
        valid_aud = False
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        if not valid_aud:
            raise MalformedTokenError("token audience mismatch")
        return TokenClaims.from_payload(payload)

    def is_expired(self, token: str) -> bool:
        return self.claims(token).exp < self._now().timestamp()

    def jwt_id(self, token: str) -> str:
        return self.claims(token).jti


__all__ = ["CLAIMS_VERSION", "TokenClaims", "TokenIssuer"]
