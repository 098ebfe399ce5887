from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sessionvault.storage.errors import CorruptRecordError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Principal:
    id: str
    email: str
    username: Optional[str] = None
    active: bool = True
    roles: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def subject(self) -> str:
        """Token subject: the username, or the email when no username is set."""
        if self.username and self.username.strip():
            return self.username
        return self.email or ""


@dataclass
class Role:
    id: str
    name: str
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(cls, name: str) -> "Role":
        return cls(id=str(uuid.uuid4()), name=name)


_RECORD_FIELDS = (
    "jwt_id",
    "token",
    "refresh_token",
    "token_type",
    "access_expiry",
    "refresh_expiry",
    "is_mobile",
    "revoked",
    "expired",
    "principal_id",
)


@dataclass
class SessionRecord:
    """Canonical state of one issued access token."""

    jwt_id: str
    token: str
    refresh_token: str
    token_type: str
    access_expiry: datetime
    refresh_expiry: datetime
    is_mobile: bool
    revoked: bool
    expired: bool
    principal_id: str

    @classmethod
    def new(
        cls,
        *,
        principal_id: str,
        jwt_id: str,
        token: str,
        is_mobile: bool,
        issued_at: datetime,
        access_ttl_seconds: int,
        refresh_ttl_seconds: int,
    ) -> "SessionRecord":
        # Both expiries share one anchor so refresh_expiry >= access_expiry
        return cls(
            jwt_id=jwt_id,
            token=token,
            refresh_token=str(uuid.uuid4()),
            token_type="Bearer",
            access_expiry=issued_at + timedelta(seconds=access_ttl_seconds),
            refresh_expiry=issued_at + timedelta(seconds=refresh_ttl_seconds),
            is_mobile=is_mobile,
            revoked=False,
            expired=False,
            principal_id=principal_id,
        )

    @property
    def is_active(self) -> bool:
        return not self.revoked and not self.expired

    def to_json(self) -> str:
        payload = asdict(self)
        payload["access_expiry"] = self.access_expiry.isoformat()
        payload["refresh_expiry"] = self.refresh_expiry.isoformat()
        return json.dumps(payload, separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str, *, key: str = "<unknown>") -> "SessionRecord":
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as exc:
            raise CorruptRecordError(key, f"invalid json: {exc}") from exc
        if not isinstance(data, dict):
            raise CorruptRecordError(key, "record is not an object")
        missing = [name for name in _RECORD_FIELDS if name not in data]
        if missing:
            raise CorruptRecordError(key, f"missing fields: {', '.join(missing)}")
        try:
            return cls(
                jwt_id=str(data["jwt_id"]),
                token=str(data["token"]),
                refresh_token=str(data["refresh_token"]),
                token_type=str(data["token_type"]),
                access_expiry=_parse_datetime(data["access_expiry"]),
                refresh_expiry=_parse_datetime(data["refresh_expiry"]),
                is_mobile=bool(data["is_mobile"]),
                revoked=bool(data["revoked"]),
                expired=bool(data["expired"]),
                principal_id=str(data["principal_id"]),
            )
        except (TypeError, ValueError) as exc:
            raise CorruptRecordError(key, str(exc)) from exc


def _parse_datetime(raw: str) -> datetime:
    parsed = datetime.fromisoformat(raw)
    # Records written by older builds may carry naive timestamps
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
