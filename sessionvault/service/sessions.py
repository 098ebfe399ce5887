from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Protocol, Set

from sessionvault.config import Settings
from sessionvault.logging import get_logger
from sessionvault.service.errors import (
    ExpiredOrRevokedError,
    InvalidArgumentError,
    MalformedTokenError,
)
from sessionvault.service.tokens import TokenClaims, TokenIssuer
from sessionvault.storage.errors import CorruptRecordError
from sessionvault.storage.keys import SessionKeys
from sessionvault.storage.models import Principal, SessionRecord

logger = get_logger(__name__)


class SessionStore(Protocol):
    def put(self, key: str, value: str, ttl_seconds: float) -> None: ...

    def get(self, key: str) -> Optional[str]: ...

    def delete(self, key: str) -> None: ...

    def scan(self, pattern: str) -> Set[str]: ...


@dataclass
class TokenValidation:
    valid: bool
    roles: List[str] = field(default_factory=list)


class SessionManager:
    """Owns the lifecycle of session records and their four index keys.

    Every write is an independent store call; there are no multi-key
    transactions. A partially written or partially deleted session is
    treated as not found by every read path.
    """

    def __init__(
        self, store: SessionStore, issuer: TokenIssuer, settings: Settings
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.settings = settings
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # ------------------------------------------------------------------
    # persistence helpers
    # ------------------------------------------------------------------
    def _load(self, canonical_key: str) -> Optional[SessionRecord]:
        raw = self.store.get(canonical_key)
        if raw is None:
            return None
        return SessionRecord.from_json(raw, key=canonical_key)

    def _resolve(self, index_key: str) -> Optional[SessionRecord]:
        canonical_key = self.store.get(index_key)
        if canonical_key is None:
            return None
        return self._load(canonical_key)

    def _persist(
        self, record: SessionRecord, access_ttl: float, refresh_ttl: float
    ) -> None:
        canonical, jwt_key, refresh_key, token_key = SessionKeys.for_record(record)
        self.store.put(canonical, record.to_json(), access_ttl)
        self.store.put(jwt_key, canonical, access_ttl)
        self.store.put(refresh_key, canonical, refresh_ttl)
        self.store.put(token_key, canonical, access_ttl)

    def _delete_keys(self, record: SessionRecord) -> None:
        for key in SessionKeys.for_record(record):
            self.store.delete(key)

    def _principal_sessions(self, principal_id: str) -> List[SessionRecord]:
        """Load live records of one principal in key order."""
        records: List[SessionRecord] = []
        for key in sorted(self.store.scan(SessionKeys.principal_pattern(principal_id))):
            try:
                record = self._load(key)
            except CorruptRecordError as exc:
                # Unreadable canonical values cannot name their index keys
                self.logger.warning("session_record_corrupt", key=key, reason=exc.reason)
                self.store.delete(key)
                continue
            if record is not None:
                records.append(record)
        return records

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    def add_session(
        self, principal: Principal, token: str, is_mobile: bool
    ) -> SessionRecord:
        """Register a freshly minted token, evicting sessions over the cap."""
        jwt_id = self.issuer.jwt_id(token)
        existing = self._principal_sessions(principal.id)
        cap = self.settings.max_sessions_per_principal
        while existing and len(existing) >= cap:
            victim = next((r for r in existing if not r.is_mobile), existing[0])
            self._delete_keys(victim)
            existing.remove(victim)
            self.logger.info(
                "session_evicted",
                principal_id=principal.id,
                jwt_id=victim.jwt_id,
                is_mobile=victim.is_mobile,
            )

        record = SessionRecord.new(
            principal_id=principal.id,
            jwt_id=jwt_id,
            token=token,
            is_mobile=is_mobile,
            issued_at=self._now(),
            access_ttl_seconds=self.settings.access_token_ttl_seconds,
            refresh_ttl_seconds=self.settings.refresh_token_ttl_seconds,
        )
        self._persist(
            record,
            self.settings.access_token_ttl_seconds,
            self.settings.refresh_token_ttl_seconds,
        )
        self.logger.info(
            "session_added",
            principal_id=principal.id,
            jwt_id=jwt_id,
            is_mobile=is_mobile,
        )
        return record

    def resolve_refresh(self, refresh_value: str) -> SessionRecord:
        """Find the live session owning ``refresh_value``."""
        if not refresh_value or not refresh_value.strip():
            raise InvalidArgumentError("refresh token is required")
        record = self._resolve(SessionKeys.refresh(refresh_value))
        if record is None:
            raise ExpiredOrRevokedError("refresh token is unknown or expired")
        if record.refresh_expiry < self._now():
            raise ExpiredOrRevokedError("refresh token has expired")
        if not record.is_active:
            raise ExpiredOrRevokedError("session has been revoked")
        return record

    def rotate(self, refresh_value: str, principal: Principal) -> SessionRecord:
        """Replace the session behind ``refresh_value`` with a new identity.

        The old keys are deleted before the new ones are written. Two
        concurrent rotations of one value can both succeed; the last
        writer's session survives and the other token is orphaned.
        """
        old = self.resolve_refresh(refresh_value)
        token = self.issuer.issue(principal)
        record = SessionRecord.new(
            principal_id=principal.id,
            jwt_id=self.issuer.jwt_id(token),
            token=token,
            is_mobile=old.is_mobile,
            issued_at=self._now(),
            access_ttl_seconds=self.settings.access_token_ttl_seconds,
            refresh_ttl_seconds=self.settings.refresh_token_ttl_seconds,
        )
        self._delete_keys(old)
        self._persist(
            record,
            self.settings.access_token_ttl_seconds,
            self.settings.refresh_token_ttl_seconds,
        )
        self.logger.info(
            "session_rotated",
            principal_id=principal.id,
            old_jwt_id=old.jwt_id,
            jwt_id=record.jwt_id,
        )
        return record

    def revoke(self, token: str) -> bool:
        """Mark the session of ``token`` revoked; returns whether one was found.

        Unparseable tokens, expired tokens and missing or unreadable
        records are ignored. Store outages propagate.
        """
        now = self._now()
        try:
            claims = self.issuer.claims(token)
            if claims.exp < now.timestamp():
                self.logger.info("logout_ignored", reason="token_expired")
                return False
            record = self._resolve(SessionKeys.jwt_id(claims.jti))
        except MalformedTokenError as exc:
            self.logger.info("logout_ignored", reason=exc.error_code)
            return False
        except CorruptRecordError as exc:
            self.logger.warning("logout_ignored", reason="corrupt_record", key=exc.key)
            return False
        if record is None:
            self.logger.info("logout_ignored", reason="session_not_found")
            return False

        record.revoked = True
        record.expired = True
        record.refresh_expiry = now
        record.access_expiry = claims.expires_at
        ttl = max(1.0, (record.access_expiry - now).total_seconds())
        self._persist(record, ttl, ttl)
        self.logger.info(
            "session_revoked", principal_id=record.principal_id, jwt_id=record.jwt_id
        )
        return True

    def revoke_all(self, principal_id: str) -> int:
        """Delete every session of a principal; returns how many were removed."""
        records = self._principal_sessions(principal_id)
        for record in records:
            self._delete_keys(record)
        if records:
            self.logger.info(
                "sessions_revoked_all", principal_id=principal_id, count=len(records)
            )
        return len(records)

    # ------------------------------------------------------------------
    # validation
    # ------------------------------------------------------------------
    def verify(self, token: str) -> TokenClaims:
        """Stateless claim checks followed by the store-side revocation check."""
        claims = self.issuer.claims(token)
        if claims.exp < self._now().timestamp():
            raise ExpiredOrRevokedError("token has expired")
        record = self._load(SessionKeys.canonical(claims.pid, claims.jti))
        if record is None:
            raise ExpiredOrRevokedError("session not found")
        if not record.is_active:
            raise ExpiredOrRevokedError("session has been revoked")
        return claims

    def validate_claims(self, token: str) -> TokenValidation:
        """Report validity with the token's roles.

        Roles come back empty when the claims cannot be read or have
        expired; a live-looking token rejected by the store keeps them.
        """
        try:
            claims = self.issuer.claims(token)
        except MalformedTokenError:
            return TokenValidation(valid=False, roles=[])
        if claims.exp < self._now().timestamp():
            return TokenValidation(valid=False, roles=[])
        roles = list(claims.roles)
        try:
            self.verify(token)
        except (MalformedTokenError, ExpiredOrRevokedError):
            # Roles stay populated for a parseable but rejected token
            return TokenValidation(valid=False, roles=roles)
        return TokenValidation(valid=True, roles=roles)

    def verify_record(self, token: str, principal: Principal) -> bool:
        """Record-only guard: the claim expiry itself is not re-checked."""
        try:
            subject = self.issuer.claims(token).sub
        except MalformedTokenError:
            return False
        record = self._resolve(SessionKeys.token_value(token))
        if record is None:
            return False
        return (
            subject == principal.subject
            and record.principal_id == principal.id
            and principal.active
            and record.is_active
            and record.access_expiry > self._now()
        )


__all__ = ["SessionManager", "SessionStore", "TokenValidation"]
