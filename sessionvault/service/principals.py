from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import replace
from typing import Callable, Optional, Tuple

from sessionvault.logging import get_logger
from sessionvault.service.credentials import Argon2SecretVerifier, PrincipalDirectory
from sessionvault.service.errors import (
    AuthenticationError,
    ExpiredOrRevokedError,
    InvalidArgumentError,
    NotFoundError,
)
from sessionvault.service.sessions import SessionManager
from sessionvault.service.tokens import TokenIssuer
from sessionvault.storage.models import Principal

logger = get_logger(__name__)


class PrincipalCache:
    """Bounded TTL cache of principals keyed by email.

    Entries are copies so callers cannot mutate cached state.
    """

    def __init__(
        self,
        *,
        ttl_seconds: int,
        max_entries: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[Principal, float]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, email: str) -> Optional[Principal]:
        with self._lock:
            entry = self._entries.get(email)
            if entry is None:
                return None
            principal, expires_at = entry
            if expires_at <= self._clock():
                self._entries.pop(email, None)
                return None
            self._entries.move_to_end(email)
            return replace(principal, roles=list(principal.roles))

    def put(self, principal: Principal) -> None:
        with self._lock:
            self._entries[principal.email] = (
                replace(principal, roles=list(principal.roles)),
                self._clock() + self.ttl_seconds,
            )
            self._entries.move_to_end(principal.email)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def invalidate(self, email: str) -> None:
        with self._lock:
            self._entries.pop(email, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class PrincipalService:
    """Principal lookup and mutation; every write invalidates the cache."""

    def __init__(
        self,
        directory: PrincipalDirectory,
        cache: PrincipalCache,
        sessions: SessionManager,
        issuer: TokenIssuer,
        verifier: Argon2SecretVerifier,
    ) -> None:
        self.directory = directory
        self.cache = cache
        self.sessions = sessions
        self.issuer = issuer
        self.verifier = verifier

    def find_by_email(self, email: str) -> Optional[Principal]:
        cached = self.cache.get(email)
        if cached is not None:
            return cached
        principal = self.directory.find_by_email(email)
        if principal is not None:
            self.cache.put(principal)
        return principal

    def find_by_login(self, identifier: str) -> Optional[Principal]:
        """Resolve a login identifier as an email, then as a username."""
        principal = self.find_by_email(identifier)
        if principal is None:
            principal = self.directory.find_by_username(identifier)
        return principal

    def find_by_id(self, principal_id: str) -> Principal:
        principal = self.directory.find_by_id(principal_id)
        if principal is None:
            raise NotFoundError("principal not found", detail={"principal_id": principal_id})
        return principal

    def principal_from_token(self, token: str) -> Principal:
        """Load the principal named by an access token's subject."""
        claims = self.issuer.claims(token)
        principal = self.directory.find_by_username(claims.sub)
        if principal is None:
            principal = self.find_by_email(claims.sub)
        if principal is None:
            raise NotFoundError("principal not found")
        return principal

    def principal_from_refresh_token(self, refresh_value: str) -> Principal:
        record = self.sessions.resolve_refresh(refresh_value)
        principal = self.directory.find_by_id(record.principal_id)
        if principal is None:
            raise ExpiredOrRevokedError("session principal no longer exists")
        return principal

    def _invalidate(self, principal: Principal) -> None:
        self.cache.invalidate(principal.email)

    def change_password(
        self, principal: Principal, current_secret: str, new_secret: str
    ) -> int:
        """Replace the principal's secret and drop all of its sessions."""
        if not new_secret:
            raise InvalidArgumentError(
                "new password is required", detail={"field": "new_password"}
            )
        if not self.verifier.authenticate(principal, current_secret):
            raise AuthenticationError("current password is incorrect")
        self.verifier.save_secret(principal.id, new_secret)
        self._invalidate(principal)
        removed = self.sessions.revoke_all(principal.id)
        logger.info("password_changed", principal_id=principal.id, sessions_removed=removed)
        return removed

    def set_active(self, principal_id: str, active: bool) -> Principal:
        principal = self.directory.set_active(principal_id, active)
        if principal is None:
            raise NotFoundError("principal not found", detail={"principal_id": principal_id})
        self._invalidate(principal)
        if not active:
            self.sessions.revoke_all(principal_id)
        logger.info("principal_active_changed", principal_id=principal_id, active=active)
        return principal


__all__ = ["PrincipalCache", "PrincipalService"]
