from __future__ import annotations

import threading
import time
import uuid
from dataclasses import replace
from fnmatch import fnmatchcase
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from sessionvault.logging import get_logger
from sessionvault.storage.errors import ConstraintViolation
from sessionvault.storage.models import Principal, Role


class MemorySessionStore:
    """In-process TTL key-value store used in tests and as the dev fallback."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._data_lock = threading.RLock()

    def _live(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return value

    def verify_connection(self) -> None:
        return None

    def put(self, key: str, value: str, ttl_seconds: float) -> None:
        ttl = max(1, int(ttl_seconds))
        with self._data_lock:
            self._entries[key] = (value, self._clock() + ttl)

    def get(self, key: str) -> Optional[str]:
        with self._data_lock:
            return self._live(key)

    def delete(self, key: str) -> None:
        with self._data_lock:
            self._entries.pop(key, None)

    def scan(self, pattern: str) -> Set[str]:
        with self._data_lock:
            return {
                key
                for key in list(self._entries)
                if fnmatchcase(key, pattern) and self._live(key) is not None
            }

    def ttl(self, key: str) -> Optional[float]:
        """Seconds until ``key`` expires, or None when it is absent."""
        with self._data_lock:
            if self._live(key) is None:
                return None
            return self._entries[key][1] - self._clock()

    def close(self) -> None:
        with self._data_lock:
            self._entries.clear()


class MemoryPrincipalDirectory:
    """Principal and role directory kept in process memory."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[str, Principal] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.roles: Dict[str, Role] = {}
        self._data_lock = threading.RLock()

    def add_principal(
        self,
        email: str,
        username: Optional[str] = None,
        *,
        roles: Optional[Iterable[str]] = None,
        active: bool = True,
        principal_id: Optional[str] = None,
    ) -> Principal:
        with self._data_lock:
            if any(existing.email == email for existing in self.principals.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if username and any(
                existing.username == username for existing in self.principals.values()
            ):
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )
            principal = Principal(
                id=principal_id or str(uuid.uuid4()),
                email=email,
                username=username,
                active=active,
                roles=list(roles or []),
            )
            self.principals[principal.id] = principal
            return replace(principal, roles=list(principal.roles))

    def _copy(self, principal: Optional[Principal]) -> Optional[Principal]:
        if principal is None:
            return None
        return replace(principal, roles=list(principal.roles))

    def find_by_id(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            return self._copy(self.principals.get(principal_id))

    def find_by_email(self, email: str) -> Optional[Principal]:
        with self._data_lock:
            return self._copy(
                next((p for p in self.principals.values() if p.email == email), None)
            )

    def find_by_username(self, username: str) -> Optional[Principal]:
        with self._data_lock:
            return self._copy(
                next(
                    (p for p in self.principals.values() if p.username == username),
                    None,
                )
            )

    def exists_by_email(self, email: str) -> bool:
        return self.find_by_email(email) is not None

    def exists_by_username(self, username: str) -> bool:
        return self.find_by_username(username) is not None

    def save_password(
        self, principal_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if principal_id not in self.principals:
                raise ConstraintViolation(
                    "principal not found for credential", {"principal_id": principal_id}
                )
            self.credentials[principal_id] = (password_hash, password_algo)

    def get_password_record(self, principal_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(principal_id)

    def set_active(self, principal_id: str, active: bool) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return None
            principal.active = active
            return self._copy(principal)

    def find_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            return self.roles.get(name)

    def save_role(self, role: Role) -> Role:
        with self._data_lock:
            if role.name in self.roles and self.roles[role.name].id != role.id:
                raise ConstraintViolation("role already exists", {"field": "name"})
            self.roles[role.name] = role
            return role

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            return sorted(self.roles.values(), key=lambda r: r.name)
