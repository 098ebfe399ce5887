from __future__ import annotations

from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from sessionvault.logging import get_logger
from sessionvault.service.errors import (
    AuthenticationError,
    InactiveError,
    InvalidArgumentError,
    NotFoundError,
)
from sessionvault.service.tokens import TokenIssuer
from sessionvault.storage.models import Principal, Role

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class PrincipalDirectory(Protocol):
    def find_by_id(self, principal_id: str) -> Optional[Principal]: ...

    def find_by_email(self, email: str) -> Optional[Principal]: ...

    def find_by_username(self, username: str) -> Optional[Principal]: ...

    def exists_by_email(self, email: str) -> bool: ...

    def exists_by_username(self, username: str) -> bool: ...

    def get_password_record(self, principal_id: str) -> Optional[tuple[str, str]]: ...

    def save_password(
        self, principal_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def set_active(self, principal_id: str, active: bool) -> Optional[Principal]: ...

    def find_role_by_name(self, name: str) -> Optional[Role]: ...

    def save_role(self, role: Role) -> Role: ...


class PrincipalLookup(Protocol):
    def find_by_login(self, identifier: str) -> Optional[Principal]: ...


class SecretVerifier(Protocol):
    def authenticate(self, principal: Principal, secret: str) -> bool: ...


class Argon2SecretVerifier:
    """Checks secrets against argon2id hashes held by the principal directory."""

    def __init__(self, directory: PrincipalDirectory) -> None:
        self.directory = directory
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def hash_secret(self, secret: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(secret), PASSWORD_ALGO

    def save_secret(self, principal_id: str, secret: str) -> None:
        pwd_hash, algo = self.hash_secret(secret)
        self.directory.save_password(principal_id, pwd_hash, algo)

    def authenticate(self, principal: Principal, secret: str) -> bool:
        record = self.directory.get_password_record(principal.id)
        if not record:
            logger.warning("password_record_missing", principal_id=principal.id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", principal_id=principal.id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, secret)
        except (InvalidHash, VerifyMismatchError):
            logger.warning("password_verification_failed", principal_id=principal.id)
            return False


class CredentialAuthenticator:
    """Validates login credentials and mints an access token.

    Session state is not written here; callers register the token with
    ``SessionManager.add_session``.
    """

    def __init__(
        self,
        principals: PrincipalLookup,
        verifier: SecretVerifier,
        issuer: TokenIssuer,
    ) -> None:
        self.principals = principals
        self.verifier = verifier
        self.issuer = issuer

    def authenticate(self, identifier: str, secret: str) -> Principal:
        if not identifier or not identifier.strip():
            raise InvalidArgumentError("email is required", detail={"field": "email"})
        if not secret:
            raise InvalidArgumentError(
                "password is required", detail={"field": "password"}
            )
        principal = self.principals.find_by_login(identifier.strip())
        if principal is None:
            raise NotFoundError("principal not found")
        if not principal.active:
            raise InactiveError("principal is inactive")
        if not self.verifier.authenticate(principal, secret):
            logger.info("login_rejected", principal_id=principal.id)
            raise AuthenticationError("invalid credentials")
        return principal

    def login(self, identifier: str, secret: str) -> str:
        principal = self.authenticate(identifier, secret)
        token = self.issuer.issue(principal)
        logger.info("login_succeeded", principal_id=principal.id)
        return token


__all__ = [
    "Argon2SecretVerifier",
    "CredentialAuthenticator",
    "PASSWORD_ALGO",
    "PrincipalDirectory",
    "PrincipalLookup",
    "SecretVerifier",
]
