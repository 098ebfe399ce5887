"""Tests for credential checks, principal lookup and role bootstrap.

Tests for:
- Login argument, lookup, activity and secret checks
- Argon2 secret verification
- Principal cache invalidation on writes
- Principal resolution from access and refresh tokens
- Idempotent role bootstrap
"""

import pytest

from sessionvault.config import Settings
from sessionvault.service.bootstrap import ensure_default_roles
from sessionvault.service.credentials import Argon2SecretVerifier, CredentialAuthenticator
from sessionvault.service.errors import (
    AuthenticationError,
    ExpiredOrRevokedError,
    InactiveError,
    InvalidArgumentError,
    NotFoundError,
)
from sessionvault.service.principals import PrincipalCache, PrincipalService
from sessionvault.service.sessions import SessionManager
from sessionvault.service.tokens import TokenIssuer
from sessionvault.storage.keys import SessionKeys
from sessionvault.storage.memory import MemoryPrincipalDirectory, MemorySessionStore
from sessionvault.storage.models import Role

PASSWORD = "TestPassword123!"


@pytest.fixture
def settings():
    return Settings(jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!")


@pytest.fixture
def directory():
    return MemoryPrincipalDirectory()


@pytest.fixture
def verifier(directory):
    return Argon2SecretVerifier(directory)


@pytest.fixture
def issuer(settings):
    return TokenIssuer(settings)


@pytest.fixture
def store():
    return MemorySessionStore()


@pytest.fixture
def sessions(store, issuer, settings):
    return SessionManager(store, issuer, settings)


@pytest.fixture
def cache(clock):
    return PrincipalCache(ttl_seconds=300, max_entries=100, clock=clock.monotonic)


@pytest.fixture
def principals(directory, cache, sessions, issuer, verifier):
    return PrincipalService(directory, cache, sessions, issuer, verifier)


@pytest.fixture
def authenticator(principals, verifier, issuer):
    return CredentialAuthenticator(principals, verifier, issuer)


@pytest.fixture
def alice(directory, verifier):
    principal = directory.add_principal("alice@example.com", "alice", roles=["USER"])
    verifier.save_secret(principal.id, PASSWORD)
    return principal


class TestLogin:
    """Tests for the credential authenticator."""

    def test_login_by_email_returns_token(self, authenticator, issuer, alice):
        token = authenticator.login("alice@example.com", PASSWORD)
        claims = issuer.claims(token)
        assert claims.pid == alice.id
        assert claims.sub == "alice"
        assert claims.roles == ["USER"]

    def test_login_by_username(self, authenticator, issuer, alice):
        token = authenticator.login("alice", PASSWORD)
        assert issuer.claims(token).pid == alice.id

    def test_login_does_not_write_sessions(self, authenticator, store, alice):
        authenticator.login("alice@example.com", PASSWORD)
        assert store.scan("*") == set()

    @pytest.mark.parametrize("identifier,secret", [("", PASSWORD), ("   ", PASSWORD), ("alice", "")])
    def test_empty_arguments(self, authenticator, alice, identifier, secret):
        with pytest.raises(InvalidArgumentError):
            authenticator.login(identifier, secret)

    def test_unknown_principal(self, authenticator):
        with pytest.raises(NotFoundError):
            authenticator.login("nobody@example.com", PASSWORD)

    def test_inactive_principal(self, authenticator, directory, alice):
        directory.set_active(alice.id, False)
        with pytest.raises(InactiveError) as exc_info:
            authenticator.login("alice", PASSWORD)
        assert exc_info.value.status_code == 403

    def test_wrong_secret(self, authenticator, alice):
        with pytest.raises(AuthenticationError) as exc_info:
            authenticator.login("alice@example.com", "wrong-password")
        assert exc_info.value.error_code == "unauthorized"


class TestArgon2SecretVerifier:
    """Tests for argon2id secret checks."""

    def test_hash_is_salted(self, verifier):
        first, algo = verifier.hash_secret(PASSWORD)
        second, _ = verifier.hash_secret(PASSWORD)
        assert algo == "argon2id"
        assert first != second
        assert PASSWORD not in first

    def test_missing_record_fails(self, verifier, directory):
        principal = directory.add_principal("bob@example.com")
        assert verifier.authenticate(principal, PASSWORD) is False

    def test_algorithm_mismatch_fails(self, verifier, directory):
        principal = directory.add_principal("bob@example.com")
        directory.save_password(principal.id, "plain", "md5")
        assert verifier.authenticate(principal, "plain") is False

    def test_garbage_hash_fails(self, verifier, directory):
        principal = directory.add_principal("bob@example.com")
        directory.save_password(principal.id, "not-an-argon2-hash", "argon2id")
        assert verifier.authenticate(principal, PASSWORD) is False


class TestPrincipalCache:
    """Tests for the bounded principal cache."""

    def test_entries_expire(self, cache, alice, clock):
        cache.put(alice)
        clock.advance(299)
        assert cache.get("alice@example.com") is not None
        clock.advance(1)
        assert cache.get("alice@example.com") is None

    def test_oldest_entry_evicted_at_capacity(self, directory, clock):
        cache = PrincipalCache(ttl_seconds=300, max_entries=2, clock=clock.monotonic)
        for name in ("a", "b", "c"):
            cache.put(directory.add_principal(f"{name}@example.com"))
        assert len(cache) == 2
        assert cache.get("a@example.com") is None
        assert cache.get("c@example.com") is not None

    def test_returns_copies(self, cache, alice):
        cache.put(alice)
        cache.get("alice@example.com").roles.append("ADMIN")
        assert cache.get("alice@example.com").roles == ["USER"]


class TestPrincipalService:
    """Tests for principal lookups and writes."""

    def test_email_lookup_is_cached(self, principals, cache, alice):
        principals.find_by_email("alice@example.com")
        assert cache.get("alice@example.com").id == alice.id

    def test_deactivation_invalidates_cache(self, principals, authenticator, alice):
        authenticator.login("alice@example.com", PASSWORD)

        principals.set_active(alice.id, False)

        with pytest.raises(InactiveError):
            authenticator.login("alice@example.com", PASSWORD)

    def test_reactivation_invalidates_cache(self, principals, authenticator, alice):
        principals.set_active(alice.id, False)
        with pytest.raises(InactiveError):
            authenticator.login("alice@example.com", PASSWORD)

        principals.set_active(alice.id, True)

        assert authenticator.login("alice@example.com", PASSWORD)

    def test_deactivation_drops_sessions(self, principals, authenticator, sessions, store, alice):
        token = authenticator.login("alice", PASSWORD)
        sessions.add_session(alice, token, False)

        principals.set_active(alice.id, False)

        assert store.scan(SessionKeys.principal_pattern(alice.id)) == set()

    def test_set_active_unknown_principal(self, principals):
        with pytest.raises(NotFoundError):
            principals.set_active("missing", False)

    def test_change_password_drops_sessions(
        self, principals, authenticator, sessions, store, alice
    ):
        for _ in range(2):
            sessions.add_session(alice, authenticator.login("alice", PASSWORD), False)

        removed = principals.change_password(alice, PASSWORD, "NewPassword456!")

        assert removed == 2
        assert store.scan(SessionKeys.principal_pattern(alice.id)) == set()
        with pytest.raises(AuthenticationError):
            authenticator.login("alice", PASSWORD)
        assert authenticator.login("alice", "NewPassword456!")

    def test_change_password_requires_current_secret(self, principals, alice):
        with pytest.raises(AuthenticationError):
            principals.change_password(alice, "wrong", "NewPassword456!")

    def test_change_password_requires_new_secret(self, principals, alice):
        with pytest.raises(InvalidArgumentError):
            principals.change_password(alice, PASSWORD, "")

    def test_principal_from_token_by_username(self, principals, issuer, alice):
        assert principals.principal_from_token(issuer.issue(alice)).id == alice.id

    def test_principal_from_token_by_email(self, principals, issuer, directory):
        bob = directory.add_principal("bob@example.com")
        assert principals.principal_from_token(issuer.issue(bob)).id == bob.id

    def test_principal_from_refresh_token(self, principals, authenticator, sessions, alice):
        record = sessions.add_session(alice, authenticator.login("alice", PASSWORD), False)
        assert principals.principal_from_refresh_token(record.refresh_token).id == alice.id

    def test_principal_from_unknown_refresh_token(self, principals):
        with pytest.raises(ExpiredOrRevokedError):
            principals.principal_from_refresh_token("unknown")


class TestRoleBootstrap:
    """Tests for seeding well-known roles."""

    def test_creates_missing_roles(self, directory):
        roles = ensure_default_roles(directory, ["ADMIN", "USER"])
        assert [role.name for role in roles] == ["ADMIN", "USER"]
        assert directory.find_role_by_name("ADMIN") is not None

    def test_second_run_is_a_noop(self, directory):
        first = ensure_default_roles(directory, ["ADMIN", "USER"])
        second = ensure_default_roles(directory, ["ADMIN", "USER"])
        assert [role.id for role in first] == [role.id for role in second]
        assert len(directory.list_roles()) == 2

    def test_insert_race_reports_stored_role(self, directory):
        stored = directory.save_role(Role.new("ADMIN"))

        class RacingDirectory(MemoryPrincipalDirectory):
            """Misses the role on lookup, then finds it on insert."""

            def __init__(self, inner):
                super().__init__()
                self.inner = inner
                self.lookups = 0

            def find_role_by_name(self, name):
                self.lookups += 1
                if self.lookups == 1:
                    return None
                return self.inner.find_role_by_name(name)

            def save_role(self, role):
                return self.inner.save_role(role)

        roles = ensure_default_roles(RacingDirectory(directory), ["ADMIN"])

        assert [role.id for role in roles] == [stored.id]
        assert len(directory.list_roles()) == 1
