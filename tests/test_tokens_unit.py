"""Unit tests for the token issuer.

Tests for:
- Claim contents of issued tokens
- Signature, algorithm, issuer and audience checks
- Expiry comparison without leeway
- Signing key requirements
"""

import base64
import json

import pytest

from sessionvault.config import Settings
from sessionvault.service.errors import MalformedTokenError, SigningError
from sessionvault.service.tokens import CLAIMS_VERSION, TokenClaims, TokenIssuer
from sessionvault.storage.models import Principal

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


@pytest.fixture
def settings():
    return Settings(jwt_secret=TEST_SECRET, access_token_ttl_seconds=60)


@pytest.fixture
def issuer(settings, clock, monkeypatch):
    issuer = TokenIssuer(settings)
    monkeypatch.setattr(issuer, "_now", clock.now)
    return issuer


@pytest.fixture
def principal():
    return Principal(id="p-1", email="alice@example.com", username="alice", roles=["USER"])


def _segment(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


def _payload(token: str) -> dict:
    segment = token.split(".")[1]
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return json.loads(base64.urlsafe_b64decode(segment + padding))


class TestIssue:
    """Tests for minting tokens."""

    def test_issued_token_carries_identity_claims(self, issuer, principal, clock):
        token = issuer.issue(principal)
        claims = issuer.claims(token)

        assert claims.sub == "alice"
        assert claims.pid == "p-1"
        assert claims.roles == ["USER"]
        assert claims.ver == CLAIMS_VERSION
        assert claims.exp == int(clock.now().timestamp()) + 60
        assert claims.iss == "sessionvault"
        assert claims.aud == "sessionvault-clients"

    def test_subject_falls_back_to_email(self, issuer):
        principal = Principal(id="p-2", email="bob@example.com", username="  ")
        assert issuer.claims(issuer.issue(principal)).sub == "bob@example.com"

    def test_each_issue_gets_a_fresh_jwt_id(self, issuer, principal):
        first = issuer.jwt_id(issuer.issue(principal))
        second = issuer.jwt_id(issuer.issue(principal))
        assert first != second

    def test_missing_secret_raises_signing_error(self, principal):
        issuer = TokenIssuer(Settings(jwt_secret=None))
        with pytest.raises(SigningError) as exc_info:
            issuer.issue(principal)
        assert exc_info.value.status_code == 500
        assert exc_info.value.error_code == "server_error"

    def test_short_secret_raises_signing_error(self, principal):
        issuer = TokenIssuer(Settings(jwt_secret="too-short"))
        with pytest.raises(SigningError):
            issuer.issue(principal)


class TestClaims:
    """Tests for verifying and parsing tokens."""

    def test_tampered_signature_is_malformed(self, issuer, principal):
        token = issuer.issue(principal)
        header, payload, signature = token.split(".")
        tampered = f"{header}.{payload}.{signature[:-2]}xx"
        with pytest.raises(MalformedTokenError):
            issuer.claims(tampered)

    def test_token_signed_with_other_secret_is_malformed(self, issuer, principal):
        other = TokenIssuer(Settings(jwt_secret="another-secret-that-is-long-enough-123"))
        with pytest.raises(MalformedTokenError):
            issuer.claims(other.issue(principal))

    def test_garbage_is_malformed(self, issuer):
        for token in ("", "abc", "a.b", "a.b.c.d", "!!!.???.###"):
            with pytest.raises(MalformedTokenError):
                issuer.claims(token)

    def test_algorithm_none_is_rejected(self, issuer, principal):
        token = issuer.issue(principal)
        _, payload, signature = token.split(".")
        forged = f"{_segment({'alg': 'none', 'typ': 'JWT'})}.{payload}.{signature}"
        with pytest.raises(MalformedTokenError):
            issuer.claims(forged)

    def test_wrong_audience_is_malformed(self, settings, principal):
        minted = TokenIssuer(settings.model_copy(update={"jwt_audience": "elsewhere"}))
        with pytest.raises(MalformedTokenError):
            TokenIssuer(settings).claims(minted.issue(principal))

    def test_wrong_issuer_is_malformed(self, settings, principal):
        minted = TokenIssuer(settings.model_copy(update={"jwt_issuer": "someone-else"}))
        with pytest.raises(MalformedTokenError):
            TokenIssuer(settings).claims(minted.issue(principal))

    def test_expired_token_still_parses(self, issuer, principal, clock):
        token = issuer.issue(principal)
        clock.advance(3600)
        assert issuer.claims(token).pid == "p-1"


class TestExpiry:
    """Tests for the exact expiry comparison."""

    def test_not_expired_at_exact_exp(self, issuer, principal, clock):
        token = issuer.issue(principal)
        clock.advance(60)
        assert issuer.is_expired(token) is False

    def test_expired_one_second_after_exp(self, issuer, principal, clock):
        token = issuer.issue(principal)
        clock.advance(61)
        assert issuer.is_expired(token) is True


class TestClaimsParsing:
    """Tests for forward-compatible claim parsing."""

    def test_unknown_claims_are_ignored(self):
        claims = TokenClaims.from_payload(
            {"sub": "a", "pid": "p", "jti": "j", "exp": 10, "tenant": "x", "ver": 1}
        )
        assert claims.jti == "j"
        assert claims.roles == []

    def test_missing_version_defaults(self):
        claims = TokenClaims.from_payload({"sub": "a", "pid": "p", "jti": "j", "exp": 10})
        assert claims.ver == CLAIMS_VERSION

    def test_missing_required_claim_is_malformed(self):
        with pytest.raises(MalformedTokenError):
            TokenClaims.from_payload({"sub": "a", "pid": "p", "exp": 10})

    def test_non_numeric_expiry_is_malformed(self):
        with pytest.raises(MalformedTokenError):
            TokenClaims.from_payload({"sub": "a", "pid": "p", "jti": "j", "exp": "soon"})

    def test_payload_round_trip_matches_token(self, issuer, principal):
        token = issuer.issue(principal)
        assert issuer.claims(token).to_payload() == _payload(token)
