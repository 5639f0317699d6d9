"""Unit tests for the token issuer.

Tests for:
- Access token issuance and validation
- Expiry against an injected clock
- Signature, algorithm and audience checks
- Refresh token shape
"""

import base64
import json

import pytest

from gatehouse.service.errors import TokenNotValidError
from gatehouse.service.tokens import (
    InvalidSignatureError,
    TokenExpiredError,
    TokenIssuer,
    TokenMalformedError,
    looks_like_access_token,
)

SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def issuer(clock):
    return TokenIssuer(
        SECRET,
        issuer="gatehouse",
        audience="gatehouse-clients",
        access_ttl_seconds=3600,
        clock=clock,
    )


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestIssue:
    def test_issue_returns_pair_bound_to_user(self, issuer, clock):
        tokens = issuer.issue("user-1", "A@X.com")

        claims = issuer.validate(tokens.access_token)
        assert claims.user_id == "user-1"
        assert claims.email == "a@x.com"
        assert claims.session_id == tokens.session_id
        assert claims.expires_at == int(clock.now) + 3600
        assert tokens.expires_in == 3600
        assert tokens.token_type == "bearer"

    def test_refresh_tokens_are_opaque_and_unique(self, issuer):
        first = issuer.issue("user-1", "a@x.com")
        second = issuer.issue("user-1", "a@x.com")

        assert first.refresh_token != second.refresh_token
        assert "." not in first.refresh_token
        assert not looks_like_access_token(first.refresh_token)
        assert looks_like_access_token(first.access_token)

    def test_session_id_can_be_supplied(self, issuer):
        tokens = issuer.issue("user-1", "a@x.com", session_id="sess-1")

        assert issuer.validate(tokens.access_token).session_id == "sess-1"

    def test_empty_secret_rejected(self):
        with pytest.raises(ValueError):
            TokenIssuer("", issuer="i", audience="a")


class TestValidate:
    def test_token_valid_until_expiry(self, issuer, clock):
        tokens = issuer.issue("user-1", "a@x.com")

        clock.now += 3599
        assert issuer.validate(tokens.access_token).user_id == "user-1"

        clock.now += 1
        with pytest.raises(TokenExpiredError):
            issuer.validate(tokens.access_token)

    def test_expired_token_accepted_when_expiry_not_checked(self, issuer, clock):
        tokens = issuer.issue("user-1", "a@x.com")
        clock.now += 7200

        claims = issuer.validate(tokens.access_token, verify_expiry=False)
        assert claims.user_id == "user-1"

    def test_leeway_extends_expiry(self, clock):
        lenient = TokenIssuer(
            SECRET,
            issuer="gatehouse",
            audience="gatehouse-clients",
            access_ttl_seconds=60,
            leeway_seconds=30,
            clock=clock,
        )
        tokens = lenient.issue("user-1", "a@x.com")
        clock.now += 80

        assert lenient.validate(tokens.access_token).user_id == "user-1"

    def test_other_secret_fails_signature(self, issuer, clock):
        other = TokenIssuer(
            "another-secret", issuer="gatehouse", audience="gatehouse-clients", clock=clock
        )
        tokens = other.issue("user-1", "a@x.com")

        with pytest.raises(InvalidSignatureError):
            issuer.validate(tokens.access_token)

    def test_tampered_payload_fails_signature(self, issuer):
        tokens = issuer.issue("user-1", "a@x.com")
        header, payload, signature = tokens.access_token.split(".")
        forged = _b64({"sub": "admin", "exp": 9999999999})

        with pytest.raises(InvalidSignatureError):
            issuer.validate(f"{header}.{forged}.{signature}")

    def test_rejects_none_algorithm(self, issuer):
        tokens = issuer.issue("user-1", "a@x.com")
        _, payload, signature = tokens.access_token.split(".")
        header = _b64({"alg": "none", "typ": "JWT"})

        with pytest.raises(TokenMalformedError):
            issuer.validate(f"{header}.{payload}.{signature}")

    def test_other_audience_rejected(self, issuer, clock):
        foreign = TokenIssuer(SECRET, issuer="gatehouse", audience="someone-else", clock=clock)
        tokens = foreign.issue("user-1", "a@x.com")

        with pytest.raises(InvalidSignatureError):
            issuer.validate(tokens.access_token)

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "!!!.???.***"])
    def test_malformed_tokens(self, issuer, token):
        with pytest.raises(TokenMalformedError):
            issuer.validate(token)

    @pytest.mark.parametrize("position", [0, 1, 2])
    def test_non_ascii_segment_is_malformed(self, issuer, position):
        parts = issuer.issue("user-1", "a@x.com").access_token.split(".")
        parts[position] = parts[position] + "é"

        with pytest.raises(TokenMalformedError):
            issuer.validate(".".join(parts))

    def test_all_failures_share_token_not_valid_base(self, issuer):
        with pytest.raises(TokenNotValidError) as excinfo:
            issuer.validate("not-a-token")

        assert excinfo.value.status_code == 400
        assert excinfo.value.error_code.value == "token_not_valid"
