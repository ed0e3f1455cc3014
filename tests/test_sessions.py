import base64
import json
from datetime import timedelta

import pytest

from tokenkeep.service.errors import InvalidTokenError
from tokenkeep.service.sessions import (
    ACCESS_PURPOSE,
    VERIFICATION_PURPOSE,
    SessionIssuer,
)

SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


def _segment(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _payload(token: str) -> dict:
    segment = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


@pytest.fixture
def issuer(clock):
    return SessionIssuer(SECRET, issuer="tokenkeep", clock=clock)


class TestSessionIssuer:
    """Tests for signing and checking purpose-bound claims."""

    def test_issue_then_parse_returns_subject(self, issuer):
        token = issuer.issue("user-1", ACCESS_PURPOSE)
        assert issuer.parse(token, ACCESS_PURPOSE) == "user-1"

    def test_payload_carries_standard_fields(self, issuer, clock):
        token = issuer.issue("user-1", ACCESS_PURPOSE, timedelta(minutes=15))
        payload = _payload(token)
        assert payload["sub"] == "user-1"
        assert payload["purpose"] == ACCESS_PURPOSE
        assert payload["iss"] == "tokenkeep"
        assert payload["exp"] - payload["iat"] == 15 * 60
        assert payload["iat"] == int(clock().timestamp())
        assert payload["jti"]

    def test_purpose_mismatch_rejected(self, issuer):
        token = issuer.issue("ada@example.com", VERIFICATION_PURPOSE)
        with pytest.raises(InvalidTokenError):
            issuer.parse(token, ACCESS_PURPOSE)

    def test_expiry_uses_clock(self, issuer, clock):
        token = issuer.issue("user-1", ACCESS_PURPOSE, timedelta(minutes=15))
        clock.advance(minutes=14, seconds=59)
        assert issuer.parse(token, ACCESS_PURPOSE) == "user-1"
        clock.advance(seconds=1)
        with pytest.raises(InvalidTokenError):
            issuer.parse(token, ACCESS_PURPOSE)

    def test_tampered_payload_rejected(self, issuer):
        header, _, signature = issuer.issue("user-1", ACCESS_PURPOSE).split(".")
        forged_payload = _segment(
            {"sub": "admin", "purpose": ACCESS_PURPOSE, "iss": "tokenkeep", "exp": 2**40}
        )
        with pytest.raises(InvalidTokenError):
            issuer.parse(f"{header}.{forged_payload}.{signature}", ACCESS_PURPOSE)

    def test_other_secret_rejected(self, issuer, clock):
        other = SessionIssuer("another-secret-that-is-long-enough-123", clock=clock)
        token = other.issue("user-1", ACCESS_PURPOSE)
        with pytest.raises(InvalidTokenError):
            issuer.parse(token, ACCESS_PURPOSE)

    def test_other_issuer_rejected(self, issuer, clock):
        other = SessionIssuer(SECRET, issuer="someone-else", clock=clock)
        token = other.issue("user-1", ACCESS_PURPOSE)
        with pytest.raises(InvalidTokenError):
            issuer.parse(token, ACCESS_PURPOSE)

    def test_alg_none_rejected(self, issuer):
        _, payload, _ = issuer.issue("user-1", ACCESS_PURPOSE).split(".")
        header = _segment({"alg": "none", "typ": "JWT"})
        with pytest.raises(InvalidTokenError):
            issuer.parse(f"{header}.{payload}.", ACCESS_PURPOSE)

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "ä.ö.ü"])
    def test_malformed_tokens_rejected(self, issuer, token):
        with pytest.raises(InvalidTokenError):
            issuer.parse(token, ACCESS_PURPOSE)

    def test_empty_secret_refused(self):
        with pytest.raises(ValueError):
            SessionIssuer("")
