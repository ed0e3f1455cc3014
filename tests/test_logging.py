import hashlib

import structlog

from tokenkeep.logging import (
    _redact_pii,
    get_correlation_id,
    hash_email,
    set_correlation_id,
)


def test_secret_fields_are_masked():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "login_failed",
            "password": "hunter2-hunter2",
            "remember_token": "abcdefghijkl",
            "code": "1234",
            "email": "ada@example.com",
            "user_id": "user-1",
            "revoked": 3,
        },
    )

    assert event["password"] == "hu***r2"
    assert event["remember_token"] == "ab***kl"
    assert event["code"] == "***"
    assert event["email"] == "ad***om"
    assert event["user_id"] == "user-1"
    assert event["revoked"] == 3


def test_derived_identifiers_are_kept():
    digest = hash_email("ada@example.com")
    event = _redact_pii(None, "info", {"email_hash": digest, "token_prefix": "abcd1234"})

    assert event == {"email_hash": digest, "token_prefix": "abcd1234"}


def test_hash_email_normalizes():
    expected = hashlib.sha256(b"ada@example.com").hexdigest()
    assert hash_email(" ADA@example.com ") == expected


def test_correlation_id_is_bound_to_context():
    try:
        cid = set_correlation_id("job-42")

        assert cid == get_correlation_id() == "job-42"
        assert structlog.contextvars.get_contextvars()["correlation_id"] == "job-42"
        assert set_correlation_id() != "job-42"
    finally:
        structlog.contextvars.clear_contextvars()
    assert get_correlation_id() is None
