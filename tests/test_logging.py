from korella.logging import (
    _redact_pii,
    email_fingerprint,
    get_correlation_id,
    redact_email,
    sanitize_error_message,
    set_correlation_id,
)


def test_redact_email():
    assert redact_email("ada@example.com") == "ad***@example.com"
    assert redact_email("nonsense") == "redacted"


def test_fingerprint_ignores_case_and_whitespace():
    assert email_fingerprint(" Ada@Example.com ") == email_fingerprint("ada@example.com")
    assert len(email_fingerprint("ada@example.com")) == 64


def test_redaction_processor():
    event = {
        "event": "login",
        "password": "Korella#Secure42",
        "token_prefix": "abcdefgh",
        "target_email": "ada@example.com",
        "to": "grace@example.com",
        "email_fingerprint": "f" * 64,
        "user_id": "u-1",
    }

    redacted = _redact_pii(None, "info", dict(event))

    assert redacted["password"] == "Ko***"
    assert redacted["token_prefix"] == "ab***"
    assert redacted["target_email"] == "ad***@example.com"
    assert redacted["to"] == "gr***@example.com"
    assert redacted["email_fingerprint"] == "f" * 64
    assert redacted["user_id"] == "u-1"


def test_sanitize_error_message():
    message = sanitize_error_message(
        'relation "auth_log" does not exist; connect to postgresql://app:pw@db/korella'
    )
    assert "auth_log" not in message
    assert "pw@db" not in message
    assert sanitize_error_message("") == "An error occurred"


def test_correlation_id_roundtrip():
    cid = set_correlation_id("req-123")
    assert cid == "req-123"
    assert get_correlation_id() == "req-123"
    assert set_correlation_id()
