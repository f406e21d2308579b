import pytest
from structlog.contextvars import get_contextvars

from collabauth.logging import (
    _redact_sensitive,
    bind_request_context,
    clear_request_context,
    get_correlation_id,
    mask_email,
    mask_session_id,
    set_correlation_id,
)


@pytest.fixture(autouse=True)
def clean_context():
    clear_request_context()
    yield
    clear_request_context()


def test_secrets_fully_masked():
    event = _redact_sensitive(
        None,
        "info",
        {"event": "login_attempt", "password": "hunter22", "csrf_token": "abcdef", "password_hash": None},
    )

    assert event["password"] == "***"
    assert event["csrf_token"] == "***"
    assert event["password_hash"] is None
    assert event["event"] == "login_attempt"


def test_session_ids_keep_short_prefix():
    event = _redact_sensitive(None, "info", {"event": "x", "session_id": "0123456789abcdef"})

    assert event["session_id"] == "012345***"
    assert mask_session_id("short") == "***"


def test_emails_keep_first_letter_and_domain():
    event = _redact_sensitive(None, "info", {"event": "x", "email": "alice@example.com"})

    assert event["email"] == "a***@example.com"
    assert mask_email("not-an-email") == "***"


def test_other_fields_untouched():
    event = _redact_sensitive(None, "info", {"event": "x", "user_id": 7, "tenant_code": "acme"})

    assert event == {"event": "x", "user_id": 7, "tenant_code": "acme"}


def test_correlation_id_from_header_or_generated():
    assert set_correlation_id("  req-1 ") == "req-1"
    assert get_correlation_id() == "req-1"

    generated = set_correlation_id(None)
    assert len(generated) == 36
    assert get_correlation_id() == generated


def test_request_context_skips_none_and_clears():
    bind_request_context(method="POST", path="/api/auth", user_id=None)

    assert get_contextvars() == {"method": "POST", "path": "/api/auth"}

    clear_request_context()
    assert get_contextvars() == {}
    assert get_correlation_id() is None
