from ventaro.logging import (
    _redact_pii,
    get_correlation_id,
    mask_value,
    sanitize_error_message,
    set_correlation_id,
)


def test_emails_keep_their_domain():
    assert mask_value("buyer@example.com") == "bu***@example.com"


def test_short_and_non_string_values_pass_through():
    assert mask_value("abc") == "abc"
    assert mask_value(42) == 42


def test_redaction_applies_to_sensitive_keys_only():
    event = {
        "event": "admin_login_failed",
        "password": "Corr3ct!Horse",
        "refresh_token": "eyJhbGciOiJIUzI1NiJ9.payload.sig",
        "customer_email": "buyer@example.com",
        "identity": "203.0.113.9",
    }
    redacted = _redact_pii(None, "info", dict(event))
    assert redacted["password"] == "Co***se"
    assert redacted["refresh_token"].startswith("ey***")
    assert redacted["customer_email"] == "bu***@example.com"
    assert redacted["identity"] == "203.0.113.9"


def test_nested_values_under_sensitive_keys_are_masked():
    redacted = _redact_pii(None, "info", {"cookie": {"admin-token": "abcdefgh"}})
    assert redacted["cookie"] == {"admin-token": "ab***gh"}


def test_error_messages_lose_credentials_and_paths():
    message = sanitize_error_message(
        "stripe rejected sk_test_4eC39HqLyjWDarjtT1zdp7dc while reading /etc/ventaro/keys"
    )
    assert "4eC39" not in message
    assert "/etc/ventaro" not in message
    assert sanitize_error_message("task_id missing") == "task_id missing"


def test_long_messages_are_truncated():
    assert len(sanitize_error_message("x" * 2000)) == 500


def test_correlation_id_is_generated_or_adopted():
    assert set_correlation_id("req-1") == "req-1"
    assert get_correlation_id() == "req-1"
    generated = set_correlation_id()
    assert generated and generated != "req-1"
