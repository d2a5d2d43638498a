from __future__ import annotations

from tenantgate.services.audit.redaction import REDACTED_VALUE, is_sensitive_key, redact


def test_audit_redacts_nested_secrets() -> None:
    # Redact credential-like fields at any depth, including inside lists.
    payload = {
        "password": "hunter2",
        "refresh_token": "tgr_abc",
        "profile": {"apiKey": "k-123", "display": "Ana"},
        "cards": [{"card number": "4111111111111111", "brand": "visa"}],
        "ssn": "123-45-6789",
        "safe": "value",
    }
    sanitized = redact(payload)
    assert sanitized["password"] == REDACTED_VALUE
    assert sanitized["refresh_token"] == REDACTED_VALUE
    assert sanitized["profile"]["apiKey"] == REDACTED_VALUE
    assert sanitized["profile"]["display"] == "Ana"
    assert sanitized["cards"][0]["card number"] == REDACTED_VALUE
    assert sanitized["cards"][0]["brand"] == "visa"
    assert sanitized["ssn"] == REDACTED_VALUE
    assert sanitized["safe"] == "value"


def test_redaction_leaves_input_untouched() -> None:
    payload = {"secret": "s", "nested": {"token": "t"}}
    redact(payload)
    assert payload == {"secret": "s", "nested": {"token": "t"}}


def test_sensitive_key_matching_folds_case_and_separators() -> None:
    assert is_sensitive_key("Authorization")
    assert is_sensitive_key("client-secret")
    assert is_sensitive_key("privateKey")
    assert is_sensitive_key("signing_key")
    assert is_sensitive_key("CVV")
    assert not is_sensitive_key("device_id")
    assert not is_sensitive_key("reason")
    assert not is_sensitive_key("credential_tenant_id")
    assert not is_sensitive_key("monkey_business")
