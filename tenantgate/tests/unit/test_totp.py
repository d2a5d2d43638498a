from __future__ import annotations

import base64
from urllib.parse import parse_qs, urlparse

from tenantgate.services.mfa.totp import (
    TOTP_PERIOD_S,
    generate_secret,
    provisioning_uri,
    time_step,
    totp_code,
    verify_totp,
)


# Shared secret from the RFC 6238 SHA1 test vectors.
RFC_SECRET = base64.b32encode(b"12345678901234567890").decode("ascii")


def test_totp_matches_reference_vector() -> None:
    # At T=59s the 8-digit reference code is 94287082; six digits keep the tail.
    assert totp_code(RFC_SECRET, time_step(59)) == "287082"


def test_generated_secret_is_unpadded_base32() -> None:
    secret = generate_secret()
    assert "=" not in secret
    assert len(base64.b32decode(secret + "=" * (-len(secret) % 8))) == 20


def test_verify_accepts_one_step_of_drift_either_side() -> None:
    secret = generate_secret()
    at = 1_700_000_000.0
    step = time_step(at)
    assert verify_totp(secret, totp_code(secret, step), at=at)
    assert verify_totp(secret, totp_code(secret, step - 1), at=at)
    assert verify_totp(secret, totp_code(secret, step + 1), at=at)


def test_verify_rejects_codes_outside_window() -> None:
    secret = generate_secret()
    at = 1_700_000_000.0
    step = time_step(at)
    stale = totp_code(secret, step - 2)
    # Only assert when the stale code differs from every accepted one.
    accepted = {totp_code(secret, step + offset) for offset in (-1, 0, 1)}
    if stale not in accepted:
        assert not verify_totp(secret, stale, at=at)
    assert verify_totp(secret, stale, at=at - 2 * TOTP_PERIOD_S)


def test_verify_rejects_malformed_codes() -> None:
    secret = generate_secret()
    assert not verify_totp(secret, "")
    assert not verify_totp(secret, "12345")
    assert not verify_totp(secret, "abcdef")
    assert not verify_totp(secret, "1234567")


def test_provisioning_uri_carries_issuer_and_parameters() -> None:
    uri = provisioning_uri("JBSWY3DPEHPK3PXP", label="ana@egdc.com", issuer="TenantGate")
    parsed = urlparse(uri)
    assert parsed.scheme == "otpauth"
    assert parsed.netloc == "totp"
    assert parsed.path == "/TenantGate:ana%40egdc.com"
    query = parse_qs(parsed.query)
    assert query["secret"] == ["JBSWY3DPEHPK3PXP"]
    assert query["issuer"] == ["TenantGate"]
    assert query["algorithm"] == ["SHA1"]
    assert query["digits"] == ["6"]
    assert query["period"] == ["30"]
