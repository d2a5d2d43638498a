from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import struct
import time
from urllib.parse import quote, urlencode


TOTP_DIGITS = 6
TOTP_PERIOD_S = 30
TOTP_ALGORITHM = "SHA1"


def generate_secret(num_bytes: int = 20) -> str:
    # 160-bit secret, base32 without padding as authenticator apps expect.
    return base64.b32encode(secrets.token_bytes(num_bytes)).decode("ascii").rstrip("=")


def _decode_secret(secret: str) -> bytes:
    normalized = secret.strip().replace(" ", "").upper()
    padding = "=" * (-len(normalized) % 8)
    return base64.b32decode(normalized + padding)


def time_step(at: float | None = None) -> int:
    return int((time.time() if at is None else at) // TOTP_PERIOD_S)


def totp_code(secret: str, counter: int) -> str:
    digest = hmac.new(_decode_secret(secret), struct.pack(">Q", counter), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    binary = struct.unpack(">I", digest[offset : offset + 4])[0] & 0x7FFFFFFF
    return str(binary % (10**TOTP_DIGITS)).zfill(TOTP_DIGITS)


def verify_totp(secret: str, code: str, *, at: float | None = None, window: int = 1) -> bool:
    # Accept the current step and `window` steps either side for clock skew.
    candidate = (code or "").strip()
    if len(candidate) != TOTP_DIGITS or not candidate.isdigit():
        return False
    current = time_step(at)
    matched = False
    for offset in range(-window, window + 1):
        if hmac.compare_digest(totp_code(secret, current + offset), candidate):
            matched = True
    return matched


def provisioning_uri(secret: str, *, label: str, issuer: str) -> str:
    query = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": TOTP_ALGORITHM,
            "digits": TOTP_DIGITS,
            "period": TOTP_PERIOD_S,
        }
    )
    return f"otpauth://totp/{quote(issuer)}:{quote(label)}?{query}"
