from __future__ import annotations

import hashlib
import hmac
import secrets

from tenantgate.core.config import get_settings


ACCESS_TOKEN_PREFIX = "tga_"
REFRESH_TOKEN_PREFIX = "tgr_"


def hash_token(raw_token: str) -> str:
    # Keyed SHA-256 so a leaked table cannot be matched against guessed tokens offline.
    pepper = get_settings().token_hash_secret.encode("utf-8")
    return hmac.new(pepper, raw_token.encode("utf-8"), hashlib.sha256).hexdigest()


def generate_access_token() -> tuple[str, str]:
    raw_token = f"{ACCESS_TOKEN_PREFIX}{secrets.token_urlsafe(32)}"
    return raw_token, hash_token(raw_token)


def generate_refresh_token() -> tuple[str, str]:
    # Longer secret for the long-lived credential.
    raw_token = f"{REFRESH_TOKEN_PREFIX}{secrets.token_urlsafe(64)}"
    return raw_token, hash_token(raw_token)
