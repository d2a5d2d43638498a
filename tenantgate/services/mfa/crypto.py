from __future__ import annotations

from base64 import urlsafe_b64decode, urlsafe_b64encode
import hashlib
import hmac
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from tenantgate.core.config import get_settings


class SecretDecryptionError(ValueError):
    pass


def _master_key(secret_key: str | None = None) -> bytes:
    raw = (secret_key if secret_key is not None else get_settings().mfa_secret_key).encode("utf-8")
    return hashlib.sha256(raw).digest()


def _derive_key(master_key: bytes, *, tenant_id: str, device_id: str) -> bytes:
    # Per-device key so a ciphertext copied onto another row fails to open.
    message = f"mfa:{tenant_id}:{device_id}".encode("utf-8")
    return hmac.new(master_key, message, hashlib.sha256).digest()


def encrypt_secret(secret: str, *, tenant_id: str, device_id: str, secret_key: str | None = None) -> str:
    key = _derive_key(_master_key(secret_key), tenant_id=tenant_id, device_id=device_id)
    nonce = os.urandom(12)
    aad = f"{tenant_id}:{device_id}".encode("utf-8")
    ciphertext = AESGCM(key).encrypt(nonce, secret.encode("utf-8"), aad)
    return urlsafe_b64encode(nonce + ciphertext).decode("ascii")


def decrypt_secret(payload: str, *, tenant_id: str, device_id: str, secret_key: str | None = None) -> str:
    try:
        raw = urlsafe_b64decode(payload.encode("ascii"))
    except (ValueError, UnicodeEncodeError) as exc:
        raise SecretDecryptionError("Malformed secret payload") from exc
    nonce, ciphertext = raw[:12], raw[12:]
    key = _derive_key(_master_key(secret_key), tenant_id=tenant_id, device_id=device_id)
    aad = f"{tenant_id}:{device_id}".encode("utf-8")
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, aad).decode("utf-8")
    except InvalidTag as exc:
        raise SecretDecryptionError("Secret failed authentication") from exc
