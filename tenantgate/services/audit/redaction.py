from __future__ import annotations

import re
from typing import Any

from starlette.requests import Request


REDACTED_VALUE = "[REDACTED]"

_SENSITIVE_KEY_PATTERNS = (
    "password",
    "passwd",
    "secret",
    "token",
    "api_key",
    "apikey",
    "private_key",
    "access_key",
    "authorization",
    "ssn",
    "credit_card",
    "card_number",
    "cardnumber",
    "cvv",
    "backup_code",
    "otp",
)
_KEY_SEPARATORS = re.compile(r"[\s\-.]+")
_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def _normalize_key(key: str) -> str:
    # Fold camelCase, spaces and dashes into snake_case so "cardNumber" and "card number" match.
    snake = _CAMEL_BOUNDARY.sub("_", key)
    return _KEY_SEPARATORS.sub("_", snake).lower()


def is_sensitive_key(key: str) -> bool:
    normalized = _normalize_key(key)
    if normalized == "key" or normalized.endswith("_key"):
        return True
    return any(pattern in normalized for pattern in _SENSITIVE_KEY_PATTERNS)


def redact(value: Any) -> Any:
    # Recursively scrub sensitive fields through nested objects and arrays.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if is_sensitive_key(key):
                sanitized[key] = REDACTED_VALUE
            else:
                sanitized[key] = redact(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [redact(item) for item in value]
    return value


def get_request_context(request: Request | None) -> dict[str, str | None]:
    # Extract request identifiers and client hints without persisting credentials.
    if request is None:
        return {"request_id": None, "ip_address": None, "user_agent": None}
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip_address = forwarded.split(",")[0].strip()
    else:
        ip_address = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent")
    return {"request_id": request_id, "ip_address": ip_address, "user_agent": user_agent}
