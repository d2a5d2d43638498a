from __future__ import annotations

from datetime import datetime
from enum import Enum
import hmac
import logging
import secrets
from typing import Protocol

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate.core.config import Settings
from tenantgate.domain.models import MfaDevice, MfaVerificationCode
from tenantgate.services.auth.tokens import hash_token
from tenantgate.services.mfa.crypto import SecretDecryptionError, decrypt_secret
from tenantgate.services.mfa.totp import verify_totp


logger = logging.getLogger(__name__)


class MfaMethod(str, Enum):
    TOTP = "totp"
    SMS = "sms"
    EMAIL = "email"
    BACKUP_CODES = "backup_codes"


DEVICE_METHODS = (MfaMethod.TOTP, MfaMethod.SMS, MfaMethod.EMAIL)
OUT_OF_BAND_METHODS = (MfaMethod.SMS, MfaMethod.EMAIL)


def hash_code(code: str) -> str:
    # Short numeric codes share the keyed token hash with a distinct prefix.
    return hash_token(f"mfa-code:{code.strip()}")


def generate_numeric_code(length: int) -> str:
    return "".join(secrets.choice("0123456789") for _ in range(length))


def code_length(method: MfaMethod, settings: Settings) -> int:
    if method is MfaMethod.SMS:
        return settings.mfa_sms_code_length
    return settings.mfa_email_code_length


def code_ttl_s(method: MfaMethod, settings: Settings) -> int:
    if method is MfaMethod.SMS:
        return settings.mfa_sms_code_ttl_s
    return settings.mfa_email_code_ttl_s


def max_attempts(method: MfaMethod, settings: Settings) -> int:
    if method is MfaMethod.SMS:
        return settings.mfa_sms_max_attempts
    return settings.mfa_email_max_attempts


class DeviceVerifier(Protocol):
    async def verify(self, session: AsyncSession, device: MfaDevice, code: str, *, now: datetime) -> bool: ...


class TotpVerifier:
    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    async def verify(self, session: AsyncSession, device: MfaDevice, code: str, *, now: datetime) -> bool:
        if not device.secret_ciphertext:
            return False
        try:
            secret = decrypt_secret(
                device.secret_ciphertext,
                tenant_id=device.tenant_id,
                device_id=device.id,
                secret_key=self._settings.mfa_secret_key,
            )
        except SecretDecryptionError:
            logger.error("mfa_secret_unreadable device_id=%s", device.id)
            return False
        return verify_totp(secret, code, at=now.timestamp(), window=self._settings.mfa_totp_window)


class OutOfBandVerifier:
    """Checks a delivered code against the newest live verification record.

    A record is consumed by a conditional update on ``used_at``, so two
    concurrent submissions of the same code cannot both succeed. Wrong codes
    count against the record until its attempt limit retires it.
    """

    def __init__(self, method: MfaMethod, settings: Settings) -> None:
        self._method = method
        self._settings = settings

    async def verify(self, session: AsyncSession, device: MfaDevice, code: str, *, now: datetime) -> bool:
        limit = max_attempts(self._method, self._settings)
        result = await session.execute(
            select(MfaVerificationCode)
            .where(
                MfaVerificationCode.device_id == device.id,
                MfaVerificationCode.used_at.is_(None),
                MfaVerificationCode.expires_at > now,
                MfaVerificationCode.attempts < limit,
            )
            .order_by(MfaVerificationCode.created_at.desc())
            .limit(1)
        )
        record = result.scalar_one_or_none()
        if record is None:
            return False
        if not hmac.compare_digest(record.code_hash, hash_code(code or "")):
            record.attempts += 1
            await session.flush()
            return False
        claimed = await session.execute(
            update(MfaVerificationCode)
            .where(MfaVerificationCode.id == record.id, MfaVerificationCode.used_at.is_(None))
            .values(used_at=now)
        )
        return claimed.rowcount == 1


def build_verifiers(settings: Settings) -> dict[MfaMethod, DeviceVerifier]:
    return {
        MfaMethod.TOTP: TotpVerifier(settings),
        MfaMethod.SMS: OutOfBandVerifier(MfaMethod.SMS, settings),
        MfaMethod.EMAIL: OutOfBandVerifier(MfaMethod.EMAIL, settings),
    }
