from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import hmac
import logging
import re
from uuid import uuid4

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantgate.core.config import Settings, get_settings
from tenantgate.core.errors import ConflictError, NotFoundError, ValidationFailure
from tenantgate.domain.models import MfaBackupCode, MfaDevice, MfaVerificationCode, User
from tenantgate.services.audit.compliance import RiskLevel
from tenantgate.services.audit.logger import AuditContext, AuditLogger
from tenantgate.services.mfa.crypto import encrypt_secret
from tenantgate.services.mfa.delivery import CodeDelivery, mask_target
from tenantgate.services.mfa.methods import (
    OUT_OF_BAND_METHODS,
    DeviceVerifier,
    MfaMethod,
    build_verifiers,
    code_length,
    code_ttl_s,
    generate_numeric_code,
    hash_code,
)
from tenantgate.services.mfa.totp import generate_secret, provisioning_uri


logger = logging.getLogger(__name__)

_STORE_ERRORS = (SQLAlchemyError, OSError, TimeoutError)
_PHONE_RE = re.compile(r"^\+?[0-9]{7,15}$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
BACKUP_CODE_LENGTH = 8


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TotpEnrollment:
    device_id: str
    secret: str
    qr_payload: str
    backup_codes: list[str]


@dataclass(frozen=True)
class OutOfBandEnrollment:
    device_id: str
    method: str
    masked_target: str
    expires_at: datetime


@dataclass(frozen=True)
class ChallengeResult:
    sent: list[str] = field(default_factory=list)
    throttled: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class MfaVerificationResult:
    success: bool
    method: str | None = None
    device_id: str | None = None
    # invalid_code | code_already_used | unavailable
    reason: str | None = None


class MfaManager:
    """Device enrollment, login verification and backup codes.

    Confirmation calls answer only true or false; an unknown device id and a
    wrong code look the same to the caller and differ only in the audit log.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        audit: AuditLogger,
        delivery: CodeDelivery,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._audit = audit
        self._delivery = delivery
        self._settings = settings or get_settings()
        self._verifiers: dict[MfaMethod, DeviceVerifier] = build_verifiers(self._settings)

    async def _tenant_user(self, session: AsyncSession, *, user_id: str, tenant_id: str) -> User:
        user = await session.get(User, user_id)
        if user is None or user.tenant_id != tenant_id:
            raise NotFoundError("User not found")
        return user

    async def _issue_backup_codes(self, session: AsyncSession, *, user_id: str, tenant_id: str) -> list[str]:
        # Retire every unused code first so only the new batch stays valid.
        now = _utc_now()
        await session.execute(
            update(MfaBackupCode)
            .where(
                MfaBackupCode.user_id == user_id,
                MfaBackupCode.used_at.is_(None),
                MfaBackupCode.invalidated_at.is_(None),
            )
            .values(invalidated_at=now)
        )
        codes = [generate_numeric_code(BACKUP_CODE_LENGTH) for _ in range(self._settings.mfa_backup_code_count)]
        for code in codes:
            session.add(
                MfaBackupCode(
                    id=uuid4().hex,
                    user_id=user_id,
                    tenant_id=tenant_id,
                    code_hash=hash_code(code),
                    created_at=now,
                )
            )
        await session.flush()
        return codes

    async def enroll_totp(self, *, user_id: str, tenant_id: str, name: str) -> TotpEnrollment:
        device_id = uuid4().hex
        secret = generate_secret()
        async with self._session_factory() as session:
            user = await self._tenant_user(session, user_id=user_id, tenant_id=tenant_id)
            session.add(
                MfaDevice(
                    id=device_id,
                    user_id=user_id,
                    tenant_id=tenant_id,
                    method=MfaMethod.TOTP.value,
                    name=name,
                    secret_ciphertext=encrypt_secret(
                        secret,
                        tenant_id=tenant_id,
                        device_id=device_id,
                        secret_key=self._settings.mfa_secret_key,
                    ),
                    is_enabled=False,
                    is_verified=False,
                )
            )
            await session.flush()
            backup_codes = await self._issue_backup_codes(session, user_id=user_id, tenant_id=tenant_id)
            await session.commit()
            label = user.email
        await self._audit.log_auth_event(
            "mfa_device_enrolled",
            success=True,
            context=AuditContext(user_id=user_id, tenant_id=tenant_id),
            details={"device_id": device_id, "method": MfaMethod.TOTP.value},
        )
        return TotpEnrollment(
            device_id=device_id,
            secret=secret,
            qr_payload=provisioning_uri(secret, label=label, issuer=self._settings.mfa_issuer),
            backup_codes=backup_codes,
        )

    async def _confirm(
        self,
        *,
        device_id: str,
        code: str,
        methods: tuple[MfaMethod, ...],
        user_id: str | None,
    ) -> bool:
        now = _utc_now()
        async with self._session_factory() as session:
            device = await session.get(MfaDevice, device_id)
            if (
                device is None
                or (user_id is not None and device.user_id != user_id)
                or MfaMethod(device.method) not in methods
                or device.status != "pending_verification"
            ):
                await self._audit.log_auth_event(
                    "mfa_enrollment_confirm_failed",
                    success=False,
                    context=AuditContext(user_id=user_id),
                    details={"device_id": device_id, "reason": "device_unavailable"},
                )
                return False
            verified = await self._verifiers[MfaMethod(device.method)].verify(session, device, code, now=now)
            if verified:
                device.is_enabled = True
                device.is_verified = True
                device.enabled_at = now
                device.last_used_at = now
                device.failed_attempts = 0
            else:
                device.failed_attempts += 1
            await session.commit()
            tenant_id = device.tenant_id
            owner_id = device.user_id
            failed_attempts = device.failed_attempts
        await self._audit.log_auth_event(
            "mfa_device_enabled" if verified else "mfa_enrollment_confirm_failed",
            success=verified,
            context=AuditContext(user_id=owner_id, tenant_id=tenant_id),
            details={"device_id": device_id, "failed_attempts": failed_attempts},
        )
        return verified

    async def confirm_totp(self, device_id: str, code: str, *, user_id: str | None = None) -> bool:
        return await self._confirm(device_id=device_id, code=code, methods=(MfaMethod.TOTP,), user_id=user_id)

    async def confirm_out_of_band(self, device_id: str, code: str, *, user_id: str | None = None) -> bool:
        return await self._confirm(device_id=device_id, code=code, methods=OUT_OF_BAND_METHODS, user_id=user_id)

    def _validate_target(self, method: MfaMethod, target: str) -> str:
        cleaned = target.strip()
        if method is MfaMethod.SMS:
            cleaned = re.sub(r"[\s\-()]", "", cleaned)
            if not _PHONE_RE.match(cleaned):
                raise ValidationFailure("phone_number", "must be 7 to 15 digits with optional leading +")
            return cleaned
        if not _EMAIL_RE.match(cleaned):
            raise ValidationFailure("email", "must be a valid email address")
        return cleaned.lower()

    def _new_code_row(self, device: MfaDevice, *, now: datetime) -> tuple[MfaVerificationCode, str]:
        method = MfaMethod(device.method)
        code = generate_numeric_code(code_length(method, self._settings))
        row = MfaVerificationCode(
            id=uuid4().hex,
            device_id=device.id,
            tenant_id=device.tenant_id,
            code_hash=hash_code(code),
            attempts=0,
            expires_at=now + timedelta(seconds=code_ttl_s(method, self._settings)),
            created_at=now,
        )
        return row, code

    async def _enroll_out_of_band(
        self,
        *,
        method: MfaMethod,
        user_id: str,
        tenant_id: str,
        target: str,
        name: str | None,
    ) -> OutOfBandEnrollment:
        cleaned = self._validate_target(method, target)
        now = _utc_now()
        async with self._session_factory() as session:
            await self._tenant_user(session, user_id=user_id, tenant_id=tenant_id)
            device = MfaDevice(
                id=uuid4().hex,
                user_id=user_id,
                tenant_id=tenant_id,
                method=method.value,
                name=name or method.value,
                target=cleaned,
                is_enabled=False,
                is_verified=False,
            )
            session.add(device)
            await session.flush()
            row, code = self._new_code_row(device, now=now)
            session.add(row)
            await session.commit()
        await self._delivery.deliver(method=method.value, target=cleaned, code=code, purpose="enrollment")
        await self._audit.log_auth_event(
            "mfa_device_enrolled",
            success=True,
            context=AuditContext(user_id=user_id, tenant_id=tenant_id),
            details={"device_id": device.id, "method": method.value, "target": mask_target(cleaned)},
        )
        return OutOfBandEnrollment(
            device_id=device.id,
            method=method.value,
            masked_target=mask_target(cleaned),
            expires_at=row.expires_at,
        )

    async def enroll_sms(self, *, user_id: str, tenant_id: str, phone_number: str, name: str | None = None) -> OutOfBandEnrollment:
        return await self._enroll_out_of_band(
            method=MfaMethod.SMS, user_id=user_id, tenant_id=tenant_id, target=phone_number, name=name
        )

    async def enroll_email(self, *, user_id: str, tenant_id: str, email: str, name: str | None = None) -> OutOfBandEnrollment:
        return await self._enroll_out_of_band(
            method=MfaMethod.EMAIL, user_id=user_id, tenant_id=tenant_id, target=email, name=name
        )

    async def send_login_challenge(self, user_id: str) -> ChallengeResult:
        # TOTP devices need nothing sent; SMS resends respect a cooldown.
        now = _utc_now()
        pending: list[tuple[MfaDevice, str]] = []
        throttled: list[str] = []
        async with self._session_factory() as session:
            result = await session.execute(
                select(MfaDevice).where(
                    MfaDevice.user_id == user_id,
                    MfaDevice.is_enabled.is_(True),
                    MfaDevice.method.in_([m.value for m in OUT_OF_BAND_METHODS]),
                )
            )
            for device in result.scalars().all():
                if device.method == MfaMethod.SMS.value:
                    latest = await session.execute(
                        select(MfaVerificationCode.created_at)
                        .where(MfaVerificationCode.device_id == device.id)
                        .order_by(MfaVerificationCode.created_at.desc())
                        .limit(1)
                    )
                    last_sent = latest.scalar_one_or_none()
                    cooldown = timedelta(seconds=self._settings.mfa_sms_resend_cooldown_s)
                    if last_sent is not None and now - last_sent < cooldown:
                        throttled.append(device.id)
                        continue
                row, code = self._new_code_row(device, now=now)
                session.add(row)
                pending.append((device, code))
            await session.commit()
        for device, code in pending:
            await self._delivery.deliver(method=device.method, target=device.target or "", code=code, purpose="login")
        if throttled:
            logger.info("mfa_challenge_throttled user_id=%s devices=%s", user_id, len(throttled))
        return ChallengeResult(sent=[device.id for device, _code in pending], throttled=throttled)

    async def _consume_backup_code(self, session: AsyncSession, *, user_id: str, code: str, now: datetime) -> str:
        # Returns "consumed", "used" or "missing".
        code_hash = hash_code(code)
        result = await session.execute(
            select(MfaBackupCode).where(
                MfaBackupCode.user_id == user_id,
                MfaBackupCode.code_hash == code_hash,
                MfaBackupCode.invalidated_at.is_(None),
            )
        )
        rows = list(result.scalars().all())
        live = [row for row in rows if row.used_at is None and hmac.compare_digest(row.code_hash, code_hash)]
        for row in live:
            claimed = await session.execute(
                update(MfaBackupCode)
                .where(MfaBackupCode.id == row.id, MfaBackupCode.used_at.is_(None))
                .values(used_at=now)
            )
            if claimed.rowcount == 1:
                return "consumed"
        return "used" if rows else "missing"

    async def verify_login(self, user_id: str, code: str, *, context: AuditContext | None = None) -> MfaVerificationResult:
        now = _utc_now()
        ctx = context or AuditContext(user_id=user_id)
        try:
            result = await self._verify_login(user_id, code, now=now)
        except _STORE_ERRORS as exc:
            logger.error("mfa_verification_unavailable user_id=%s", user_id, exc_info=exc)
            result = MfaVerificationResult(success=False, reason="unavailable")
        await self._audit.log_auth_event(
            "mfa_verification",
            success=result.success,
            context=ctx,
            details={"method": result.method, "device_id": result.device_id, "reason": result.reason},
            risk_level=None if result.success else RiskLevel.MEDIUM,
        )
        return result

    async def _verify_login(self, user_id: str, code: str, *, now: datetime) -> MfaVerificationResult:
        candidate = (code or "").strip()
        if not candidate:
            return MfaVerificationResult(success=False, reason="invalid_code")
        async with self._session_factory() as session:
            backup_state = await self._consume_backup_code(session, user_id=user_id, code=candidate, now=now)
            if backup_state == "consumed":
                await session.commit()
                return MfaVerificationResult(success=True, method=MfaMethod.BACKUP_CODES.value)

            result = await session.execute(
                select(MfaDevice)
                .where(MfaDevice.user_id == user_id, MfaDevice.is_enabled.is_(True))
                .order_by(MfaDevice.created_at)
            )
            devices = list(result.scalars().all())
            for device in devices:
                verifier = self._verifiers.get(MfaMethod(device.method))
                if verifier is None:
                    continue
                if await verifier.verify(session, device, candidate, now=now):
                    device.failed_attempts = 0
                    device.last_used_at = now
                    await session.commit()
                    return MfaVerificationResult(success=True, method=device.method, device_id=device.id)
            # No match: every device that was tried records the failure.
            for device in devices:
                device.failed_attempts += 1
            await session.commit()
        reason = "code_already_used" if backup_state == "used" else "invalid_code"
        return MfaVerificationResult(success=False, reason=reason)

    async def regenerate_backup_codes(self, user_id: str) -> list[str]:
        async with self._session_factory() as session:
            user = await session.get(User, user_id)
            if user is None:
                raise NotFoundError("User not found")
            codes = await self._issue_backup_codes(session, user_id=user_id, tenant_id=user.tenant_id)
            await session.commit()
            tenant_id = user.tenant_id
        await self._audit.log_auth_event(
            "mfa_backup_codes_regenerated",
            success=True,
            context=AuditContext(user_id=user_id, tenant_id=tenant_id),
            details={"count": len(codes)},
        )
        return codes

    async def disable_device(self, device_id: str, *, user_id: str) -> MfaDevice:
        now = _utc_now()
        async with self._session_factory() as session:
            device = await session.get(MfaDevice, device_id)
            if device is None or device.user_id != user_id:
                raise NotFoundError("MFA device not found")
            if device.disabled_at is not None:
                raise ConflictError("MFA device already disabled")
            device.is_enabled = False
            device.disabled_at = now
            await session.commit()
        await self._audit.log_auth_event(
            "mfa_device_disabled",
            success=True,
            context=AuditContext(user_id=user_id, tenant_id=device.tenant_id),
            details={"device_id": device_id, "method": device.method},
            risk_level=RiskLevel.MEDIUM,
        )
        return device

    async def list_devices(self, user_id: str) -> list[MfaDevice]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(MfaDevice).where(MfaDevice.user_id == user_id).order_by(MfaDevice.created_at)
            )
            return list(result.scalars().all())

    async def user_has_mfa_enabled(self, user_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                select(MfaDevice.id)
                .where(MfaDevice.user_id == user_id, MfaDevice.is_enabled.is_(True))
                .limit(1)
            )
            return result.scalar_one_or_none() is not None


async def purge_expired_codes(session: AsyncSession, *, now: datetime | None = None) -> int:
    # Drop verification records that can no longer be used; callers commit.
    cutoff = now or _utc_now()
    result = await session.execute(
        delete(MfaVerificationCode).where(
            or_(MfaVerificationCode.expires_at <= cutoff, MfaVerificationCode.used_at.is_not(None))
        )
    )
    return int(result.rowcount or 0)
