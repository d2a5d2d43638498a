from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantgate.core.config import Settings, get_settings
from tenantgate.core.errors import ConflictError, NotFoundError
from tenantgate.domain.models import RefreshToken, Tenant, User
from tenantgate.services.audit.compliance import RiskLevel
from tenantgate.services.audit.logger import AuditContext, AuditLogger
from tenantgate.services.auth.blacklist import BlacklistReason, TokenBlacklist
from tenantgate.services.auth.tokens import generate_access_token, generate_refresh_token, hash_token


logger = logging.getLogger(__name__)

# Infrastructure failures on validation paths; all of them fail closed.
_STORE_ERRORS = (SQLAlchemyError, OSError, TimeoutError)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DeviceMeta:
    device_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    session_id: str


@dataclass(frozen=True)
class AuthenticatedSession:
    session_id: str
    user_id: str
    tenant_id: str
    role: str | None
    access_expires_at: datetime
    mfa_verified: bool


@dataclass(frozen=True)
class SessionInfo:
    id: str
    device_id: str | None
    ip_address: str | None
    user_agent: str | None
    created_at: datetime
    last_used_at: datetime
    mfa_verified: bool


class SessionManager:
    """Issues, rotates, validates and revokes token pairs.

    Only hashes of both tokens are stored. Every validation path treats a
    storage failure as "not authenticated".
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        blacklist: TokenBlacklist,
        audit: AuditLogger,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._blacklist = blacklist
        self._audit = audit
        self._settings = settings or get_settings()

    def _new_pair(
        self,
        session: AsyncSession,
        *,
        user_id: str,
        tenant_id: str,
        role: str | None,
        device: DeviceMeta,
        rotated_from_id: str | None = None,
        mfa_verified_at: datetime | None = None,
    ) -> TokenPair:
        now = _utc_now()
        access_token, access_hash = generate_access_token()
        refresh_token, refresh_hash = generate_refresh_token()
        access_expires_at = now + timedelta(seconds=self._settings.access_token_ttl_s)
        refresh_expires_at = now + timedelta(seconds=self._settings.refresh_token_ttl_s)
        row = RefreshToken(
            id=uuid4().hex,
            user_id=user_id,
            tenant_id=tenant_id,
            role=role,
            token_hash=refresh_hash,
            access_token_hash=access_hash,
            access_expires_at=access_expires_at,
            expires_at=refresh_expires_at,
            rotated_from_id=rotated_from_id,
            device_id=device.device_id,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            mfa_verified_at=mfa_verified_at,
            created_at=now,
            last_used_at=now,
        )
        session.add(row)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_expires_at,
            refresh_expires_at=refresh_expires_at,
            session_id=row.id,
        )

    async def issue_token_pair(
        self,
        *,
        user_id: str,
        tenant_id: str,
        role: str | None,
        device: DeviceMeta | None = None,
        session: AsyncSession | None = None,
    ) -> TokenPair:
        # Plaintext tokens are returned once; only their hashes are persisted.
        meta = device or DeviceMeta()
        if session is not None:
            pair = self._new_pair(session, user_id=user_id, tenant_id=tenant_id, role=role, device=meta)
            await session.flush()
        else:
            async with self._session_factory() as own_session:
                pair = self._new_pair(own_session, user_id=user_id, tenant_id=tenant_id, role=role, device=meta)
                await own_session.commit()
        await self._audit.log_auth_event(
            "session_issued",
            success=True,
            context=AuditContext(
                user_id=user_id,
                tenant_id=tenant_id,
                session_id=pair.session_id,
                ip_address=meta.ip_address,
                user_agent=meta.user_agent,
            ),
            details={"device_id": meta.device_id},
        )
        return pair

    async def rotate_token_pair(self, refresh_token: str, device: DeviceMeta | None = None) -> TokenPair | None:
        meta = device or DeviceMeta()
        token_hash = hash_token(refresh_token)
        ctx = AuditContext(ip_address=meta.ip_address, user_agent=meta.user_agent)
        if await self._blacklist.contains(token_hash):
            await self._audit.log_security_incident(
                "refresh_token_reuse_detected",
                risk_level=RiskLevel.HIGH,
                context=await self._owner_context(token_hash, meta),
                details={"stage": "blacklist"},
            )
            return None
        now = _utc_now()
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(RefreshToken).where(RefreshToken.token_hash == token_hash))
                row = result.scalar_one_or_none()
                if row is None:
                    failure = "unknown_token"
                else:
                    ctx = AuditContext(
                        user_id=row.user_id,
                        tenant_id=row.tenant_id,
                        session_id=row.id,
                        ip_address=meta.ip_address,
                        user_agent=meta.user_agent,
                    )
                    failure = await self._rotation_failure(session, row, meta, now)
                if failure is not None:
                    await session.rollback()
                else:
                    # Claim the row atomically so a retried or concurrent rotation cannot succeed twice.
                    claimed = await session.execute(
                        update(RefreshToken)
                        .where(RefreshToken.id == row.id, RefreshToken.revoked_at.is_(None))
                        .values(revoked_at=now, revoke_reason=BlacklistReason.ROTATION.value)
                        .execution_options(synchronize_session=False)
                    )
                    if claimed.rowcount != 1:
                        failure = "revoked"
                        await session.rollback()
                    else:
                        pair = self._new_pair(
                            session,
                            user_id=row.user_id,
                            tenant_id=row.tenant_id,
                            role=row.role,
                            device=DeviceMeta(
                                device_id=row.device_id,
                                ip_address=meta.ip_address or row.ip_address,
                                user_agent=meta.user_agent or row.user_agent,
                            ),
                            rotated_from_id=row.id,
                            mfa_verified_at=row.mfa_verified_at,
                        )
                        await session.commit()
        except _STORE_ERRORS as exc:
            logger.error("token_rotation_unavailable", exc_info=exc)
            await self._audit.log_auth_event(
                "token_rotation_failed",
                success=False,
                context=ctx,
                details={"reason": "store_unavailable"},
            )
            return None

        if failure is not None:
            await self._record_rotation_failure(failure, ctx)
            return None

        await self._blacklist.add(token_hash, expires_at=row.expires_at, reason=BlacklistReason.ROTATION)
        await self._blacklist.add(
            row.access_token_hash,
            expires_at=row.access_expires_at,
            reason=BlacklistReason.ROTATION,
        )
        await self._audit.log_auth_event(
            "token_rotated",
            success=True,
            context=AuditContext(
                user_id=row.user_id,
                tenant_id=row.tenant_id,
                session_id=pair.session_id,
                ip_address=meta.ip_address,
                user_agent=meta.user_agent,
            ),
            details={"previous_session_id": row.id},
        )
        return pair

    async def _owner_context(self, token_hash: str, meta: DeviceMeta) -> AuditContext:
        # Attribute a replayed token to its tenant so the alert is visible to that tenant's admins.
        ctx = AuditContext(ip_address=meta.ip_address, user_agent=meta.user_agent)
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(RefreshToken).where(RefreshToken.token_hash == token_hash))
                row = result.scalar_one_or_none()
        except _STORE_ERRORS as exc:
            logger.warning("reuse_owner_lookup_failed", exc_info=exc)
            return ctx
        if row is None:
            return ctx
        return AuditContext(
            user_id=row.user_id,
            tenant_id=row.tenant_id,
            session_id=row.id,
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
        )

    async def _rotation_failure(
        self,
        session: AsyncSession,
        row: RefreshToken,
        meta: DeviceMeta,
        now: datetime,
    ) -> str | None:
        if row.revoked_at is not None:
            return "revoked"
        if row.expires_at <= now:
            return "expired"
        if row.device_id and meta.device_id != row.device_id:
            return "device_mismatch"
        user = await session.get(User, row.user_id)
        if user is None or user.status != "active" or user.tenant_id != row.tenant_id:
            return "user_inactive"
        tenant = await session.get(Tenant, row.tenant_id)
        if tenant is None or tenant.status != "active":
            return "tenant_inactive"
        return None

    async def _record_rotation_failure(self, failure: str, ctx: AuditContext) -> None:
        # Callers only ever see None; the specific reason lives in the audit trail.
        if failure in {"revoked", "device_mismatch"}:
            await self._audit.log_security_incident(
                "refresh_token_reuse_detected" if failure == "revoked" else "refresh_token_device_mismatch",
                risk_level=RiskLevel.HIGH,
                context=ctx,
                details={"reason": failure},
            )
            return
        await self._audit.log_auth_event(
            "token_rotation_failed",
            success=False,
            context=ctx,
            details={"reason": failure},
        )

    async def resolve_access_token(self, token: str) -> AuthenticatedSession | None:
        access_hash = hash_token(token)
        now = _utc_now()
        try:
            if await self._blacklist.contains(access_hash):
                return None
            async with self._session_factory() as session:
                result = await session.execute(
                    select(RefreshToken).where(RefreshToken.access_token_hash == access_hash)
                )
                row = result.scalar_one_or_none()
                if row is None or row.revoked_at is not None or row.access_expires_at <= now:
                    return None
                row.last_used_at = now
                await session.commit()
        except _STORE_ERRORS as exc:
            logger.error("access_token_validation_unavailable", exc_info=exc)
            return None
        return AuthenticatedSession(
            session_id=row.id,
            user_id=row.user_id,
            tenant_id=row.tenant_id,
            role=row.role,
            access_expires_at=row.access_expires_at,
            mfa_verified=row.mfa_verified_at is not None,
        )

    async def validate_access_token(self, token: str) -> bool:
        return await self.resolve_access_token(token) is not None

    def should_rotate(self, expires_at: datetime, *, now: datetime | None = None) -> bool:
        remaining = (expires_at - (now or _utc_now())).total_seconds()
        return remaining < self._settings.token_rotation_threshold_s

    async def _blacklist_rows(self, rows: list[RefreshToken], *, reason: str) -> None:
        blacklist_reason = BlacklistReason.LOGOUT
        if reason == BlacklistReason.COMPROMISE.value:
            blacklist_reason = BlacklistReason.COMPROMISE
        for row in rows:
            await self._blacklist.add(row.token_hash, expires_at=row.expires_at, reason=blacklist_reason)
            await self._blacklist.add(
                row.access_token_hash,
                expires_at=row.access_expires_at,
                reason=blacklist_reason,
            )

    async def revoke_all_for_user(self, user_id: str, reason: str, *, actor_id: str | None = None) -> int:
        now = _utc_now()
        async with self._session_factory() as session:
            result = await session.execute(
                select(RefreshToken).where(RefreshToken.user_id == user_id, RefreshToken.revoked_at.is_(None))
            )
            rows = list(result.scalars().all())
            for row in rows:
                row.revoked_at = now
                row.revoke_reason = reason
            await session.commit()
        await self._blacklist_rows(rows, reason=reason)
        tenant_id = rows[0].tenant_id if rows else None
        await self._audit.log_auth_event(
            "sessions_revoked_all",
            success=True,
            context=AuditContext(user_id=actor_id or user_id, tenant_id=tenant_id),
            details={"target_user_id": user_id, "reason": reason, "count": len(rows)},
        )
        return len(rows)

    async def revoke_session(self, session_id: str, user_id: str) -> None:
        now = _utc_now()
        async with self._session_factory() as session:
            row = await session.get(RefreshToken, session_id)
            if row is None or row.user_id != user_id:
                raise NotFoundError("Session not found")
            if row.revoked_at is not None:
                raise ConflictError("Session already revoked")
            row.revoked_at = now
            row.revoke_reason = "user_action"
            await session.commit()
        await self._blacklist_rows([row], reason=BlacklistReason.LOGOUT.value)
        await self._audit.log_auth_event(
            "session_revoked",
            success=True,
            context=AuditContext(user_id=user_id, tenant_id=row.tenant_id, session_id=session_id),
        )

    async def list_sessions(self, user_id: str) -> list[SessionInfo]:
        now = _utc_now()
        async with self._session_factory() as session:
            result = await session.execute(
                select(RefreshToken)
                .where(
                    RefreshToken.user_id == user_id,
                    RefreshToken.revoked_at.is_(None),
                    RefreshToken.expires_at > now,
                )
                .order_by(RefreshToken.last_used_at.desc())
            )
            rows = list(result.scalars().all())
        return [
            SessionInfo(
                id=row.id,
                device_id=row.device_id,
                ip_address=row.ip_address,
                user_agent=row.user_agent,
                created_at=row.created_at,
                last_used_at=row.last_used_at,
                mfa_verified=row.mfa_verified_at is not None,
            )
            for row in rows
        ]

    async def mark_mfa_verified(self, session_id: str) -> None:
        # Elevate the session after a successful second-factor challenge.
        async with self._session_factory() as session:
            await session.execute(
                update(RefreshToken)
                .where(RefreshToken.id == session_id, RefreshToken.revoked_at.is_(None))
                .values(mfa_verified_at=_utc_now())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
