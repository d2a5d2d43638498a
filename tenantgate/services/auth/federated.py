from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
import logging
from typing import Any
from uuid import uuid4

import httpx
import jwt
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantgate.core.config import Settings, get_settings
from tenantgate.core.errors import AuthenticationError
from tenantgate.domain.models import Tenant, User
from tenantgate.services.audit.compliance import RiskLevel
from tenantgate.services.audit.logger import AuditContext, AuditLogger
from tenantgate.services.auth.sessions import DeviceMeta, SessionManager, TokenPair
from tenantgate.services.mfa.manager import MfaManager
from tenantgate.services.rbac.roles import RoleManager
from tenantgate.services.tenancy.tenants import create_tenant, unique_subdomain


logger = logging.getLogger(__name__)

_ALLOWED_ALGS = {"RS256", "RS384", "RS512", "ES256", "ES384", "ES512"}
PROVISIONED_ROLE = "tenant_admin"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class FederatedClaims:
    subject: str
    email: str | None
    name: str | None
    groups: list[str] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SignInResult:
    user_id: str
    tenant_id: str
    role: str | None
    tokens: TokenPair
    created_tenant: bool
    created_user: bool
    mfa_required: bool


def extract_claims(claims: dict[str, Any]) -> FederatedClaims:
    # Normalize identity-provider claims into the fields sign-in needs.
    subject = claims.get("sub")
    if not subject:
        raise AuthenticationError("ID token missing subject")
    email = claims.get("email") or claims.get("preferred_username")
    name = claims.get("name")
    if not name:
        parts = [claims.get("given_name"), claims.get("family_name")]
        name = " ".join(part for part in parts if part) or None
    raw_groups = claims.get("groups") or []
    groups = [str(item) for item in raw_groups] if isinstance(raw_groups, list) else [str(raw_groups)]
    return FederatedClaims(
        subject=str(subject),
        email=str(email).lower() if email else None,
        name=name,
        groups=groups,
        raw=claims,
    )


async def _fetch_jwks(jwks_url: str, *, timeout_s: float) -> dict[str, Any]:
    async with httpx.AsyncClient(timeout=timeout_s) as client:
        response = await client.get(jwks_url)
    response.raise_for_status()
    return response.json()


def _select_jwk(jwks: dict[str, Any], kid: str | None) -> dict[str, Any]:
    keys = jwks.get("keys") or []
    if kid:
        for key in keys:
            if key.get("kid") == kid:
                return key
    if len(keys) == 1:
        return keys[0]
    raise AuthenticationError("No matching signing key")


def _jwk_to_key(jwk: dict[str, Any], alg: str) -> Any:
    payload = json.dumps(jwk)
    if alg.startswith("RS"):
        return jwt.algorithms.RSAAlgorithm.from_jwk(payload)
    if alg.startswith("ES"):
        return jwt.algorithms.ECAlgorithm.from_jwk(payload)
    raise AuthenticationError("Unsupported token algorithm")


async def validate_id_token(token: str, *, settings: Settings | None = None) -> dict[str, Any]:
    # Signature, audience, issuer and expiry are all enforced by PyJWT.
    settings = settings or get_settings()
    if not (settings.idp_issuer and settings.idp_client_id and settings.idp_jwks_url):
        raise AuthenticationError("Federated identity provider not configured")
    try:
        header = jwt.get_unverified_header(token)
        alg = header.get("alg")
        if not alg or alg not in _ALLOWED_ALGS:
            raise AuthenticationError("Unsupported token algorithm")
        jwks = await _fetch_jwks(settings.idp_jwks_url, timeout_s=settings.ext_call_timeout_ms / 1000)
        key = _jwk_to_key(_select_jwk(jwks, header.get("kid")), alg)
        return jwt.decode(
            token,
            key,
            algorithms=[alg],
            audience=settings.idp_client_id,
            issuer=settings.idp_issuer,
            leeway=settings.idp_clock_skew_s,
        )
    except jwt.PyJWTError as exc:
        raise AuthenticationError("ID token rejected") from exc
    except httpx.HTTPError as exc:
        logger.error("jwks_fetch_failed url=%s", settings.idp_jwks_url, exc_info=exc)
        raise AuthenticationError("Identity provider unavailable") from exc


class FederatedSignIn:
    """Maps a verified external identity onto a tenant user and issues tokens.

    A subject seen for the first time with no membership anywhere gets a new
    tenant, a user row and the tenant_admin role in a single transaction.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        sessions: SessionManager,
        roles: RoleManager,
        mfa: MfaManager,
        audit: AuditLogger,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._sessions = sessions
        self._roles = roles
        self._mfa = mfa
        self._audit = audit
        self._settings = settings or get_settings()

    async def authenticate(
        self,
        id_token: str,
        *,
        device: DeviceMeta | None = None,
        tenant_id: str | None = None,
    ) -> SignInResult:
        meta = device or DeviceMeta()
        try:
            claims = extract_claims(await validate_id_token(id_token, settings=self._settings))
        except AuthenticationError as exc:
            await self._record_failure(str(exc), tenant_id=tenant_id, device=meta)
            raise
        return await self.sign_in(claims, device=meta, tenant_id=tenant_id)

    async def sign_in(
        self,
        claims: FederatedClaims,
        *,
        device: DeviceMeta | None = None,
        tenant_id: str | None = None,
    ) -> SignInResult:
        meta = device or DeviceMeta()
        try:
            user, created_tenant, created_user = await self._resolve_user(claims, tenant_id=tenant_id)
        except AuthenticationError as exc:
            await self._record_failure(str(exc), tenant_id=tenant_id, device=meta, subject=claims.subject)
            raise
        except SQLAlchemyError as exc:
            logger.error("federated_sign_in_failed subject=%s", claims.subject, exc_info=exc)
            await self._record_failure("storage unavailable", tenant_id=tenant_id, device=meta, subject=claims.subject)
            raise AuthenticationError("Sign-in unavailable") from exc

        role = await self._primary_role(user_id=user.id, tenant_id=user.tenant_id)
        tokens = await self._sessions.issue_token_pair(
            user_id=user.id,
            tenant_id=user.tenant_id,
            role=role,
            device=meta,
        )
        mfa_required = await self._mfa.user_has_mfa_enabled(user.id)
        await self._audit.log_auth_event(
            "federated_login",
            success=True,
            context=AuditContext(
                user_id=user.id,
                tenant_id=user.tenant_id,
                session_id=tokens.session_id,
                ip_address=meta.ip_address,
                user_agent=meta.user_agent,
            ),
            details={
                "created_tenant": created_tenant,
                "created_user": created_user,
                "mfa_required": mfa_required,
            },
        )
        return SignInResult(
            user_id=user.id,
            tenant_id=user.tenant_id,
            role=role,
            tokens=tokens,
            created_tenant=created_tenant,
            created_user=created_user,
            mfa_required=mfa_required,
        )

    async def _resolve_user(self, claims: FederatedClaims, *, tenant_id: str | None) -> tuple[User, bool, bool]:
        now = _utc_now()
        async with self._session_factory() as session:
            result = await session.execute(select(User).where(User.external_subject == claims.subject))
            user = result.scalar_one_or_none()
            if user is not None:
                if tenant_id is not None and user.tenant_id != tenant_id:
                    raise AuthenticationError("Not a member of this tenant")
                await self._ensure_active(session, user)
                user.email = claims.email or user.email
                user.display_name = claims.name or user.display_name
                user.last_login_at = now
                await session.commit()
                return user, False, False

            if tenant_id is not None:
                invited = await self._claim_invite(session, claims, tenant_id=tenant_id, now=now)
                if invited is None:
                    raise AuthenticationError("Not a member of this tenant")
                await self._ensure_active(session, invited)
                await session.commit()
                return invited, False, False

            if not self._settings.idp_auto_provision:
                raise AuthenticationError("Self sign-up disabled")
            user = await self._provision(session, claims, now=now)
            await session.commit()
        await self._roles.engine.cache.invalidate(user.id, user.tenant_id)
        logger.info("tenant_provisioned tenant_id=%s user_id=%s", user.tenant_id, user.id)
        return user, True, True

    async def _ensure_active(self, session: AsyncSession, user: User) -> None:
        if user.status != "active":
            raise AuthenticationError("User disabled")
        tenant = await session.get(Tenant, user.tenant_id)
        if tenant is None or tenant.status != "active":
            raise AuthenticationError("Tenant inactive")

    async def _claim_invite(
        self,
        session: AsyncSession,
        claims: FederatedClaims,
        *,
        tenant_id: str,
        now: datetime,
    ) -> User | None:
        # Invited users are created by email and linked on their first sign-in.
        if not claims.email:
            return None
        result = await session.execute(
            select(User).where(
                User.tenant_id == tenant_id,
                User.email == claims.email,
                User.status == "invited",
                User.external_subject.is_(None),
            )
        )
        user = result.scalar_one_or_none()
        if user is None:
            return None
        user.external_subject = claims.subject
        user.display_name = claims.name or user.display_name
        user.status = "active"
        user.last_login_at = now
        await session.flush()
        return user

    async def _provision(self, session: AsyncSession, claims: FederatedClaims, *, now: datetime) -> User:
        await self._roles.ensure_system_roles()
        seed = claims.name or (claims.email or "").split("@")[0] or "tenant"
        subdomain = await unique_subdomain(session, seed)
        tenant = await create_tenant(session, subdomain=subdomain, name=claims.name or subdomain)
        user = User(
            id=uuid4().hex,
            tenant_id=tenant.id,
            email=claims.email or f"{claims.subject}@users.invalid",
            external_subject=claims.subject,
            display_name=claims.name,
            status="active",
            last_login_at=now,
        )
        session.add(user)
        await session.flush()
        await self._roles.assign_role(
            user_id=user.id,
            role_id=PROVISIONED_ROLE,
            tenant_id=tenant.id,
            assigned_by=None,
            session=session,
        )
        return user

    async def _primary_role(self, *, user_id: str, tenant_id: str) -> str | None:
        roles = await self._roles.user_roles(user_id=user_id, tenant_id=tenant_id)
        if not roles:
            return None
        return max(roles, key=lambda role: role.level).name

    async def _record_failure(
        self,
        reason: str,
        *,
        tenant_id: str | None,
        device: DeviceMeta,
        subject: str | None = None,
    ) -> None:
        await self._audit.log_auth_event(
            "federated_login_failed",
            success=False,
            context=AuditContext(tenant_id=tenant_id, ip_address=device.ip_address, user_agent=device.user_agent),
            details={"reason": reason, "subject": subject},
            risk_level=RiskLevel.MEDIUM,
        )
