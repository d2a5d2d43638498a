from __future__ import annotations

from dataclasses import dataclass, field, replace
import logging
from typing import Any

from tenantgate.core.errors import ValidationFailure
from tenantgate.services.audit.compliance import RiskLevel
from tenantgate.services.audit.logger import AuditContext, AuditLogger
from tenantgate.services.auth.sessions import AuthenticatedSession, SessionManager
from tenantgate.services.rbac.catalog import ContextScope
from tenantgate.services.rbac.engine import AccessRequest, PermissionDecision, RbacEngine
from tenantgate.services.tenancy.resolver import TenantResolution, TenantResolver


logger = logging.getLogger(__name__)

CHECK_FAILED_REASON = "permission check failed"


@dataclass(frozen=True)
class AccessContext:
    # Handed to downstream handlers; they trust it and never re-derive tenant scope.
    tenant_id: str
    subdomain: str | None
    user_id: str
    session_id: str
    role: str | None
    mfa_verified: bool
    decision: PermissionDecision | None = None

    @property
    def granted_permissions(self) -> list[str]:
        return list(self.decision.applied_permissions) if self.decision else []


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    status: int
    code: str
    message: str
    context: AccessContext | None = None
    # Internal reason; goes to the audit trail, not to the caller.
    reason: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


def _deny(status: int, code: str, message: str, *, reason: str, **details: Any) -> GateDecision:
    return GateDecision(allowed=False, status=status, code=code, message=message, reason=reason, details=details)


class AccessGate:
    """Per-request pipeline: tenant, then session, then permission.

    Each stage denies by default. A request that fails tenant resolution never
    reaches token validation, and a token minted for another tenant is treated
    as no token at all.
    """

    def __init__(
        self,
        *,
        resolver: TenantResolver,
        sessions: SessionManager,
        engine: RbacEngine,
        audit: AuditLogger,
    ) -> None:
        self._resolver = resolver
        self._sessions = sessions
        self._engine = engine
        self._audit = audit

    async def resolve_tenant(self, host: str | None, path: str | None = None) -> TenantResolution | GateDecision:
        try:
            resolution = await self._resolver.resolve(host, path)
        except ValidationFailure as exc:
            return _deny(400, "TENANT_INVALID", exc.reason, reason="malformed_tenant", field=exc.field)
        if resolution.resolved:
            return resolution
        if resolution.reason == "lookup_unavailable":
            return _deny(503, "TENANT_UNAVAILABLE", "Tenant lookup unavailable", reason="lookup_unavailable")
        return _deny(404, "TENANT_NOT_FOUND", "Tenant not found", reason=resolution.reason or "unknown_tenant")

    async def authenticate(
        self,
        token: str | None,
        *,
        tenant_id: str,
        audit_context: AuditContext | None = None,
    ) -> AuthenticatedSession | GateDecision:
        base = audit_context or AuditContext()
        if not token:
            return _deny(401, "AUTH_UNAUTHORIZED", "Authentication required", reason="missing_token")
        principal = await self._sessions.resolve_access_token(token)
        if principal is None:
            await self._audit.log_auth_event(
                "access_token_rejected",
                success=False,
                context=AuditContext(
                    tenant_id=tenant_id,
                    ip_address=base.ip_address,
                    user_agent=base.user_agent,
                    correlation_id=base.correlation_id,
                ),
            )
            return _deny(401, "AUTH_UNAUTHORIZED", "Authentication required", reason="invalid_token")
        if principal.tenant_id != tenant_id:
            await self._audit.log_security_incident(
                "cross_tenant_token_use",
                risk_level=RiskLevel.HIGH,
                context=AuditContext(
                    user_id=principal.user_id,
                    tenant_id=tenant_id,
                    session_id=principal.session_id,
                    ip_address=base.ip_address,
                    user_agent=base.user_agent,
                    correlation_id=base.correlation_id,
                ),
                details={"credential_tenant_id": principal.tenant_id},
            )
            return _deny(401, "AUTH_UNAUTHORIZED", "Authentication required", reason="tenant_mismatch")
        return principal

    async def evaluate(
        self,
        *,
        host: str | None,
        token: str | None,
        path: str | None = None,
        resource: str | None = None,
        action: str | None = None,
        context: ContextScope | str = ContextScope.TENANT,
        target_id: str | None = None,
        target_owner_id: str | None = None,
        attributes: dict[str, Any] | None = None,
        require_mfa: bool = False,
        audit_context: AuditContext | None = None,
    ) -> GateDecision:
        resolution = await self.resolve_tenant(host, path)
        if isinstance(resolution, GateDecision):
            logger.info("gate_tenant_denied host=%s path=%s reason=%s", host, path, resolution.reason)
            return resolution
        principal = await self.authenticate(token, tenant_id=resolution.tenant_id, audit_context=audit_context)
        if isinstance(principal, GateDecision):
            return principal
        access = AccessContext(
            tenant_id=resolution.tenant_id,
            subdomain=resolution.subdomain,
            user_id=principal.user_id,
            session_id=principal.session_id,
            role=principal.role,
            mfa_verified=principal.mfa_verified,
        )
        if require_mfa and not principal.mfa_verified:
            return _deny(403, "MFA_REQUIRED", "Multi-factor verification required", reason="mfa_not_verified")
        if resource is None or action is None:
            return GateDecision(allowed=True, status=200, code="OK", message="ok", context=access)

        base = audit_context or AuditContext()
        decision = await self._engine.check_permission(
            AccessRequest(
                user_id=principal.user_id,
                tenant_id=resolution.tenant_id,
                resource=resource,
                action=action,
                context=context,
                target_id=target_id,
                target_owner_id=target_owner_id,
                attributes=attributes or {},
            ),
            audit_context=AuditContext(
                session_id=principal.session_id,
                ip_address=base.ip_address,
                user_agent=base.user_agent,
                correlation_id=base.correlation_id,
            ),
        )
        access = replace(access, decision=decision)
        if decision.granted:
            return GateDecision(allowed=True, status=200, code="OK", message="ok", context=access, reason="granted")
        if decision.reason == CHECK_FAILED_REASON:
            return GateDecision(
                allowed=False,
                status=503,
                code="AUTH_UNAVAILABLE",
                message="Authorization temporarily unavailable",
                context=access,
                reason=decision.reason,
            )
        return GateDecision(
            allowed=False,
            status=403,
            code="ACCESS_DENIED",
            message="Access denied",
            context=access,
            reason=decision.reason,
        )
