from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantgate.core.config import Settings, get_settings
from tenantgate.domain.models import Permission, Role, RolePermission, TeamMembership, User, UserRole
from tenantgate.services.audit.compliance import AuditCategory, RiskLevel
from tenantgate.services.audit.logger import AuditContext, AuditLogger
from tenantgate.services.rbac.cache import PermissionCache
from tenantgate.services.rbac.catalog import ACTIONS, RESOURCES, ContextScope, context_covers
from tenantgate.services.rbac.conditions import ConditionInvalidError, evaluate_condition


logger = logging.getLogger(__name__)

_CHECK_FAILURES = (SQLAlchemyError, OSError, TimeoutError, asyncio.TimeoutError)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AccessRequest:
    user_id: str
    tenant_id: str
    resource: str
    action: str
    context: ContextScope | str = ContextScope.TENANT
    # Target record id; for the users resource this is the target user.
    target_id: str | None = None
    # Owning user of the target record, resolved by the caller.
    target_owner_id: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PermissionDecision:
    granted: bool
    reason: str
    applied_roles: list[str] = field(default_factory=list)
    applied_permissions: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class GrantedPermission:
    id: str
    resource: str
    action: str
    context: str
    conditions: dict[str, Any] | None

    @property
    def label(self) -> str:
        return f"{self.resource}:{self.action}:{self.context}"


@dataclass(frozen=True)
class RoleGrant:
    role_id: str
    role_name: str
    level: int
    is_system_role: bool
    expires_at: datetime | None
    assignment_conditions: dict[str, Any] | None
    permissions: tuple[GrantedPermission, ...]


@dataclass(frozen=True)
class EffectiveGrants:
    user_in_tenant: bool
    team_ids: frozenset[str]
    roles: tuple[RoleGrant, ...]

    def active_roles(self, now: datetime) -> list[RoleGrant]:
        return [role for role in self.roles if role.expires_at is None or role.expires_at > now]

    def max_level(self, now: datetime) -> int:
        return max((role.level for role in self.active_roles(now)), default=0)


def _safe_condition(condition: dict[str, Any] | None, context: dict[str, Any]) -> bool:
    # Stored conditions are validated on write; anything unreadable now simply does not match.
    try:
        return evaluate_condition(condition, context)
    except ConditionInvalidError:
        return False


class RbacEngine:
    """Resolves (user, tenant) to effective grants and evaluates access requests."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        audit: AuditLogger,
        settings: Settings | None = None,
        cache: PermissionCache[EffectiveGrants] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._audit = audit
        self._settings = settings or get_settings()
        self.cache: PermissionCache[EffectiveGrants] = cache or PermissionCache(self._settings.rbac_cache_ttl_s)

    async def load_grants(self, user_id: str, tenant_id: str) -> EffectiveGrants:
        key = (user_id, tenant_id)
        cached = await self.cache.get(key)
        if cached is not None:
            return cached
        generation = await self.cache.snapshot(key)
        async with self._session_factory() as session:
            grants = await self._query_grants(session, user_id=user_id, tenant_id=tenant_id)
        await self.cache.put(key, grants, generation=generation)
        return grants

    async def _query_grants(self, session: AsyncSession, *, user_id: str, tenant_id: str) -> EffectiveGrants:
        now = _utc_now()
        member = await session.execute(
            select(User.id).where(User.id == user_id, User.tenant_id == tenant_id, User.status == "active")
        )
        user_in_tenant = member.scalar_one_or_none() is not None

        assignments = await session.execute(
            select(UserRole, Role)
            .join(Role, Role.id == UserRole.role_id)
            .where(
                UserRole.user_id == user_id,
                UserRole.tenant_id == tenant_id,
                UserRole.is_active.is_(True),
                Role.is_active.is_(True),
                or_(Role.tenant_id.is_(None), Role.tenant_id == tenant_id),
                or_(UserRole.expires_at.is_(None), UserRole.expires_at > now),
            )
        )
        pairs = list(assignments.all())
        role_ids = {role.id for _assignment, role in pairs}

        permissions_by_role: dict[str, list[GrantedPermission]] = {role_id: [] for role_id in role_ids}
        if role_ids:
            rows = await session.execute(
                select(RolePermission.role_id, Permission)
                .join(Permission, Permission.id == RolePermission.permission_id)
                .where(RolePermission.role_id.in_(role_ids))
            )
            for role_id, permission in rows.all():
                permissions_by_role[role_id].append(
                    GrantedPermission(
                        id=permission.id,
                        resource=permission.resource,
                        action=permission.action,
                        context=permission.context,
                        conditions=permission.conditions_json,
                    )
                )

        teams = await session.execute(
            select(TeamMembership.team_id).where(
                TeamMembership.user_id == user_id,
                TeamMembership.tenant_id == tenant_id,
            )
        )
        return EffectiveGrants(
            user_in_tenant=user_in_tenant,
            team_ids=frozenset(teams.scalars().all()),
            roles=tuple(
                RoleGrant(
                    role_id=role.id,
                    role_name=role.name,
                    level=role.level,
                    is_system_role=role.is_system_role,
                    expires_at=assignment.expires_at,
                    assignment_conditions=assignment.conditions_json,
                    permissions=tuple(permissions_by_role.get(role.id, [])),
                )
                for assignment, role in pairs
            ),
        )

    async def _shares_team(self, *, team_ids: frozenset[str], subject_id: str, tenant_id: str) -> bool:
        # Team scope: the subject must sit in at least one team with the acting user.
        if not team_ids:
            return False
        async with self._session_factory() as session:
            result = await session.execute(
                select(TeamMembership.team_id)
                .where(
                    TeamMembership.user_id == subject_id,
                    TeamMembership.tenant_id == tenant_id,
                    TeamMembership.team_id.in_(team_ids),
                )
                .limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def check_permission(
        self,
        request: AccessRequest,
        *,
        audit_context: AuditContext | None = None,
    ) -> PermissionDecision:
        try:
            decision = await asyncio.wait_for(
                self._evaluate(request),
                timeout=self._settings.db_acquire_timeout_s + self._settings.db_statement_timeout_ms / 1000,
            )
        except _CHECK_FAILURES as exc:
            logger.error(
                "permission_check_failed user_id=%s tenant_id=%s resource=%s action=%s",
                request.user_id,
                request.tenant_id,
                request.resource,
                request.action,
                exc_info=exc,
            )
            decision = PermissionDecision(granted=False, reason="permission check failed")
            await self._record(request, decision, RiskLevel.HIGH, audit_context)
            return decision
        risk = RiskLevel.LOW if decision.granted else RiskLevel.MEDIUM
        await self._record(request, decision, risk, audit_context)
        return decision

    async def _evaluate(self, request: AccessRequest) -> PermissionDecision:
        try:
            requested_context = ContextScope(request.context)
        except ValueError:
            return PermissionDecision(granted=False, reason="invalid context")
        if request.resource not in RESOURCES or request.action not in ACTIONS:
            return PermissionDecision(granted=False, reason="unknown resource or action")

        grants = await self.load_grants(request.user_id, request.tenant_id)
        now = _utc_now()
        eval_context = {
            "user": {"id": request.user_id},
            "tenant": {"id": request.tenant_id},
            "request": {
                "resource": request.resource,
                "action": request.action,
                "context": requested_context.value,
                "target_id": request.target_id,
                "target_owner_id": request.target_owner_id,
            },
            "attributes": request.attributes,
        }

        matched: list[tuple[RoleGrant, GrantedPermission]] = []
        for role in grants.active_roles(now):
            if not _safe_condition(role.assignment_conditions, eval_context):
                continue
            for permission in role.permissions:
                if (
                    permission.resource == request.resource
                    and permission.action == request.action
                    and context_covers(permission.context, requested_context)
                    and _safe_condition(permission.conditions, eval_context)
                ):
                    matched.append((role, permission))
        if not matched:
            return PermissionDecision(granted=False, reason="no matching permissions")

        applied_roles = sorted({role.role_name for role, _permission in matched})
        applied_permissions = sorted({permission.label for _role, permission in matched})
        failure = await self._context_failure(request, requested_context, grants, matched)
        if failure is not None:
            return PermissionDecision(
                granted=False,
                reason=failure,
                applied_roles=applied_roles,
                applied_permissions=applied_permissions,
            )
        return PermissionDecision(
            granted=True,
            reason="granted",
            applied_roles=applied_roles,
            applied_permissions=applied_permissions,
        )

    async def _context_failure(
        self,
        request: AccessRequest,
        requested_context: ContextScope,
        grants: EffectiveGrants,
        matched: list[tuple[RoleGrant, GrantedPermission]],
    ) -> str | None:
        if requested_context is ContextScope.SYSTEM:
            if not any(role.is_system_role for role, _permission in matched):
                return "system context requires a system role"
            return None
        if not grants.user_in_tenant:
            return "user does not belong to tenant"
        if requested_context is ContextScope.OWN:
            if request.resource == "users" and request.target_id != request.user_id:
                return "own context requires target to be the acting user"
            if request.target_owner_id is not None and request.target_owner_id != request.user_id:
                return "own context requires ownership of target"
        if requested_context is ContextScope.TEAM:
            subject = request.target_owner_id
            if subject is None and request.resource == "users":
                subject = request.target_id
            if subject is None:
                if not grants.team_ids:
                    return "team context requires team membership"
            elif subject != request.user_id and not await self._shares_team(
                team_ids=grants.team_ids,
                subject_id=subject,
                tenant_id=request.tenant_id,
            ):
                return "target is outside the acting user's teams"
        return None

    async def _record(
        self,
        request: AccessRequest,
        decision: PermissionDecision,
        risk_level: RiskLevel,
        audit_context: AuditContext | None,
    ) -> None:
        base = audit_context or AuditContext()
        await self._audit.log_event(
            event_type="access_granted" if decision.granted else "access_denied",
            category=AuditCategory.AUTHORIZATION,
            risk_level=risk_level,
            action=request.action,
            details={
                "context": str(getattr(request.context, "value", request.context)),
                "target_id": request.target_id,
                "reason": decision.reason,
                "applied_roles": decision.applied_roles,
                "applied_permissions": decision.applied_permissions,
            },
            context=AuditContext(
                user_id=request.user_id,
                tenant_id=request.tenant_id,
                session_id=base.session_id,
                ip_address=base.ip_address,
                user_agent=base.user_agent,
                resource=request.resource,
                outcome="granted" if decision.granted else "denied",
                correlation_id=base.correlation_id,
            ),
        )
