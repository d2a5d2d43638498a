from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy import delete, event, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantgate.core.config import Settings, get_settings
from tenantgate.core.errors import ConflictError, ImmutableRoleError, NotFoundError, ValidationFailure
from tenantgate.domain.models import Permission, Role, RolePermission, Team, TeamMembership, User, UserRole
from tenantgate.services.audit.compliance import AuditCategory, RiskLevel
from tenantgate.services.audit.logger import AuditContext, AuditLogger
from tenantgate.services.rbac.catalog import (
    ACTIONS,
    CUSTOM_ROLE_MAX_LEVEL,
    RESOURCES,
    SYSTEM_ROLES,
    ContextScope,
)
from tenantgate.services.rbac.conditions import ConditionInvalidError, validate_condition
from tenantgate.services.rbac.engine import RbacEngine


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PermissionSpec:
    resource: str
    action: str
    context: str = ContextScope.TENANT.value
    conditions: dict[str, Any] | None = None


@dataclass(frozen=True)
class AssignmentSpec:
    user_id: str
    role_id: str
    expires_at: datetime | None = None
    conditions: dict[str, Any] | None = None


class RoleManager:
    """Role and assignment mutations.

    Every mutation clears the affected cache entries before its transaction
    commits and once more after, so no permission check that starts after the
    call returns can observe the previous grants.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        engine: RbacEngine,
        audit: AuditLogger,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._engine = engine
        self._audit = audit
        self._settings = settings or get_settings()

    @property
    def engine(self) -> RbacEngine:
        return self._engine

    async def ensure_system_roles(self) -> int:
        # Seed the built-in catalog once; existing rows are left untouched.
        created = 0
        async with self._session_factory() as session:
            for spec in SYSTEM_ROLES.values():
                if await session.get(Role, spec.key) is not None:
                    continue
                session.add(
                    Role(
                        id=spec.key,
                        tenant_id=None,
                        name=spec.key,
                        description=f"{spec.name}: {spec.description}",
                        level=spec.level,
                        is_system_role=spec.is_system_role,
                        is_active=True,
                    )
                )
                await session.flush()
                await self._attach_permissions(
                    session,
                    role_id=spec.key,
                    permissions=[PermissionSpec(resource=r, action=a, context=c.value) for r, a, c in spec.permissions],
                )
                created += 1
            await session.commit()
        if created:
            logger.info("system_roles_seeded created=%s", created)
        return created

    async def _attach_permissions(
        self,
        session: AsyncSession,
        *,
        role_id: str,
        permissions: list[PermissionSpec],
    ) -> None:
        for spec in permissions:
            permission = Permission(
                id=uuid4().hex,
                resource=spec.resource,
                action=spec.action,
                context=spec.context,
                conditions_json=spec.conditions or None,
            )
            session.add(permission)
            await session.flush()
            session.add(RolePermission(role_id=role_id, permission_id=permission.id))
        await session.flush()

    def _validate_permissions(self, permissions: list[PermissionSpec]) -> None:
        if not permissions:
            raise ValidationFailure("permissions", "at least one permission is required")
        for index, spec in enumerate(permissions):
            field = f"permissions[{index}]"
            if spec.resource not in RESOURCES:
                raise ValidationFailure(f"{field}.resource", f"unknown resource {spec.resource}")
            if spec.action not in ACTIONS:
                raise ValidationFailure(f"{field}.action", f"unknown action {spec.action}")
            try:
                context = ContextScope(spec.context)
            except ValueError as exc:
                raise ValidationFailure(f"{field}.context", f"unknown context {spec.context}") from exc
            if context is ContextScope.SYSTEM:
                raise ValidationFailure(f"{field}.context", "custom roles cannot hold system permissions")
            try:
                validate_condition(spec.conditions, max_depth=self._settings.rbac_condition_max_depth)
            except ConditionInvalidError as exc:
                raise ValidationFailure(f"{field}.conditions", exc.message) from exc

    def _validate_level(self, level: int) -> None:
        if level < 1 or level > CUSTOM_ROLE_MAX_LEVEL:
            raise ValidationFailure("level", f"must be between 1 and {CUSTOM_ROLE_MAX_LEVEL}")

    async def create_role(
        self,
        *,
        tenant_id: str,
        name: str,
        level: int,
        permissions: list[PermissionSpec],
        description: str | None = None,
        created_by: str | None = None,
    ) -> Role:
        cleaned = name.strip()
        if not cleaned:
            raise ValidationFailure("name", "must not be empty")
        if cleaned in SYSTEM_ROLES:
            raise ValidationFailure("name", "reserved for a built-in role")
        self._validate_level(level)
        self._validate_permissions(permissions)
        async with self._session_factory() as session:
            existing = await session.execute(
                select(Role.id).where(Role.tenant_id == tenant_id, Role.name == cleaned)
            )
            if existing.scalar_one_or_none() is not None:
                raise ConflictError(f"Role {cleaned} already exists")
            role = Role(
                id=uuid4().hex,
                tenant_id=tenant_id,
                name=cleaned,
                description=description,
                level=level,
                is_system_role=False,
                is_active=True,
                created_by=created_by,
            )
            session.add(role)
            await session.flush()
            await self._attach_permissions(session, role_id=role.id, permissions=permissions)
            await session.commit()
        await self._audit.log_event(
            event_type="role_created",
            category=AuditCategory.CONFIGURATION_CHANGE,
            risk_level=RiskLevel.MEDIUM,
            action="create",
            details={
                "role_id": role.id,
                "name": role.name,
                "level": level,
                "permissions": [f"{p.resource}:{p.action}:{p.context}" for p in permissions],
            },
            context=AuditContext(user_id=created_by, tenant_id=tenant_id, resource="roles", outcome="success"),
        )
        return role

    async def _custom_role(self, session: AsyncSession, *, role_id: str, tenant_id: str) -> Role:
        role = await session.get(Role, role_id)
        if role is not None and role.is_builtin:
            raise ImmutableRoleError("Built-in roles cannot be modified")
        if role is None or role.tenant_id != tenant_id:
            raise NotFoundError("Role not found")
        return role

    async def update_role(
        self,
        *,
        role_id: str,
        tenant_id: str,
        updated_by: str | None,
        description: str | None = None,
        level: int | None = None,
        permissions: list[PermissionSpec] | None = None,
    ) -> Role:
        if level is not None:
            self._validate_level(level)
        if permissions is not None:
            self._validate_permissions(permissions)
        async with self._session_factory() as session:
            role = await self._custom_role(session, role_id=role_id, tenant_id=tenant_id)
            if description is not None:
                role.description = description
            if level is not None:
                role.level = level
            if permissions is not None:
                await session.execute(delete(RolePermission).where(RolePermission.role_id == role.id))
                await self._attach_permissions(session, role_id=role.id, permissions=permissions)
            await session.flush()
            await self._engine.cache.invalidate_tenant(tenant_id)
            await session.commit()
        await self._engine.cache.invalidate_tenant(tenant_id)
        await self._audit.log_event(
            event_type="role_updated",
            category=AuditCategory.CONFIGURATION_CHANGE,
            risk_level=RiskLevel.MEDIUM,
            action="update",
            details={"role_id": role_id, "permissions_replaced": permissions is not None},
            context=AuditContext(user_id=updated_by, tenant_id=tenant_id, resource="roles", outcome="success"),
        )
        return role

    async def deactivate_role(self, *, role_id: str, tenant_id: str, deactivated_by: str | None) -> Role:
        async with self._session_factory() as session:
            role = await self._custom_role(session, role_id=role_id, tenant_id=tenant_id)
            if not role.is_active:
                raise ConflictError("Role already inactive")
            role.is_active = False
            await session.flush()
            await self._engine.cache.invalidate_tenant(tenant_id)
            await session.commit()
        await self._engine.cache.invalidate_tenant(tenant_id)
        await self._audit.log_event(
            event_type="role_deactivated",
            category=AuditCategory.CONFIGURATION_CHANGE,
            risk_level=RiskLevel.MEDIUM,
            action="delete",
            details={"role_id": role_id, "name": role.name},
            context=AuditContext(user_id=deactivated_by, tenant_id=tenant_id, resource="roles", outcome="success"),
        )
        return role

    async def list_tenant_roles(self, tenant_id: str) -> list[Role]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Role)
                .where(Role.is_active.is_(True), or_(Role.tenant_id.is_(None), Role.tenant_id == tenant_id))
                .order_by(Role.level.desc(), Role.name)
            )
            return list(result.scalars().all())

    async def _assign_in_session(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        spec: AssignmentSpec,
        assigned_by: str | None,
        actor_level: int | None,
    ) -> UserRole:
        role = await session.get(Role, spec.role_id)
        if role is None or not role.is_active or (role.tenant_id is not None and role.tenant_id != tenant_id):
            raise NotFoundError("Role not available in this tenant")
        if actor_level is not None and role.level > actor_level:
            raise ValidationFailure("role_id", "cannot assign a role above your own level")
        user = await session.get(User, spec.user_id)
        if user is None or user.tenant_id != tenant_id:
            raise NotFoundError("User not found")
        if spec.expires_at is not None and spec.expires_at <= _utc_now():
            raise ValidationFailure("expires_at", "must be in the future")
        try:
            validate_condition(spec.conditions, max_depth=self._settings.rbac_condition_max_depth)
        except ConditionInvalidError as exc:
            raise ValidationFailure("conditions", exc.message) from exc
        existing = await session.execute(
            select(UserRole.id).where(
                UserRole.user_id == spec.user_id,
                UserRole.role_id == spec.role_id,
                UserRole.tenant_id == tenant_id,
                UserRole.is_active.is_(True),
                or_(UserRole.expires_at.is_(None), UserRole.expires_at > _utc_now()),
            )
        )
        if existing.scalar_one_or_none() is not None:
            raise ConflictError("Role already assigned")
        assignment = UserRole(
            id=uuid4().hex,
            user_id=spec.user_id,
            role_id=spec.role_id,
            tenant_id=tenant_id,
            assigned_by=assigned_by,
            expires_at=spec.expires_at,
            conditions_json=spec.conditions or None,
            is_active=True,
        )
        session.add(assignment)
        await session.flush()
        return assignment

    async def _actor_level(self, *, actor_id: str | None, tenant_id: str) -> int | None:
        # Provisioning paths run without an actor and skip the escalation check.
        if actor_id is None:
            return None
        grants = await self._engine.load_grants(actor_id, tenant_id)
        return grants.max_level(_utc_now())

    async def assign_role(
        self,
        *,
        user_id: str,
        role_id: str,
        tenant_id: str,
        assigned_by: str | None,
        expires_at: datetime | None = None,
        conditions: dict[str, Any] | None = None,
        session: AsyncSession | None = None,
    ) -> UserRole:
        spec = AssignmentSpec(user_id=user_id, role_id=role_id, expires_at=expires_at, conditions=conditions)
        actor_level = await self._actor_level(actor_id=assigned_by, tenant_id=tenant_id)
        if session is not None:
            assignment = await self._assign_in_session(
                session, tenant_id=tenant_id, spec=spec, assigned_by=assigned_by, actor_level=actor_level
            )
            await self._engine.cache.invalidate(user_id, tenant_id)
            # The caller owns the transaction; drop anything cached meanwhile once it commits.
            event.listen(
                session.sync_session,
                "after_commit",
                lambda _session: self._engine.cache.discard(user_id, tenant_id),
                once=True,
            )
        else:
            async with self._session_factory() as own_session:
                assignment = await self._assign_in_session(
                    own_session, tenant_id=tenant_id, spec=spec, assigned_by=assigned_by, actor_level=actor_level
                )
                await self._engine.cache.invalidate(user_id, tenant_id)
                await own_session.commit()
            await self._engine.cache.invalidate(user_id, tenant_id)
        await self._record_assignment("role_assigned", assignment, actor_id=assigned_by)
        return assignment

    async def bulk_assign(
        self,
        *,
        tenant_id: str,
        assignments: list[AssignmentSpec],
        assigned_by: str | None,
    ) -> list[UserRole]:
        # All or nothing: any failing row rolls back the whole batch.
        actor_level = await self._actor_level(actor_id=assigned_by, tenant_id=tenant_id)
        created: list[UserRole] = []
        async with self._session_factory() as session:
            try:
                for spec in assignments:
                    created.append(
                        await self._assign_in_session(
                            session,
                            tenant_id=tenant_id,
                            spec=spec,
                            assigned_by=assigned_by,
                            actor_level=actor_level,
                        )
                    )
                for spec in assignments:
                    await self._engine.cache.invalidate(spec.user_id, tenant_id)
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        for spec in assignments:
            await self._engine.cache.invalidate(spec.user_id, tenant_id)
        for assignment in created:
            await self._record_assignment("role_assigned", assignment, actor_id=assigned_by)
        return created

    async def revoke_role(
        self,
        *,
        user_id: str,
        role_id: str,
        tenant_id: str,
        revoked_by: str | None,
        reason: str | None = None,
    ) -> UserRole:
        now = _utc_now()
        async with self._session_factory() as session:
            result = await session.execute(
                select(UserRole)
                .where(
                    UserRole.user_id == user_id,
                    UserRole.role_id == role_id,
                    UserRole.tenant_id == tenant_id,
                )
                .order_by(UserRole.assigned_at.desc())
            )
            rows = list(result.scalars().all())
            active = [row for row in rows if row.is_active]
            if not rows:
                raise NotFoundError("Role assignment not found")
            if not active:
                raise ConflictError("Role already revoked")
            for row in active:
                row.is_active = False
                row.revoked_at = now
                row.revoked_by = revoked_by
                row.revoke_reason = reason
            await session.flush()
            await self._engine.cache.invalidate(user_id, tenant_id)
            await session.commit()
        await self._engine.cache.invalidate(user_id, tenant_id)
        await self._record_assignment("role_revoked", active[0], actor_id=revoked_by, reason=reason)
        return active[0]

    async def _record_assignment(
        self,
        event_type: str,
        assignment: UserRole,
        *,
        actor_id: str | None,
        reason: str | None = None,
    ) -> None:
        await self._audit.log_event(
            event_type=event_type,
            category=AuditCategory.AUTHORIZATION,
            risk_level=RiskLevel.MEDIUM,
            action="assign" if event_type == "role_assigned" else "unassign",
            details={
                "target_user_id": assignment.user_id,
                "role_id": assignment.role_id,
                "expires_at": assignment.expires_at.isoformat() if assignment.expires_at else None,
                "reason": reason,
            },
            context=AuditContext(
                user_id=actor_id,
                tenant_id=assignment.tenant_id,
                resource="users",
                outcome="success",
            ),
        )

    async def user_roles(self, *, user_id: str, tenant_id: str) -> list[Role]:
        grants = await self._engine.load_grants(user_id, tenant_id)
        role_ids = [role.role_id for role in grants.active_roles(_utc_now())]
        if not role_ids:
            return []
        async with self._session_factory() as session:
            result = await session.execute(select(Role).where(Role.id.in_(role_ids)))
            return list(result.scalars().all())

    async def create_team(self, *, tenant_id: str, name: str) -> Team:
        async with self._session_factory() as session:
            existing = await session.execute(select(Team.id).where(Team.tenant_id == tenant_id, Team.name == name))
            if existing.scalar_one_or_none() is not None:
                raise ConflictError(f"Team {name} already exists")
            team = Team(id=uuid4().hex, tenant_id=tenant_id, name=name)
            session.add(team)
            await session.commit()
        return team

    async def add_team_member(self, *, team_id: str, user_id: str, tenant_id: str) -> None:
        async with self._session_factory() as session:
            team = await session.get(Team, team_id)
            user = await session.get(User, user_id)
            if team is None or team.tenant_id != tenant_id or user is None or user.tenant_id != tenant_id:
                raise NotFoundError("Team or user not found")
            if await session.get(TeamMembership, (team_id, user_id)) is not None:
                raise ConflictError("User already in team")
            session.add(TeamMembership(team_id=team_id, user_id=user_id, tenant_id=tenant_id))
            await session.flush()
            await self._engine.cache.invalidate(user_id, tenant_id)
            await session.commit()
        await self._engine.cache.invalidate(user_id, tenant_id)
