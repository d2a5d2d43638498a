from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel, Field

from tenantgate.apps.api.deps import audit_context, get_access_context, get_services, require_permission
from tenantgate.domain.models import Role, UserRole
from tenantgate.services.container import CoreServices
from tenantgate.services.gateway import AccessContext
from tenantgate.services.rbac.catalog import ContextScope
from tenantgate.services.rbac.engine import AccessRequest
from tenantgate.services.rbac.roles import AssignmentSpec, PermissionSpec


router = APIRouter(prefix="/rbac", tags=["rbac"])


class PermissionBody(BaseModel):
    resource: str
    action: str
    context: ContextScope = ContextScope.TENANT
    conditions: dict[str, Any] | None = None


class RoleCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=64)
    level: int
    description: str | None = None
    permissions: list[PermissionBody]


class RoleResponse(BaseModel):
    id: str
    name: str
    description: str | None
    level: int
    builtin: bool
    is_system_role: bool


class AssignmentRequest(BaseModel):
    user_id: str
    role_id: str
    expires_at: datetime | None = None
    conditions: dict[str, Any] | None = None


class BulkAssignmentRequest(BaseModel):
    assignments: list[AssignmentRequest] = Field(min_length=1, max_length=500)


class RevokeRequest(BaseModel):
    user_id: str
    role_id: str
    reason: str | None = Field(default=None, max_length=256)


class AssignmentResponse(BaseModel):
    id: str
    user_id: str
    role_id: str
    tenant_id: str
    assigned_by: str | None
    assigned_at: str
    expires_at: str | None
    is_active: bool


class CheckRequest(BaseModel):
    resource: str
    action: str
    context: ContextScope = ContextScope.TENANT
    target_id: str | None = None
    target_owner_id: str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)


class CheckResponse(BaseModel):
    granted: bool
    applied_permissions: list[str]


def _role_response(role: Role) -> RoleResponse:
    return RoleResponse(
        id=role.id,
        name=role.name,
        description=role.description,
        level=role.level,
        builtin=role.is_builtin,
        is_system_role=role.is_system_role,
    )


def _assignment_response(row: UserRole) -> AssignmentResponse:
    return AssignmentResponse(
        id=row.id,
        user_id=row.user_id,
        role_id=row.role_id,
        tenant_id=row.tenant_id,
        assigned_by=row.assigned_by,
        assigned_at=row.assigned_at.isoformat(),
        expires_at=row.expires_at.isoformat() if row.expires_at else None,
        is_active=row.is_active,
    )


@router.get("/roles")
async def list_roles(
    access: AccessContext = Depends(require_permission("users", "read")),
    services: CoreServices = Depends(get_services),
) -> list[RoleResponse]:
    roles = await services.roles.list_tenant_roles(access.tenant_id)
    return [_role_response(role) for role in roles]


@router.post("/roles", status_code=201)
async def create_role(
    payload: RoleCreateRequest,
    access: AccessContext = Depends(require_permission("settings", "configure", step_up=True)),
    services: CoreServices = Depends(get_services),
) -> RoleResponse:
    role = await services.roles.create_role(
        tenant_id=access.tenant_id,
        name=payload.name,
        level=payload.level,
        description=payload.description,
        permissions=[
            PermissionSpec(
                resource=item.resource,
                action=item.action,
                context=item.context.value,
                conditions=item.conditions,
            )
            for item in payload.permissions
        ],
        created_by=access.user_id,
    )
    return _role_response(role)


@router.delete("/roles/{role_id}", status_code=204)
async def deactivate_role(
    role_id: str,
    access: AccessContext = Depends(require_permission("settings", "configure", step_up=True)),
    services: CoreServices = Depends(get_services),
) -> Response:
    await services.roles.deactivate_role(role_id=role_id, tenant_id=access.tenant_id, deactivated_by=access.user_id)
    return Response(status_code=204)


@router.post("/assignments", status_code=201)
async def assign_role(
    payload: AssignmentRequest,
    access: AccessContext = Depends(require_permission("users", "assign", step_up=True)),
    services: CoreServices = Depends(get_services),
) -> AssignmentResponse:
    row = await services.roles.assign_role(
        user_id=payload.user_id,
        role_id=payload.role_id,
        tenant_id=access.tenant_id,
        assigned_by=access.user_id,
        expires_at=payload.expires_at,
        conditions=payload.conditions,
    )
    return _assignment_response(row)


@router.post("/assignments/bulk", status_code=201)
async def bulk_assign(
    payload: BulkAssignmentRequest,
    access: AccessContext = Depends(require_permission("users", "assign", step_up=True)),
    services: CoreServices = Depends(get_services),
) -> list[AssignmentResponse]:
    # All rows commit together or none do.
    rows = await services.roles.bulk_assign(
        tenant_id=access.tenant_id,
        assigned_by=access.user_id,
        assignments=[
            AssignmentSpec(
                user_id=item.user_id,
                role_id=item.role_id,
                expires_at=item.expires_at,
                conditions=item.conditions,
            )
            for item in payload.assignments
        ],
    )
    return [_assignment_response(row) for row in rows]


@router.post("/assignments/revoke")
async def revoke_role(
    payload: RevokeRequest,
    access: AccessContext = Depends(require_permission("users", "unassign", step_up=True)),
    services: CoreServices = Depends(get_services),
) -> AssignmentResponse:
    row = await services.roles.revoke_role(
        user_id=payload.user_id,
        role_id=payload.role_id,
        tenant_id=access.tenant_id,
        revoked_by=access.user_id,
        reason=payload.reason,
    )
    return _assignment_response(row)


@router.post("/check")
async def check_permission(
    payload: CheckRequest,
    request: Request,
    access: AccessContext = Depends(get_access_context),
    services: CoreServices = Depends(get_services),
) -> CheckResponse:
    # Checks run for the caller only; the deny reason stays in the audit trail.
    decision = await services.engine.check_permission(
        AccessRequest(
            user_id=access.user_id,
            tenant_id=access.tenant_id,
            resource=payload.resource,
            action=payload.action,
            context=payload.context,
            target_id=payload.target_id,
            target_owner_id=payload.target_owner_id,
            attributes=payload.attributes,
        ),
        audit_context=audit_context(request),
    )
    return CheckResponse(granted=decision.granted, applied_permissions=decision.applied_permissions)
