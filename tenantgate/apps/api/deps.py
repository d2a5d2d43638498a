from __future__ import annotations

from typing import NoReturn

from fastapi import Depends, HTTPException, Request

from tenantgate.apps.api.response import TENANT_PATH_PREFIX
from tenantgate.services.audit.logger import AuditContext, new_correlation_id
from tenantgate.services.audit.redaction import get_request_context
from tenantgate.services.auth.sessions import DeviceMeta
from tenantgate.services.container import CoreServices
from tenantgate.services.gateway import AccessContext, GateDecision
from tenantgate.services.rbac.catalog import ContextScope


def get_services(request: Request) -> CoreServices:
    return request.app.state.services


def _raise_for(decision: GateDecision) -> NoReturn:
    detail = {"code": decision.code, "message": decision.message}
    headers = {"WWW-Authenticate": "Bearer"} if decision.status == 401 else None
    raise HTTPException(status_code=decision.status, detail=detail, headers=headers)


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    scheme, _, token = header_value.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def request_token(request: Request, services: CoreServices) -> str | None:
    # Bearer header wins; browsers fall back to the session cookie.
    token = _parse_bearer_token(request.headers.get("Authorization"))
    if token:
        return token
    return request.cookies.get(services.settings.session_cookie_name)


def audit_context(request: Request) -> AuditContext:
    meta = get_request_context(request)
    correlation_id = getattr(request.state, "correlation_id", None) or new_correlation_id()
    return AuditContext(
        ip_address=meta["ip_address"],
        user_agent=meta["user_agent"],
        correlation_id=correlation_id,
    )


def device_meta(request: Request, device_id: str | None = None) -> DeviceMeta:
    meta = get_request_context(request)
    return DeviceMeta(
        device_id=device_id or request.headers.get("X-Device-Id"),
        ip_address=meta["ip_address"],
        user_agent=meta["user_agent"],
    )


def tenant_path(request: Request) -> str | None:
    # Only the /t/<subdomain>/ mount feeds path resolution; a bare /v1/... path names no tenant.
    path = request.url.path
    if not path.startswith(TENANT_PATH_PREFIX):
        return None
    return path[len(TENANT_PATH_PREFIX) - 1:]


async def get_optional_tenant_id(
    request: Request,
    services: CoreServices = Depends(get_services),
) -> str | None:
    # Apex-domain requests carry no tenant; a named but unknown tenant is still an error.
    resolution = await services.gate.resolve_tenant(request.headers.get("host"), tenant_path(request))
    if isinstance(resolution, GateDecision):
        if resolution.reason == "no_candidate":
            return None
        _raise_for(resolution)
    request.state.tenant_id = resolution.tenant_id
    return resolution.tenant_id


async def get_access_context(
    request: Request,
    services: CoreServices = Depends(get_services),
) -> AccessContext:
    decision = await services.gate.evaluate(
        host=request.headers.get("host"),
        path=tenant_path(request),
        token=request_token(request, services),
        audit_context=audit_context(request),
    )
    if not decision.allowed:
        _raise_for(decision)
    request.state.access_context = decision.context
    return decision.context


async def _enforce_step_up(access: AccessContext, services: CoreServices) -> None:
    # Users with an enabled second factor must have used it on this session.
    if not access.mfa_verified and await services.mfa.user_has_mfa_enabled(access.user_id):
        raise HTTPException(
            status_code=403,
            detail={"code": "MFA_REQUIRED", "message": "Multi-factor verification required"},
        )


def require_permission(
    resource: str,
    action: str,
    context: ContextScope = ContextScope.TENANT,
    *,
    require_mfa: bool = False,
    step_up: bool = False,
):
    """Gate a route on a permission.

    ``require_mfa`` demands an MFA-verified session from everyone, while
    ``step_up`` demands it only from users who have a second factor enabled.
    """

    async def _dependency(
        request: Request,
        services: CoreServices = Depends(get_services),
    ) -> AccessContext:
        decision = await services.gate.evaluate(
            host=request.headers.get("host"),
            path=tenant_path(request),
            token=request_token(request, services),
            resource=resource,
            action=action,
            context=context,
            require_mfa=require_mfa,
            audit_context=audit_context(request),
        )
        if not decision.allowed:
            _raise_for(decision)
        if step_up:
            await _enforce_step_up(decision.context, services)
        request.state.access_context = decision.context
        return decision.context

    return _dependency


async def require_mfa_if_enrolled(
    access: AccessContext = Depends(get_access_context),
    services: CoreServices = Depends(get_services),
) -> AccessContext:
    await _enforce_step_up(access, services)
    return access
