from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from pydantic import BaseModel, Field

from tenantgate.apps.api.deps import device_meta, get_access_context, get_optional_tenant_id, get_services
from tenantgate.services.auth.blacklist import BlacklistReason
from tenantgate.services.auth.sessions import TokenPair
from tenantgate.services.container import CoreServices
from tenantgate.services.gateway import AccessContext


router = APIRouter(prefix="/auth", tags=["auth"])


class FederatedLoginRequest(BaseModel):
    id_token: str = Field(min_length=1)
    device_id: str | None = None


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1)
    device_id: str | None = None


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: str
    refresh_expires_at: str
    session_id: str


class SignInResponse(TokenResponse):
    user_id: str
    tenant_id: str
    role: str | None
    mfa_required: bool
    created_tenant: bool


class MeResponse(BaseModel):
    user_id: str
    tenant_id: str
    session_id: str
    role: str | None
    mfa_verified: bool


class SessionResponse(BaseModel):
    id: str
    device_id: str | None
    ip_address: str | None
    user_agent: str | None
    created_at: str
    last_used_at: str
    mfa_verified: bool
    current: bool


def _token_fields(pair: TokenPair) -> dict:
    return {
        "access_token": pair.access_token,
        "refresh_token": pair.refresh_token,
        "access_expires_at": pair.access_expires_at.isoformat(),
        "refresh_expires_at": pair.refresh_expires_at.isoformat(),
        "session_id": pair.session_id,
    }


def _set_session_cookie(response: Response, services: CoreServices, token: str, expires_at: datetime) -> None:
    response.set_cookie(
        services.settings.session_cookie_name,
        token,
        expires=expires_at,
        httponly=True,
        secure=services.settings.is_production(),
        samesite="lax",
    )


@router.post("/federated")
async def federated_login(
    payload: FederatedLoginRequest,
    request: Request,
    response: Response,
    tenant_id: str | None = Depends(get_optional_tenant_id),
    services: CoreServices = Depends(get_services),
) -> SignInResponse:
    # First sign-in without any membership provisions a tenant on the apex domain.
    result = await services.federated.authenticate(
        payload.id_token,
        device=device_meta(request, payload.device_id),
        tenant_id=tenant_id,
    )
    _set_session_cookie(response, services, result.tokens.access_token, result.tokens.access_expires_at)
    return SignInResponse(
        **_token_fields(result.tokens),
        user_id=result.user_id,
        tenant_id=result.tenant_id,
        role=result.role,
        mfa_required=result.mfa_required,
        created_tenant=result.created_tenant,
    )


@router.post("/refresh")
async def refresh_tokens(
    payload: RefreshRequest,
    request: Request,
    response: Response,
    services: CoreServices = Depends(get_services),
) -> TokenResponse:
    pair = await services.sessions.rotate_token_pair(
        payload.refresh_token,
        device_meta(request, payload.device_id),
    )
    if pair is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "AUTH_UNAUTHORIZED", "message": "Authentication required"},
        )
    _set_session_cookie(response, services, pair.access_token, pair.access_expires_at)
    return TokenResponse(**_token_fields(pair))


@router.post("/logout", status_code=204)
async def logout(
    access: AccessContext = Depends(get_access_context),
    services: CoreServices = Depends(get_services),
) -> Response:
    await services.sessions.revoke_session(access.session_id, access.user_id)
    response = Response(status_code=204)
    response.delete_cookie(services.settings.session_cookie_name)
    return response


@router.post("/logout-all")
async def logout_all(
    response: Response,
    access: AccessContext = Depends(get_access_context),
    services: CoreServices = Depends(get_services),
) -> dict:
    revoked = await services.sessions.revoke_all_for_user(
        access.user_id,
        BlacklistReason.LOGOUT.value,
        actor_id=access.user_id,
    )
    response.delete_cookie(services.settings.session_cookie_name)
    return {"revoked": revoked}


@router.get("/me")
async def me(access: AccessContext = Depends(get_access_context)) -> MeResponse:
    return MeResponse(
        user_id=access.user_id,
        tenant_id=access.tenant_id,
        session_id=access.session_id,
        role=access.role,
        mfa_verified=access.mfa_verified,
    )


@router.get("/sessions")
async def list_sessions(
    access: AccessContext = Depends(get_access_context),
    services: CoreServices = Depends(get_services),
) -> list[SessionResponse]:
    sessions = await services.sessions.list_sessions(access.user_id)
    return [
        SessionResponse(
            id=item.id,
            device_id=item.device_id,
            ip_address=item.ip_address,
            user_agent=item.user_agent,
            created_at=item.created_at.isoformat(),
            last_used_at=item.last_used_at.isoformat(),
            mfa_verified=item.mfa_verified,
            current=item.id == access.session_id,
        )
        for item in sessions
    ]


@router.delete("/sessions/{session_id}", status_code=204)
async def revoke_session(
    session_id: str,
    access: AccessContext = Depends(get_access_context),
    services: CoreServices = Depends(get_services),
) -> Response:
    # Users may only revoke their own sessions; others look like not found.
    await services.sessions.revoke_session(session_id, access.user_id)
    return Response(status_code=204)
