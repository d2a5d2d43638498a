from __future__ import annotations

from dataclasses import replace

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from pydantic import BaseModel, Field

from tenantgate.apps.api.deps import audit_context, get_access_context, get_services, require_mfa_if_enrolled
from tenantgate.domain.models import MfaDevice
from tenantgate.services.container import CoreServices
from tenantgate.services.gateway import AccessContext


router = APIRouter(prefix="/mfa", tags=["mfa"])


class DeviceResponse(BaseModel):
    id: str
    method: str
    name: str
    status: str
    failed_attempts: int
    last_used_at: str | None
    created_at: str


class TotpEnrollRequest(BaseModel):
    name: str = Field(default="Authenticator", min_length=1, max_length=64)


class TotpEnrollResponse(BaseModel):
    device_id: str
    secret: str
    qr_payload: str
    backup_codes: list[str]


class SmsEnrollRequest(BaseModel):
    phone_number: str
    name: str | None = None


class EmailEnrollRequest(BaseModel):
    email: str
    name: str | None = None


class OutOfBandEnrollResponse(BaseModel):
    device_id: str
    method: str
    masked_target: str
    expires_at: str


class CodeRequest(BaseModel):
    code: str = Field(min_length=1, max_length=16)


def _to_response(device: MfaDevice) -> DeviceResponse:
    # Secrets and contact targets never leave the server.
    return DeviceResponse(
        id=device.id,
        method=device.method,
        name=device.name,
        status=device.status,
        failed_attempts=device.failed_attempts,
        last_used_at=device.last_used_at.isoformat() if device.last_used_at else None,
        created_at=device.created_at.isoformat(),
    )


def _invalid_code() -> HTTPException:
    return HTTPException(status_code=401, detail={"code": "MFA_INVALID_CODE", "message": "Invalid code"})


@router.get("/devices")
async def list_devices(
    access: AccessContext = Depends(get_access_context),
    services: CoreServices = Depends(get_services),
) -> list[DeviceResponse]:
    devices = await services.mfa.list_devices(access.user_id)
    return [_to_response(device) for device in devices]


@router.post("/totp", status_code=201)
async def enroll_totp(
    payload: TotpEnrollRequest,
    access: AccessContext = Depends(require_mfa_if_enrolled),
    services: CoreServices = Depends(get_services),
) -> TotpEnrollResponse:
    enrollment = await services.mfa.enroll_totp(
        user_id=access.user_id,
        tenant_id=access.tenant_id,
        name=payload.name,
    )
    return TotpEnrollResponse(
        device_id=enrollment.device_id,
        secret=enrollment.secret,
        qr_payload=enrollment.qr_payload,
        backup_codes=enrollment.backup_codes,
    )


@router.post("/totp/{device_id}/confirm")
async def confirm_totp(
    device_id: str,
    payload: CodeRequest,
    access: AccessContext = Depends(get_access_context),
    services: CoreServices = Depends(get_services),
) -> dict:
    if not await services.mfa.confirm_totp(device_id, payload.code, user_id=access.user_id):
        raise _invalid_code()
    return {"verified": True}


@router.post("/sms", status_code=201)
async def enroll_sms(
    payload: SmsEnrollRequest,
    access: AccessContext = Depends(require_mfa_if_enrolled),
    services: CoreServices = Depends(get_services),
) -> OutOfBandEnrollResponse:
    enrollment = await services.mfa.enroll_sms(
        user_id=access.user_id,
        tenant_id=access.tenant_id,
        phone_number=payload.phone_number,
        name=payload.name,
    )
    return OutOfBandEnrollResponse(
        device_id=enrollment.device_id,
        method=enrollment.method,
        masked_target=enrollment.masked_target,
        expires_at=enrollment.expires_at.isoformat(),
    )


@router.post("/email", status_code=201)
async def enroll_email(
    payload: EmailEnrollRequest,
    access: AccessContext = Depends(require_mfa_if_enrolled),
    services: CoreServices = Depends(get_services),
) -> OutOfBandEnrollResponse:
    enrollment = await services.mfa.enroll_email(
        user_id=access.user_id,
        tenant_id=access.tenant_id,
        email=payload.email,
        name=payload.name,
    )
    return OutOfBandEnrollResponse(
        device_id=enrollment.device_id,
        method=enrollment.method,
        masked_target=enrollment.masked_target,
        expires_at=enrollment.expires_at.isoformat(),
    )


@router.post("/devices/{device_id}/confirm")
async def confirm_device(
    device_id: str,
    payload: CodeRequest,
    access: AccessContext = Depends(get_access_context),
    services: CoreServices = Depends(get_services),
) -> dict:
    if not await services.mfa.confirm_out_of_band(device_id, payload.code, user_id=access.user_id):
        raise _invalid_code()
    return {"verified": True}


@router.post("/challenge")
async def send_challenge(
    access: AccessContext = Depends(get_access_context),
    services: CoreServices = Depends(get_services),
) -> dict:
    result = await services.mfa.send_login_challenge(access.user_id)
    return {"sent": len(result.sent), "throttled": len(result.throttled)}


@router.post("/verify")
async def verify(
    payload: CodeRequest,
    request: Request,
    access: AccessContext = Depends(get_access_context),
    services: CoreServices = Depends(get_services),
) -> dict:
    ctx = audit_context(request)
    result = await services.mfa.verify_login(
        access.user_id,
        payload.code,
        context=replace(ctx, user_id=access.user_id, tenant_id=access.tenant_id, session_id=access.session_id),
    )
    if result.success:
        await services.sessions.mark_mfa_verified(access.session_id)
        return {"verified": True, "method": result.method}
    if result.reason == "code_already_used":
        raise HTTPException(status_code=409, detail={"code": "CODE_ALREADY_USED", "message": "Code already used"})
    if result.reason == "unavailable":
        raise HTTPException(
            status_code=503,
            detail={"code": "AUTH_UNAVAILABLE", "message": "Verification temporarily unavailable"},
        )
    raise _invalid_code()


@router.post("/backup-codes")
async def regenerate_backup_codes(
    access: AccessContext = Depends(require_mfa_if_enrolled),
    services: CoreServices = Depends(get_services),
) -> dict:
    codes = await services.mfa.regenerate_backup_codes(access.user_id)
    return {"backup_codes": codes}


@router.delete("/devices/{device_id}", status_code=204)
async def disable_device(
    device_id: str,
    access: AccessContext = Depends(require_mfa_if_enrolled),
    services: CoreServices = Depends(get_services),
) -> Response:
    await services.mfa.disable_device(device_id, user_id=access.user_id)
    return Response(status_code=204)
