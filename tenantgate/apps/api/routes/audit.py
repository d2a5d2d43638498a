from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from tenantgate.apps.api.deps import get_services, require_permission
from tenantgate.domain.models import SecurityAlert
from tenantgate.persistence.repos.audit import AuditQuery
from tenantgate.services.audit.compliance import AuditCategory, ReportType, RiskLevel
from tenantgate.services.audit.reports import event_to_dict, report_to_dict
from tenantgate.services.container import CoreServices
from tenantgate.services.gateway import AccessContext


router = APIRouter(prefix="/audit", tags=["audit"])


class AuditEventsPage(BaseModel):
    items: list[dict[str, Any]]
    total: int
    next_offset: int | None


class ReportRequest(BaseModel):
    report_type: ReportType
    period_start: datetime
    period_end: datetime


class AlertResponse(BaseModel):
    id: str
    alert_type: str
    severity: str
    event_id: str
    details: dict[str, Any]
    created_at: str
    resolved_at: str | None
    resolved_by: str | None


def _alert_response(alert: SecurityAlert) -> AlertResponse:
    return AlertResponse(
        id=alert.id,
        alert_type=alert.alert_type,
        severity=alert.severity,
        event_id=alert.event_id,
        details=alert.details_json or {},
        created_at=alert.created_at.isoformat(),
        resolved_at=alert.resolved_at.isoformat() if alert.resolved_at else None,
        resolved_by=alert.resolved_by,
    )


@router.get("/events")
async def list_audit_events(
    user_id: str | None = None,
    category: AuditCategory | None = None,
    risk_level: RiskLevel | None = None,
    event_type: str | None = None,
    ip_address: str | None = None,
    occurred_from: datetime | None = Query(default=None, alias="from"),
    occurred_to: datetime | None = Query(default=None, alias="to"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    access: AccessContext = Depends(require_permission("audit_logs", "read")),
    services: CoreServices = Depends(get_services),
) -> AuditEventsPage:
    # Always scoped to the caller's tenant; there is no cross-tenant filter.
    page = await services.audit.search_events(
        AuditQuery(
            tenant_id=access.tenant_id,
            user_id=user_id,
            category=category.value if category else None,
            risk_level=risk_level.value if risk_level else None,
            event_type=event_type,
            ip_address=ip_address,
            occurred_from=occurred_from,
            occurred_to=occurred_to,
        ),
        offset=offset,
        limit=limit,
    )
    next_offset = offset + limit if offset + limit < page.total else None
    return AuditEventsPage(
        items=[event_to_dict(event) for event in page.items],
        total=page.total,
        next_offset=next_offset,
    )


@router.post("/reports", status_code=201)
async def generate_report(
    payload: ReportRequest,
    access: AccessContext = Depends(require_permission("audit_logs", "export", step_up=True)),
    services: CoreServices = Depends(get_services),
) -> dict:
    report = await services.reporter.generate(
        report_type=payload.report_type,
        period_start=payload.period_start,
        period_end=payload.period_end,
        tenant_id=access.tenant_id,
        generated_by=access.user_id,
    )
    return report_to_dict(report)


@router.get("/alerts")
async def list_alerts(
    unresolved_only: bool = True,
    access: AccessContext = Depends(require_permission("audit_logs", "read")),
    services: CoreServices = Depends(get_services),
) -> list[AlertResponse]:
    alerts = await services.audit.list_alerts(tenant_id=access.tenant_id, unresolved_only=unresolved_only)
    return [_alert_response(alert) for alert in alerts]


@router.post("/alerts/{alert_id}/resolve")
async def resolve_alert(
    alert_id: str,
    access: AccessContext = Depends(require_permission("audit_logs", "update", step_up=True)),
    services: CoreServices = Depends(get_services),
) -> AlertResponse:
    alert = await services.audit.resolve_alert(alert_id=alert_id, tenant_id=access.tenant_id, resolved_by=access.user_id)
    return _alert_response(alert)
