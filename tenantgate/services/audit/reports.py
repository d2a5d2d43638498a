from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantgate.core.errors import ValidationFailure
from tenantgate.domain.models import AuditEvent, AuditReport
from tenantgate.persistence.repos import audit as audit_repo
from tenantgate.services.audit.compliance import (
    REPORT_CATEGORIES,
    AuditCategory,
    ReportType,
    RiskLevel,
)
from tenantgate.services.audit.logger import AuditContext, AuditLogger


@dataclass(frozen=True)
class ReportSummary:
    total_events: int
    critical_events: int
    high_risk_events: int
    failed_logins: int
    data_access_events: int
    config_changes: int

    def as_dict(self) -> dict[str, int]:
        return {
            "total_events": self.total_events,
            "critical_events": self.critical_events,
            "high_risk_events": self.high_risk_events,
            "failed_logins": self.failed_logins,
            "data_access_events": self.data_access_events,
            "config_changes": self.config_changes,
        }


@dataclass(frozen=True)
class ComplianceReport:
    id: str
    report_type: ReportType
    tenant_id: str | None
    period_start: datetime
    period_end: datetime
    events: list[AuditEvent]
    summary: ReportSummary


def summarize(events: list[AuditEvent]) -> ReportSummary:
    # Aggregate counts over the already-filtered window.
    return ReportSummary(
        total_events=len(events),
        critical_events=sum(1 for e in events if e.risk_level == RiskLevel.CRITICAL.value),
        high_risk_events=sum(
            1 for e in events if e.risk_level in {RiskLevel.HIGH.value, RiskLevel.CRITICAL.value}
        ),
        failed_logins=sum(
            1
            for e in events
            if e.category == AuditCategory.AUTHENTICATION.value
            and e.outcome == "failure"
            and "login" in e.event_type
        ),
        data_access_events=sum(1 for e in events if e.category == AuditCategory.DATA_ACCESS.value),
        config_changes=sum(1 for e in events if e.category == AuditCategory.CONFIGURATION_CHANGE.value),
    )


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)


class ComplianceReporter:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], audit: AuditLogger) -> None:
        self._session_factory = session_factory
        self._audit = audit

    async def generate(
        self,
        *,
        report_type: ReportType | str,
        period_start: datetime,
        period_end: datetime,
        tenant_id: str | None,
        generated_by: str | None,
    ) -> ComplianceReport:
        resolved_type = ReportType(report_type)
        period_start = _as_utc(period_start)
        period_end = _as_utc(period_end)
        if period_end <= period_start:
            raise ValidationFailure("period_end", "must be after period_start")
        # Include events still waiting in the buffer.
        await self._audit.flush()
        query = audit_repo.AuditQuery(
            tenant_id=tenant_id,
            occurred_from=period_start,
            occurred_to=period_end,
        )
        categories = REPORT_CATEGORIES[resolved_type]
        async with self._session_factory() as session:
            events = await audit_repo.list_events(session, query, limit=None)
            if categories is not None:
                allowed = {category.value for category in categories}
                events = [event for event in events if event.category in allowed]
            summary = summarize(events)
            report = AuditReport(
                id=uuid4().hex,
                tenant_id=tenant_id,
                report_type=resolved_type.value,
                period_start=period_start,
                period_end=period_end,
                generated_by=generated_by,
                event_count=summary.total_events,
                summary_json=summary.as_dict(),
            )
            session.add(report)
            await session.commit()
        await self._audit.log_event(
            event_type="compliance_report_generated",
            category=AuditCategory.COMPLIANCE,
            risk_level=RiskLevel.LOW,
            action="generate_report",
            details={"report_id": report.id, "report_type": resolved_type.value},
            context=AuditContext(user_id=generated_by, tenant_id=tenant_id, outcome="success"),
        )
        return ComplianceReport(
            id=report.id,
            report_type=resolved_type,
            tenant_id=tenant_id,
            period_start=period_start,
            period_end=period_end,
            events=events,
            summary=summary,
        )


def event_to_dict(event: AuditEvent) -> dict[str, Any]:
    return {
        "id": event.id,
        "occurred_at": event.occurred_at.isoformat(),
        "event_type": event.event_type,
        "category": event.category,
        "risk_level": event.risk_level,
        "outcome": event.outcome,
        "user_id": event.user_id,
        "tenant_id": event.tenant_id,
        "session_id": event.session_id,
        "ip_address": event.ip_address,
        "user_agent": event.user_agent,
        "resource": event.resource,
        "action": event.action,
        "details": event.details_json,
        "correlation_id": event.correlation_id,
        "compliance_tags": event.compliance_tags_json,
    }


def report_to_dict(report: ComplianceReport) -> dict[str, Any]:
    return {
        "id": report.id,
        "report_type": report.report_type.value,
        "tenant_id": report.tenant_id,
        "period_start": report.period_start.isoformat(),
        "period_end": report.period_end.isoformat(),
        "summary": report.summary.as_dict(),
        "events": [event_to_dict(event) for event in report.events],
    }
