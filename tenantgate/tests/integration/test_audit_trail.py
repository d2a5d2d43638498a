from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from tenantgate.core.errors import ConflictError, NotFoundError, ValidationFailure
from tenantgate.domain.models import AuditEvent, AuditReport, SecurityAlert
from tenantgate.persistence.repos.audit import AuditQuery
from tenantgate.services.audit.compliance import RiskLevel
from tenantgate.services.audit.logger import AuditContext, AuditLogger
from tenantgate.services.audit.retention import purge_expired_events


class _FlakySessionFactory:
    # Delegates to a real factory unless marked down.
    def __init__(self, real) -> None:
        self._real = real
        self.down = True

    def __call__(self):
        if self.down:
            raise OperationalError("INSERT", {}, Exception("connection refused"))
        return self._real()


async def _count(session_factory) -> int:
    async with session_factory() as session:
        return int((await session.execute(select(func.count()).select_from(AuditEvent))).scalar_one())


async def _insert_event(session_factory, *, category: str, age: timedelta, tenant_id: str = "t1") -> str:
    event_id = uuid4().hex
    async with session_factory() as session:
        session.add(
            AuditEvent(
                id=event_id,
                occurred_at=datetime.now(timezone.utc) - age,
                event_type=f"{category}_sample",
                category=category,
                risk_level="low",
                action="sample",
                tenant_id=tenant_id,
                details_json={},
                correlation_id=uuid4().hex,
                compliance_tags_json=[],
            )
        )
        await session.commit()
    return event_id


async def _system_event(audit: AuditLogger, *, risk_level: str = "low", tenant_id: str = "t1") -> str:
    return await audit.log_event(
        event_type="health_check",
        category="system_access",
        risk_level=risk_level,
        action="check",
        context=AuditContext(tenant_id=tenant_id),
    )


@pytest.mark.asyncio
async def test_buffer_flushes_at_size_threshold(session_factory) -> None:
    audit = AuditLogger(session_factory, buffer_size=3, flush_interval_s=60)
    await _system_event(audit)
    await _system_event(audit)
    assert audit.buffered == 2
    assert await _count(session_factory) == 0

    await _system_event(audit)
    await asyncio.gather(*list(audit._pending_flushes))
    assert audit.buffered == 0
    assert await _count(session_factory) == 3
    await audit.stop()


@pytest.mark.asyncio
async def test_critical_event_is_written_immediately(session_factory) -> None:
    audit = AuditLogger(session_factory, buffer_size=50, flush_interval_s=60)
    await _system_event(audit)
    await _system_event(audit, risk_level="critical")
    assert audit.buffered == 0
    assert await _count(session_factory) == 2
    await audit.stop()


@pytest.mark.asyncio
async def test_store_outage_requeues_then_drops_oldest(session_factory) -> None:
    flaky = _FlakySessionFactory(session_factory)
    audit = AuditLogger(flaky, buffer_size=3, max_buffered=3, flush_interval_s=60)
    ids = [await _system_event(audit, risk_level="critical") for _ in range(5)]

    # Each critical event tried to flush and failed; the batch stays queued up to the bound.
    assert audit.buffered == 3
    assert audit.dropped_events == 2
    overflow = [alert for alert in audit.alerts.recent if alert["alert_type"] == "audit_buffer_overflow"]
    assert len(overflow) == 1
    assert overflow[0]["severity"] == "critical"

    flaky.down = False
    assert await audit.flush() == 3
    async with session_factory() as session:
        stored = (await session.execute(select(AuditEvent.id))).scalars().all()
    assert sorted(stored) == sorted(ids[2:])
    await audit.stop()


@pytest.mark.asyncio
async def test_stop_drains_the_buffer(session_factory) -> None:
    audit = AuditLogger(session_factory, buffer_size=50, flush_interval_s=60)
    audit.start()
    await _system_event(audit)
    await audit.stop()
    assert await _count(session_factory) == 1


@pytest.mark.asyncio
async def test_details_are_redacted_before_storage(services) -> None:
    await services.audit.log_auth_event(
        "login_failed",
        success=False,
        context=AuditContext(tenant_id="t1"),
        details={"password": "hunter2", "email": "ana@egdc.com"},
    )
    page = await services.audit.search_events(AuditQuery(tenant_id="t1"))
    assert page.total == 1
    stored = page.items[0]
    assert stored.details_json["password"] == "[REDACTED]"
    assert stored.details_json["email"] == "ana@egdc.com"
    assert stored.outcome == "failure"
    assert "soc2_relevant" in stored.compliance_tags_json


@pytest.mark.asyncio
async def test_search_is_tenant_scoped_and_paginated(services) -> None:
    for _ in range(3):
        await _system_event(services.audit, tenant_id="t1")
    await _system_event(services.audit, tenant_id="t2")

    page = await services.audit.search_events(AuditQuery(tenant_id="t1"), offset=0, limit=2)
    assert page.total == 3
    assert len(page.items) == 2
    assert {item.tenant_id for item in page.items} == {"t1"}
    rest = await services.audit.search_events(AuditQuery(tenant_id="t1"), offset=2, limit=2)
    assert len(rest.items) == 1


@pytest.mark.asyncio
async def test_retention_windows_per_category(session_factory) -> None:
    stale_system = await _insert_event(session_factory, category="system_access", age=timedelta(days=31))
    fresh_system = await _insert_event(session_factory, category="system_access", age=timedelta(days=29))
    stale_auth = await _insert_event(session_factory, category="authentication", age=timedelta(days=91))
    old_incident = await _insert_event(session_factory, category="security_incident", age=timedelta(days=400))

    async with session_factory() as session:
        deleted = await purge_expired_events(session)
        await session.commit()
        remaining = set((await session.execute(select(AuditEvent.id))).scalars().all())
    assert deleted == {"system_access": 1, "authentication": 1}
    assert remaining == {fresh_system, old_incident}
    assert stale_system not in remaining and stale_auth not in remaining


@pytest.mark.asyncio
async def test_open_alert_pins_its_event(services) -> None:
    event_id = await _insert_event(services.session_factory, category="authentication", age=timedelta(days=120))
    async with services.session_factory() as session:
        session.add(
            SecurityAlert(
                id="alert-1",
                tenant_id="t1",
                alert_type="refresh_token_reuse_detected",
                severity="high",
                event_id=event_id,
                details_json={},
            )
        )
        await session.commit()

    async with services.session_factory() as session:
        assert await purge_expired_events(session) == {}
        await session.commit()

    alerts = await services.audit.list_alerts(tenant_id="t1")
    assert [alert.id for alert in alerts] == ["alert-1"]
    with pytest.raises(NotFoundError):
        await services.audit.resolve_alert(alert_id="alert-1", tenant_id="t2", resolved_by="u1")
    await services.audit.resolve_alert(alert_id="alert-1", tenant_id="t1", resolved_by="u1")
    with pytest.raises(ConflictError):
        await services.audit.resolve_alert(alert_id="alert-1", tenant_id="t1", resolved_by="u1")
    assert await services.audit.list_alerts(tenant_id="t1") == []

    async with services.session_factory() as session:
        assert await purge_expired_events(session) == {"authentication": 1}
        await session.commit()


@pytest.mark.asyncio
async def test_high_risk_incident_opens_alert(services) -> None:
    event_id = await services.audit.log_security_incident(
        "cross_tenant_token_use",
        risk_level=RiskLevel.HIGH,
        context=AuditContext(tenant_id="t1"),
        details={"presented_tenant": "t2"},
    )
    alerts = await services.audit.list_alerts(tenant_id="t1")
    assert [alert.event_id for alert in alerts] == [event_id]
    # High alerts are stored, only critical ones page out of band.
    assert list(services.audit.alerts.recent) == []


@pytest.mark.asyncio
async def test_compliance_report_summary(services) -> None:
    context = AuditContext(tenant_id="t1")
    await services.audit.log_auth_event("login_failed", success=False, context=context)
    await services.audit.log_auth_event("login_failed", success=False, context=context)
    await services.audit.log_auth_event("login", success=True, context=context)
    await services.audit.log_data_access("orders", "read", context=context)
    await services.audit.log_config_change("session_timeout", previous_value=900, new_value=600, context=context)
    await services.audit.log_privacy_event("data_export_requested", context=context)
    await services.audit.log_auth_event("login", success=True, context=AuditContext(tenant_id="t2"))

    now = datetime.now(timezone.utc)
    report = await services.reporter.generate(
        report_type="soc2",
        period_start=now - timedelta(hours=1),
        period_end=now + timedelta(minutes=1),
        tenant_id="t1",
        generated_by="u1",
    )
    # SOC 2 covers authentication, authorization, data access, config and incidents.
    assert report.summary.total_events == 5
    assert report.summary.failed_logins == 2
    assert report.summary.data_access_events == 1
    assert report.summary.config_changes == 1
    assert {event.tenant_id for event in report.events} == {"t1"}

    gdpr = await services.reporter.generate(
        report_type="gdpr",
        period_start=now - timedelta(hours=1),
        period_end=now + timedelta(minutes=1),
        tenant_id="t1",
        generated_by="u1",
    )
    # Privacy, data access and the compliance event recorded for the first report.
    assert gdpr.summary.total_events == 3

    async with services.session_factory() as session:
        stored = (await session.execute(select(AuditReport))).scalars().all()
    assert len(stored) == 2


@pytest.mark.asyncio
async def test_report_period_must_be_ordered(services) -> None:
    now = datetime.now(timezone.utc)
    with pytest.raises(ValidationFailure):
        await services.reporter.generate(
            report_type="custom",
            period_start=now,
            period_end=now - timedelta(days=1),
            tenant_id="t1",
            generated_by=None,
        )
