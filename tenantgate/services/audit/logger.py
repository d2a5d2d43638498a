from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime, timezone
import logging
import secrets
from typing import Any
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantgate.core.config import get_settings
from tenantgate.core.errors import ConflictError, NotFoundError
from tenantgate.domain.models import AuditEvent, SecurityAlert
from tenantgate.persistence.repos import audit as audit_repo
from tenantgate.services.audit.alerts import AlertChannel
from tenantgate.services.audit.compliance import AuditCategory, RiskLevel, compliance_tags
from tenantgate.services.audit.redaction import redact


logger = logging.getLogger(__name__)

# Storage failures that keep events buffered for retry.
_STORE_ERRORS = (SQLAlchemyError, OSError, TimeoutError)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_correlation_id() -> str:
    return secrets.token_hex(8)


@dataclass(frozen=True)
class AuditContext:
    # Who and where an event came from; every field is optional.
    user_id: str | None = None
    tenant_id: str | None = None
    session_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    resource: str | None = None
    outcome: str | None = None
    correlation_id: str | None = None


@dataclass(frozen=True)
class AuditPage:
    items: list[AuditEvent]
    total: int
    offset: int
    limit: int


class AuditLogger:
    """Buffered, append-only audit trail.

    Events are redacted and tagged when logged, then held in memory until the
    buffer reaches ``buffer_size``, the flush timer fires, or a critical event
    arrives. A failed flush puts the batch back at the front of the buffer. The
    buffer never grows past ``max_buffered``; overflow drops the oldest events
    and raises an alert through the out-of-band channel.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        alerts: AlertChannel | None = None,
        buffer_size: int | None = None,
        flush_interval_s: float | None = None,
        max_buffered: int | None = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self.alerts = alerts or AlertChannel()
        self._buffer_size = max(1, buffer_size or settings.audit_buffer_size)
        self._flush_interval_s = flush_interval_s or settings.audit_flush_interval_s
        self._max_buffered = max(self._buffer_size, max_buffered or settings.audit_buffer_max_events)
        self._buffer: deque[dict[str, Any]] = deque()
        self._flush_lock = asyncio.Lock()
        self._timer_task: asyncio.Task | None = None
        self._pending_flushes: set[asyncio.Task] = set()
        self._overflow_alerted = False
        self.dropped_events = 0

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    async def log_event(
        self,
        *,
        event_type: str,
        category: AuditCategory | str,
        risk_level: RiskLevel | str,
        action: str,
        details: dict[str, Any] | None = None,
        context: AuditContext | None = None,
    ) -> str:
        resolved_category = AuditCategory(category)
        resolved_risk = RiskLevel(risk_level)
        ctx = context or AuditContext()
        event_id = uuid4().hex
        row = {
            "id": event_id,
            "occurred_at": _utc_now(),
            "event_type": event_type,
            "category": resolved_category.value,
            "risk_level": resolved_risk.value,
            "outcome": ctx.outcome,
            "user_id": ctx.user_id,
            "tenant_id": ctx.tenant_id,
            "session_id": ctx.session_id,
            "ip_address": ctx.ip_address,
            "user_agent": ctx.user_agent,
            "resource": ctx.resource,
            "action": action,
            "details_json": redact(details or {}),
            "correlation_id": ctx.correlation_id or new_correlation_id(),
            "compliance_tags_json": compliance_tags(
                event_type=event_type,
                category=resolved_category,
                risk_level=resolved_risk,
            ),
        }
        self._buffer.append(row)
        logger.info(
            "audit_event_buffered event_type=%s category=%s risk=%s event_id=%s",
            event_type,
            resolved_category.value,
            resolved_risk.value,
            event_id,
        )
        await self._enforce_bound()
        if resolved_risk is RiskLevel.CRITICAL:
            await self.flush()
        elif len(self._buffer) >= self._buffer_size:
            self._schedule_flush()
        return event_id

    def _schedule_flush(self) -> None:
        # Flush in the background so the caller is not held by storage latency.
        task = asyncio.create_task(self.flush())
        self._pending_flushes.add(task)
        task.add_done_callback(self._pending_flushes.discard)

    async def flush(self) -> int:
        async with self._flush_lock:
            if not self._buffer:
                return 0
            batch = list(self._buffer)
            self._buffer.clear()
            try:
                async with self._session_factory() as session:
                    session.add_all([AuditEvent(**row) for row in batch])
                    await session.commit()
            except _STORE_ERRORS as exc:
                logger.error("audit_flush_failed events=%s", len(batch), exc_info=exc)
                self._buffer.extendleft(reversed(batch))
                await self._enforce_bound()
                return 0
            self._overflow_alerted = False
            logger.debug("audit_flush_succeeded events=%s", len(batch))
            return len(batch)

    async def _enforce_bound(self) -> None:
        overflow = len(self._buffer) - self._max_buffered
        if overflow <= 0:
            return
        for _ in range(overflow):
            self._buffer.popleft()
        self.dropped_events += overflow
        logger.critical("audit_buffer_overflow dropped=%s bound=%s", overflow, self._max_buffered)
        if not self._overflow_alerted:
            self._overflow_alerted = True
            await self.alerts.send(
                alert_type="audit_buffer_overflow",
                severity=RiskLevel.CRITICAL.value,
                message="Audit storage unavailable; buffered events are being dropped",
                details={"dropped": overflow, "bound": self._max_buffered},
            )

    async def _timer_loop(self) -> None:
        while True:
            await asyncio.sleep(self._flush_interval_s)
            try:
                await self.flush()
            except Exception:  # noqa: BLE001 - keep the flush timer alive and surface failures in logs.
                logger.exception("audit_flush_timer_failed")

    def start(self) -> None:
        if self._timer_task is None or self._timer_task.done():
            self._timer_task = asyncio.create_task(self._timer_loop())

    async def stop(self) -> None:
        if self._timer_task is not None:
            self._timer_task.cancel()
            try:
                await self._timer_task
            except asyncio.CancelledError:
                pass
            self._timer_task = None
        if self._pending_flushes:
            await asyncio.gather(*self._pending_flushes, return_exceptions=True)
        await self.flush()

    # Convenience emitters for the common event families.

    async def log_auth_event(
        self,
        event_type: str,
        *,
        success: bool,
        context: AuditContext | None = None,
        details: dict[str, Any] | None = None,
        risk_level: RiskLevel | None = None,
    ) -> str:
        ctx = context or AuditContext()
        outcome = "success" if success else "failure"
        if ctx.outcome != outcome:
            ctx = replace(ctx, outcome=outcome)
        resolved_risk = risk_level or (RiskLevel.LOW if success else RiskLevel.MEDIUM)
        return await self.log_event(
            event_type=event_type,
            category=AuditCategory.AUTHENTICATION,
            risk_level=resolved_risk,
            action=event_type,
            details=details,
            context=ctx,
        )

    async def log_data_access(
        self,
        resource: str,
        action: str,
        *,
        context: AuditContext | None = None,
        details: dict[str, Any] | None = None,
    ) -> str:
        ctx = context or AuditContext()
        ctx = replace(ctx, resource=resource)
        return await self.log_event(
            event_type="data_access",
            category=AuditCategory.DATA_ACCESS,
            risk_level=RiskLevel.LOW,
            action=action,
            details=details,
            context=ctx,
        )

    async def log_privacy_event(
        self,
        event_type: str,
        *,
        context: AuditContext | None = None,
        details: dict[str, Any] | None = None,
    ) -> str:
        return await self.log_event(
            event_type=event_type,
            category=AuditCategory.PRIVACY,
            risk_level=RiskLevel.MEDIUM,
            action=event_type,
            details=details,
            context=context,
        )

    async def log_config_change(
        self,
        setting: str,
        *,
        previous_value: Any,
        new_value: Any,
        context: AuditContext | None = None,
    ) -> str:
        return await self.log_event(
            event_type="configuration_change",
            category=AuditCategory.CONFIGURATION_CHANGE,
            risk_level=RiskLevel.MEDIUM,
            action=f"update:{setting}",
            details={"setting": setting, "previous_value": previous_value, "new_value": new_value},
            context=context,
        )

    async def log_security_incident(
        self,
        incident_type: str,
        *,
        risk_level: RiskLevel,
        context: AuditContext | None = None,
        details: dict[str, Any] | None = None,
    ) -> str:
        event_id = await self.log_event(
            event_type=incident_type,
            category=AuditCategory.SECURITY_INCIDENT,
            risk_level=risk_level,
            action=incident_type,
            details=details,
            context=context,
        )
        if risk_level in {RiskLevel.HIGH, RiskLevel.CRITICAL}:
            await self._open_alert(
                incident_type=incident_type,
                risk_level=risk_level,
                event_id=event_id,
                tenant_id=(context or AuditContext()).tenant_id,
                details=details,
            )
        return event_id

    async def _open_alert(
        self,
        *,
        incident_type: str,
        risk_level: RiskLevel,
        event_id: str,
        tenant_id: str | None,
        details: dict[str, Any] | None,
    ) -> None:
        # Persist the alert so retention purge keeps its event; page out of band when critical.
        try:
            async with self._session_factory() as session:
                session.add(
                    SecurityAlert(
                        id=uuid4().hex,
                        tenant_id=tenant_id,
                        alert_type=incident_type,
                        severity=risk_level.value,
                        event_id=event_id,
                        details_json=redact(details or {}),
                    )
                )
                await session.commit()
        except _STORE_ERRORS as exc:
            logger.error("security_alert_write_failed event_id=%s", event_id, exc_info=exc)
            await self.alerts.send(
                alert_type=incident_type,
                severity=risk_level.value,
                message="Security alert could not be persisted",
                details={"event_id": event_id, "tenant_id": tenant_id},
            )
            return
        if risk_level is RiskLevel.CRITICAL:
            await self.alerts.send(
                alert_type=incident_type,
                severity=risk_level.value,
                message=f"Critical security incident: {incident_type}",
                details={"event_id": event_id, "tenant_id": tenant_id, **(details or {})},
            )

    async def search_events(
        self,
        query: audit_repo.AuditQuery,
        *,
        offset: int = 0,
        limit: int = 50,
    ) -> AuditPage:
        # Buffered events are part of the trail; make them visible to readers.
        await self.flush()
        async with self._session_factory() as session:
            items = await audit_repo.list_events(session, query, offset=offset, limit=limit)
            total = await audit_repo.count_events(session, query)
        return AuditPage(items=items, total=total, offset=offset, limit=limit)

    async def resolve_alert(self, *, alert_id: str, tenant_id: str, resolved_by: str) -> SecurityAlert:
        async with self._session_factory() as session:
            alert = await audit_repo.get_alert(session, alert_id=alert_id, tenant_id=tenant_id)
            if alert is None:
                raise NotFoundError("Security alert not found")
            if alert.resolved_at is not None:
                raise ConflictError("Security alert already resolved")
            alert.resolved_at = _utc_now()
            alert.resolved_by = resolved_by
            await session.commit()
        await self.log_event(
            event_type="security_alert_resolved",
            category=AuditCategory.COMPLIANCE,
            risk_level=RiskLevel.MEDIUM,
            action="resolve",
            details={"alert_id": alert_id, "alert_type": alert.alert_type},
            context=AuditContext(user_id=resolved_by, tenant_id=tenant_id, outcome="success"),
        )
        return alert

    async def list_alerts(self, *, tenant_id: str, unresolved_only: bool = True) -> list[SecurityAlert]:
        async with self._session_factory() as session:
            return await audit_repo.list_alerts(session, tenant_id=tenant_id, unresolved_only=unresolved_only)
