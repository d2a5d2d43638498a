from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import and_, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate.domain.models import AuditEvent, SecurityAlert


@dataclass(frozen=True)
class AuditQuery:
    # Optional filters for audit search; unset fields do not constrain results.
    tenant_id: str | None = None
    user_id: str | None = None
    category: str | None = None
    risk_level: str | None = None
    event_type: str | None = None
    ip_address: str | None = None
    occurred_from: datetime | None = None
    occurred_to: datetime | None = None


def _apply_filters(stmt, query: AuditQuery):
    if query.tenant_id:
        stmt = stmt.where(AuditEvent.tenant_id == query.tenant_id)
    if query.user_id:
        stmt = stmt.where(AuditEvent.user_id == query.user_id)
    if query.category:
        stmt = stmt.where(AuditEvent.category == query.category)
    if query.risk_level:
        stmt = stmt.where(AuditEvent.risk_level == query.risk_level)
    if query.event_type:
        stmt = stmt.where(AuditEvent.event_type == query.event_type)
    if query.ip_address:
        stmt = stmt.where(AuditEvent.ip_address == query.ip_address)
    if query.occurred_from:
        stmt = stmt.where(AuditEvent.occurred_at >= query.occurred_from)
    if query.occurred_to:
        stmt = stmt.where(AuditEvent.occurred_at <= query.occurred_to)
    return stmt


async def list_events(
    session: AsyncSession,
    query: AuditQuery,
    *,
    offset: int = 0,
    limit: int | None = 50,
) -> list[AuditEvent]:
    stmt = _apply_filters(select(AuditEvent), query)
    stmt = stmt.order_by(AuditEvent.occurred_at.desc(), AuditEvent.id.desc()).offset(offset)
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_events(session: AsyncSession, query: AuditQuery) -> int:
    stmt = _apply_filters(select(func.count()).select_from(AuditEvent), query)
    result = await session.execute(stmt)
    return int(result.scalar_one())


async def get_event_by_id(session: AsyncSession, *, event_id: str) -> AuditEvent | None:
    result = await session.execute(select(AuditEvent).where(AuditEvent.id == event_id))
    return result.scalar_one_or_none()


def _unresolved_alert_event_ids():
    return select(SecurityAlert.event_id).where(SecurityAlert.resolved_at.is_(None))


async def purge_category(session: AsyncSession, *, category: str, cutoff: datetime) -> int:
    # Delete expired events unless an open security alert still references them.
    result = await session.execute(
        delete(AuditEvent)
        .where(
            and_(
                AuditEvent.category == category,
                AuditEvent.occurred_at < cutoff,
                AuditEvent.id.not_in(_unresolved_alert_event_ids()),
            )
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def list_alerts(
    session: AsyncSession,
    *,
    tenant_id: str,
    unresolved_only: bool = True,
    limit: int = 100,
) -> list[SecurityAlert]:
    stmt = select(SecurityAlert).where(SecurityAlert.tenant_id == tenant_id)
    if unresolved_only:
        stmt = stmt.where(SecurityAlert.resolved_at.is_(None))
    stmt = stmt.order_by(SecurityAlert.created_at.desc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_alert(session: AsyncSession, *, alert_id: str, tenant_id: str) -> SecurityAlert | None:
    result = await session.execute(
        select(SecurityAlert).where(SecurityAlert.id == alert_id, SecurityAlert.tenant_id == tenant_id)
    )
    return result.scalar_one_or_none()
