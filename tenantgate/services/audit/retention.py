from __future__ import annotations

from datetime import datetime, timezone
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate.persistence.repos import audit as audit_repo
from tenantgate.services.audit.compliance import RETENTION_DAYS, retention_window


logger = logging.getLogger(__name__)


async def purge_expired_events(session: AsyncSession, *, now: datetime | None = None) -> dict[str, int]:
    # Apply each category's window independently; events pinned by open alerts survive.
    reference = now or datetime.now(timezone.utc)
    deleted: dict[str, int] = {}
    for category in RETENTION_DAYS:
        cutoff = reference - retention_window(category)
        count = await audit_repo.purge_category(session, category=category.value, cutoff=cutoff)
        if count:
            deleted[category.value] = count
    logger.info("audit_retention_purge deleted=%s", sum(deleted.values()))
    return deleted
