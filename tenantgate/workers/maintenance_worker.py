from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from tenantgate.core.config import get_settings
from tenantgate.core.logging import configure_logging
from tenantgate.persistence.db import SessionLocal
from tenantgate.services.audit.retention import purge_expired_events
from tenantgate.services.mfa.manager import purge_expired_codes

logger = logging.getLogger(__name__)


async def purge_audit_retention(ctx) -> dict[str, int]:
    # Daily retention pass over every audit category.
    async with SessionLocal() as session:
        deleted = await purge_expired_events(session)
        await session.commit()
    return deleted


async def purge_verification_codes(ctx) -> int:
    async with SessionLocal() as session:
        deleted = await purge_expired_codes(session)
        await session.commit()
    if deleted:
        logger.info("mfa_codes_purged count=%s", deleted)
    return deleted


async def _startup(ctx) -> None:
    configure_logging()
    logger.info("maintenance_worker_started")


async def _shutdown(ctx) -> None:
    logger.info("maintenance_worker_stopped")


class WorkerSettings:
    # Class attributes keep the arq CLI happy.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.worker_queue_name
    functions = [purge_audit_retention, purge_verification_codes]
    cron_jobs = [
        cron(purge_audit_retention, hour={3}, minute={15}, run_at_startup=False),
        cron(purge_verification_codes, minute={0, 15, 30, 45}),
    ]
    on_startup = _startup
    on_shutdown = _shutdown
