from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantgate.core.config import Settings, get_settings
from tenantgate.services.audit.alerts import AlertChannel
from tenantgate.services.audit.logger import AuditLogger
from tenantgate.services.audit.reports import ComplianceReporter
from tenantgate.services.auth.blacklist import MemoryTokenBlacklist, TokenBlacklist, build_blacklist
from tenantgate.services.auth.federated import FederatedSignIn
from tenantgate.services.auth.sessions import SessionManager
from tenantgate.services.gateway import AccessGate
from tenantgate.services.mfa.delivery import CodeDelivery, build_delivery
from tenantgate.services.mfa.manager import MfaManager
from tenantgate.services.rbac.engine import RbacEngine
from tenantgate.services.rbac.roles import RoleManager
from tenantgate.services.resilience import close_shared_redis
from tenantgate.services.tenancy.resolver import TenantResolver


logger = logging.getLogger(__name__)


@dataclass
class CoreServices:
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    audit: AuditLogger
    blacklist: TokenBlacklist
    resolver: TenantResolver
    sessions: SessionManager
    mfa: MfaManager
    engine: RbacEngine
    roles: RoleManager
    reporter: ComplianceReporter
    federated: FederatedSignIn
    gate: AccessGate

    @classmethod
    def build(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        settings: Settings | None = None,
        blacklist: TokenBlacklist | None = None,
        delivery: CodeDelivery | None = None,
        alerts: AlertChannel | None = None,
    ) -> "CoreServices":
        # One shared audit logger, blacklist and permission cache per process.
        settings = settings or get_settings()
        audit = AuditLogger(session_factory, alerts=alerts)
        token_blacklist = blacklist or build_blacklist(settings)
        resolver = TenantResolver(session_factory, settings=settings)
        sessions = SessionManager(session_factory, blacklist=token_blacklist, audit=audit, settings=settings)
        mfa = MfaManager(session_factory, audit=audit, delivery=delivery or build_delivery(settings), settings=settings)
        engine = RbacEngine(session_factory, audit=audit, settings=settings)
        roles = RoleManager(session_factory, engine=engine, audit=audit, settings=settings)
        return cls(
            settings=settings,
            session_factory=session_factory,
            audit=audit,
            blacklist=token_blacklist,
            resolver=resolver,
            sessions=sessions,
            mfa=mfa,
            engine=engine,
            roles=roles,
            reporter=ComplianceReporter(session_factory, audit),
            federated=FederatedSignIn(
                session_factory,
                sessions=sessions,
                roles=roles,
                mfa=mfa,
                audit=audit,
                settings=settings,
            ),
            gate=AccessGate(resolver=resolver, sessions=sessions, engine=engine, audit=audit),
        )

    async def start(self) -> None:
        await self.roles.ensure_system_roles()
        self.audit.start()
        if isinstance(self.blacklist, MemoryTokenBlacklist):
            self.blacklist.start(self.settings.token_blacklist_sweep_interval_s)
        logger.info("core_services_started environment=%s", self.settings.environment)

    async def stop(self) -> None:
        if isinstance(self.blacklist, MemoryTokenBlacklist):
            await self.blacklist.stop()
        # Stopping the audit logger drains whatever is still buffered.
        await self.audit.stop()
        await close_shared_redis()
        logger.info("core_services_stopped")
