from __future__ import annotations

from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantgate.domain.models import AuditEvent, Tenant, User
from tenantgate.services.auth.sessions import DeviceMeta, TokenPair
from tenantgate.services.container import CoreServices
from tenantgate.services.tenancy.tenants import create_tenant


async def create_test_tenant(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    subdomain: str | None = None,
    status: str = "active",
) -> Tenant:
    # Unique subdomains keep tests from colliding on the unique index.
    async with session_factory() as session:
        tenant = await create_tenant(
            session,
            subdomain=subdomain or f"t-{uuid4().hex[:10]}",
            name="Test Tenant",
            status=status,
        )
        await session.commit()
    return tenant


async def create_test_user(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    tenant_id: str,
    email: str | None = None,
    status: str = "active",
    external_subject: str | None = None,
) -> User:
    async with session_factory() as session:
        user = User(
            id=uuid4().hex,
            tenant_id=tenant_id,
            email=email or f"user-{uuid4().hex[:8]}@example.org",
            external_subject=external_subject,
            status=status,
        )
        session.add(user)
        await session.commit()
    return user


async def create_member(
    services: CoreServices,
    *,
    tenant_id: str,
    role_id: str | None,
    email: str | None = None,
) -> User:
    # Seed a user and, when asked, a built-in role without an acting admin.
    user = await create_test_user(services.session_factory, tenant_id=tenant_id, email=email)
    if role_id is not None:
        await services.roles.assign_role(
            user_id=user.id,
            role_id=role_id,
            tenant_id=tenant_id,
            assigned_by=None,
        )
    return user


async def issue_tokens(
    services: CoreServices,
    user: User,
    *,
    role: str | None = None,
    device_id: str | None = None,
) -> TokenPair:
    return await services.sessions.issue_token_pair(
        user_id=user.id,
        tenant_id=user.tenant_id,
        role=role,
        device=DeviceMeta(device_id=device_id, ip_address="203.0.113.7", user_agent="pytest"),
    )


async def fetch_events(
    services: CoreServices,
    *,
    tenant_id: str | None = None,
    event_type: str | None = None,
) -> list[AuditEvent]:
    # Drain the audit buffer so assertions see every event logged so far.
    await services.audit.flush()
    async with services.session_factory() as session:
        stmt = select(AuditEvent)
        if tenant_id is not None:
            stmt = stmt.where(AuditEvent.tenant_id == tenant_id)
        if event_type is not None:
            stmt = stmt.where(AuditEvent.event_type == event_type)
        result = await session.execute(stmt.order_by(AuditEvent.occurred_at))
        return list(result.scalars().all())


def bearer(tokens: TokenPair) -> dict[str, str]:
    return {"Authorization": f"Bearer {tokens.access_token}"}
