from __future__ import annotations

import pytest
from sqlalchemy import select

from tenantgate.core.errors import AuthenticationError
from tenantgate.domain.models import Tenant, User, UserRole
from tenantgate.services.auth.federated import FederatedClaims
from tenantgate.services.auth.sessions import DeviceMeta
from tenantgate.services.rbac.engine import AccessRequest
from tenantgate.tests.utils.seed import create_test_tenant, create_test_user, fetch_events


def _claims(subject: str = "idp|ana", email: str = "ana@egdc.com", name: str | None = "EGDC Foods") -> FederatedClaims:
    return FederatedClaims(subject=subject, email=email, name=name)


@pytest.mark.asyncio
async def test_first_sign_in_provisions_tenant_and_admin(services) -> None:
    result = await services.federated.sign_in(_claims(), device=DeviceMeta(ip_address="198.51.100.4"))
    assert result.created_tenant and result.created_user
    assert result.role == "tenant_admin"
    assert result.tokens.access_token.startswith("tga_")
    assert not result.mfa_required

    async with services.session_factory() as session:
        tenant = await session.get(Tenant, result.tenant_id)
        user = await session.get(User, result.user_id)
        assignments = (
            await session.execute(select(UserRole).where(UserRole.user_id == result.user_id))
        ).scalars().all()
    assert tenant.subdomain == "egdc-foods"
    assert tenant.status == "active"
    assert user.external_subject == "idp|ana"
    assert [row.role_id for row in assignments] == ["tenant_admin"]
    assert assignments[0].assigned_by is None

    # The new admin can manage users in their own tenant straight away.
    decision = await services.engine.check_permission(
        AccessRequest(user_id=result.user_id, tenant_id=result.tenant_id, resource="users", action="assign")
    )
    assert decision.granted
    inventory = await services.engine.check_permission(
        AccessRequest(user_id=result.user_id, tenant_id=result.tenant_id, resource="inventory", action="read")
    )
    assert inventory.granted
    assert "inventory:read:tenant" in inventory.applied_permissions

    principal = await services.sessions.resolve_access_token(result.tokens.access_token)
    assert principal.tenant_id == result.tenant_id
    events = await fetch_events(services, tenant_id=result.tenant_id, event_type="federated_login")
    assert len(events) == 1
    assert events[0].details_json["created_tenant"] is True


@pytest.mark.asyncio
async def test_returning_subject_reuses_membership(services) -> None:
    first = await services.federated.sign_in(_claims())
    second = await services.federated.sign_in(_claims(email="ANA@egdc.com"))
    assert second.user_id == first.user_id
    assert second.tenant_id == first.tenant_id
    assert not second.created_tenant and not second.created_user
    assert second.tokens.session_id != first.tokens.session_id

    async with services.session_factory() as session:
        count = len((await session.execute(select(Tenant))).scalars().all())
    assert count == 1


@pytest.mark.asyncio
async def test_provisioned_subdomains_never_collide(services) -> None:
    first = await services.federated.sign_in(_claims(subject="idp|a"))
    second = await services.federated.sign_in(_claims(subject="idp|b", email="bo@egdc.com"))
    async with services.session_factory() as session:
        one = await session.get(Tenant, first.tenant_id)
        two = await session.get(Tenant, second.tenant_id)
    assert one.subdomain == "egdc-foods"
    assert two.subdomain.startswith("egdc-foods-")


@pytest.mark.asyncio
async def test_invited_user_is_linked_on_tenant_host(services) -> None:
    tenant = await create_test_tenant(services.session_factory, subdomain="egdc")
    invited = await create_test_user(
        services.session_factory,
        tenant_id=tenant.id,
        email="bo@egdc.com",
        status="invited",
    )
    await services.roles.assign_role(user_id=invited.id, role_id="viewer", tenant_id=tenant.id, assigned_by=None)

    result = await services.federated.sign_in(
        _claims(subject="idp|bo", email="Bo@EGDC.com"),
        tenant_id=tenant.id,
    )
    assert result.user_id == invited.id
    assert result.role == "viewer"
    assert not result.created_tenant

    async with services.session_factory() as session:
        user = await session.get(User, invited.id)
    assert user.status == "active"
    assert user.external_subject == "idp|bo"


@pytest.mark.asyncio
async def test_stranger_on_tenant_host_is_denied(services) -> None:
    tenant = await create_test_tenant(services.session_factory, subdomain="egdc")
    with pytest.raises(AuthenticationError):
        await services.federated.sign_in(_claims(subject="idp|eve", email="eve@evil.test"), tenant_id=tenant.id)
    failures = await fetch_events(services, tenant_id=tenant.id, event_type="federated_login_failed")
    assert len(failures) == 1
    assert failures[0].outcome == "failure"


@pytest.mark.asyncio
async def test_member_of_another_tenant_is_denied(services) -> None:
    first = await services.federated.sign_in(_claims())
    other = await create_test_tenant(services.session_factory, subdomain="other")
    assert other.id != first.tenant_id
    with pytest.raises(AuthenticationError):
        await services.federated.sign_in(_claims(), tenant_id=other.id)


@pytest.mark.asyncio
async def test_suspended_tenant_blocks_sign_in(services) -> None:
    first = await services.federated.sign_in(_claims())
    async with services.session_factory() as session:
        tenant = await session.get(Tenant, first.tenant_id)
        tenant.status = "suspended"
        await session.commit()
    with pytest.raises(AuthenticationError):
        await services.federated.sign_in(_claims())


@pytest.mark.asyncio
async def test_self_sign_up_can_be_disabled(services, monkeypatch) -> None:
    monkeypatch.setattr(services.federated._settings, "idp_auto_provision", False)
    with pytest.raises(AuthenticationError):
        await services.federated.sign_in(_claims(subject="idp|new"))
