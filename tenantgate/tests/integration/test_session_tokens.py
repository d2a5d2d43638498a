from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from tenantgate.core.errors import ConflictError, NotFoundError
from tenantgate.domain.models import RefreshToken, SecurityAlert
from tenantgate.services.auth.sessions import DeviceMeta
from tenantgate.tests.utils.seed import create_member, create_test_tenant, fetch_events, issue_tokens


async def _member(services, subdomain: str = "egdc"):
    tenant = await create_test_tenant(services.session_factory, subdomain=subdomain)
    user = await create_member(services, tenant_id=tenant.id, role_id="viewer")
    return tenant, user


@pytest.mark.asyncio
async def test_issued_pair_is_stored_as_hashes_only(services) -> None:
    _tenant, user = await _member(services)
    pair = await issue_tokens(services, user, role="viewer")
    async with services.session_factory() as session:
        row = await session.get(RefreshToken, pair.session_id)
    assert row.token_hash != pair.refresh_token
    assert row.access_token_hash != pair.access_token
    assert pair.refresh_token not in row.token_hash
    delta = (pair.access_expires_at - row.created_at).total_seconds()
    assert abs(delta - 900) < 2
    assert abs((pair.refresh_expires_at - row.created_at).total_seconds() - 7 * 24 * 3600) < 2


@pytest.mark.asyncio
async def test_refresh_reuse_is_rejected_and_flagged(services) -> None:
    # Rotate once, then replay the retired refresh token.
    tenant, user = await _member(services)
    original = await issue_tokens(services, user, role="viewer")

    rotated = await services.sessions.rotate_token_pair(original.refresh_token)
    assert rotated is not None
    assert rotated.refresh_token != original.refresh_token
    assert await services.sessions.resolve_access_token(original.access_token) is None
    assert await services.sessions.resolve_access_token(rotated.access_token) is not None

    assert await services.sessions.rotate_token_pair(original.refresh_token) is None

    incidents = await fetch_events(services, event_type="refresh_token_reuse_detected")
    assert len(incidents) == 1
    assert incidents[0].risk_level == "high"
    assert "security_incident" in incidents[0].compliance_tags_json
    assert incidents[0].details_json["stage"] == "blacklist"
    # Attributed to the owning tenant and session, so the tenant's admins can see and resolve it.
    assert incidents[0].tenant_id == tenant.id
    assert incidents[0].user_id == user.id
    assert incidents[0].session_id == original.session_id
    async with services.session_factory() as session:
        alerts = (await session.execute(select(SecurityAlert))).scalars().all()
    assert [alert.event_id for alert in alerts] == [incidents[0].id]
    visible = await services.audit.list_alerts(tenant_id=tenant.id)
    assert [alert.event_id for alert in visible] == [incidents[0].id]

    # The replacement pair keeps working.
    assert await services.sessions.rotate_token_pair(rotated.refresh_token) is not None


@pytest.mark.asyncio
async def test_reuse_detected_from_durable_row_without_blacklist(services) -> None:
    # A fresh process with an empty blacklist still refuses a retired token.
    tenant, user = await _member(services)
    original = await issue_tokens(services, user)
    assert await services.sessions.rotate_token_pair(original.refresh_token) is not None
    services.blacklist._entries.clear()
    assert await services.sessions.rotate_token_pair(original.refresh_token) is None
    incidents = await fetch_events(services, tenant_id=tenant.id, event_type="refresh_token_reuse_detected")
    assert len(incidents) == 1


@pytest.mark.asyncio
async def test_rotation_requires_the_bound_device(services) -> None:
    _tenant, user = await _member(services)
    pair = await issue_tokens(services, user, device_id="laptop-1")
    assert await services.sessions.rotate_token_pair(pair.refresh_token, DeviceMeta(device_id="phone-9")) is None
    rotated = await services.sessions.rotate_token_pair(pair.refresh_token, DeviceMeta(device_id="laptop-1"))
    assert rotated is not None
    mismatches = await fetch_events(services, event_type="refresh_token_device_mismatch")
    assert len(mismatches) == 1


@pytest.mark.asyncio
async def test_expired_refresh_token_is_refused(services) -> None:
    _tenant, user = await _member(services)
    pair = await issue_tokens(services, user)
    async with services.session_factory() as session:
        row = await session.get(RefreshToken, pair.session_id)
        row.expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
        await session.commit()
    assert await services.sessions.rotate_token_pair(pair.refresh_token) is None
    failures = await fetch_events(services, event_type="token_rotation_failed")
    assert failures[-1].details_json["reason"] == "expired"


@pytest.mark.asyncio
async def test_unknown_refresh_token_is_refused(services) -> None:
    assert await services.sessions.rotate_token_pair("tgr_not-a-real-token") is None


@pytest.mark.asyncio
async def test_disabled_user_cannot_rotate(services) -> None:
    _tenant, user = await _member(services)
    pair = await issue_tokens(services, user)
    async with services.session_factory() as session:
        from_db = await session.get(type(user), user.id)
        from_db.status = "disabled"
        await session.commit()
    assert await services.sessions.rotate_token_pair(pair.refresh_token) is None


@pytest.mark.asyncio
async def test_expired_access_token_is_rejected(services) -> None:
    _tenant, user = await _member(services)
    pair = await issue_tokens(services, user)
    async with services.session_factory() as session:
        row = await session.get(RefreshToken, pair.session_id)
        row.access_expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
        await session.commit()
    assert not await services.sessions.validate_access_token(pair.access_token)


@pytest.mark.asyncio
async def test_revoke_all_invalidates_every_session(services) -> None:
    _tenant, user = await _member(services)
    first = await issue_tokens(services, user, device_id="a")
    second = await issue_tokens(services, user, device_id="b")
    assert len(await services.sessions.list_sessions(user.id)) == 2

    revoked = await services.sessions.revoke_all_for_user(user.id, "logout")
    assert revoked == 2
    for pair in (first, second):
        assert not await services.sessions.validate_access_token(pair.access_token)
        assert await services.sessions.rotate_token_pair(pair.refresh_token) is None
    assert await services.sessions.list_sessions(user.id) == []


@pytest.mark.asyncio
async def test_revoke_single_session(services) -> None:
    tenant, user = await _member(services)
    other = await create_member(services, tenant_id=tenant.id, role_id=None)
    pair = await issue_tokens(services, user)
    with pytest.raises(NotFoundError):
        await services.sessions.revoke_session(pair.session_id, other.id)
    await services.sessions.revoke_session(pair.session_id, user.id)
    with pytest.raises(ConflictError):
        await services.sessions.revoke_session(pair.session_id, user.id)
    assert not await services.sessions.validate_access_token(pair.access_token)


@pytest.mark.asyncio
async def test_mfa_flag_survives_rotation(services) -> None:
    _tenant, user = await _member(services)
    pair = await issue_tokens(services, user)
    await services.sessions.mark_mfa_verified(pair.session_id)
    rotated = await services.sessions.rotate_token_pair(pair.refresh_token)
    principal = await services.sessions.resolve_access_token(rotated.access_token)
    assert principal.mfa_verified


@pytest.mark.asyncio
async def test_should_rotate_near_expiry(services) -> None:
    now = datetime.now(timezone.utc)
    assert services.sessions.should_rotate(now + timedelta(seconds=120), now=now)
    assert not services.sessions.should_rotate(now + timedelta(seconds=600), now=now)
