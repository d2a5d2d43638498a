from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError

from tenantgate.services.tenancy.resolver import ResolutionSource, TenantResolver
from tenantgate.services.tenancy.tenants import set_tenant_status
from tenantgate.tests.utils.seed import create_test_tenant


class _BrokenSessionFactory:
    # Stands in for a database that refuses connections.
    def __call__(self):
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))


@pytest.mark.asyncio
async def test_exact_subdomain_match_only(services) -> None:
    # egdc.example.com must resolve to egdc even when egdc-west exists.
    egdc = await create_test_tenant(services.session_factory, subdomain="egdc")
    west = await create_test_tenant(services.session_factory, subdomain="egdc-west")

    resolution = await services.resolver.resolve("egdc.example.com")
    assert resolution.resolved
    assert resolution.tenant_id == egdc.id
    assert resolution.source is ResolutionSource.SUBDOMAIN

    resolution = await services.resolver.resolve("EGDC-West.example.com:443")
    assert resolution.tenant_id == west.id

    resolution = await services.resolver.resolve("egd.example.com")
    assert not resolution.resolved
    assert resolution.reason == "unknown_tenant"


@pytest.mark.asyncio
async def test_path_resolution_for_shared_hosts(services) -> None:
    tenant = await create_test_tenant(services.session_factory, subdomain="acme")
    resolution = await services.resolver.resolve("www.example.com", "/acme/dashboard")
    assert resolution.tenant_id == tenant.id
    assert resolution.source is ResolutionSource.PATH


@pytest.mark.asyncio
async def test_inactive_tenant_does_not_resolve(services) -> None:
    tenant = await create_test_tenant(services.session_factory, subdomain="dormant", status="suspended")
    resolution = await services.resolver.resolve("dormant.example.com")
    assert resolution.tenant_id is None
    assert resolution.reason == "tenant_inactive"

    async with services.session_factory() as session:
        await set_tenant_status(session, tenant_id=tenant.id, status="active")
        await session.commit()
    await services.resolver.invalidate("dormant")
    resolution = await services.resolver.resolve("dormant.example.com")
    assert resolution.tenant_id == tenant.id


@pytest.mark.asyncio
async def test_apex_host_has_no_tenant(services) -> None:
    resolution = await services.resolver.resolve("example.com")
    assert resolution.reason == "no_candidate"


@pytest.mark.asyncio
async def test_lookup_failure_reports_unavailable(test_settings) -> None:
    resolver = TenantResolver(_BrokenSessionFactory(), settings=test_settings)
    resolution = await resolver.resolve("egdc.example.com")
    assert resolution.tenant_id is None
    assert resolution.reason == "lookup_unavailable"


@pytest.mark.asyncio
async def test_gate_maps_resolution_failures_to_statuses(services) -> None:
    await create_test_tenant(services.session_factory, subdomain="egdc")
    unknown = await services.gate.resolve_tenant("nobody.example.com")
    assert unknown.status == 404 and unknown.code == "TENANT_NOT_FOUND"
    malformed = await services.gate.resolve_tenant("bad_label.example.com")
    assert malformed.status == 400 and malformed.code == "TENANT_INVALID"
    resolved = await services.gate.resolve_tenant("egdc.example.com")
    assert resolved.subdomain == "egdc"
