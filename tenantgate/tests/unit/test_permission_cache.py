from __future__ import annotations

import pytest

from tenantgate.services.rbac.cache import PermissionCache


@pytest.mark.asyncio
async def test_put_then_get_returns_value() -> None:
    cache: PermissionCache[str] = PermissionCache(ttl_s=60)
    generation = await cache.snapshot(("u1", "t1"))
    assert await cache.put(("u1", "t1"), "grants", generation=generation)
    assert await cache.get(("u1", "t1")) == "grants"
    assert await cache.get(("u1", "t2")) is None


@pytest.mark.asyncio
async def test_stale_load_is_discarded_after_invalidation() -> None:
    # A read that started before a revoke must not repopulate the cache.
    cache: PermissionCache[str] = PermissionCache(ttl_s=60)
    generation = await cache.snapshot(("u1", "t1"))
    await cache.invalidate("u1", "t1")
    assert not await cache.put(("u1", "t1"), "old-grants", generation=generation)
    assert await cache.get(("u1", "t1")) is None


@pytest.mark.asyncio
async def test_tenant_invalidation_drops_every_member() -> None:
    cache: PermissionCache[str] = PermissionCache(ttl_s=60)
    for user_id in ("u1", "u2"):
        await cache.put((user_id, "t1"), user_id, generation=await cache.snapshot((user_id, "t1")))
    await cache.put(("u3", "t2"), "u3", generation=await cache.snapshot(("u3", "t2")))
    stale = await cache.snapshot(("u1", "t1"))
    await cache.invalidate_tenant("t1")
    assert await cache.get(("u1", "t1")) is None
    assert await cache.get(("u2", "t1")) is None
    assert await cache.get(("u3", "t2")) == "u3"
    assert not await cache.put(("u1", "t1"), "old", generation=stale)


@pytest.mark.asyncio
async def test_zero_ttl_disables_caching() -> None:
    cache: PermissionCache[str] = PermissionCache(ttl_s=0)
    assert not await cache.put(("u1", "t1"), "grants", generation=await cache.snapshot(("u1", "t1")))
    assert await cache.get(("u1", "t1")) is None
