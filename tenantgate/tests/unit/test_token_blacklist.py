from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from tenantgate.services.auth.blacklist import BlacklistReason, MemoryTokenBlacklist, RedisTokenBlacklist
from tenantgate.services.auth.tokens import (
    ACCESS_TOKEN_PREFIX,
    REFRESH_TOKEN_PREFIX,
    generate_access_token,
    generate_refresh_token,
    hash_token,
)


class _UnreachableRedis:
    # Every call fails the way a dropped connection does.
    async def exists(self, *_args):
        raise RedisConnectionError("connection refused")

    async def set(self, *_args, **_kwargs):
        raise RedisConnectionError("connection refused")


class _RecordingRedis:
    def __init__(self) -> None:
        self.values: dict[str, tuple[str, int]] = {}

    async def exists(self, key: str) -> int:
        return 1 if key in self.values else 0

    async def set(self, key: str, value: str, ex: int) -> None:
        self.values[key] = (value, ex)


def _in(minutes: int) -> datetime:
    return datetime.now(timezone.utc) + timedelta(minutes=minutes)


def test_generated_tokens_are_prefixed_and_hashed() -> None:
    access, access_hash = generate_access_token()
    refresh, refresh_hash = generate_refresh_token()
    assert access.startswith(ACCESS_TOKEN_PREFIX)
    assert refresh.startswith(REFRESH_TOKEN_PREFIX)
    assert access_hash == hash_token(access)
    assert refresh_hash == hash_token(refresh)
    assert access not in access_hash
    assert len(refresh) > len(access)


@pytest.mark.asyncio
async def test_memory_blacklist_contains_added_hash() -> None:
    blacklist = MemoryTokenBlacklist(buffer_s=60)
    await blacklist.add("hash-1", expires_at=_in(15), reason=BlacklistReason.LOGOUT)
    assert await blacklist.contains("hash-1")
    assert not await blacklist.contains("hash-2")
    assert len(blacklist) == 1


@pytest.mark.asyncio
async def test_memory_blacklist_sweep_evicts_expired_entries() -> None:
    blacklist = MemoryTokenBlacklist(buffer_s=60)
    await blacklist.add("live", expires_at=_in(15), reason=BlacklistReason.ROTATION)
    # Entry whose eviction time has already passed.
    blacklist._entries["gone"] = (0.0, BlacklistReason.ROTATION)
    assert await blacklist.sweep() == 1
    assert await blacklist.contains("live")
    assert not await blacklist.contains("gone")


@pytest.mark.asyncio
async def test_redis_blacklist_sets_ttl_beyond_token_expiry() -> None:
    redis = _RecordingRedis()
    blacklist = RedisTokenBlacklist(redis=redis, buffer_s=3600)
    await blacklist.add("hash-1", expires_at=_in(15), reason=BlacklistReason.COMPROMISE)
    value, ttl = redis.values["tenantgate:blacklist:hash-1"]
    assert value == "compromise"
    assert 15 * 60 + 3600 - 5 <= ttl <= 15 * 60 + 3600
    assert await blacklist.contains("hash-1")


@pytest.mark.asyncio
async def test_redis_blacklist_fails_closed_by_default() -> None:
    blacklist = RedisTokenBlacklist(redis=_UnreachableRedis(), fail_mode="closed")
    assert await blacklist.contains("anything")


@pytest.mark.asyncio
async def test_redis_blacklist_can_fail_open() -> None:
    blacklist = RedisTokenBlacklist(redis=_UnreachableRedis(), fail_mode="open")
    assert not await blacklist.contains("anything")
    # Writes that cannot reach Redis are logged, not raised.
    await blacklist.add("hash-1", expires_at=_in(15), reason=BlacklistReason.LOGOUT)
