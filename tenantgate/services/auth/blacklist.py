from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from enum import Enum
import logging
from typing import Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

from tenantgate.core.config import Settings, get_settings
from tenantgate.services.resilience import get_shared_redis


logger = logging.getLogger(__name__)

_KEY_PREFIX = "tenantgate:blacklist:"


class BlacklistReason(str, Enum):
    ROTATION = "rotation"
    LOGOUT = "logout"
    COMPROMISE = "compromise"
    EXPIRED = "expired"


class TokenBlacklist(Protocol):
    async def add(self, token_hash: str, *, expires_at: datetime, reason: BlacklistReason) -> None: ...

    async def contains(self, token_hash: str) -> bool: ...

    async def sweep(self) -> int: ...


def _ttl_seconds(expires_at: datetime, buffer_s: int) -> int:
    # Entries outlive the retired token by a fixed buffer.
    remaining = (expires_at - datetime.now(timezone.utc)).total_seconds()
    return max(1, int(remaining) + max(0, buffer_s))


class MemoryTokenBlacklist:
    """Per-process blacklist with lazy expiry on read and a periodic sweep."""

    def __init__(self, *, buffer_s: int | None = None) -> None:
        settings = get_settings()
        self._buffer_s = settings.token_blacklist_buffer_s if buffer_s is None else buffer_s
        self._entries: dict[str, tuple[float, BlacklistReason]] = {}
        self._lock = asyncio.Lock()
        self._sweep_task: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._entries)

    async def add(self, token_hash: str, *, expires_at: datetime, reason: BlacklistReason) -> None:
        evict_at = datetime.now(timezone.utc).timestamp() + _ttl_seconds(expires_at, self._buffer_s)
        async with self._lock:
            self._entries[token_hash] = (evict_at, reason)

    async def contains(self, token_hash: str) -> bool:
        now = datetime.now(timezone.utc).timestamp()
        async with self._lock:
            entry = self._entries.get(token_hash)
            if entry is None:
                return False
            if entry[0] <= now:
                self._entries.pop(token_hash, None)
                return False
            return True

    async def sweep(self) -> int:
        now = datetime.now(timezone.utc).timestamp()
        async with self._lock:
            expired = [key for key, (evict_at, _reason) in self._entries.items() if evict_at <= now]
            for key in expired:
                self._entries.pop(key, None)
        if expired:
            logger.debug("token_blacklist_swept evicted=%s", len(expired))
        return len(expired)

    async def _sweep_loop(self, interval_s: float) -> None:
        while True:
            await asyncio.sleep(interval_s)
            await self.sweep()

    def start(self, interval_s: float | None = None) -> None:
        interval = interval_s or get_settings().token_blacklist_sweep_interval_s
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop(interval))

    async def stop(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None


class RedisTokenBlacklist:
    """Blacklist shared by every API instance; Redis TTLs handle eviction."""

    def __init__(
        self,
        *,
        redis: Redis | None = None,
        buffer_s: int | None = None,
        fail_mode: str | None = None,
    ) -> None:
        settings = get_settings()
        self._redis = redis
        self._buffer_s = settings.token_blacklist_buffer_s if buffer_s is None else buffer_s
        self._fail_closed = (fail_mode or settings.token_blacklist_fail_mode).lower() != "open"

    async def _client(self) -> Redis | None:
        if self._redis is not None:
            return self._redis
        return await get_shared_redis()

    async def add(self, token_hash: str, *, expires_at: datetime, reason: BlacklistReason) -> None:
        client = await self._client()
        if client is None:
            logger.error("token_blacklist_add_unavailable reason=%s", reason.value)
            return
        try:
            await client.set(
                f"{_KEY_PREFIX}{token_hash}",
                reason.value,
                ex=_ttl_seconds(expires_at, self._buffer_s),
            )
        except (RedisError, OSError) as exc:
            # The durable revoked flag still rejects refresh reuse; only the fast path is lost.
            logger.error("token_blacklist_add_failed reason=%s", reason.value, exc_info=exc)

    async def contains(self, token_hash: str) -> bool:
        client = await self._client()
        if client is None:
            return self._fail_closed
        try:
            return bool(await client.exists(f"{_KEY_PREFIX}{token_hash}"))
        except (RedisError, OSError) as exc:
            logger.error("token_blacklist_lookup_failed fail_closed=%s", self._fail_closed, exc_info=exc)
            return self._fail_closed

    async def sweep(self) -> int:
        return 0


def build_blacklist(settings: Settings | None = None) -> MemoryTokenBlacklist | RedisTokenBlacklist:
    resolved = settings or get_settings()
    if resolved.token_blacklist_backend.strip().lower() == "redis":
        return RedisTokenBlacklist()
    return MemoryTokenBlacklist()
