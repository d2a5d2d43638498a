from __future__ import annotations

import asyncio
import time
from typing import Generic, TypeVar


T = TypeVar("T")
CacheKey = tuple[str, str]


class PermissionCache(Generic[T]):
    """Short-lived cache of resolved grants keyed by (user_id, tenant_id).

    Each key carries a generation number. A loader snapshots the generation
    before reading storage and ``put`` discards the value if an invalidation
    happened in between, so a slow read can never reinstate revoked grants.
    """

    def __init__(self, ttl_s: float) -> None:
        self._ttl_s = ttl_s
        self._entries: dict[CacheKey, tuple[float, T]] = {}
        self._generations: dict[CacheKey, int] = {}
        self._tenant_generations: dict[str, int] = {}
        self._lock = asyncio.Lock()

    def _generation(self, key: CacheKey) -> tuple[int, int]:
        return self._generations.get(key, 0), self._tenant_generations.get(key[1], 0)

    async def get(self, key: CacheKey) -> T | None:
        if self._ttl_s <= 0:
            return None
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= time.monotonic():
                self._entries.pop(key, None)
                return None
            return value

    async def snapshot(self, key: CacheKey) -> tuple[int, int]:
        async with self._lock:
            return self._generation(key)

    async def put(self, key: CacheKey, value: T, *, generation: tuple[int, int]) -> bool:
        if self._ttl_s <= 0:
            return False
        async with self._lock:
            if self._generation(key) != generation:
                return False
            self._entries[key] = (time.monotonic() + self._ttl_s, value)
            return True

    async def invalidate(self, user_id: str, tenant_id: str) -> None:
        async with self._lock:
            self.discard(user_id, tenant_id)

    def discard(self, user_id: str, tenant_id: str) -> None:
        # Synchronous form for session commit hooks; nothing awaits between the pop and the bump.
        key = (user_id, tenant_id)
        self._entries.pop(key, None)
        self._generations[key] = self._generations.get(key, 0) + 1

    async def invalidate_tenant(self, tenant_id: str) -> None:
        # Role definition changes affect every holder in the tenant.
        async with self._lock:
            for key in [key for key in self._entries if key[1] == tenant_id]:
                self._entries.pop(key, None)
            self._tenant_generations[tenant_id] = self._tenant_generations.get(tenant_id, 0) + 1

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()
            self._generations.clear()
            self._tenant_generations.clear()
