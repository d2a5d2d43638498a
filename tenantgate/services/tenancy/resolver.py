from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
import logging
import re
import time

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantgate.core.config import Settings, get_settings
from tenantgate.core.errors import ValidationFailure
from tenantgate.domain.models import Tenant


logger = logging.getLogger(__name__)

# One DNS label: lowercase alphanumerics and inner hyphens, at most 63 chars.
_DNS_LABEL = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")


class ResolutionSource(str, Enum):
    SUBDOMAIN = "subdomain"
    PATH = "path"
    DEV_ALIAS = "dev_alias"


@dataclass(frozen=True)
class TenantResolution:
    tenant_id: str | None
    subdomain: str | None = None
    source: ResolutionSource | None = None
    # Why nothing resolved: no_candidate | unknown_tenant | tenant_inactive | lookup_unavailable
    reason: str | None = None

    @property
    def resolved(self) -> bool:
        return self.tenant_id is not None


@dataclass(frozen=True)
class _CachedTenant:
    tenant_id: str
    status: str


def is_valid_subdomain(value: str) -> bool:
    return bool(_DNS_LABEL.match(value))


def normalize_hostname(hostname: str | None) -> str:
    # Trim, lowercase, and drop any port or trailing root dot.
    if not hostname:
        return ""
    host = hostname.strip().lower()
    if host.startswith("["):
        return host
    host = host.split(":", 1)[0]
    return host.rstrip(".")


def first_path_segment(path: str | None) -> str | None:
    if not path:
        return None
    for segment in path.split("/"):
        if segment:
            return segment.strip().lower()
    return None


class TenantResolver:
    """Maps a request host/path to a registered tenant by exact subdomain match."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._base_labels = [
            label for label in normalize_hostname(self._settings.tenant_base_domain).split(".") if label
        ]
        self._cache: dict[str, tuple[float, _CachedTenant]] = {}
        self._cache_lock = asyncio.Lock()

    def extract_candidate(self, hostname: str | None, path: str | None = None) -> tuple[str | None, ResolutionSource | None]:
        host = normalize_hostname(hostname)
        if not self._settings.is_production() and host in self._settings.dev_host_aliases():
            return self._settings.tenant_dev_subdomain.strip().lower(), ResolutionSource.DEV_ALIAS
        labels = host.split(".") if host else []
        base = self._base_labels
        if base and len(labels) >= len(base) + 1 and labels[-len(base):] == base:
            candidate = labels[0]
            if candidate not in self._settings.reserved_labels():
                if not is_valid_subdomain(candidate):
                    raise ValidationFailure("host", "subdomain is not a valid DNS label")
                return candidate, ResolutionSource.SUBDOMAIN
        segment = first_path_segment(path)
        if segment and is_valid_subdomain(segment):
            return segment, ResolutionSource.PATH
        return None, None

    async def resolve(self, hostname: str | None, path: str | None = None) -> TenantResolution:
        candidate, source = self.extract_candidate(hostname, path)
        if candidate is None:
            return TenantResolution(tenant_id=None, reason="no_candidate")
        try:
            tenant = await self._lookup(candidate)
        except (SQLAlchemyError, OSError, TimeoutError) as exc:
            logger.error("tenant_lookup_failed subdomain=%s", candidate, exc_info=exc)
            return TenantResolution(tenant_id=None, subdomain=candidate, source=source, reason="lookup_unavailable")
        if tenant is None:
            logger.info("tenant_unknown subdomain=%s source=%s", candidate, source.value)
            return TenantResolution(tenant_id=None, subdomain=candidate, source=source, reason="unknown_tenant")
        if tenant.status != "active":
            return TenantResolution(tenant_id=None, subdomain=candidate, source=source, reason="tenant_inactive")
        return TenantResolution(tenant_id=tenant.tenant_id, subdomain=candidate, source=source)

    async def _lookup(self, subdomain: str) -> _CachedTenant | None:
        ttl_s = self._settings.tenant_cache_ttl_s
        now = time.monotonic()
        if ttl_s > 0:
            async with self._cache_lock:
                entry = self._cache.get(subdomain)
                if entry and entry[0] > now:
                    return entry[1]
                self._cache.pop(subdomain, None)
        async with self._session_factory() as session:
            # Exact equality only; never prefix or containment matching.
            result = await session.execute(select(Tenant).where(Tenant.subdomain == subdomain))
            tenant = result.scalar_one_or_none()
        if tenant is None:
            return None
        cached = _CachedTenant(tenant_id=tenant.id, status=tenant.status)
        if ttl_s > 0:
            async with self._cache_lock:
                self._cache[subdomain] = (now + ttl_s, cached)
        return cached

    async def invalidate(self, subdomain: str | None = None) -> None:
        # Drop cached lookups after tenant status changes.
        async with self._cache_lock:
            if subdomain is None:
                self._cache.clear()
            else:
                self._cache.pop(subdomain, None)
