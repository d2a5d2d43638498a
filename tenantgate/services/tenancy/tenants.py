from __future__ import annotations

import re
import secrets

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate.core.errors import ConflictError, NotFoundError, ValidationFailure
from tenantgate.domain.models import Tenant
from tenantgate.services.tenancy.resolver import is_valid_subdomain


TENANT_STATUSES = {"active", "suspended", "pending"}
_NON_LABEL_CHARS = re.compile(r"[^a-z0-9-]+")


def slugify_subdomain(raw: str) -> str:
    # Reduce free text to a DNS label; may return an empty string.
    lowered = _NON_LABEL_CHARS.sub("-", raw.strip().lower())
    return lowered.strip("-")[:40].strip("-")


async def subdomain_taken(session: AsyncSession, subdomain: str) -> bool:
    result = await session.execute(select(Tenant.id).where(Tenant.subdomain == subdomain))
    return result.scalar_one_or_none() is not None


async def unique_subdomain(session: AsyncSession, seed: str) -> str:
    # Suffix collisions with random hex rather than guessing at a near-match.
    base = slugify_subdomain(seed) or "tenant"
    candidate = base
    while await subdomain_taken(session, candidate):
        candidate = f"{base}-{secrets.token_hex(3)}"
    return candidate


async def create_tenant(
    session: AsyncSession,
    *,
    subdomain: str,
    name: str,
    business_type: str | None = None,
    status: str = "active",
) -> Tenant:
    normalized = subdomain.strip().lower()
    if not is_valid_subdomain(normalized):
        raise ValidationFailure("subdomain", "must be a lowercase DNS label")
    if status not in TENANT_STATUSES:
        raise ValidationFailure("status", f"must be one of {sorted(TENANT_STATUSES)}")
    if await subdomain_taken(session, normalized):
        raise ConflictError(f"Subdomain {normalized} is already registered")
    tenant = Tenant(
        id=secrets.token_hex(16),
        subdomain=normalized,
        name=name,
        business_type=business_type,
        status=status,
    )
    session.add(tenant)
    await session.flush()
    return tenant


async def set_tenant_status(session: AsyncSession, *, tenant_id: str, status: str) -> Tenant:
    # Soft lifecycle change only; tenants are never deleted.
    if status not in TENANT_STATUSES:
        raise ValidationFailure("status", f"must be one of {sorted(TENANT_STATUSES)}")
    tenant = await session.get(Tenant, tenant_id)
    if tenant is None:
        raise NotFoundError("Tenant not found")
    if tenant.status == status:
        raise ConflictError(f"Tenant already {status}")
    tenant.status = status
    await session.flush()
    return tenant
