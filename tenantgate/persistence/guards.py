from __future__ import annotations

from dataclasses import dataclass

from tenantgate.core.config import get_settings


@dataclass(frozen=True)
class TenantPredicateError(RuntimeError):
    # Surface missing tenant predicates when guard enforcement is enabled.
    message: str


def require_tenant_id(tenant_id: str | None) -> None:
    # Enforce non-empty tenant identifiers on tenant-scoped queries.
    settings = get_settings()
    if not settings.tenant_require_predicate:
        return
    if not tenant_id:
        raise TenantPredicateError("Tenant predicate required but tenant_id is missing")


def tenant_predicate(model, tenant_id: str) -> object:
    # Build tenant predicates through a single helper to guarantee guard coverage.
    require_tenant_id(tenant_id)
    return model.tenant_id == tenant_id


def ensure_same_tenant(expected_tenant_id: str, actual_tenant_id: str | None) -> None:
    # Reject rows or credentials that belong to a different tenant than the request.
    require_tenant_id(expected_tenant_id)
    if actual_tenant_id != expected_tenant_id:
        raise TenantPredicateError("Cross-tenant access rejected")
