from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


RESOURCES: tuple[str, ...] = (
    "users",
    "tenants",
    "inventory",
    "products",
    "orders",
    "suppliers",
    "warehouses",
    "reports",
    "settings",
    "integrations",
    "backups",
    "audit_logs",
    "billing",
    "api_keys",
    "webhooks",
    "notifications",
)

ACTIONS: tuple[str, ...] = (
    "create",
    "read",
    "update",
    "delete",
    "export",
    "import",
    "approve",
    "reject",
    "assign",
    "unassign",
    "configure",
    "execute",
)


class ContextScope(str, Enum):
    OWN = "own"
    TEAM = "team"
    TENANT = "tenant"
    SYSTEM = "system"


# own < team < tenant < system
_CONTEXT_RANK: dict[ContextScope, int] = {
    ContextScope.OWN: 1,
    ContextScope.TEAM: 2,
    ContextScope.TENANT: 3,
    ContextScope.SYSTEM: 4,
}


def context_covers(granted: ContextScope | str, requested: ContextScope | str) -> bool:
    # A broader grant satisfies a narrower request, never the reverse.
    return _CONTEXT_RANK[ContextScope(granted)] >= _CONTEXT_RANK[ContextScope(requested)]


PermissionTuple = tuple[str, str, ContextScope]


@dataclass(frozen=True)
class SystemRoleSpec:
    key: str
    name: str
    level: int
    description: str
    permissions: tuple[PermissionTuple, ...]
    is_system_role: bool = False


def _grid(resources, actions, context: ContextScope) -> tuple[PermissionTuple, ...]:
    return tuple((resource, action, context) for resource in resources for action in actions)


_COMMERCE = ("inventory", "products", "orders", "suppliers", "warehouses")
_CRUD = ("create", "read", "update", "delete")
_SELF_SERVICE = (
    ("users", "read", ContextScope.OWN),
    ("users", "update", ContextScope.OWN),
    ("notifications", "read", ContextScope.OWN),
)

SYSTEM_ROLES: dict[str, SystemRoleSpec] = {
    "super_admin": SystemRoleSpec(
        key="super_admin",
        name="Super Admin",
        level=1000,
        description="Platform operator with access across every tenant",
        permissions=_grid(RESOURCES, ACTIONS, ContextScope.SYSTEM),
        is_system_role=True,
    ),
    "tenant_admin": SystemRoleSpec(
        key="tenant_admin",
        name="Tenant Admin",
        level=900,
        description="Full control of a single tenant",
        permissions=_grid([r for r in RESOURCES if r != "tenants"], ACTIONS, ContextScope.TENANT)
        + _grid(["tenants"], ["read", "update", "configure"], ContextScope.TENANT),
    ),
    "manager": SystemRoleSpec(
        key="manager",
        name="Manager",
        level=700,
        description="Runs day-to-day commerce operations and approvals",
        permissions=_grid(_COMMERCE, _CRUD + ("export", "import", "approve", "reject"), ContextScope.TENANT)
        + _grid(["reports"], ["read", "export", "execute"], ContextScope.TENANT)
        + (("users", "read", ContextScope.TENANT), ("users", "update", ContextScope.TEAM))
        + _SELF_SERVICE,
    ),
    "analyst": SystemRoleSpec(
        key="analyst",
        name="Analyst",
        level=500,
        description="Read and export access for reporting",
        permissions=_grid(_COMMERCE + ("reports",), ["read", "export"], ContextScope.TENANT)
        + (("reports", "execute", ContextScope.TENANT),)
        + _SELF_SERVICE,
    ),
    "operator": SystemRoleSpec(
        key="operator",
        name="Operator",
        level=400,
        description="Maintains inventory, products and orders",
        permissions=_grid(("inventory", "products", "orders"), ("create", "read", "update"), ContextScope.TENANT)
        + _grid(("suppliers", "warehouses"), ["read"], ContextScope.TENANT)
        + _SELF_SERVICE,
    ),
    "viewer": SystemRoleSpec(
        key="viewer",
        name="Viewer",
        level=200,
        description="Read-only access",
        permissions=_grid(("inventory", "products", "orders", "reports"), ["read"], ContextScope.TENANT)
        + _SELF_SERVICE,
    ),
}

# Highest level a tenant-defined role may claim.
CUSTOM_ROLE_MAX_LEVEL = SYSTEM_ROLES["tenant_admin"].level - 1
