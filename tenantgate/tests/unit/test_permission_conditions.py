from __future__ import annotations

import pytest

from tenantgate.services.rbac.catalog import (
    CUSTOM_ROLE_MAX_LEVEL,
    SYSTEM_ROLES,
    ContextScope,
    context_covers,
)
from tenantgate.services.rbac.conditions import (
    ConditionInvalidError,
    evaluate_condition,
    lookup,
    validate_condition,
)


def _context(**attributes) -> dict:
    return {
        "user": {"id": "u1"},
        "tenant": {"id": "t1"},
        "request": {"resource": "orders", "action": "approve"},
        "attributes": attributes,
    }


def test_empty_conditions_always_match() -> None:
    assert evaluate_condition(None, _context())
    assert evaluate_condition({}, _context())


def test_equality_subset_against_attributes() -> None:
    condition = {"warehouse": "north", "channel": "retail"}
    assert evaluate_condition(condition, _context(warehouse="north", channel="retail", extra=1))
    assert not evaluate_condition(condition, _context(warehouse="north"))
    assert not evaluate_condition(condition, _context(warehouse="south", channel="retail"))


def test_operator_tree_evaluation() -> None:
    condition = {
        "all": [
            {"in": [{"var": "attributes.warehouse"}, ["north", "east"]]},
            {"lte": {"field": "attributes.amount", "value": 5000}},
            {"not": {"eq": [{"var": "attributes.status"}, "locked"]}},
        ]
    }
    assert evaluate_condition(condition, _context(warehouse="east", amount=1200, status="open"))
    assert not evaluate_condition(condition, _context(warehouse="west", amount=1200, status="open"))
    assert not evaluate_condition(condition, _context(warehouse="east", amount=9000, status="open"))
    assert not evaluate_condition(condition, _context(warehouse="east", amount=1200, status="locked"))


def test_ordering_against_missing_values_is_false() -> None:
    assert not evaluate_condition({"gt": [{"var": "attributes.amount"}, 10]}, _context())
    assert not evaluate_condition({"gt": [{"var": "attributes.amount"}, 10]}, _context(amount="many"))


def test_any_and_contains() -> None:
    condition = {"any": [{"contains": [{"var": "attributes.tags"}, "priority"]}, {"eq": [{"var": "user.id"}, "u9"]}]}
    assert evaluate_condition(condition, _context(tags=["priority", "bulk"]))
    assert not evaluate_condition(condition, _context(tags=["bulk"]))


def test_lookup_handles_missing_segments() -> None:
    assert lookup({"a": {"b": 1}}, "a.b") == 1
    assert lookup({"a": {"b": 1}}, "a.c") is None
    assert lookup({"a": 3}, "a.b") is None


def test_validate_rejects_excessive_depth() -> None:
    condition: dict = {"eq": [1, 1]}
    for _ in range(5):
        condition = {"not": condition}
    with pytest.raises(ConditionInvalidError):
        validate_condition(condition, max_depth=5)
    validate_condition({"not": {"eq": [1, 1]}}, max_depth=5)


def test_validate_rejects_malformed_shapes() -> None:
    with pytest.raises(ConditionInvalidError):
        validate_condition(["eq", 1, 1], max_depth=5)
    with pytest.raises(ConditionInvalidError):
        validate_condition({"all": {"eq": [1, 1]}}, max_depth=5)
    with pytest.raises(ConditionInvalidError):
        validate_condition({"eq": [1]}, max_depth=5)
    with pytest.raises(ConditionInvalidError):
        validate_condition({"warehouse": {"nested": True}}, max_depth=5)


def test_context_scope_ordering() -> None:
    assert context_covers(ContextScope.TENANT, ContextScope.OWN)
    assert context_covers("team", "team")
    assert not context_covers(ContextScope.OWN, ContextScope.TEAM)
    assert not context_covers(ContextScope.TENANT, ContextScope.SYSTEM)


def test_builtin_role_catalog_levels() -> None:
    levels = {key: spec.level for key, spec in SYSTEM_ROLES.items()}
    assert levels == {
        "super_admin": 1000,
        "tenant_admin": 900,
        "manager": 700,
        "analyst": 500,
        "operator": 400,
        "viewer": 200,
    }
    assert CUSTOM_ROLE_MAX_LEVEL == 899
    assert SYSTEM_ROLES["super_admin"].is_system_role
    assert not any(spec.is_system_role for key, spec in SYSTEM_ROLES.items() if key != "super_admin")
    tenant_admin = SYSTEM_ROLES["tenant_admin"].permissions
    assert ("users", "assign", ContextScope.TENANT) in tenant_admin
    assert all(context is not ContextScope.SYSTEM for _resource, _action, context in tenant_admin)
