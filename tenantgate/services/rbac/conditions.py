from __future__ import annotations

from typing import Any, Callable


class ConditionInvalidError(ValueError):
    # Raised for malformed or overly deep permission conditions.
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


def _membership(left: Any, right: Any) -> bool:
    if right is None:
        return False
    if isinstance(right, (list, tuple, set)):
        return left in right
    return left == right


def _ordered(compare: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def _apply(left: Any, right: Any) -> bool:
        if left is None or right is None:
            return False
        try:
            return compare(left, right)
        except TypeError:
            return False

    return _apply


def _contains(left: Any, right: Any) -> bool:
    if isinstance(left, str):
        return str(right) in left
    if isinstance(left, (list, tuple, set)):
        return right in left
    return False


_COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": lambda left, right: left == right,
    "ne": lambda left, right: left != right,
    "in": _membership,
    "not_in": lambda left, right: not _membership(left, right),
    "gt": _ordered(lambda left, right: left > right),
    "gte": _ordered(lambda left, right: left >= right),
    "lt": _ordered(lambda left, right: left < right),
    "lte": _ordered(lambda left, right: left <= right),
    "contains": _contains,
}
_LOGICAL = {"all", "any", "not"}
OPERATORS = _LOGICAL | set(_COMPARATORS)


def _is_operator_node(condition: Any) -> bool:
    return isinstance(condition, dict) and len(condition) == 1 and next(iter(condition)) in OPERATORS


def lookup(context: dict[str, Any], path: str) -> Any:
    # Dotted-path lookup; missing segments resolve to None.
    node: Any = context
    for part in path.split("."):
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node


def _operand(value: Any, context: dict[str, Any]) -> Any:
    if isinstance(value, dict) and "var" in value:
        return lookup(context, str(value["var"]))
    return value


def _operands(payload: Any, context: dict[str, Any]) -> tuple[Any, Any]:
    if isinstance(payload, list) and len(payload) == 2:
        return _operand(payload[0], context), _operand(payload[1], context)
    if isinstance(payload, dict) and "field" in payload:
        return lookup(context, str(payload["field"])), _operand(payload.get("value"), context)
    raise ConditionInvalidError("Comparator expects [left, right] or {field, value}")


def evaluate_condition(condition: Any, context: dict[str, Any]) -> bool:
    """Evaluate a permission condition against request attributes.

    Two forms are accepted. An operator node such as
    ``{"all": [{"eq": [{"var": "attributes.warehouse"}, "north"]}]}`` is
    evaluated recursively. Any other mapping is an equality subset: every
    key must equal the same key under ``context["attributes"]``.
    """
    if condition is None or condition == {}:
        return True
    if isinstance(condition, bool):
        return condition
    if not isinstance(condition, dict):
        raise ConditionInvalidError("Condition must be an object")
    if not _is_operator_node(condition):
        attributes = context.get("attributes") or {}
        return all(attributes.get(key) == expected for key, expected in condition.items())
    operator, payload = next(iter(condition.items()))
    if operator == "all":
        return all(evaluate_condition(item, context) for item in _as_list(payload, operator))
    if operator == "any":
        return any(evaluate_condition(item, context) for item in _as_list(payload, operator))
    if operator == "not":
        return not evaluate_condition(payload, context)
    left, right = _operands(payload, context)
    return _COMPARATORS[operator](left, right)


def _as_list(payload: Any, operator: str) -> list[Any]:
    if not isinstance(payload, list):
        raise ConditionInvalidError(f"{operator} expects a list")
    return payload


def validate_condition(condition: Any, *, max_depth: int, _depth: int = 1) -> None:
    # Reject malformed shapes and excessive nesting before a condition is stored.
    if condition is None or isinstance(condition, bool) or condition == {}:
        return
    if not isinstance(condition, dict):
        raise ConditionInvalidError("Condition must be an object")
    if _depth > max_depth:
        raise ConditionInvalidError(f"Condition depth exceeds max {max_depth}")
    if not _is_operator_node(condition):
        for key, value in condition.items():
            if isinstance(value, (dict, list)):
                raise ConditionInvalidError(f"Equality condition {key} must be a scalar")
        return
    operator, payload = next(iter(condition.items()))
    if operator in {"all", "any"}:
        for item in _as_list(payload, operator):
            validate_condition(item, max_depth=max_depth, _depth=_depth + 1)
        return
    if operator == "not":
        validate_condition(payload, max_depth=max_depth, _depth=_depth + 1)
        return
    _operands(payload, {})
