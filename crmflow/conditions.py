"""Evaluation of condition clauses against entity data."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, Optional

from .graph import Condition, ConditionOperator, Criteria

logger = logging.getLogger(__name__)


def resolve_field(data: Mapping[str, Any], path: str) -> Any:
    """Look up ``path`` in ``data``; dots descend into nested mappings."""
    if path in data:
        return data[path]
    current: Any = data
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return None
    return current


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return [str(v).strip().lower() for v in value if str(v).strip()]
    return [v.strip().lower() for v in str(value).split(",") if v.strip()]


def _equals(actual: Any, expected: Any) -> bool:
    if actual is None or expected is None:
        return actual is expected
    if isinstance(actual, bool) or isinstance(expected, bool):
        return _truthy(actual) == _truthy(expected)
    if actual == expected:
        return True
    return str(actual).strip().lower() == str(expected).strip().lower()


def _contains(actual: Any, expected: Any) -> bool:
    if actual is None:
        return False
    if isinstance(actual, (list, tuple, set)):
        return any(_equals(item, expected) for item in actual)
    return str(expected).lower() in str(actual).lower()


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"true", "yes", "1", "y", "on"}
    return bool(value)


def _compare(actual: Any, expected: Any) -> Optional[float]:
    try:
        return float(actual) - float(expected)
    except (TypeError, ValueError):
        return None


def evaluate_condition(condition: Condition, data: Mapping[str, Any]) -> bool:
    """Evaluate one clause. Unusable comparisons are false rather than errors."""
    actual = resolve_field(data, condition.field)
    expected = condition.value
    op = condition.operator

    if op == ConditionOperator.EQUALS:
        return _equals(actual, expected)
    if op == ConditionOperator.NOT_EQUALS:
        return not _equals(actual, expected)
    if op == ConditionOperator.CONTAINS:
        return _contains(actual, expected)
    if op == ConditionOperator.NOT_CONTAINS:
        return not _contains(actual, expected)
    if op == ConditionOperator.IS_EMPTY:
        return _is_empty(actual)
    if op == ConditionOperator.IS_NOT_EMPTY:
        return not _is_empty(actual)
    if op == ConditionOperator.IS_TRUE:
        return _truthy(actual)
    if op == ConditionOperator.IS_FALSE:
        return not _truthy(actual)
    if op == ConditionOperator.IN:
        values = _as_list(expected)
        return bool(values) and actual is not None and str(actual).strip().lower() in values
    if op == ConditionOperator.NOT_IN:
        values = _as_list(expected)
        return actual is None or str(actual).strip().lower() not in values
    if op in (ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN):
        delta = _compare(actual, expected)
        if delta is None:
            logger.debug(
                f"Cannot compare field {condition.field}={actual!r} with {expected!r}"
            )
            return False
        return delta > 0 if op == ConditionOperator.GREATER_THAN else delta < 0
    return False


def evaluate_all(
    conditions: Iterable[Condition], data: Mapping[str, Any], match_all: bool = True
) -> bool:
    """AND (or OR) a clause list. An empty list is satisfied."""
    results = [evaluate_condition(c, data) for c in conditions]
    if not results:
        return True
    return all(results) if match_all else any(results)


def matches(criteria: Optional[Criteria], data: Mapping[str, Any]) -> bool:
    """``True`` when ``criteria`` is unset or satisfied by ``data``."""
    if criteria is None:
        return True
    return evaluate_all(criteria.conditions, data, criteria.match_all)


def goal_reached(criteria: Optional[Criteria], data: Mapping[str, Any]) -> bool:
    """Goals only count when at least one clause is configured."""
    if criteria is None or not criteria.conditions:
        return False
    return evaluate_all(criteria.conditions, data, criteria.match_all)
