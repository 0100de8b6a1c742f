"""Event filters and step condition operators."""

from __future__ import annotations

import logging
import operator
import re
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

from .errors import FilterError
from .models import Condition
from .templating import MISSING, has_markers, lookup, resolve

logger = logging.getLogger(__name__)


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None or value is MISSING:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def strict_equal(left: Any, right: Any) -> bool:
    """Equality that never treats booleans as numbers."""
    if left is MISSING or right is MISSING:
        return False
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    return left == right


def _contained_in(value: Any, candidates: Iterable[Any]) -> bool:
    return any(strict_equal(value, candidate) for candidate in candidates)


def _compare(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def compare(left: Any, right: Any) -> bool:
        left_num, right_num = _to_number(left), _to_number(right)
        if left_num is not None and right_num is not None:
            return op(left_num, right_num)
        if isinstance(left, str) and isinstance(right, str):
            return op(left, right)
        return False

    return compare


def _filter_contains(left: Any, right: Any) -> bool:
    if isinstance(left, str):
        return isinstance(right, str) and right in left
    if isinstance(left, (list, tuple)):
        return _contained_in(right, left)
    return False


def _require_list(name: str, operand: Any) -> list:
    if not isinstance(operand, (list, tuple)):
        raise FilterError(f"{name} expects a list, got {type(operand).__name__}")
    return list(operand)


FILTER_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "$eq": strict_equal,
    "$ne": lambda left, right: not strict_equal(left, right),
    "$gt": _compare(operator.gt),
    "$gte": _compare(operator.ge),
    "$lt": _compare(operator.lt),
    "$lte": _compare(operator.le),
    "$contains": _filter_contains,
    "$in": lambda left, right: _contained_in(left, _require_list("$in", right)),
    "$nin": lambda left, right: not _contained_in(left, _require_list("$nin", right)),
    "$exists": lambda left, right: (left is not MISSING) == bool(right),
}


def _match_field(actual: Any, expected: Any) -> bool:
    if isinstance(expected, Mapping) and any(
        key in FILTER_OPERATORS for key in expected
    ):
        for op_name, operand in expected.items():
            op = FILTER_OPERATORS.get(op_name)
            if op is None:
                raise FilterError(f"Unknown filter operator: {op_name}")
            if not op(actual, operand):
                return False
        return True
    return strict_equal(actual, expected)


def matches_filter(filter: Optional[Mapping[str, Any]], payload: Any) -> bool:
    """Return ``True`` when ``payload`` satisfies ``filter``.

    ``filter`` maps dot paths to an expected value or an operator mapping such
    as ``{"$gte": 100}``. ``$and`` and ``$or`` take lists of nested filters.
    An empty filter matches everything.
    """
    if not filter:
        return True
    if not isinstance(filter, Mapping):
        raise FilterError(f"Filter must be a mapping, got {type(filter).__name__}")
    for key, expected in filter.items():
        if key in ("$and", "$or"):
            nested = _require_list(key, expected)
            results = (matches_filter(item, payload) for item in nested)
            passed = all(results) if key == "$and" else any(results)
        elif key.startswith("$"):
            raise FilterError(f"Unknown top-level filter operator: {key}")
        else:
            passed = _match_field(lookup(payload, key), expected)
        if not passed:
            return False
    return True


# ---------------------------------------------------------------------------
# Step conditions
# ---------------------------------------------------------------------------


def _is_empty(value: Any) -> bool:
    if value is None or value is MISSING:
        return True
    if isinstance(value, (str, list, tuple, dict)):
        return len(value) == 0
    return False


def _matches(left: Any, right: Any) -> bool:
    try:
        return re.search(str(right), str(left)) is not None
    except re.error:
        logger.warning(f"Invalid regular expression in condition: {right!r}")
        return False


def _in(left: Any, right: Any) -> bool:
    return isinstance(right, (list, tuple)) and _contained_in(left, right)


CONDITION_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "equals": strict_equal,
    "not_equals": lambda left, right: not strict_equal(left, right),
    "contains": lambda left, right: isinstance(left, str) and str(right) in left,
    "not_contains": lambda left, right: isinstance(left, str)
    and str(right) not in left,
    "starts_with": lambda left, right: isinstance(left, str)
    and left.startswith(str(right)),
    "ends_with": lambda left, right: isinstance(left, str)
    and left.endswith(str(right)),
    "greater_than": _compare(operator.gt),
    "greater_than_or_equals": _compare(operator.ge),
    "less_than": _compare(operator.lt),
    "less_than_or_equals": _compare(operator.le),
    "is_empty": lambda left, right: _is_empty(left),
    "is_not_empty": lambda left, right: not _is_empty(left),
    "in": _in,
    "not_in": lambda left, right: isinstance(right, (list, tuple))
    and not _contained_in(left, right),
    "matches": _matches,
}

_ALIASES = {
    "eq": "equals",
    "ne": "not_equals",
    "gt": "greater_than",
    "gte": "greater_than_or_equals",
    "lt": "less_than",
    "lte": "less_than_or_equals",
}


def evaluate_operator(left: Any, op_name: str, right: Any) -> bool:
    """Apply a named condition operator. Unknown operators evaluate to ``False``."""
    op = CONDITION_OPERATORS.get(_ALIASES.get(op_name, op_name))
    if op is None:
        logger.warning(f"Unknown condition operator '{op_name}'")
        return False
    return op(left, right)


def _field_value(field: str, context: Mapping[str, Any]) -> Any:
    if has_markers(field):
        return resolve(field, context)
    value = lookup(context, field)
    return None if value is MISSING else value


def evaluate_condition(condition: Condition, context: Mapping[str, Any]) -> bool:
    left = _field_value(condition.field, context)
    right = resolve(condition.value, context)
    return evaluate_operator(left, condition.operator, right)


def evaluate_conditions(
    conditions: Iterable[Condition], context: Mapping[str, Any], mode: str = "and"
) -> tuple[bool, list[bool]]:
    """Combine conditions with ``and``/``or`` and return the individual results."""
    results = [evaluate_condition(condition, context) for condition in conditions]
    passed = all(results) if mode == "and" else any(results)
    return passed, results
