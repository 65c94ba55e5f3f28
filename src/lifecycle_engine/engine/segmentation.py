"""Segment rule evaluation.

One rule engine serves segment membership, flow conditions, campaign
recipient filtering and conditional personalization blocks. Callers differ
only in how a rule's ``field`` is resolved to a value; the operator
semantics below are shared.
"""
from __future__ import annotations
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping

from lifecycle_engine.models.domain import SegmentFilter
from lifecycle_engine.utils.values import is_blank, is_number, to_number, to_text

logger = logging.getLogger(__name__)


def normalize_filter_logic(raw: Any) -> str:
    """Canonical ``"AND"``/``"OR"``; stored values come in either casing."""
    if isinstance(raw, str) and raw.strip().upper() == "OR":
        return "OR"
    return "AND"


def coerce_filter(rule: SegmentFilter | Mapping[str, Any]) -> SegmentFilter:
    if isinstance(rule, SegmentFilter):
        return rule
    return SegmentFilter(
        field=rule.get("field", ""),
        operator=rule.get("operator", ""),
        value=rule.get("value"),
        values=rule.get("values"),
        field_source=rule.get("fieldSource") or rule.get("field_source") or "user",
    )


def _walk(container: Any, path: Iterable[str]) -> Any:
    current = container
    for key in path:
        if isinstance(current, Mapping):
            current = current.get(key)
        else:
            return None
    return current


def lookup_path(record: Mapping[str, Any], path: str) -> Any:
    """Direct key, then ``properties.a.b``, then a plain dotted path."""
    if path in record:
        return record[path]
    if path.startswith("properties."):
        return _walk(record.get("properties"), path[len("properties."):].split("."))
    return _walk(record, path.split("."))


def resolve_field_value(
    rule: SegmentFilter,
    user: Mapping[str, Any],
    account: Mapping[str, Any] | None = None,
) -> Any:
    source = (account or {}) if rule.field_source == "account" else user
    if rule.field in source:
        return source[rule.field]
    if rule.field.startswith("properties."):
        return _walk(source.get("properties"), rule.field[len("properties."):].split("."))
    return None


def _lower(value: Any) -> str:
    return to_text(value).lower()


def _compare(actual: Any, expected: Any, op: Callable[[float, float], bool]) -> bool:
    a, b = to_number(actual), to_number(expected)
    if math.isnan(a) or math.isnan(b):
        return False
    return op(a, b)


def _matches_regex(actual: Any, pattern: Any) -> bool:
    try:
        return re.search(to_text(pattern), to_text(actual)) is not None
    except re.error:
        logger.debug(f"Invalid rule pattern {pattern!r}")
        return False


def _equals(actual: Any, expected: Any) -> bool:
    if isinstance(actual, bool):
        return actual == (expected is True or expected == "true")
    if is_number(actual):
        return actual == to_number(expected)
    return _lower(actual) == _lower(expected)


def _not_equals(actual: Any, expected: Any) -> bool:
    if is_number(actual):
        return actual != to_number(expected)
    return _lower(actual) != _lower(expected)


def _contains(actual: Any, expected: Any) -> bool:
    needle = _lower(expected)
    if isinstance(actual, (list, tuple, set)):
        return any(needle in _lower(v) for v in actual)
    return needle in _lower(actual)


def _in_list(actual: Any, values: list[Any] | None) -> bool:
    target = _lower(actual)
    return any(_lower(v) == target for v in values or [])


def _between(actual: Any, values: list[Any] | None) -> bool:
    if not values or len(values) < 2:
        return False
    return _compare(actual, values[0], lambda a, b: a >= b) and _compare(actual, values[1], lambda a, b: a <= b)


_OPERATOR_TABLE: dict[str, Callable[[Any, Any, list[Any] | None], bool]] = {
    "is_set": lambda a, e, vs: not is_blank(a),
    "is_not_set": lambda a, e, vs: is_blank(a),
    "equals": lambda a, e, vs: _equals(a, e),
    "not_equals": lambda a, e, vs: _not_equals(a, e),
    "contains": lambda a, e, vs: _contains(a, e),
    "not_contains": lambda a, e, vs: not _contains(a, e),
    "starts_with": lambda a, e, vs: _lower(a).startswith(_lower(e)),
    "ends_with": lambda a, e, vs: _lower(a).endswith(_lower(e)),
    "greater_than": lambda a, e, vs: _compare(a, e, lambda x, y: x > y),
    "less_than": lambda a, e, vs: _compare(a, e, lambda x, y: x < y),
    "greater_or_equal": lambda a, e, vs: _compare(a, e, lambda x, y: x >= y),
    "less_or_equal": lambda a, e, vs: _compare(a, e, lambda x, y: x <= y),
    "in_list": lambda a, e, vs: _in_list(a, vs),
    "not_in_list": lambda a, e, vs: not _in_list(a, vs),
    "between": lambda a, e, vs: _between(a, vs),
    "matches_regex": lambda a, e, vs: _matches_regex(a, e),
}


def apply_operator(operator: str, actual: Any, expected: Any = None, values: list[Any] | None = None) -> bool:
    """Evaluate one operator; unknown operators never match."""
    handler = _OPERATOR_TABLE.get(operator)
    if handler is None:
        return False
    return handler(actual, expected, values)


def evaluate_rule(rule: SegmentFilter, value: Any) -> bool:
    return apply_operator(rule.operator, value, rule.value, rule.values)


def evaluate_rules(
    rules: Iterable[SegmentFilter | Mapping[str, Any]],
    logic: Any,
    resolve: Callable[[SegmentFilter], Any],
) -> bool:
    """Combine rules with AND/OR using ``resolve`` to read each field. No rules match."""
    parsed = [coerce_filter(r) for r in rules]
    if not parsed:
        return True
    results = (evaluate_rule(r, resolve(r)) for r in parsed)
    if normalize_filter_logic(logic) == "OR":
        return any(results)
    return all(results)


def evaluate_segment_filters(
    filters: Iterable[SegmentFilter | Mapping[str, Any]],
    filter_logic: Any,
    user: Mapping[str, Any],
    account: Mapping[str, Any] | None = None,
) -> bool:
    return evaluate_rules(filters, filter_logic, lambda rule: resolve_field_value(rule, user, account))


@dataclass
class SegmentEvalResult:
    matched: list[str] = field(default_factory=list)
    entered: list[str] = field(default_factory=list)
    exited: list[str] = field(default_factory=list)
    total: int = 0


def evaluate_segment_batch(
    filters: list[SegmentFilter | Mapping[str, Any]],
    filter_logic: Any,
    users: list[Mapping[str, Any]],
    accounts: Mapping[str, Mapping[str, Any]],
    existing_member_ids: set[str],
) -> SegmentEvalResult:
    result = SegmentEvalResult(total=len(users))
    for user in users:
        user_id = user["id"]
        account_id = user.get("accountId")
        account = accounts.get(account_id) if account_id else None
        if evaluate_segment_filters(filters, filter_logic, user, account):
            result.matched.append(user_id)
            if user_id not in existing_member_ids:
                result.entered.append(user_id)
        elif user_id in existing_member_ids:
            result.exited.append(user_id)
    return result
