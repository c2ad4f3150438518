"""Rule condition evaluation over a flattened fact map."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Dict, Mapping, Optional, Sequence

from disclosure_engine.contracts import (
    ConditionOperator,
    Conjunction,
    RuleCondition,
)

AGGREGATE_FACT = "aggregateValue"
VALUE_FACT = "disclosureValue"


def flatten_facts(data: Mapping[str, Any], prefix: str = "") -> Dict[str, Any]:
    """
    Flatten nested mappings to dot-paths:
      {"gift": {"value": 50}} -> {"gift.value": 50}
    Lists are kept whole at their path.
    """
    out: Dict[str, Any] = {}
    for key, value in data.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, Mapping):
            out.update(flatten_facts(value, path))
        else:
            out[path] = value
    return out


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _as_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        s = value.strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _equals(fact: Any, expected: Any) -> bool:
    if isinstance(expected, bool) or isinstance(fact, bool):
        return fact is expected or fact == expected
    if isinstance(expected, datetime):
        return _as_datetime(fact) == expected
    if isinstance(expected, (int, float)):
        return _as_number(fact) == float(expected)
    if isinstance(fact, (int, float)) and isinstance(expected, str):
        return _as_number(expected) == float(fact)
    return fact == expected


def _compare(fact: Any, expected: Any) -> Optional[int]:
    """-1/0/1 ordering of fact vs expected, or None when they are not comparable."""
    if isinstance(expected, datetime):
        left: Any = _as_datetime(fact)
    else:
        left = _as_number(fact)
        expected = _as_number(expected)
    if left is None or expected is None:
        return None
    return (left > expected) - (left < expected)


def _contains(fact: Any, expected: Any) -> bool:
    needle = str(expected).lower()
    if isinstance(fact, (list, tuple, set)):
        return any(str(item).lower() == needle for item in fact)
    return needle in str(fact).lower()


def evaluate_condition(condition: RuleCondition, facts: Mapping[str, Any]) -> bool:
    """
    One comparison. A fact that is absent (or null) never matches, whatever
    the operator, including the negative ones.
    """
    key = AGGREGATE_FACT if condition.field == VALUE_FACT else condition.field
    if key not in facts or facts[key] is None:
        return False
    fact = facts[key]
    op = condition.operator
    expected = condition.value

    if op == ConditionOperator.eq:
        return _equals(fact, expected)
    if op == ConditionOperator.neq:
        return not _equals(fact, expected)

    if op in (ConditionOperator.gt, ConditionOperator.gte, ConditionOperator.lt, ConditionOperator.lte):
        order = _compare(fact, expected)
        if order is None:
            return False
        if op == ConditionOperator.gt:
            return order > 0
        if op == ConditionOperator.gte:
            return order >= 0
        if op == ConditionOperator.lt:
            return order < 0
        return order <= 0

    if op == ConditionOperator.contains:
        return _contains(fact, expected)
    if op == ConditionOperator.not_contains:
        return not _contains(fact, expected)

    if op == ConditionOperator.in_:
        return any(_equals(fact, item) for item in expected)
    if op == ConditionOperator.not_in:
        return not any(_equals(fact, item) for item in expected)

    return False


def evaluate_conditions(conditions: Sequence[RuleCondition], facts: Mapping[str, Any]) -> bool:
    """
    A single OR anywhere in the list makes the rule match when any condition
    matches; otherwise every condition must match.
    """
    if not conditions:
        return False
    results = [evaluate_condition(c, facts) for c in conditions]
    if any(c.conjunction == Conjunction.OR for c in conditions):
        return any(results)
    return all(results)


def threshold_value(conditions: Sequence[RuleCondition]) -> Optional[float]:
    """Value of the first numeric gt/gte/lt/lte condition, for trigger logs."""
    for c in conditions:
        if c.operator in (ConditionOperator.gt, ConditionOperator.gte, ConditionOperator.lt, ConditionOperator.lte):
            number = _as_number(c.value)
            if number is not None:
                return number
    return None
