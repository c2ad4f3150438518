"""Time-windowed aggregation of disclosure values for threshold rules."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from dateutil.relativedelta import relativedelta

from disclosure_engine.conditions import VALUE_FACT, flatten_facts
from disclosure_engine.contracts import (
    AggregateBreakdown,
    AggregateConfig,
    AggregateFunction,
    ContributingDisclosure,
    TimeWindow,
    WindowPeriod,
    WindowType,
)
from disclosure_engine.db import repo

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = TimeWindow(type=WindowType.rolling, period=WindowPeriod.months, value=12)


def _coerce_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def window_bounds(time_window: Optional[TimeWindow], now: datetime) -> Tuple[datetime, datetime]:
    """
    [start, end] of the aggregation window ending at `now`:
      - rolling: now minus N days / months / years
      - calendar: year to date
    """
    tw = time_window or DEFAULT_WINDOW
    end = _coerce_utc(now)
    if tw.type == WindowType.calendar:
        return datetime(end.year, 1, 1, tzinfo=timezone.utc), end
    if tw.period == WindowPeriod.days:
        return end - timedelta(days=tw.value), end
    if tw.period == WindowPeriod.years:
        return end - relativedelta(years=tw.value), end
    return end - relativedelta(months=tw.value), end


def reduce_values(values: Sequence[float], function: AggregateFunction) -> float:
    if function == AggregateFunction.COUNT:
        return float(len(values))
    if not values:
        return 0.0
    if function == AggregateFunction.AVG:
        return sum(values) / len(values)
    if function == AggregateFunction.MAX:
        return max(values)
    return float(sum(values))


def disclosure_facts(row: Mapping[str, Any]) -> Dict[str, Any]:
    """Fact map of a stored disclosure: flattened details plus its top-level fields."""
    facts = flatten_facts(row.get("details") or {})
    facts.setdefault(VALUE_FACT, row.get("disclosure_value"))
    facts.setdefault("disclosureType", row.get("disclosure_type"))
    facts.setdefault("relatedCompany", row.get("related_company"))
    facts.setdefault("relatedPerson", row.get("related_person"))
    facts.setdefault("currency", row.get("currency"))
    return facts


def _numeric(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def extract_value(facts: Mapping[str, Any], aggregate_field: str) -> Optional[float]:
    return _numeric(facts.get(aggregate_field))


def calculate_aggregate(
    config: AggregateConfig,
    *,
    organization_id: str,
    disclosure_id: Optional[str],
    person_id: str,
    disclosure_type: str,
    related_company: Optional[str],
    current_facts: Mapping[str, Any],
    as_of: datetime,
    cap: int,
) -> Tuple[float, AggregateBreakdown]:
    """
    Aggregate the configured field over the window, across the configured
    dimensions, always including the current disclosure's own value.

    Historical values that are missing or not positive are left out.
    """
    start, end = window_bounds(config.time_window, as_of)
    dims = set(config.dimensions)
    current_value = extract_value(current_facts, config.aggregate_field) or 0.0

    entity = (related_company or "").strip() or None
    if "entity" in dims and entity is None:
        logger.debug(f"Disclosure {disclosure_id} has no related company; entity dimension not applied")
    history, capped = repo.load_disclosure_history(
        organization_id,
        window_start=start,
        window_end=end,
        exclude_disclosure_id=disclosure_id,
        cap=cap,
        person_id=person_id if "person" in dims else None,
        entity=entity if "entity" in dims else None,
        disclosure_type=disclosure_type if "category" in dims else None,
    )
    if capped:
        logger.warning(
            f"Aggregate history scan hit the cap of {cap} rows for disclosure {disclosure_id}; "
            f"older disclosures in the window were not counted"
        )

    contributing: List[ContributingDisclosure] = []
    values: List[float] = []
    for row in history:
        facts = disclosure_facts(row)
        if any(facts.get(path) != current_facts.get(path) for path in config.group_by):
            continue
        value = extract_value(facts, config.aggregate_field)
        if value is None or value <= 0:
            continue
        values.append(value)
        contributing.append(ContributingDisclosure(id=row["id"], date=row["created_at"], value=value))

    values.append(current_value)
    aggregate = reduce_values(values, config.aggregate_function)

    breakdown = AggregateBreakdown(
        related_disclosures=contributing,
        current_value=current_value,
        total_value=aggregate,
        aggregate_function=config.aggregate_function,
        aggregate_field=config.aggregate_field,
        dimensions=list(config.dimensions),
        window_start=start,
        window_end=end,
        scan_capped=capped,
    )
    return aggregate, breakdown
