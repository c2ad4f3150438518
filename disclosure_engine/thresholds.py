"""Threshold rule orchestration: rules by priority, aggregates, conditions, action resolution."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from disclosure_engine.aggregates import calculate_aggregate, disclosure_facts
from disclosure_engine.conditions import AGGREGATE_FACT, VALUE_FACT, evaluate_conditions, flatten_facts, threshold_value
from disclosure_engine.contracts import (
    ACTION_PRIORITY,
    ApplyMode,
    RetroactiveRunSummary,
    ThresholdAction,
    ThresholdEvaluationResult,
    ThresholdRule,
    ThresholdTriggerLog,
    ThresholdTriggeredEvent,
    TriggeredRule,
)
from disclosure_engine.db import repo
from disclosure_engine.errors import InvalidStateError, NotFoundError, RuleEvaluationError
from disclosure_engine.events import EventPublisher
from disclosure_engine.hashing import fact_fingerprint, trigger_key
from disclosure_engine.settings import EvaluationSettings, load_settings

logger = logging.getLogger(__name__)

RuleInput = Union[ThresholdRule, Mapping[str, Any]]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def resolve_action(actions: Sequence[ThresholdAction]) -> Optional[ThresholdAction]:
    """Most severe action among those that fired: CREATE_CASE > REQUIRE_APPROVAL > FLAG_REVIEW > NOTIFY."""
    if not actions:
        return None
    return max(actions, key=lambda a: ACTION_PRIORITY[ThresholdAction(a)])


def evaluate_rule(
    rule: ThresholdRule,
    *,
    organization_id: str,
    disclosure_id: Optional[str],
    disclosure_type: str,
    person_id: str,
    facts: Mapping[str, Any],
    related_company: Optional[str],
    as_of: datetime,
    settings: EvaluationSettings,
) -> Optional[TriggeredRule]:
    raw_value = _number(facts.get(VALUE_FACT))
    breakdown = None
    if rule.aggregate_config is not None:
        value: Optional[float]
        value, breakdown = calculate_aggregate(
            rule.aggregate_config,
            organization_id=organization_id,
            disclosure_id=disclosure_id,
            person_id=person_id,
            disclosure_type=disclosure_type,
            related_company=related_company,
            current_facts=facts,
            as_of=as_of,
            cap=settings.scan_caps.aggregate,
        )
    else:
        value = raw_value

    rule_facts: Dict[str, Any] = {**facts, AGGREGATE_FACT: value, VALUE_FACT: raw_value}
    if not evaluate_conditions(rule.conditions, rule_facts):
        return None

    return TriggeredRule(
        rule_id=rule.id,
        rule_name=rule.name,
        action=rule.action,
        priority=rule.priority,
        evaluated_value=value if value is not None else 0.0,
        threshold_value=threshold_value(rule.conditions),
        aggregate_breakdown=breakdown,
        action_config=rule.action_config,
    )


def run_threshold_rules(
    organization_id: str,
    disclosure_id: Optional[str],
    disclosure_type: str,
    fact_data: Mapping[str, Any],
    person_id: str,
    *,
    settings: EvaluationSettings,
    related_company: Optional[str] = None,
    as_of: Optional[datetime] = None,
    rules: Optional[Sequence[RuleInput]] = None,
) -> ThresholdEvaluationResult:
    """
    Evaluate every applicable active rule, highest priority first, without writing.

    A rule that cannot be parsed or evaluated is logged and skipped; it never
    stops the remaining rules.
    """
    facts = flatten_facts(fact_data)
    if related_company is None:
        related_company = facts.get("relatedCompany")
    as_of = as_of or _now_utc()
    if rules is None:
        rules = repo.load_active_rule_rows(organization_id, disclosure_type)

    triggered: List[TriggeredRule] = []
    failed: List[str] = []
    for raw in rules:
        rule_id = str(raw.id if isinstance(raw, ThresholdRule) else raw.get("id"))
        try:
            rule = raw if isinstance(raw, ThresholdRule) else ThresholdRule.model_validate(raw)
            hit = evaluate_rule(
                rule,
                organization_id=organization_id,
                disclosure_id=disclosure_id,
                disclosure_type=disclosure_type,
                person_id=person_id,
                facts=facts,
                related_company=related_company,
                as_of=as_of,
                settings=settings,
            )
        except Exception as e:
            err = RuleEvaluationError(rule_id, str(e))
            logger.exception(f"Threshold evaluation failed, skipping: {err} (facts {fact_fingerprint(facts)})")
            failed.append(rule_id)
            continue
        if hit is not None:
            triggered.append(hit)

    recommended = resolve_action([t.action for t in triggered])
    if triggered:
        logger.info(
            f"Disclosure {disclosure_id}: {len(triggered)} threshold rule(s) triggered, "
            f"recommended action {recommended}"
        )
    return ThresholdEvaluationResult(
        triggered=bool(triggered),
        triggered_rules=triggered,
        recommended_action=recommended,
        failed_rule_ids=failed,
    )


def record_triggers(
    organization_id: str,
    disclosure_id: str,
    person_id: str,
    triggered_rules: Sequence[TriggeredRule],
    evaluation_version: int,
) -> List[ThresholdTriggerLog]:
    rows = [
        {
            "trigger_key": trigger_key(t.rule_id, disclosure_id, evaluation_version),
            "organization_id": organization_id,
            "rule_id": t.rule_id,
            "disclosure_id": disclosure_id,
            "person_id": person_id,
            "evaluated_value": t.evaluated_value,
            "threshold_value": t.threshold_value,
            "aggregate_breakdown": (
                t.aggregate_breakdown.model_dump(mode="json") if t.aggregate_breakdown is not None else None
            ),
            "action_taken": str(t.action),
        }
        for t in triggered_rules
    ]
    return repo.insert_trigger_logs(rows)


def evaluate_disclosure(
    disclosure_id: str,
    organization_id: str,
    disclosure_type: str,
    fact_data: Mapping[str, Any],
    person_id: str,
    *,
    settings: Optional[EvaluationSettings] = None,
    publisher: Optional[EventPublisher] = None,
) -> ThresholdEvaluationResult:
    """Threshold evaluation on its own: evaluate, write trigger logs, emit threshold.triggered."""
    settings = settings or load_settings()
    result = run_threshold_rules(
        organization_id, disclosure_id, disclosure_type, fact_data, person_id, settings=settings
    )
    if result.triggered:
        record_triggers(organization_id, disclosure_id, person_id, result.triggered_rules, settings.evaluation_version)
        if publisher is not None:
            publisher.publish(
                ThresholdTriggeredEvent(
                    organization_id=organization_id,
                    disclosure_id=disclosure_id,
                    person_id=person_id,
                    triggered_rules=result.triggered_rules,
                    recommended_action=result.recommended_action,
                )
            )
    return result


def apply_rule_retroactively(
    rule_id: str,
    organization_id: str,
    *,
    settings: Optional[EvaluationSettings] = None,
) -> RetroactiveRunSummary:
    """
    Replay a RETROACTIVE / RETROACTIVE_DATE rule over stored disclosures.

    Aggregates are computed as of each disclosure's own timestamp; disclosures
    that already have a trigger log for this rule are skipped.
    """
    settings = settings or load_settings()
    rule = repo.get_rule(rule_id, organization_id)
    if rule is None:
        raise NotFoundError(f"threshold rule {rule_id} not found")
    if rule.apply_mode == ApplyMode.FORWARD_ONLY:
        raise InvalidStateError(f"rule {rule_id} is FORWARD_ONLY and cannot be applied retroactively")
    if not rule.is_active:
        raise InvalidStateError(f"rule {rule_id} is inactive")

    since = rule.apply_from if rule.apply_mode == ApplyMode.RETROACTIVE_DATE else None
    cap = settings.scan_caps.retroactive
    disclosures, capped = repo.load_disclosures_for_types(organization_id, rule.disclosure_types, since, cap)
    if capped:
        logger.warning(f"Retroactive run for rule {rule_id} hit the cap of {cap} disclosures")
    already = repo.triggered_disclosure_ids(rule.id)

    summary = RetroactiveRunSummary(rule_id=rule.id, scan_capped=capped)
    for row in disclosures:
        if row["id"] in already:
            summary.skipped += 1
            continue
        result = run_threshold_rules(
            organization_id,
            row["id"],
            row["disclosure_type"],
            disclosure_facts(row),
            row["person_id"],
            settings=settings,
            related_company=row.get("related_company"),
            as_of=row["created_at"],
            rules=[rule],
        )
        summary.evaluated += 1
        summary.failed += len(result.failed_rule_ids)
        if result.triggered:
            record_triggers(
                organization_id, row["id"], row["person_id"], result.triggered_rules, settings.evaluation_version
            )
            summary.triggered += 1

    logger.info(
        f"Retroactive run for rule {rule_id}: evaluated={summary.evaluated} "
        f"triggered={summary.triggered} skipped={summary.skipped} failed={summary.failed}"
    )
    return summary
