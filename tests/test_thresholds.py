from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from disclosure_engine.contracts import CreateRuleRequest, ThresholdAction, ThresholdRule
from disclosure_engine.db import repo
from disclosure_engine.errors import InvalidStateError, NotFoundError
from disclosure_engine.events import THRESHOLD_TRIGGERED, RecordingPublisher
from disclosure_engine.rules import create_rule, deactivate_rule
from disclosure_engine.settings import EvaluationSettings
from disclosure_engine.thresholds import (
    apply_rule_retroactively,
    evaluate_disclosure,
    resolve_action,
    run_threshold_rules,
)

SETTINGS = EvaluationSettings(max_workers=1)
NOW = datetime.now(timezone.utc)


def _gte(value, field="disclosureValue"):
    return [{"field": field, "operator": "gte", "value": value}]


def _rule(id, action="FLAG_REVIEW", conditions=None, priority=0, **extra):
    return ThresholdRule(
        id=id,
        organization_id="org-1",
        name=f"rule {id}",
        disclosure_types=["GIFT"],
        conditions=conditions or _gte(500),
        action=action,
        priority=priority,
        **extra,
    )


def _request(name, action="CREATE_CASE", conditions=None, **extra):
    return CreateRuleRequest(
        name=name,
        disclosure_types=["GIFT"],
        conditions=conditions or _gte(500),
        action=action,
        **extra,
    )


def _seed(person_id, value, days_ago, disclosure_type="GIFT"):
    return repo.insert_disclosure(
        {
            "organization_id": "org-1",
            "person_id": person_id,
            "disclosure_type": disclosure_type,
            "related_company": "Acme Corp",
            "disclosure_value": value,
            "created_at": NOW - timedelta(days=days_ago),
        }
    )


def test_resolve_action_picks_most_severe():
    assert resolve_action([]) is None
    assert (
        resolve_action([ThresholdAction.NOTIFY, ThresholdAction.CREATE_CASE, ThresholdAction.FLAG_REVIEW])
        == ThresholdAction.CREATE_CASE
    )
    assert resolve_action([ThresholdAction.NOTIFY, ThresholdAction.REQUIRE_APPROVAL]) == ThresholdAction.REQUIRE_APPROVAL


def test_simple_rule_triggers_without_aggregate():
    result = run_threshold_rules(
        "org-1", "d-1", "GIFT", {"disclosureValue": 600}, "p-1",
        settings=SETTINGS, rules=[_rule("r-1", action="CREATE_CASE")],
    )
    assert result.triggered is True
    assert result.recommended_action == ThresholdAction.CREATE_CASE
    hit = result.triggered_rules[0]
    assert hit.evaluated_value == 600.0
    assert hit.threshold_value == 500.0
    assert hit.aggregate_breakdown is None


def test_no_rule_fires_below_threshold():
    result = run_threshold_rules(
        "org-1", "d-1", "GIFT", {"disclosureValue": 499.99}, "p-1",
        settings=SETTINGS, rules=[_rule("r-1")],
    )
    assert result.triggered is False
    assert result.recommended_action is None
    assert result.triggered_rules == []


def test_several_rules_resolve_to_highest_action():
    rules = [
        _rule("r-notify", action="NOTIFY", conditions=_gte(100), priority=90),
        _rule("r-case", action="CREATE_CASE", conditions=_gte(500), priority=10),
        _rule("r-flag", action="FLAG_REVIEW", conditions=_gte(200), priority=50),
    ]
    result = run_threshold_rules(
        "org-1", "d-1", "GIFT", {"disclosureValue": 600}, "p-1", settings=SETTINGS, rules=rules
    )
    assert [t.rule_id for t in result.triggered_rules] == ["r-notify", "r-case", "r-flag"]
    assert result.recommended_action == ThresholdAction.CREATE_CASE


def test_broken_rule_is_skipped_and_reported():
    broken = {"id": "r-broken", "organization_id": "org-1", "name": "broken", "conditions": "nonsense"}
    result = run_threshold_rules(
        "org-1", "d-1", "GIFT", {"disclosureValue": 600}, "p-1",
        settings=SETTINGS, rules=[broken, _rule("r-ok", action="NOTIFY")],
    )
    assert result.failed_rule_ids == ["r-broken"]
    assert [t.rule_id for t in result.triggered_rules] == ["r-ok"]
    assert result.recommended_action == ThresholdAction.NOTIFY


def test_conditions_on_nested_facts():
    rule = _rule(
        "r-1",
        conditions=[
            {"field": "gift.recipient.country", "operator": "in", "value": ["FR", "DE"]},
        ],
    )
    hit = run_threshold_rules(
        "org-1", "d-1", "GIFT", {"disclosureValue": 10, "gift": {"recipient": {"country": "DE"}}}, "p-1",
        settings=SETTINGS, rules=[rule],
    )
    miss = run_threshold_rules(
        "org-1", "d-1", "GIFT", {"disclosureValue": 10}, "p-1", settings=SETTINGS, rules=[rule],
    )
    assert hit.triggered is True
    assert hit.triggered_rules[0].threshold_value is None
    assert miss.triggered is False


def test_evaluate_disclosure_writes_one_trigger_log(sqlite_db):
    rule = create_rule("org-1", _request("Large gifts"))
    publisher = RecordingPublisher()

    result = evaluate_disclosure("d-1", "org-1", "GIFT", {"disclosureValue": 600}, "p-1", settings=SETTINGS, publisher=publisher)
    again = evaluate_disclosure("d-1", "org-1", "GIFT", {"disclosureValue": 600}, "p-1", settings=SETTINGS)

    assert result.recommended_action == ThresholdAction.CREATE_CASE
    assert again.triggered is True
    logs = repo.list_trigger_logs("org-1", rule_id=rule.id)
    assert len(logs) == 1
    assert logs[0].evaluated_value == 600.0
    assert logs[0].threshold_value == 500.0
    assert logs[0].action_taken == ThresholdAction.CREATE_CASE
    assert len(publisher.named(THRESHOLD_TRIGGERED)) == 1


def test_stored_rules_filtered_by_type_and_active_flag(sqlite_db):
    create_rule("org-1", _request("Gift rule", action="NOTIFY"))
    travel = create_rule("org-1", _request("Travel rule", action="CREATE_CASE").model_copy(update={"disclosure_types": ["TRAVEL"]}))
    inactive = create_rule("org-1", _request("Old gift rule", action="CREATE_CASE"))
    deactivate_rule(inactive.id, "org-1")
    create_rule("org-2", _request("Other org rule", action="CREATE_CASE"))

    result = run_threshold_rules("org-1", "d-1", "GIFT", {"disclosureValue": 600}, "p-1", settings=SETTINGS)

    assert [t.rule_name for t in result.triggered_rules] == ["Gift rule"]
    assert result.recommended_action == ThresholdAction.NOTIFY
    assert travel.disclosure_types == ["TRAVEL"]


def test_aggregate_rule_sums_the_rolling_year(sqlite_db):
    _seed("p-1", 200, 10)
    _seed("p-1", 300, 60)
    _seed("p-1", 150, 200)
    current = _seed("p-1", 100, 0)
    create_rule(
        "org-1",
        _request(
            "Annual gift total",
            action="REQUIRE_APPROVAL",
            conditions=_gte(700),
            aggregate_config={"dimensions": ["person"], "time_window": {"type": "rolling", "period": "months", "value": 12}},
        ),
    )

    result = run_threshold_rules(
        "org-1", current["id"], "GIFT", {"disclosureValue": 100}, "p-1",
        settings=SETTINGS, related_company="Acme Corp",
    )

    assert result.triggered is True
    hit = result.triggered_rules[0]
    assert hit.evaluated_value == 750.0
    assert hit.threshold_value == 700.0
    assert len(hit.aggregate_breakdown.related_disclosures) == 3


def test_retroactive_rule_replays_history_once(sqlite_db):
    _seed("p-1", 900, 30)
    _seed("p-2", 100, 20)
    _seed("p-3", 700, 10)
    _seed("p-4", 5000, 5, disclosure_type="TRAVEL")
    rule = create_rule("org-1", _request("Back-check large gifts", apply_mode="RETROACTIVE"))

    first = apply_rule_retroactively(rule.id, "org-1", settings=SETTINGS)
    second = apply_rule_retroactively(rule.id, "org-1", settings=SETTINGS)

    assert (first.evaluated, first.triggered, first.skipped) == (3, 2, 0)
    assert (second.evaluated, second.triggered, second.skipped) == (1, 0, 2)
    assert len(repo.list_trigger_logs("org-1", rule_id=rule.id)) == 2


def test_retroactive_date_only_looks_forward_from_apply_from(sqlite_db):
    _seed("p-1", 900, 30)
    _seed("p-2", 800, 2)
    rule = create_rule(
        "org-1",
        _request("Recent large gifts", apply_mode="RETROACTIVE_DATE", apply_from=NOW - timedelta(days=7)),
    )

    summary = apply_rule_retroactively(rule.id, "org-1", settings=SETTINGS)

    assert (summary.evaluated, summary.triggered) == (1, 1)


def test_retroactive_rejects_forward_only_and_missing(sqlite_db):
    rule = create_rule("org-1", _request("Forward only"))
    with pytest.raises(InvalidStateError):
        apply_rule_retroactively(rule.id, "org-1", settings=SETTINGS)
    with pytest.raises(NotFoundError):
        apply_rule_retroactively("missing", "org-1", settings=SETTINGS)
