from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from disclosure_engine.alert_workflow import list_alerts
from disclosure_engine.contracts import (
    ConflictType,
    CreateExclusionRequest,
    CreateRuleRequest,
    ThresholdAction,
)
from disclosure_engine.db import repo
from disclosure_engine.errors import NotFoundError
from disclosure_engine.evaluation import evaluate_submission
from disclosure_engine.events import CONFLICT_DETECTED, THRESHOLD_TRIGGERED, RecordingPublisher
from disclosure_engine.exclusions import create_exclusion
from disclosure_engine.rules import create_rule
from disclosure_engine.settings import EvaluationSettings

NOW = datetime.now(timezone.utc)


def _disclosure(person_id, company=None, person=None, value=None, days_ago=0, org="org-1"):
    return repo.insert_disclosure(
        {
            "organization_id": org,
            "person_id": person_id,
            "disclosure_type": "GIFT",
            "related_company": company,
            "related_person": person,
            "disclosure_value": value,
            "currency": "USD",
            "created_at": NOW - timedelta(days=days_ago),
        }
    )


def _case_rule(threshold=500):
    return CreateRuleRequest(
        name="Large gifts",
        disclosure_types=["GIFT"],
        conditions=[{"field": "disclosureValue", "operator": "gte", "value": threshold}],
        action="CREATE_CASE",
    )


def test_missing_disclosure(sqlite_db):
    with pytest.raises(NotFoundError):
        evaluate_submission("missing", "org-1", settings=EvaluationSettings())


def test_conflicts_and_thresholds_in_one_pass(sqlite_db):
    _disclosure("p-1", company="ACME CORP.", value=250, days_ago=40)
    current = _disclosure("p-1", company="Acme Corp", value=600)
    create_rule("org-1", _case_rule())
    publisher = RecordingPublisher()

    result = evaluate_submission(current["id"], "org-1", settings=EvaluationSettings(), publisher=publisher)

    assert result.person_id == "p-1"
    assert result.requires_case is True
    assert result.threshold.recommended_action == ThresholdAction.CREATE_CASE
    assert result.threshold.triggered_rules[0].evaluated_value == 600.0
    assert result.conflicts.conflict_count == 1
    conflict = result.conflicts.conflicts[0]
    assert conflict.conflict_type == ConflictType.SELF_DEALING
    assert conflict.match_confidence >= 90

    assert len(publisher.named(CONFLICT_DETECTED)) == 1
    assert len(publisher.named(THRESHOLD_TRIGGERED)) == 1
    assert len(repo.list_trigger_logs("org-1", disclosure_id=current["id"])) == 1


def test_all_strategies_run_concurrently(sqlite_db):
    repo.insert_employee({"organization_id": "org-1", "person_id": "p-7", "full_name": "Jane Doe", "department": "Sales"})
    repo.insert_case_subject(
        {"organization_id": "org-1", "case_id": "case-1", "case_reference": "C-001", "external_name": "Jane Doe"}
    )
    _disclosure("p-2", company="Initech", days_ago=3)
    _disclosure("p-3", company="INITECH", days_ago=2)
    current = _disclosure("p-1", company="Initech", person="Jane Doe")

    result = evaluate_submission(current["id"], "org-1", settings=EvaluationSettings(max_workers=5))

    types = sorted(str(c.conflict_type) for c in result.conflicts.conflicts)
    assert types == ["HRIS_MATCH", "PRIOR_CASE_HISTORY", "RELATIONSHIP_PATTERN"]
    assert result.threshold.triggered is False
    assert result.requires_case is False


def test_permanent_exclusion_suppresses_alert(sqlite_db):
    _disclosure("p-1", company="Acme Corp", days_ago=40)
    current = _disclosure("p-1", company="Acme Corp.")
    exclusion = create_exclusion(
        "org-1",
        CreateExclusionRequest(
            person_id="p-1",
            matched_entity="Acme Corp",
            conflict_type=ConflictType.SELF_DEALING,
            reason="Family business, approved",
        ),
    )
    publisher = RecordingPublisher()

    result = evaluate_submission(current["id"], "org-1", settings=EvaluationSettings(max_workers=1), publisher=publisher)

    assert result.conflicts.conflict_count == 0
    assert result.conflicts.excluded_conflict_count == 1
    assert result.conflicts.applied_exclusion_ids == [exclusion.id]
    assert list_alerts("org-1").total == 0
    assert publisher.events == []


def test_reevaluation_is_idempotent(sqlite_db):
    _disclosure("p-1", company="Globex", days_ago=10)
    current = _disclosure("p-1", company="Globex", value=900)
    create_rule("org-1", _case_rule())
    settings = EvaluationSettings(max_workers=1)

    first = evaluate_submission(current["id"], "org-1", settings=settings)
    second = evaluate_submission(current["id"], "org-1", settings=settings)

    assert [a.id for a in first.conflicts.conflicts] == [a.id for a in second.conflicts.conflicts]
    assert list_alerts("org-1").total == 1
    assert len(repo.list_trigger_logs("org-1")) == 1


def test_caller_facts_override_stored_ones(sqlite_db):
    current = _disclosure("p-1", value=100)
    create_rule("org-1", _case_rule())

    result = evaluate_submission(
        current["id"], "org-1", fact_data={"disclosureValue": 750}, settings=EvaluationSettings(max_workers=1)
    )

    assert result.threshold.triggered is True
    assert result.conflicts.conflict_count == 0
    assert result.conflicts.conflicts == []


def test_failing_event_handler_does_not_break_evaluation(sqlite_db):
    _disclosure("p-1", company="Acme Corp", days_ago=40)
    current = _disclosure("p-1", company="Acme Corp")
    publisher = RecordingPublisher()

    def _boom(event):
        raise RuntimeError("case service down")

    publisher.subscribe(CONFLICT_DETECTED, _boom)

    result = evaluate_submission(current["id"], "org-1", settings=EvaluationSettings(max_workers=1), publisher=publisher)

    assert result.conflicts.conflict_count == 1
    assert len(publisher.named(CONFLICT_DETECTED)) == 1


def test_pattern_over_related_person_only_disclosures(sqlite_db):
    _disclosure("p-2", person="John Smith", days_ago=3)
    _disclosure("p-3", person="john smith", days_ago=2)
    current = _disclosure("p-1", person="John Smith")

    result = evaluate_submission(current["id"], "org-1", settings=EvaluationSettings())

    assert [str(c.conflict_type) for c in result.conflicts.conflicts] == ["RELATIONSHIP_PATTERN"]
    assert sorted(result.conflicts.conflicts[0].match_details.person_ids) == ["p-2", "p-3"]
