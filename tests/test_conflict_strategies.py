from __future__ import annotations

from datetime import datetime, timedelta, timezone

from disclosure_engine.conflict_strategies import (
    check_hris_match,
    check_prior_cases,
    check_relationship_patterns,
    check_self_dealing,
    disclosed_names,
)
from disclosure_engine.contracts import ConflictSeverity, ConflictType
from disclosure_engine.settings import EvaluationSettings

SETTINGS = EvaluationSettings()
T0 = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _disclosure(id, person_id="p-1", company=None, person=None, value=None, days_ago=0):
    return {
        "id": id,
        "organization_id": "org-1",
        "person_id": person_id,
        "disclosure_type": "GIFT",
        "related_company": company,
        "related_person": person,
        "disclosure_value": value,
        "currency": "USD" if value is not None else None,
        "created_at": T0 - timedelta(days=days_ago),
    }


def _subject(case_id, name, outcome="SUBSTANTIATED"):
    return {
        "id": f"s-{case_id}-{name}",
        "case_id": case_id,
        "case_reference": f"CASE-{case_id}",
        "case_type": "FRAUD",
        "case_outcome": outcome,
        "external_name": name,
        "role": "SUBJECT",
    }


def test_disclosed_names_dedupes_and_skips_blank():
    assert disclosed_names({"related_company": " Acme Corp ", "related_person": "acme corp"}) == ["Acme Corp"]
    assert disclosed_names({"related_company": "", "related_person": None}) == []
    assert disclosed_names({"related_company": "Acme", "related_person": "Jane Doe"}) == ["Acme", "Jane Doe"]


def test_self_dealing_is_case_and_punctuation_insensitive():
    prior = [_disclosure("d-0", company="ACME CORP.", value=250, days_ago=30)]
    conflicts = check_self_dealing(["Acme Corp"], prior, SETTINGS)

    assert len(conflicts) == 1
    c = conflicts[0]
    assert c.conflict_type == ConflictType.SELF_DEALING
    assert c.match_confidence >= 90
    assert c.matched_entity == "ACME CORP."
    assert c.match_details.kind == "disclosure"
    assert c.match_details.prior_disclosure_ids == ["d-0"]
    assert c.match_details.total_value == 250.0


def test_self_dealing_repeat_references_escalate():
    prior = [_disclosure(f"d-{i}", company="Initech LLC", days_ago=i) for i in range(3)]
    conflicts = check_self_dealing(["Initech LLC"], prior, SETTINGS)

    assert len(conflicts) == 1
    c = conflicts[0]
    assert c.severity == ConflictSeverity.CRITICAL
    assert len(c.severity_factors.factors) == 3
    assert c.match_details.date_range.start == T0 - timedelta(days=2)
    assert c.match_details.date_range.end == T0


def test_self_dealing_ignores_unrelated_entities():
    prior = [_disclosure("d-0", company="Umbrella Pharma")]
    assert check_self_dealing(["Initech"], prior, SETTINGS) == []
    assert check_self_dealing([], prior, SETTINGS) == []


def test_hris_match_skips_the_disclosing_person():
    employees = [
        {"id": "e-1", "person_id": "p-9", "full_name": "Jane Doe", "department": "Procurement"},
        {"id": "e-2", "person_id": "p-1", "full_name": "Jane Doe", "department": "Finance"},
        {"id": "e-3", "person_id": "p-3", "full_name": "Robert Paulson", "department": "IT"},
    ]
    conflicts = check_hris_match(["Jane Doe"], "p-1", employees, SETTINGS)

    assert [c.dedupe_key for c in conflicts] == ["employee:e-1"]
    c = conflicts[0]
    assert c.conflict_type == ConflictType.HRIS_MATCH
    assert c.match_details.kind == "employee"
    assert c.match_details.department == "Procurement"
    assert "Procurement" in c.summary


def test_prior_cases_fold_into_one_conflict():
    subjects = [
        _subject("c-1", "Globex"),
        _subject("c-1", "Globex Corporation"),
        _subject("c-2", "Globex", outcome="UNSUBSTANTIATED"),
        _subject("c-3", "Initech"),
    ]
    conflicts = check_prior_cases(["Globex"], subjects, SETTINGS)

    assert len(conflicts) == 1
    c = conflicts[0]
    assert c.conflict_type == ConflictType.PRIOR_CASE_HISTORY
    assert c.match_confidence == 100
    assert c.severity == ConflictSeverity.MEDIUM
    assert sorted(c.match_details.case_ids) == ["c-1", "c-2"]
    assert set(c.match_details.outcomes) == {"SUBSTANTIATED", "UNSUBSTANTIATED"}


def test_prior_cases_severity_high_above_configured_count():
    subjects = [_subject(f"c-{i}", "Globex") for i in range(3)]
    conflicts = check_prior_cases(["Globex"], subjects, SETTINGS)
    assert conflicts[0].severity == ConflictSeverity.HIGH


def test_relationship_pattern_needs_enough_people():
    others = [_disclosure("d-1", person_id="p-2", company="Initech")]
    assert check_relationship_patterns(["Initech"], others, SETTINGS) == []

    others.append(_disclosure("d-2", person_id="p-3", company="INITECH"))
    conflicts = check_relationship_patterns(["Initech"], others, SETTINGS)

    assert len(conflicts) == 1
    c = conflicts[0]
    assert c.severity == ConflictSeverity.MEDIUM
    assert c.summary.startswith("3 employees")
    assert c.match_details.person_ids == ["p-2", "p-3"]


def test_relationship_pattern_high_with_many_people():
    others = [_disclosure(f"d-{i}", person_id=f"p-{i + 2}", company="Initech") for i in range(5)]
    conflicts = check_relationship_patterns(["Initech"], others, SETTINGS)
    assert conflicts[0].severity == ConflictSeverity.HIGH


def test_relationship_pattern_matches_related_person():
    others = [_disclosure(f"d-{i}", person_id=f"p-{i + 2}", person="John Smith") for i in range(3)]
    conflicts = check_relationship_patterns(["John Smith"], others, SETTINGS)

    assert len(conflicts) == 1
    assert conflicts[0].conflict_type == ConflictType.RELATIONSHIP_PATTERN
    assert conflicts[0].match_confidence == 100
    assert conflicts[0].match_details.person_ids == ["p-2", "p-3", "p-4"]


def test_relationship_pattern_counts_each_row_once_across_fields():
    others = [
        _disclosure("d-1", person_id="p-2", company="Initech", person="Initech"),
        _disclosure("d-2", person_id="p-3", person="initech"),
    ]
    conflicts = check_relationship_patterns(["Initech"], others, SETTINGS)
    assert conflicts[0].match_details.prior_disclosure_ids == ["d-1", "d-2"]
