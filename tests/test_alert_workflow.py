from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from disclosure_engine.alert_workflow import (
    dismiss_alert,
    escalate_alert,
    get_alert,
    list_alerts,
    resolve_alert,
)
from disclosure_engine.conflict_detection import detect_conflicts
from disclosure_engine.contracts import (
    AlertQuery,
    ConflictStatus,
    ConflictType,
    CreateExclusionRequest,
    DismissAlertRequest,
)
from disclosure_engine.db import repo
from disclosure_engine.errors import InvalidStateError, NotFoundError
from disclosure_engine.exclusions import create_exclusion, list_exclusions
from disclosure_engine.settings import EvaluationSettings

SETTINGS = EvaluationSettings(max_workers=1)
NOW = datetime.now(timezone.utc)


def _disclosure(person_id, company, days_ago=0, org="org-1"):
    return repo.insert_disclosure(
        {
            "organization_id": org,
            "person_id": person_id,
            "disclosure_type": "OUTSIDE_EMPLOYMENT",
            "related_company": company,
            "created_at": NOW - timedelta(days=days_ago),
        }
    )


def _self_dealing_alert(company="Acme Corp", person_id="p-1"):
    _disclosure(person_id, company, days_ago=90)
    current = _disclosure(person_id, company)
    result = detect_conflicts(current["id"], person_id, "org-1", settings=SETTINGS)
    assert result.conflict_count == 1
    return current, result.conflicts[0]


def _dismissal(**extra):
    return DismissAlertRequest(category="PRE_APPROVED_EXCEPTION", reason="Board approved", **extra)


def test_get_alert_scoped_to_organization(sqlite_db):
    _, alert = _self_dealing_alert()
    assert get_alert(alert.id, "org-1").id == alert.id
    with pytest.raises(NotFoundError):
        get_alert(alert.id, "org-2")


def test_list_alerts_filters_and_pages(sqlite_db):
    for name in ("Acme Corp", "Globex", "Initech"):
        _self_dealing_alert(company=name)

    page = list_alerts("org-1", AlertQuery(page_size=2))
    assert (page.total, page.total_pages, page.has_more, len(page.items)) == (3, 2, True, 2)

    last = list_alerts("org-1", AlertQuery(page=2, page_size=2))
    assert (len(last.items), last.has_more) == (1, False)

    assert list_alerts("org-1", AlertQuery(matched_entity="glob")).total == 1
    assert list_alerts("org-1", AlertQuery(status=[ConflictStatus.DISMISSED])).total == 0
    assert list_alerts("org-1", AlertQuery(conflict_type=[ConflictType.SELF_DEALING])).total == 3
    assert list_alerts("org-2").total == 0


def test_dismiss_open_alert(sqlite_db):
    _, alert = _self_dealing_alert()

    dismissed = dismiss_alert(alert.id, "org-1", _dismissal(), dismissed_by="reviewer-1")

    assert dismissed.status == ConflictStatus.DISMISSED
    assert dismissed.dismissed_by == "reviewer-1"
    assert dismissed.dismissed_reason == "Board approved"
    assert dismissed.dismissed_at is not None
    assert dismissed.exclusion_id is None
    with pytest.raises(InvalidStateError):
        dismiss_alert(alert.id, "org-1", _dismissal(), dismissed_by="reviewer-2")


def test_dismiss_with_exclusion_suppresses_future_alerts(sqlite_db):
    _, alert = _self_dealing_alert()

    dismissed = dismiss_alert(alert.id, "org-1", _dismissal(create_exclusion=True), dismissed_by="reviewer-1")

    assert dismissed.exclusion_id is not None
    exclusions = list_exclusions("org-1").items
    assert [x.id for x in exclusions] == [dismissed.exclusion_id]
    assert exclusions[0].created_from_alert_id == alert.id
    assert exclusions[0].person_id == "p-1"

    newer = _disclosure("p-1", "ACME CORP")
    result = detect_conflicts(newer["id"], "p-1", "org-1", settings=SETTINGS)
    assert result.conflict_count == 0
    assert result.excluded_conflict_count == 1
    assert result.applied_exclusion_ids == [dismissed.exclusion_id]


def test_dismiss_with_duplicate_exclusion_leaves_alert_open(sqlite_db):
    _, alert = _self_dealing_alert()
    create_exclusion(
        "org-1",
        CreateExclusionRequest(
            person_id="p-1",
            matched_entity=alert.matched_entity,
            conflict_type=ConflictType.SELF_DEALING,
            reason="already covered",
            scope="ONE_TIME",
        ),
    )

    with pytest.raises(InvalidStateError):
        dismiss_alert(alert.id, "org-1", _dismissal(create_exclusion=True), dismissed_by="reviewer-1")
    assert get_alert(alert.id, "org-1").status == ConflictStatus.OPEN


def test_escalate_then_resolve(sqlite_db):
    _, alert = _self_dealing_alert()

    escalated = escalate_alert(alert.id, "org-1", "case-42", notes="needs investigation")
    assert escalated.status == ConflictStatus.ESCALATED
    assert escalated.escalated_to_case_id == "case-42"

    with pytest.raises(InvalidStateError):
        dismiss_alert(alert.id, "org-1", _dismissal(), dismissed_by="reviewer-1")

    resolved = resolve_alert(alert.id, "org-1", "reviewer-2", notes="closed with case")
    assert resolved.status == ConflictStatus.RESOLVED
    assert resolved.resolved_by == "reviewer-2"
    assert resolved.resolution_notes == "closed with case"


def test_resolve_requires_review_first(sqlite_db):
    _, alert = _self_dealing_alert()
    with pytest.raises(InvalidStateError):
        resolve_alert(alert.id, "org-1", "reviewer-1")

    dismiss_alert(alert.id, "org-1", _dismissal(), dismissed_by="reviewer-1")
    assert resolve_alert(alert.id, "org-1", "reviewer-1").status == ConflictStatus.RESOLVED
    with pytest.raises(InvalidStateError):
        escalate_alert(alert.id, "org-1", "case-1")
