from __future__ import annotations

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from disclosure_engine.contracts import ApplyMode, CreateRuleRequest, ThresholdAction, UpdateRuleRequest
from disclosure_engine.errors import NotFoundError
from disclosure_engine.rules import (
    create_rule,
    deactivate_rule,
    delete_rule,
    get_rule,
    list_rules,
    update_rule,
)


def _request(name="Large gifts", priority=0, **extra):
    data = {
        "name": name,
        "disclosure_types": ["GIFT", "HOSPITALITY"],
        "conditions": [
            {"field": "disclosureValue", "operator": "gte", "value": 500, "conjunction": "AND"},
            {"field": "gift.recipient.country", "operator": "in", "value": ["FR", "DE"]},
        ],
        "action": "FLAG_REVIEW",
        "priority": priority,
    }
    data.update(extra)
    return CreateRuleRequest.model_validate(data)


@pytest.mark.parametrize(
    "overrides",
    [
        {"name": "ab"},
        {"disclosure_types": []},
        {"conditions": []},
        {"priority": 101},
        {"apply_mode": "RETROACTIVE_DATE"},
        {"aggregate_config": {"dimensions": ["department"]}},
    ],
)
def test_invalid_rule_requests(overrides):
    with pytest.raises(ValidationError):
        _request(**overrides)


def test_create_and_get_round_trips_conditions(sqlite_db):
    rule = create_rule(
        "org-1",
        _request(
            aggregate_config={"dimensions": ["person", "category"], "time_window": {"type": "calendar"}},
            action_config={"case_title": "Gift review", "custom_flag": True},
        ),
        created_by="admin",
    )

    stored = get_rule(rule.id, "org-1")
    assert stored.is_active is True
    assert stored.created_by == "admin"
    assert stored.conditions[0].value == 500
    assert stored.conditions[1].value == ["FR", "DE"]
    assert stored.aggregate_config.dimensions == ["person", "category"]
    assert stored.action_config.case_title == "Gift review"
    with pytest.raises(NotFoundError):
        get_rule(rule.id, "org-2")


def test_date_condition_survives_storage(sqlite_db):
    rule = create_rule(
        "org-1",
        _request(conditions=[{"field": "signedAt", "operator": "lt", "value": "2024-01-01T00:00:00Z"}]),
    )
    assert get_rule(rule.id, "org-1").conditions[0].value == datetime(2024, 1, 1, tzinfo=timezone.utc)


def test_update_merges_and_revalidates(sqlite_db):
    rule = create_rule("org-1", _request())

    updated = update_rule(rule.id, "org-1", UpdateRuleRequest(action=ThresholdAction.CREATE_CASE, priority=80))
    assert updated.action == ThresholdAction.CREATE_CASE
    assert updated.priority == 80
    assert updated.name == "Large gifts"
    assert len(updated.conditions) == 2

    with pytest.raises(ValidationError):
        update_rule(rule.id, "org-1", UpdateRuleRequest(apply_mode=ApplyMode.RETROACTIVE_DATE))

    assert update_rule(rule.id, "org-1", UpdateRuleRequest(is_active=False)).is_active is False


def test_list_deactivate_and_delete(sqlite_db):
    low = create_rule("org-1", _request(name="Low priority", priority=5))
    high = create_rule("org-1", _request(name="High priority", priority=90))
    travel = create_rule("org-1", _request(name="Travel only", disclosure_types=["TRAVEL"]))

    assert [r.id for r in list_rules("org-1")] == [high.id, low.id, travel.id]
    assert [r.id for r in list_rules("org-1", disclosure_type="TRAVEL")] == [travel.id]

    deactivate_rule(low.id, "org-1")
    assert [r.id for r in list_rules("org-1", active_only=True)] == [high.id, travel.id]

    delete_rule(travel.id, "org-1")
    with pytest.raises(NotFoundError):
        delete_rule(travel.id, "org-1")
    with pytest.raises(NotFoundError):
        deactivate_rule("missing", "org-1")
