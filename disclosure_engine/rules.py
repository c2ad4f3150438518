"""Threshold rule management."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from disclosure_engine.contracts import CreateRuleRequest, ThresholdRule, UpdateRuleRequest
from disclosure_engine.db import repo
from disclosure_engine.errors import NotFoundError

logger = logging.getLogger(__name__)

_JSON_FIELDS = ("disclosure_types", "conditions", "aggregate_config", "action_config")


def _rule_values(request: CreateRuleRequest) -> Dict[str, Any]:
    """Column values for a validated rule; condition values are stored JSON-encoded."""
    data = request.model_dump(mode="json")
    values = {k: data[k] for k in _JSON_FIELDS}
    values.update(
        name=request.name,
        description=request.description,
        action=str(request.action),
        apply_mode=str(request.apply_mode),
        apply_from=request.apply_from,
        priority=request.priority,
    )
    return values


def create_rule(organization_id: str, request: CreateRuleRequest, created_by: Optional[str] = None) -> ThresholdRule:
    rule = repo.insert_rule(
        {**_rule_values(request), "organization_id": organization_id, "is_active": True, "created_by": created_by}
    )
    logger.info(f"Created threshold rule {rule.id} '{rule.name}' ({rule.action}, priority {rule.priority})")
    return rule


def get_rule(rule_id: str, organization_id: str) -> ThresholdRule:
    rule = repo.get_rule(rule_id, organization_id)
    if rule is None:
        raise NotFoundError(f"threshold rule {rule_id} not found")
    return rule


def update_rule(rule_id: str, organization_id: str, request: UpdateRuleRequest) -> ThresholdRule:
    existing = get_rule(rule_id, organization_id)
    changes = request.model_dump(exclude_unset=True)
    is_active = changes.pop("is_active", None)

    # re-validate the merged rule so cross-field checks still hold
    merged = CreateRuleRequest.model_validate({**existing.model_dump(), **changes})
    values = _rule_values(merged)
    if is_active is not None:
        values["is_active"] = is_active

    updated = repo.update_rule(rule_id, organization_id, values)
    if updated is None:
        raise NotFoundError(f"threshold rule {rule_id} not found")
    return updated


def deactivate_rule(rule_id: str, organization_id: str) -> ThresholdRule:
    get_rule(rule_id, organization_id)
    updated = repo.update_rule(rule_id, organization_id, {"is_active": False})
    if updated is None:
        raise NotFoundError(f"threshold rule {rule_id} not found")
    logger.info(f"Deactivated threshold rule {rule_id}")
    return updated


def delete_rule(rule_id: str, organization_id: str) -> None:
    """Remove a rule; its trigger logs stay for audit."""
    if not repo.delete_rule(rule_id, organization_id):
        raise NotFoundError(f"threshold rule {rule_id} not found")
    logger.info(f"Deleted threshold rule {rule_id}")


def list_rules(
    organization_id: str, *, active_only: bool = False, disclosure_type: Optional[str] = None
) -> List[ThresholdRule]:
    return repo.list_rules(organization_id, active_only=active_only, disclosure_type=disclosure_type)
