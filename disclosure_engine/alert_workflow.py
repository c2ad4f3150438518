"""
Alert lifecycle and queries.

    OPEN -> DISMISSED | ESCALATED
    DISMISSED | ESCALATED -> RESOLVED

Every other transition is rejected. Transitions are conditional updates, so
two reviewers acting on the same alert cannot both succeed.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Optional

from disclosure_engine.contracts import (
    AlertPage,
    AlertQuery,
    ConflictAlert,
    ConflictStatus,
    CreateExclusionRequest,
    DismissAlertRequest,
)
from disclosure_engine.db import repo
from disclosure_engine.errors import InvalidStateError, NotFoundError
from disclosure_engine.exclusions import build_exclusion_values

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def get_alert(alert_id: str, organization_id: str) -> ConflictAlert:
    alert = repo.get_alert(alert_id, organization_id)
    if alert is None:
        raise NotFoundError(f"conflict alert {alert_id} not found")
    return alert


def list_alerts(organization_id: str, query: Optional[AlertQuery] = None) -> AlertPage:
    query = query or AlertQuery()
    items, total = repo.query_alerts(organization_id, query)
    total_pages = math.ceil(total / query.page_size) if total else 0
    return AlertPage(
        items=items,
        total=total,
        page=query.page,
        page_size=query.page_size,
        total_pages=total_pages,
        has_more=query.page < total_pages,
    )


def _require_status(alert: ConflictAlert, *allowed: ConflictStatus) -> None:
    if alert.status not in allowed:
        wanted = " or ".join(str(s) for s in allowed)
        raise InvalidStateError(f"conflict alert {alert.id} is {alert.status}, expected {wanted}")


def dismiss_alert(
    alert_id: str,
    organization_id: str,
    request: DismissAlertRequest,
    dismissed_by: str,
) -> ConflictAlert:
    """
    Dismiss an OPEN alert with a categorized reason. Optionally records an
    exclusion for the disclosing person so the same match stops alerting.
    """
    alert = get_alert(alert_id, organization_id)
    _require_status(alert, ConflictStatus.OPEN)
    now = _now_utc()

    values = {
        "status": str(ConflictStatus.DISMISSED),
        "dismissed_category": str(request.category),
        "dismissed_reason": request.reason,
        "dismissed_by": dismissed_by,
        "dismissed_at": now,
    }

    if not request.create_exclusion:
        updated = repo.transition_alert(alert_id, organization_id, [str(ConflictStatus.OPEN)], values)
        if updated is None:
            raise InvalidStateError(f"conflict alert {alert_id} changed state during dismissal")
        logger.info(f"Dismissed conflict alert {alert_id} ({request.category})")
        return updated

    disclosure = repo.get_disclosure(alert.disclosure_id, organization_id)
    if disclosure is None:
        raise NotFoundError(f"disclosure {alert.disclosure_id} not found")

    exclusion_request = CreateExclusionRequest(
        person_id=disclosure["person_id"],
        matched_entity=alert.matched_entity,
        conflict_type=alert.conflict_type,
        reason=request.reason,
        notes=request.exclusion_notes,
        scope=request.exclusion_scope,
        expires_at=request.exclusion_expires_at,
    )
    exclusion_values = build_exclusion_values(
        organization_id,
        exclusion_request,
        created_by=dismissed_by,
        created_from_alert_id=alert_id,
        now=now,
    )
    outcome = repo.dismiss_alert_with_exclusion(alert_id, organization_id, values, exclusion_values)
    if outcome is None:
        raise InvalidStateError(f"conflict alert {alert_id} changed state during dismissal")

    updated, exclusion = outcome
    logger.info(f"Dismissed conflict alert {alert_id} ({request.category}) with {exclusion.scope} exclusion {exclusion.id}")
    return updated


def escalate_alert(
    alert_id: str,
    organization_id: str,
    case_id: str,
    notes: Optional[str] = None,
) -> ConflictAlert:
    """Mark an OPEN alert as escalated to a case created by the case collaborator."""
    alert = get_alert(alert_id, organization_id)
    _require_status(alert, ConflictStatus.OPEN)
    updated = repo.transition_alert(
        alert_id,
        organization_id,
        [str(ConflictStatus.OPEN)],
        {
            "status": str(ConflictStatus.ESCALATED),
            "escalated_to_case_id": case_id,
            "escalated_at": _now_utc(),
            "escalation_notes": notes,
        },
    )
    if updated is None:
        raise InvalidStateError(f"conflict alert {alert_id} changed state during escalation")
    logger.info(f"Escalated conflict alert {alert_id} to case {case_id}")
    return updated


def resolve_alert(
    alert_id: str,
    organization_id: str,
    resolved_by: str,
    notes: Optional[str] = None,
) -> ConflictAlert:
    alert = get_alert(alert_id, organization_id)
    allowed = (ConflictStatus.DISMISSED, ConflictStatus.ESCALATED)
    _require_status(alert, *allowed)
    updated = repo.transition_alert(
        alert_id,
        organization_id,
        [str(s) for s in allowed],
        {
            "status": str(ConflictStatus.RESOLVED),
            "resolved_by": resolved_by,
            "resolved_at": _now_utc(),
            "resolution_notes": notes,
        },
    )
    if updated is None:
        raise InvalidStateError(f"conflict alert {alert_id} changed state during resolution")
    return updated
