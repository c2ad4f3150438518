from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from disclosure_engine.contracts import (
    ConflictExclusion,
    ConflictType,
    CreateExclusionRequest,
    ExclusionCheck,
    ExclusionPage,
    ExclusionScope,
)
from disclosure_engine.db import repo
from disclosure_engine.errors import InvalidStateError, NotFoundError
from disclosure_engine.similarity import normalize, score

logger = logging.getLogger(__name__)

DEFAULT_EXCLUSION_MATCH_BAR = 90


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def is_excluded(
    person_id: str,
    matched_entity: str,
    conflict_type: ConflictType,
    organization_id: str,
    *,
    match_bar: int = DEFAULT_EXCLUSION_MATCH_BAR,
    now: Optional[datetime] = None,
) -> ExclusionCheck:
    """
    Look for an in-force exclusion that covers this candidate.

    The stored entity must score at least `match_bar` against the candidate.
    A ONE_TIME exclusion is consumed here: it only suppresses if this call is
    the one that flips it inactive.
    """
    now = now or _now_utc()
    for exclusion in repo.load_active_exclusions(organization_id, person_id, str(conflict_type)):
        if not exclusion.in_force(now):
            continue
        if score(exclusion.matched_entity, matched_entity) < match_bar:
            continue
        if exclusion.scope == ExclusionScope.ONE_TIME:
            if not repo.deactivate_exclusion_if_active(exclusion.id):
                continue
            logger.info(f"One-time exclusion {exclusion.id} consumed for {person_id}/{matched_entity}")
        return ExclusionCheck(excluded=True, exclusion_id=exclusion.id)
    return ExclusionCheck(excluded=False)


def build_exclusion_values(
    organization_id: str,
    request: CreateExclusionRequest,
    *,
    created_by: Optional[str] = None,
    created_from_alert_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or _now_utc()
    if request.scope == ExclusionScope.TIME_LIMITED and request.expires_at is not None:
        if request.expires_at <= now:
            raise InvalidStateError("TIME_LIMITED exclusion expiry must be in the future")

    matched_entity = request.matched_entity.strip()
    return {
        "organization_id": organization_id,
        "person_id": request.person_id,
        "matched_entity": matched_entity,
        "entity_key": normalize(matched_entity),
        "conflict_type": str(request.conflict_type),
        "reason": request.reason,
        "notes": request.notes,
        "scope": str(request.scope),
        "expires_at": request.expires_at,
        "is_active": True,
        "created_by": created_by,
        "created_from_alert_id": created_from_alert_id,
    }


def create_exclusion(
    organization_id: str,
    request: CreateExclusionRequest,
    *,
    created_by: Optional[str] = None,
    created_from_alert_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ConflictExclusion:
    values = build_exclusion_values(
        organization_id,
        request,
        created_by=created_by,
        created_from_alert_id=created_from_alert_id,
        now=now,
    )

    existing = repo.find_active_exclusion(
        organization_id, values["person_id"], values["entity_key"], values["conflict_type"]
    )
    if existing is not None:
        raise InvalidStateError(f"an active exclusion already exists for this combination ({existing.id})")

    created = repo.insert_exclusion(values)
    if created is None:
        # lost a race with a concurrent create for the same tuple
        raise InvalidStateError("an active exclusion already exists for this combination")

    logger.info(
        f"Created {created.scope} exclusion {created.id} for {created.person_id}/"
        f"{created.matched_entity} ({created.conflict_type})"
    )
    return created


def deactivate_exclusion(exclusion_id: str, organization_id: str) -> ConflictExclusion:
    exclusion = repo.get_exclusion(exclusion_id, organization_id)
    if exclusion is None:
        raise NotFoundError(f"exclusion {exclusion_id} not found")
    if not exclusion.is_active or not repo.deactivate_exclusion_if_active(exclusion_id):
        raise InvalidStateError(f"exclusion {exclusion_id} is already inactive")
    return exclusion.model_copy(update={"is_active": False})


def list_exclusions(
    organization_id: str,
    *,
    active_only: bool = True,
    person_id: Optional[str] = None,
    page: int = 1,
    page_size: int = 20,
) -> ExclusionPage:
    page = max(page, 1)
    page_size = min(max(page_size, 1), 100)
    items, total = repo.query_exclusions(
        organization_id, active_only=active_only, page=page, page_size=page_size, person_id=person_id
    )
    return ExclusionPage(items=items, total=total, page=page, page_size=page_size)
