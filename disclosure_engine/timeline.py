from __future__ import annotations

from typing import List, Optional

from disclosure_engine.contracts import (
    ConflictStatus,
    EntityTimeline,
    TimelineEvent,
    TimelineEventType,
    TimelineStatistics,
)
from disclosure_engine.db import repo
from disclosure_engine.errors import InvalidRequestError
from disclosure_engine.settings import EvaluationSettings, load_settings


def _amount(row) -> str:
    if row.get("disclosure_value") is None:
        return ""
    currency = f" {row['currency']}" if row.get("currency") else ""
    return f" ({row['disclosure_value']:.2f}{currency})"


def get_entity_timeline(
    entity_name: str,
    organization_id: str,
    *,
    settings: Optional[EvaluationSettings] = None,
) -> EntityTimeline:
    """
    Everything the organization knows about one external entity, newest first:
    disclosures naming it, conflict alerts matched to it (plus their review
    outcome) and case involvement of a subject with that name.
    """
    name = entity_name.strip()
    if not name:
        raise InvalidRequestError("entity name must not be empty")
    settings = settings or load_settings()
    cap = settings.scan_caps.disclosures

    events: List[TimelineEvent] = []
    persons = set()

    disclosures = repo.find_disclosures_mentioning(organization_id, name, cap)
    for d in disclosures:
        persons.add(d["person_id"])
        events.append(
            TimelineEvent(
                event_type=TimelineEventType.DISCLOSURE_SUBMITTED,
                occurred_at=d["created_at"],
                description=f"{d['disclosure_type']} disclosure naming {d.get('related_company') or d.get('related_person')}{_amount(d)}",
                disclosure_id=d["id"],
                person_id=d["person_id"],
            )
        )

    alerts = repo.find_alerts_mentioning(organization_id, name, cap)
    for a in alerts:
        events.append(
            TimelineEvent(
                event_type=TimelineEventType.CONFLICT_DETECTED,
                occurred_at=a.created_at,
                description=f"{a.severity} {a.conflict_type} conflict: {a.summary}",
                disclosure_id=a.disclosure_id,
                conflict_alert_id=a.id,
            )
        )
        if a.dismissed_at is not None:
            events.append(
                TimelineEvent(
                    event_type=TimelineEventType.CONFLICT_DISMISSED,
                    occurred_at=a.dismissed_at,
                    description=f"Conflict dismissed ({a.dismissed_category}): {a.dismissed_reason}",
                    disclosure_id=a.disclosure_id,
                    conflict_alert_id=a.id,
                )
            )
        if a.escalated_to_case_id is not None:
            events.append(
                TimelineEvent(
                    event_type=TimelineEventType.CONFLICT_ESCALATED,
                    occurred_at=a.escalated_at or a.created_at,
                    description=f"Conflict escalated to case {a.escalated_to_case_id}",
                    disclosure_id=a.disclosure_id,
                    conflict_alert_id=a.id,
                    case_id=a.escalated_to_case_id,
                )
            )
        if a.status == ConflictStatus.RESOLVED and a.resolved_at is not None:
            events.append(
                TimelineEvent(
                    event_type=TimelineEventType.CONFLICT_RESOLVED,
                    occurred_at=a.resolved_at,
                    description="Conflict resolved",
                    disclosure_id=a.disclosure_id,
                    conflict_alert_id=a.id,
                )
            )

    subjects = repo.find_case_subjects_named(organization_id, name, cap)
    case_ids = set()
    for s in subjects:
        case_ids.add(s["case_id"])
        role = s.get("role") or "subject"
        events.append(
            TimelineEvent(
                event_type=TimelineEventType.CASE_INVOLVEMENT,
                occurred_at=s["created_at"],
                description=f"{s['external_name']} named as {role} in case {s.get('case_reference') or s['case_id']}",
                case_id=s["case_id"],
            )
        )

    for x in repo.find_exclusions_mentioning(organization_id, name, cap):
        persons.add(x.person_id)
        events.append(
            TimelineEvent(
                event_type=TimelineEventType.EXCLUSION_CREATED,
                occurred_at=x.created_at,
                description=f"{x.scope} exclusion for {x.conflict_type}: {x.reason}",
                conflict_alert_id=x.created_from_alert_id,
                person_id=x.person_id,
            )
        )

    events.sort(key=lambda e: e.occurred_at, reverse=True)
    stats = TimelineStatistics(
        total_disclosures=len(disclosures),
        total_conflicts=len(alerts),
        total_cases=len(case_ids),
        unique_persons=len(persons),
        earliest=events[-1].occurred_at if events else None,
        latest=events[0].occurred_at if events else None,
    )
    return EntityTimeline(entity_name=name, total_events=len(events), events=events, statistics=stats)
