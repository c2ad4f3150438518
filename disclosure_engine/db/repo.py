"""Repository functions."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from sqlalchemy import func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from disclosure_engine.contracts import (
    AlertQuery,
    ConflictAlert,
    ConflictExclusion,
    ThresholdRule,
    ThresholdTriggerLog,
)
from disclosure_engine.db.models import (
    CaseSubject,
    ConflictAlertRecord,
    ConflictExclusionRecord,
    Disclosure,
    Employee,
    ThresholdRuleRecord,
    ThresholdTriggerLogRecord,
)
from disclosure_engine.db.session import get_session
from disclosure_engine.errors import InvalidStateError


def _coerce_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _row_dict(record: Any) -> Dict[str, Any]:
    """Column values of an ORM record; datetimes come back as aware UTC."""
    out: Dict[str, Any] = {}
    for column in record.__table__.columns:
        value = getattr(record, column.key)
        if isinstance(value, datetime):
            value = _coerce_utc(value)
        out[column.key] = value
    return out


def _insert(session: Session, model: Any):
    if session.get_bind().dialect.name == "sqlite":
        return sqlite_insert(model)
    return pg_insert(model)


def _capped(rows: Sequence[Any], cap: int) -> Tuple[List[Dict[str, Any]], bool]:
    """Queries fetch cap + 1 rows; the extra row only signals that the cap was hit."""
    capped = len(rows) > cap
    return [_row_dict(r) for r in rows[:cap]], capped


# ---------------------------------------------------------------------------
# Collaborator data
# ---------------------------------------------------------------------------


def insert_disclosure(values: Mapping[str, Any]) -> Dict[str, Any]:
    with get_session() as session:
        data = dict(values)
        if "created_at" in data:
            data["created_at"] = _coerce_utc(data["created_at"])
        record = Disclosure(**data)
        session.add(record)
        session.commit()
        return _row_dict(record)


def insert_employee(values: Mapping[str, Any]) -> Dict[str, Any]:
    with get_session() as session:
        record = Employee(**values)
        session.add(record)
        session.commit()
        return _row_dict(record)


def insert_case_subject(values: Mapping[str, Any]) -> Dict[str, Any]:
    with get_session() as session:
        record = CaseSubject(**values)
        session.add(record)
        session.commit()
        return _row_dict(record)


def get_disclosure(disclosure_id: str, organization_id: str) -> Optional[Dict[str, Any]]:
    with get_session() as session:
        record = session.execute(
            select(Disclosure).where(
                Disclosure.id == disclosure_id,
                Disclosure.organization_id == organization_id,
            )
        ).scalar_one_or_none()
        return _row_dict(record) if record is not None else None


def load_person_disclosures(
    organization_id: str, person_id: str, exclude_disclosure_id: str, cap: int
) -> Tuple[List[Dict[str, Any]], bool]:
    """The person's other disclosures that name a company or a person."""
    with get_session() as session:
        rows = session.execute(
            select(Disclosure)
            .where(
                Disclosure.organization_id == organization_id,
                Disclosure.person_id == person_id,
                Disclosure.id != exclude_disclosure_id,
                or_(Disclosure.related_company.is_not(None), Disclosure.related_person.is_not(None)),
            )
            .order_by(Disclosure.created_at.desc())
            .limit(cap + 1)
        ).scalars().all()
        return _capped(rows, cap)


def load_other_disclosures(
    organization_id: str, person_id: str, cap: int
) -> Tuple[List[Dict[str, Any]], bool]:
    """Disclosures by anyone except `person_id` that name a company or a person."""
    with get_session() as session:
        rows = session.execute(
            select(Disclosure)
            .where(
                Disclosure.organization_id == organization_id,
                Disclosure.person_id != person_id,
                or_(Disclosure.related_company.is_not(None), Disclosure.related_person.is_not(None)),
            )
            .order_by(Disclosure.created_at.desc())
            .limit(cap + 1)
        ).scalars().all()
        return _capped(rows, cap)


def load_active_employees(organization_id: str, cap: int) -> Tuple[List[Dict[str, Any]], bool]:
    with get_session() as session:
        rows = session.execute(
            select(Employee)
            .where(Employee.organization_id == organization_id, Employee.is_active.is_(True))
            .order_by(Employee.full_name)
            .limit(cap + 1)
        ).scalars().all()
        return _capped(rows, cap)


def load_case_subjects(organization_id: str, cap: int) -> Tuple[List[Dict[str, Any]], bool]:
    with get_session() as session:
        rows = session.execute(
            select(CaseSubject)
            .where(CaseSubject.organization_id == organization_id)
            .order_by(CaseSubject.created_at.desc())
            .limit(cap + 1)
        ).scalars().all()
        return _capped(rows, cap)


def load_disclosure_history(
    organization_id: str,
    *,
    window_start: datetime,
    window_end: datetime,
    exclude_disclosure_id: Optional[str],
    cap: int,
    person_id: Optional[str] = None,
    entity: Optional[str] = None,
    disclosure_type: Optional[str] = None,
) -> Tuple[List[Dict[str, Any]], bool]:
    """Disclosures inside [window_start, window_end] narrowed by the given dimensions."""
    stmt = select(Disclosure).where(
        Disclosure.organization_id == organization_id,
        Disclosure.created_at >= _coerce_utc(window_start),
        Disclosure.created_at <= _coerce_utc(window_end),
    )
    if exclude_disclosure_id:
        stmt = stmt.where(Disclosure.id != exclude_disclosure_id)
    if person_id is not None:
        stmt = stmt.where(Disclosure.person_id == person_id)
    if entity is not None:
        stmt = stmt.where(Disclosure.related_company.icontains(entity, autoescape=True))
    if disclosure_type is not None:
        stmt = stmt.where(Disclosure.disclosure_type == disclosure_type)

    with get_session() as session:
        rows = session.execute(
            stmt.order_by(Disclosure.created_at.desc()).limit(cap + 1)
        ).scalars().all()
        return _capped(rows, cap)


def load_disclosures_for_types(
    organization_id: str, disclosure_types: Iterable[str], since: Optional[datetime], cap: int
) -> Tuple[List[Dict[str, Any]], bool]:
    """Oldest first, so retroactive runs replay history in order."""
    stmt = select(Disclosure).where(
        Disclosure.organization_id == organization_id,
        Disclosure.disclosure_type.in_(list(disclosure_types)),
    )
    if since is not None:
        stmt = stmt.where(Disclosure.created_at >= _coerce_utc(since))
    with get_session() as session:
        rows = session.execute(stmt.order_by(Disclosure.created_at.asc()).limit(cap + 1)).scalars().all()
        return _capped(rows, cap)


def find_disclosures_mentioning(organization_id: str, name: str, cap: int) -> List[Dict[str, Any]]:
    with get_session() as session:
        rows = session.execute(
            select(Disclosure)
            .where(
                Disclosure.organization_id == organization_id,
                or_(
                    Disclosure.related_company.icontains(name, autoescape=True),
                    Disclosure.related_person.icontains(name, autoescape=True),
                ),
            )
            .order_by(Disclosure.created_at.desc())
            .limit(cap)
        ).scalars().all()
        return [_row_dict(r) for r in rows]


def find_case_subjects_named(organization_id: str, name: str, cap: int) -> List[Dict[str, Any]]:
    with get_session() as session:
        rows = session.execute(
            select(CaseSubject)
            .where(
                CaseSubject.organization_id == organization_id,
                CaseSubject.external_name.icontains(name, autoescape=True),
            )
            .order_by(CaseSubject.created_at.desc())
            .limit(cap)
        ).scalars().all()
        return [_row_dict(r) for r in rows]


# ---------------------------------------------------------------------------
# Conflict alerts
# ---------------------------------------------------------------------------


def _alert(record: ConflictAlertRecord) -> ConflictAlert:
    return ConflictAlert.model_validate(_row_dict(record))


def insert_alerts(rows: Sequence[Mapping[str, Any]]) -> List[ConflictAlert]:
    """
    Insert alerts idempotently (unique on alert_key).

    Returns the stored alert for every key, whether it was inserted now or by
    an earlier evaluation of the same disclosure.
    """
    if not rows:
        return []
    now = _utcnow()
    with get_session() as session:
        for row in rows:
            values = {"created_at": now, "updated_at": now, **row}
            stmt = (
                _insert(session, ConflictAlertRecord)
                .values(**values)
                .on_conflict_do_nothing(index_elements=[ConflictAlertRecord.alert_key])
            )
            session.execute(stmt)
        session.commit()

        keys = [r["alert_key"] for r in rows]
        stored = session.execute(
            select(ConflictAlertRecord).where(ConflictAlertRecord.alert_key.in_(keys))
        ).scalars().all()
        by_key = {r.alert_key: r for r in stored}
        return [_alert(by_key[k]) for k in keys if k in by_key]


def get_alert(alert_id: str, organization_id: str) -> Optional[ConflictAlert]:
    with get_session() as session:
        record = session.execute(
            select(ConflictAlertRecord).where(
                ConflictAlertRecord.id == alert_id,
                ConflictAlertRecord.organization_id == organization_id,
            )
        ).scalar_one_or_none()
        return _alert(record) if record is not None else None


def transition_alert(
    alert_id: str,
    organization_id: str,
    from_statuses: Sequence[str],
    values: Mapping[str, Any],
) -> Optional[ConflictAlert]:
    """
    Conditional status change: applies `values` only while the alert is still in
    one of `from_statuses`. Returns None when another writer got there first.
    """
    with get_session() as session:
        result = session.execute(
            update(ConflictAlertRecord)
            .where(
                ConflictAlertRecord.id == alert_id,
                ConflictAlertRecord.organization_id == organization_id,
                ConflictAlertRecord.status.in_(list(from_statuses)),
            )
            .values(**values, updated_at=_utcnow())
        )
        if (result.rowcount or 0) == 0:
            session.rollback()
            return None
        session.commit()
        record = session.get(ConflictAlertRecord, alert_id)
        return _alert(record) if record is not None else None


def dismiss_alert_with_exclusion(
    alert_id: str,
    organization_id: str,
    alert_values: Mapping[str, Any],
    exclusion_values: Mapping[str, Any],
) -> Optional[Tuple[ConflictAlert, ConflictExclusion]]:
    """Create the exclusion and dismiss the alert in one transaction."""
    with get_session() as session:
        exclusion = ConflictExclusionRecord(**exclusion_values)
        session.add(exclusion)
        try:
            session.flush()
        except IntegrityError as exc:
            session.rollback()
            raise InvalidStateError(
                "an active exclusion already exists for this person, entity and conflict type"
            ) from exc

        result = session.execute(
            update(ConflictAlertRecord)
            .where(
                ConflictAlertRecord.id == alert_id,
                ConflictAlertRecord.organization_id == organization_id,
                ConflictAlertRecord.status == "OPEN",
            )
            .values(**alert_values, exclusion_id=exclusion.id, updated_at=_utcnow())
        )
        if (result.rowcount or 0) == 0:
            session.rollback()
            return None
        session.commit()
        record = session.get(ConflictAlertRecord, alert_id)
        return _alert(record), ConflictExclusion.model_validate(_row_dict(exclusion))


def query_alerts(organization_id: str, query: AlertQuery) -> Tuple[List[ConflictAlert], int]:
    stmt = select(ConflictAlertRecord).where(ConflictAlertRecord.organization_id == organization_id)
    if query.status:
        stmt = stmt.where(ConflictAlertRecord.status.in_([s.value for s in query.status]))
    if query.conflict_type:
        stmt = stmt.where(ConflictAlertRecord.conflict_type.in_([t.value for t in query.conflict_type]))
    if query.severity:
        stmt = stmt.where(ConflictAlertRecord.severity.in_([s.value for s in query.severity]))
    if query.disclosure_id:
        stmt = stmt.where(ConflictAlertRecord.disclosure_id == query.disclosure_id)
    if query.matched_entity:
        stmt = stmt.where(ConflictAlertRecord.matched_entity.icontains(query.matched_entity, autoescape=True))
    if query.min_confidence is not None:
        stmt = stmt.where(ConflictAlertRecord.match_confidence >= query.min_confidence)
    if query.start_date is not None:
        stmt = stmt.where(ConflictAlertRecord.created_at >= _coerce_utc(query.start_date))
    if query.end_date is not None:
        stmt = stmt.where(ConflictAlertRecord.created_at <= _coerce_utc(query.end_date))

    with get_session() as session:
        total = session.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
        rows = session.execute(
            stmt.order_by(ConflictAlertRecord.created_at.desc(), ConflictAlertRecord.id)
            .offset((query.page - 1) * query.page_size)
            .limit(query.page_size)
        ).scalars().all()
        return [_alert(r) for r in rows], int(total)


def find_alerts_mentioning(organization_id: str, name: str, cap: int) -> List[ConflictAlert]:
    with get_session() as session:
        rows = session.execute(
            select(ConflictAlertRecord)
            .where(
                ConflictAlertRecord.organization_id == organization_id,
                ConflictAlertRecord.matched_entity.icontains(name, autoescape=True),
            )
            .order_by(ConflictAlertRecord.created_at.desc())
            .limit(cap)
        ).scalars().all()
        return [_alert(r) for r in rows]


def load_alert_rows(since: datetime, organization_id: Optional[str] = None) -> List[Dict[str, Any]]:
    stmt = select(ConflictAlertRecord).where(ConflictAlertRecord.created_at >= _coerce_utc(since))
    if organization_id:
        stmt = stmt.where(ConflictAlertRecord.organization_id == organization_id)
    with get_session() as session:
        return [_row_dict(r) for r in session.execute(stmt).scalars().all()]


# ---------------------------------------------------------------------------
# Exclusions
# ---------------------------------------------------------------------------


def _exclusion(record: ConflictExclusionRecord) -> ConflictExclusion:
    return ConflictExclusion.model_validate(_row_dict(record))


def find_active_exclusion(
    organization_id: str, person_id: str, entity_key: str, conflict_type: str
) -> Optional[ConflictExclusion]:
    with get_session() as session:
        record = session.execute(
            select(ConflictExclusionRecord).where(
                ConflictExclusionRecord.organization_id == organization_id,
                ConflictExclusionRecord.person_id == person_id,
                ConflictExclusionRecord.entity_key == entity_key,
                ConflictExclusionRecord.conflict_type == conflict_type,
                ConflictExclusionRecord.is_active.is_(True),
            )
        ).scalar_one_or_none()
        return _exclusion(record) if record is not None else None


def load_active_exclusions(
    organization_id: str, person_id: str, conflict_type: str
) -> List[ConflictExclusion]:
    """Active-flagged exclusions for the pair; expiry is checked by the caller."""
    with get_session() as session:
        rows = session.execute(
            select(ConflictExclusionRecord)
            .where(
                ConflictExclusionRecord.organization_id == organization_id,
                ConflictExclusionRecord.person_id == person_id,
                ConflictExclusionRecord.conflict_type == conflict_type,
                ConflictExclusionRecord.is_active.is_(True),
            )
            .order_by(ConflictExclusionRecord.created_at.asc())
        ).scalars().all()
        return [_exclusion(r) for r in rows]


def insert_exclusion(values: Mapping[str, Any]) -> Optional[ConflictExclusion]:
    """Insert an exclusion; None when the active-uniqueness index rejects it."""
    with get_session() as session:
        record = ConflictExclusionRecord(**values)
        session.add(record)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            return None
        return _exclusion(record)


def get_exclusion(exclusion_id: str, organization_id: str) -> Optional[ConflictExclusion]:
    with get_session() as session:
        record = session.execute(
            select(ConflictExclusionRecord).where(
                ConflictExclusionRecord.id == exclusion_id,
                ConflictExclusionRecord.organization_id == organization_id,
            )
        ).scalar_one_or_none()
        return _exclusion(record) if record is not None else None


def deactivate_exclusion_if_active(exclusion_id: str) -> bool:
    """Flip is_active off; False when it was already inactive (someone else used it)."""
    with get_session() as session:
        result = session.execute(
            update(ConflictExclusionRecord)
            .where(
                ConflictExclusionRecord.id == exclusion_id,
                ConflictExclusionRecord.is_active.is_(True),
            )
            .values(is_active=False, updated_at=_utcnow())
        )
        session.commit()
        return (result.rowcount or 0) > 0


def query_exclusions(
    organization_id: str,
    *,
    active_only: bool,
    page: int,
    page_size: int,
    person_id: Optional[str] = None,
) -> Tuple[List[ConflictExclusion], int]:
    stmt = select(ConflictExclusionRecord).where(ConflictExclusionRecord.organization_id == organization_id)
    if active_only:
        stmt = stmt.where(ConflictExclusionRecord.is_active.is_(True))
    if person_id:
        stmt = stmt.where(ConflictExclusionRecord.person_id == person_id)
    with get_session() as session:
        total = session.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
        rows = session.execute(
            stmt.order_by(ConflictExclusionRecord.created_at.desc(), ConflictExclusionRecord.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).scalars().all()
        return [_exclusion(r) for r in rows], int(total)


def find_exclusions_mentioning(organization_id: str, name: str, cap: int) -> List[ConflictExclusion]:
    with get_session() as session:
        rows = session.execute(
            select(ConflictExclusionRecord)
            .where(
                ConflictExclusionRecord.organization_id == organization_id,
                ConflictExclusionRecord.matched_entity.icontains(name, autoescape=True),
            )
            .order_by(ConflictExclusionRecord.created_at.desc())
            .limit(cap)
        ).scalars().all()
        return [_exclusion(r) for r in rows]


def load_active_exclusion_rows(organization_id: Optional[str] = None) -> List[Dict[str, Any]]:
    stmt = select(ConflictExclusionRecord).where(ConflictExclusionRecord.is_active.is_(True))
    if organization_id:
        stmt = stmt.where(ConflictExclusionRecord.organization_id == organization_id)
    with get_session() as session:
        return [_row_dict(r) for r in session.execute(stmt).scalars().all()]


# ---------------------------------------------------------------------------
# Threshold rules
# ---------------------------------------------------------------------------


def _rule(record: ThresholdRuleRecord) -> ThresholdRule:
    return ThresholdRule.model_validate(_row_dict(record))


def insert_rule(values: Mapping[str, Any]) -> ThresholdRule:
    with get_session() as session:
        record = ThresholdRuleRecord(**values)
        session.add(record)
        session.commit()
        return _rule(record)


def get_rule(rule_id: str, organization_id: str) -> Optional[ThresholdRule]:
    with get_session() as session:
        record = session.execute(
            select(ThresholdRuleRecord).where(
                ThresholdRuleRecord.id == rule_id,
                ThresholdRuleRecord.organization_id == organization_id,
            )
        ).scalar_one_or_none()
        return _rule(record) if record is not None else None


def update_rule(rule_id: str, organization_id: str, values: Mapping[str, Any]) -> Optional[ThresholdRule]:
    with get_session() as session:
        record = session.execute(
            select(ThresholdRuleRecord).where(
                ThresholdRuleRecord.id == rule_id,
                ThresholdRuleRecord.organization_id == organization_id,
            )
        ).scalar_one_or_none()
        if record is None:
            return None
        for key, value in values.items():
            setattr(record, key, value)
        session.commit()
        return _rule(record)


def delete_rule(rule_id: str, organization_id: str) -> bool:
    with get_session() as session:
        record = session.execute(
            select(ThresholdRuleRecord).where(
                ThresholdRuleRecord.id == rule_id,
                ThresholdRuleRecord.organization_id == organization_id,
            )
        ).scalar_one_or_none()
        if record is None:
            return False
        session.delete(record)
        session.commit()
        return True


def list_rules(
    organization_id: str, *, active_only: bool = False, disclosure_type: Optional[str] = None
) -> List[ThresholdRule]:
    stmt = select(ThresholdRuleRecord).where(ThresholdRuleRecord.organization_id == organization_id)
    if active_only:
        stmt = stmt.where(ThresholdRuleRecord.is_active.is_(True))
    with get_session() as session:
        rows = session.execute(
            stmt.order_by(ThresholdRuleRecord.priority.desc(), ThresholdRuleRecord.created_at)
        ).scalars().all()
        rules = [_rule(r) for r in rows]
    if disclosure_type is not None:
        rules = [r for r in rules if disclosure_type in r.disclosure_types]
    return rules


def load_active_rule_rows(organization_id: str, disclosure_type: str) -> List[Dict[str, Any]]:
    """
    Raw active rules for a disclosure type, highest priority first.

    Returned unparsed so one malformed stored rule can be skipped by the
    orchestrator without hiding the rest.
    """
    with get_session() as session:
        rows = session.execute(
            select(ThresholdRuleRecord)
            .where(
                ThresholdRuleRecord.organization_id == organization_id,
                ThresholdRuleRecord.is_active.is_(True),
            )
            .order_by(ThresholdRuleRecord.priority.desc(), ThresholdRuleRecord.created_at)
        ).scalars().all()
        out = [_row_dict(r) for r in rows]
    return [r for r in out if disclosure_type in (r.get("disclosure_types") or [])]


# ---------------------------------------------------------------------------
# Trigger logs
# ---------------------------------------------------------------------------


def _trigger_log(record: ThresholdTriggerLogRecord) -> ThresholdTriggerLog:
    return ThresholdTriggerLog.model_validate(_row_dict(record))


def insert_trigger_logs(rows: Sequence[Mapping[str, Any]]) -> List[ThresholdTriggerLog]:
    """Insert trigger logs idempotently (unique on trigger_key); returns the stored rows."""
    if not rows:
        return []
    now = _utcnow()
    with get_session() as session:
        for row in rows:
            values = {"triggered_at": now, **row}
            stmt = (
                _insert(session, ThresholdTriggerLogRecord)
                .values(**values)
                .on_conflict_do_nothing(index_elements=[ThresholdTriggerLogRecord.trigger_key])
            )
            session.execute(stmt)
        session.commit()

        keys = [r["trigger_key"] for r in rows]
        stored = session.execute(
            select(ThresholdTriggerLogRecord).where(ThresholdTriggerLogRecord.trigger_key.in_(keys))
        ).scalars().all()
        by_key = {r.trigger_key: r for r in stored}
        return [_trigger_log(by_key[k]) for k in keys if k in by_key]


def triggered_disclosure_ids(rule_id: str) -> Set[str]:
    with get_session() as session:
        rows = session.execute(
            select(ThresholdTriggerLogRecord.disclosure_id).where(ThresholdTriggerLogRecord.rule_id == rule_id)
        ).scalars().all()
        return set(rows)


def list_trigger_logs(
    organization_id: str, *, rule_id: Optional[str] = None, disclosure_id: Optional[str] = None
) -> List[ThresholdTriggerLog]:
    stmt = select(ThresholdTriggerLogRecord).where(ThresholdTriggerLogRecord.organization_id == organization_id)
    if rule_id:
        stmt = stmt.where(ThresholdTriggerLogRecord.rule_id == rule_id)
    if disclosure_id:
        stmt = stmt.where(ThresholdTriggerLogRecord.disclosure_id == disclosure_id)
    with get_session() as session:
        rows = session.execute(stmt.order_by(ThresholdTriggerLogRecord.triggered_at.desc())).scalars().all()
        return [_trigger_log(r) for r in rows]


def load_trigger_log_rows(since: datetime, organization_id: Optional[str] = None) -> List[Dict[str, Any]]:
    stmt = select(ThresholdTriggerLogRecord).where(ThresholdTriggerLogRecord.triggered_at >= _coerce_utc(since))
    if organization_id:
        stmt = stmt.where(ThresholdTriggerLogRecord.organization_id == organization_id)
    with get_session() as session:
        return [_row_dict(r) for r in session.execute(stmt).scalars().all()]
