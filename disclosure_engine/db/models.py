"""SQLAlchemy models."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, Numeric, Text, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")
Money = Numeric(14, 2, asdecimal=False)


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Declarative base for evaluation engine models."""


# ---------------------------------------------------------------------------
# Collaborator data (read by the strategies and the aggregate calculator)
# ---------------------------------------------------------------------------


class Disclosure(Base):
    __tablename__ = "disclosures"
    __table_args__ = (
        Index("ix_disclosures_org_person_created", "organization_id", "person_id", "created_at"),
        Index("ix_disclosures_org_type", "organization_id", "disclosure_type"),
    )

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(Text, nullable=False)
    person_id: Mapped[str] = mapped_column(Text, nullable=False)
    disclosure_type: Mapped[str] = mapped_column(Text, nullable=False)
    related_company: Mapped[str | None] = mapped_column(Text, nullable=True)
    related_person: Mapped[str | None] = mapped_column(Text, nullable=True)
    disclosure_value: Mapped[float | None] = mapped_column(Money, nullable=True)
    currency: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class Employee(Base):
    __tablename__ = "employees"
    __table_args__ = (Index("ix_employees_org_active", "organization_id", "is_active"),)

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(Text, nullable=False)
    person_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    full_name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    department: Mapped[str | None] = mapped_column(Text, nullable=True)
    job_title: Mapped[str | None] = mapped_column(Text, nullable=True)
    manager_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    manager_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class CaseSubject(Base):
    __tablename__ = "case_subjects"
    __table_args__ = (Index("ix_case_subjects_org", "organization_id"),)

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(Text, nullable=False)
    case_id: Mapped[str] = mapped_column(Text, nullable=False)
    case_reference: Mapped[str | None] = mapped_column(Text, nullable=True)
    case_type: Mapped[str | None] = mapped_column(Text, nullable=True)
    case_outcome: Mapped[str | None] = mapped_column(Text, nullable=True)
    external_name: Mapped[str] = mapped_column(Text, nullable=False)
    subject_type: Mapped[str | None] = mapped_column(Text, nullable=True)
    role: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


# ---------------------------------------------------------------------------
# Engine-owned tables
# ---------------------------------------------------------------------------


class ConflictAlertRecord(Base):
    __tablename__ = "conflict_alerts"
    __table_args__ = (
        Index("ix_conflict_alerts_org_status", "organization_id", "status"),
        Index("ix_conflict_alerts_disclosure", "disclosure_id"),
    )

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=_new_id)
    alert_key: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    organization_id: Mapped[str] = mapped_column(Text, nullable=False)
    disclosure_id: Mapped[str] = mapped_column(Text, nullable=False)
    conflict_type: Mapped[str] = mapped_column(Text, nullable=False)
    severity: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="OPEN")
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    matched_entity: Mapped[str] = mapped_column(Text, nullable=False)
    match_confidence: Mapped[int] = mapped_column(Integer, nullable=False)
    match_details: Mapped[dict] = mapped_column(JSONType, nullable=False)
    severity_factors: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    dismissed_category: Mapped[str | None] = mapped_column(Text, nullable=True)
    dismissed_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    dismissed_by: Mapped[str | None] = mapped_column(Text, nullable=True)
    dismissed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    escalated_to_case_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    escalated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    escalation_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    exclusion_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )


class ConflictExclusionRecord(Base):
    __tablename__ = "conflict_exclusions"
    __table_args__ = (
        # At most one active exclusion per (org, person, entity, type).
        Index(
            "uq_conflict_exclusions_active",
            "organization_id",
            "person_id",
            "entity_key",
            "conflict_type",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
        Index("ix_conflict_exclusions_lookup", "organization_id", "person_id", "conflict_type"),
    )

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(Text, nullable=False)
    person_id: Mapped[str] = mapped_column(Text, nullable=False)
    matched_entity: Mapped[str] = mapped_column(Text, nullable=False)
    entity_key: Mapped[str] = mapped_column(Text, nullable=False)
    conflict_type: Mapped[str] = mapped_column(Text, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    scope: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_by: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_from_alert_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )


class ThresholdRuleRecord(Base):
    __tablename__ = "threshold_rules"
    __table_args__ = (Index("ix_threshold_rules_org_active", "organization_id", "is_active"),)

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    disclosure_types: Mapped[list] = mapped_column(JSONType, nullable=False)
    conditions: Mapped[list] = mapped_column(JSONType, nullable=False)
    aggregate_config: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    action_config: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    apply_mode: Mapped[str] = mapped_column(Text, nullable=False, default="FORWARD_ONLY")
    apply_from: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_by: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )


class ThresholdTriggerLogRecord(Base):
    """Write-once: one row per rule firing for a disclosure."""

    __tablename__ = "threshold_trigger_logs"
    __table_args__ = (Index("ix_trigger_logs_rule", "rule_id"),)

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=_new_id)
    trigger_key: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    organization_id: Mapped[str] = mapped_column(Text, nullable=False)
    rule_id: Mapped[str] = mapped_column(Text, nullable=False)
    disclosure_id: Mapped[str] = mapped_column(Text, nullable=False)
    person_id: Mapped[str] = mapped_column(Text, nullable=False)
    evaluated_value: Mapped[float] = mapped_column(Money, nullable=False)
    threshold_value: Mapped[float | None] = mapped_column(Money, nullable=True)
    aggregate_breakdown: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    action_taken: Mapped[str] = mapped_column(Text, nullable=False)
    triggered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
