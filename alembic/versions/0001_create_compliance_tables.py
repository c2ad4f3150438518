"""create disclosure, directory, case-subject, alert, exclusion and rule tables

Revision ID: 0001_create_compliance_tables
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_create_compliance_tables"
down_revision = None
branch_labels = None
depends_on = None


def _jsonb():
    return postgresql.JSONB(astext_type=sa.Text())


def upgrade() -> None:
    op.create_table(
        "disclosures",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("organization_id", sa.Text(), nullable=False),
        sa.Column("person_id", sa.Text(), nullable=False),
        sa.Column("disclosure_type", sa.Text(), nullable=False),
        sa.Column("related_company", sa.Text(), nullable=True),
        sa.Column("related_person", sa.Text(), nullable=True),
        sa.Column("disclosure_value", sa.Numeric(14, 2), nullable=True),
        sa.Column("currency", sa.Text(), nullable=True),
        sa.Column("details", _jsonb(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index(
        "ix_disclosures_org_person_created", "disclosures", ["organization_id", "person_id", "created_at"]
    )
    op.create_index("ix_disclosures_org_type", "disclosures", ["organization_id", "disclosure_type"])

    op.create_table(
        "employees",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("organization_id", sa.Text(), nullable=False),
        sa.Column("person_id", sa.Text(), nullable=True),
        sa.Column("full_name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("department", sa.Text(), nullable=True),
        sa.Column("job_title", sa.Text(), nullable=True),
        sa.Column("manager_id", sa.Text(), nullable=True),
        sa.Column("manager_name", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_index("ix_employees_org_active", "employees", ["organization_id", "is_active"])

    op.create_table(
        "case_subjects",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("organization_id", sa.Text(), nullable=False),
        sa.Column("case_id", sa.Text(), nullable=False),
        sa.Column("case_reference", sa.Text(), nullable=True),
        sa.Column("case_type", sa.Text(), nullable=True),
        sa.Column("case_outcome", sa.Text(), nullable=True),
        sa.Column("external_name", sa.Text(), nullable=False),
        sa.Column("subject_type", sa.Text(), nullable=True),
        sa.Column("role", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_case_subjects_org", "case_subjects", ["organization_id"])

    op.create_table(
        "conflict_alerts",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("alert_key", sa.Text(), nullable=False, unique=True),
        sa.Column("organization_id", sa.Text(), nullable=False),
        sa.Column("disclosure_id", sa.Text(), nullable=False),
        sa.Column("conflict_type", sa.Text(), nullable=False),
        sa.Column("severity", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="OPEN"),
        sa.Column("summary", sa.Text(), nullable=False),
        sa.Column("matched_entity", sa.Text(), nullable=False),
        sa.Column("match_confidence", sa.Integer(), nullable=False),
        sa.Column("match_details", _jsonb(), nullable=False),
        sa.Column("severity_factors", _jsonb(), nullable=True),
        sa.Column("dismissed_category", sa.Text(), nullable=True),
        sa.Column("dismissed_reason", sa.Text(), nullable=True),
        sa.Column("dismissed_by", sa.Text(), nullable=True),
        sa.Column("dismissed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("escalated_to_case_id", sa.Text(), nullable=True),
        sa.Column("escalated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("escalation_notes", sa.Text(), nullable=True),
        sa.Column("exclusion_id", sa.Text(), nullable=True),
        sa.Column("resolved_by", sa.Text(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_conflict_alerts_org_status", "conflict_alerts", ["organization_id", "status"])
    op.create_index("ix_conflict_alerts_disclosure", "conflict_alerts", ["disclosure_id"])

    op.create_table(
        "conflict_exclusions",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("organization_id", sa.Text(), nullable=False),
        sa.Column("person_id", sa.Text(), nullable=False),
        sa.Column("matched_entity", sa.Text(), nullable=False),
        sa.Column("entity_key", sa.Text(), nullable=False),
        sa.Column("conflict_type", sa.Text(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("scope", sa.Text(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.Text(), nullable=True),
        sa.Column("created_from_alert_id", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index(
        "uq_conflict_exclusions_active",
        "conflict_exclusions",
        ["organization_id", "person_id", "entity_key", "conflict_type"],
        unique=True,
        postgresql_where=sa.text("is_active"),
    )
    op.create_index(
        "ix_conflict_exclusions_lookup", "conflict_exclusions", ["organization_id", "person_id", "conflict_type"]
    )

    op.create_table(
        "threshold_rules",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("organization_id", sa.Text(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("disclosure_types", _jsonb(), nullable=False),
        sa.Column("conditions", _jsonb(), nullable=False),
        sa.Column("aggregate_config", _jsonb(), nullable=True),
        sa.Column("action", sa.Text(), nullable=False),
        sa.Column("action_config", _jsonb(), nullable=True),
        sa.Column("apply_mode", sa.Text(), nullable=False, server_default="FORWARD_ONLY"),
        sa.Column("apply_from", sa.DateTime(timezone=True), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_threshold_rules_org_active", "threshold_rules", ["organization_id", "is_active"])

    op.create_table(
        "threshold_trigger_logs",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("trigger_key", sa.Text(), nullable=False, unique=True),
        sa.Column("organization_id", sa.Text(), nullable=False),
        sa.Column("rule_id", sa.Text(), nullable=False),
        sa.Column("disclosure_id", sa.Text(), nullable=False),
        sa.Column("person_id", sa.Text(), nullable=False),
        sa.Column("evaluated_value", sa.Numeric(14, 2), nullable=False),
        sa.Column("threshold_value", sa.Numeric(14, 2), nullable=True),
        sa.Column("aggregate_breakdown", _jsonb(), nullable=True),
        sa.Column("action_taken", sa.Text(), nullable=False),
        sa.Column("triggered_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_trigger_logs_rule", "threshold_trigger_logs", ["rule_id"])


def downgrade() -> None:
    op.drop_index("ix_trigger_logs_rule", table_name="threshold_trigger_logs")
    op.drop_table("threshold_trigger_logs")
    op.drop_index("ix_threshold_rules_org_active", table_name="threshold_rules")
    op.drop_table("threshold_rules")
    op.drop_index("ix_conflict_exclusions_lookup", table_name="conflict_exclusions")
    op.drop_index("uq_conflict_exclusions_active", table_name="conflict_exclusions")
    op.drop_table("conflict_exclusions")
    op.drop_index("ix_conflict_alerts_disclosure", table_name="conflict_alerts")
    op.drop_index("ix_conflict_alerts_org_status", table_name="conflict_alerts")
    op.drop_table("conflict_alerts")
    op.drop_index("ix_case_subjects_org", table_name="case_subjects")
    op.drop_table("case_subjects")
    op.drop_index("ix_employees_org_active", table_name="employees")
    op.drop_table("employees")
    op.drop_index("ix_disclosures_org_type", table_name="disclosures")
    op.drop_index("ix_disclosures_org_person_created", table_name="disclosures")
    op.drop_table("disclosures")
