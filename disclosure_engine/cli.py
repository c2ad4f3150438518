from __future__ import annotations

import json
import logging
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional

import typer
import yaml
from pydantic import ValidationError
from sqlalchemy import text

from disclosure_engine.db.session import get_session
from disclosure_engine.errors import ComplianceError

app = typer.Typer(add_completion=False, help="Disclosure compliance evaluation engine - CLI")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at INFO level")) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@contextmanager
def _domain_errors() -> Iterator[None]:
    """Not-found / invalid-state / invalid input become CLI parameter errors."""
    try:
        yield
    except (ComplianceError, ValidationError, ValueError) as e:
        raise typer.BadParameter(str(e)) from e


def _parse_datetime(value: Optional[str], name: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as e:
        raise typer.BadParameter(f"{name} must be an ISO-8601 timestamp") from e
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _echo_model(model) -> None:
    typer.echo(model.model_dump_json(indent=2))


@app.command("db-check")
def db_check() -> None:
    """Check DB connectivity and print basic info."""
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise typer.BadParameter("DATABASE_URL is not set")

    with get_session() as session:
        session.execute(text("SELECT 1"))
        typer.echo("DB OK")
        typer.echo(session.get_bind().dialect.name)


@app.command("init-db")
def init_db() -> None:
    """Create all tables (use Alembic for managed databases)."""
    from disclosure_engine.db.session import create_schema

    create_schema()
    typer.echo("Schema created")


@app.command("evaluate")
def evaluate(
    disclosure_id: str = typer.Argument(..., help="Stored disclosure id"),
    org: str = typer.Option(..., help="Organization id"),
    config: Optional[str] = typer.Option(None, help="Evaluation settings YAML"),
) -> None:
    """Run threshold rules and conflict detection for a stored disclosure."""
    from disclosure_engine.evaluation import evaluate_submission
    from disclosure_engine.settings import load_settings

    with _domain_errors():
        result = evaluate_submission(disclosure_id, org, settings=load_settings(config))
    _echo_model(result)
    if result.requires_case:
        typer.echo("Recommended action CREATE_CASE: hand off to case creation")


@app.command("score")
def score_names(
    a: str = typer.Argument(...),
    b: str = typer.Argument(...),
    boosted: bool = typer.Option(False, help="Apply the containment boost"),
) -> None:
    """Score two entity names (0..100)."""
    from disclosure_engine.similarity import match

    result = match(a, b, boosted=boosted)
    typer.echo(f"confidence={result.confidence} band={result.band} method={result.method} matched={result.matched}")


@app.command("alerts")
def alerts(
    org: str = typer.Option(..., help="Organization id"),
    status: Optional[List[str]] = typer.Option(None, help="Filter by status (repeatable)"),
    conflict_type: Optional[List[str]] = typer.Option(None, "--type", help="Filter by conflict type (repeatable)"),
    severity: Optional[List[str]] = typer.Option(None, help="Filter by severity (repeatable)"),
    entity: Optional[str] = typer.Option(None, help="Matched entity substring"),
    page: int = typer.Option(1, help="Page number"),
    page_size: int = typer.Option(20, help="Page size (max 100)"),
) -> None:
    """List conflict alerts."""
    from disclosure_engine.alert_workflow import list_alerts
    from disclosure_engine.contracts import AlertQuery

    with _domain_errors():
        query = AlertQuery(
            status=status or [],
            conflict_type=conflict_type or [],
            severity=severity or [],
            matched_entity=entity,
            page=page,
            page_size=page_size,
        )
        result = list_alerts(org, query)

    typer.echo(f"Alerts: {result.total} (page {result.page}/{result.total_pages})")
    for a in result.items:
        typer.echo(
            f"  {a.id}  {a.status:<9} {a.severity:<8} {a.conflict_type:<20} "
            f"{a.match_confidence:>3}  {a.matched_entity}"
        )


@app.command("dismiss")
def dismiss(
    alert_id: str = typer.Argument(...),
    org: str = typer.Option(..., help="Organization id"),
    category: str = typer.Option(..., help="Dismissal category"),
    reason: str = typer.Option(..., help="Why the alert is dismissed"),
    by: str = typer.Option(..., help="Reviewer id"),
    create_exclusion: bool = typer.Option(False, help="Also stop alerting on this match"),
    scope: str = typer.Option("PERMANENT", help="Exclusion scope"),
    expires_at: Optional[str] = typer.Option(None, help="Exclusion expiry (ISO-8601)"),
    notes: Optional[str] = typer.Option(None, help="Exclusion notes"),
) -> None:
    """Dismiss an OPEN conflict alert."""
    from disclosure_engine.alert_workflow import dismiss_alert
    from disclosure_engine.contracts import DismissAlertRequest

    with _domain_errors():
        request = DismissAlertRequest(
            category=category,
            reason=reason,
            create_exclusion=create_exclusion,
            exclusion_scope=scope,
            exclusion_expires_at=_parse_datetime(expires_at, "expires_at"),
            exclusion_notes=notes,
        )
        alert = dismiss_alert(alert_id, org, request, dismissed_by=by)
    typer.echo(f"Alert {alert.id}: {alert.status}")
    if alert.exclusion_id:
        typer.echo(f"  exclusion: {alert.exclusion_id}")


@app.command("escalate")
def escalate(
    alert_id: str = typer.Argument(...),
    org: str = typer.Option(..., help="Organization id"),
    case_id: str = typer.Option(..., help="Case the alert was escalated to"),
    notes: Optional[str] = typer.Option(None, help="Escalation notes"),
) -> None:
    """Mark an OPEN conflict alert as escalated to a case."""
    from disclosure_engine.alert_workflow import escalate_alert

    with _domain_errors():
        alert = escalate_alert(alert_id, org, case_id, notes)
    typer.echo(f"Alert {alert.id}: {alert.status} -> case {alert.escalated_to_case_id}")


@app.command("resolve")
def resolve(
    alert_id: str = typer.Argument(...),
    org: str = typer.Option(..., help="Organization id"),
    by: str = typer.Option(..., help="Reviewer id"),
    notes: Optional[str] = typer.Option(None, help="Resolution notes"),
) -> None:
    """Resolve a DISMISSED or ESCALATED conflict alert."""
    from disclosure_engine.alert_workflow import resolve_alert

    with _domain_errors():
        alert = resolve_alert(alert_id, org, by, notes)
    typer.echo(f"Alert {alert.id}: {alert.status}")


@app.command("exclusions")
def exclusions(
    org: str = typer.Option(..., help="Organization id"),
    person: Optional[str] = typer.Option(None, help="Only this person"),
    include_inactive: bool = typer.Option(False, "--all", help="Include inactive exclusions"),
    page: int = typer.Option(1, help="Page number"),
    page_size: int = typer.Option(20, help="Page size (max 100)"),
) -> None:
    """List conflict exclusions."""
    from disclosure_engine.exclusions import list_exclusions

    result = list_exclusions(
        org, active_only=not include_inactive, person_id=person, page=page, page_size=page_size
    )
    typer.echo(f"Exclusions: {result.total}")
    for x in result.items:
        state = "active" if x.is_active else "inactive"
        expiry = x.expires_at.isoformat() if x.expires_at else "-"
        typer.echo(f"  {x.id}  {state:<8} {x.scope:<12} {x.conflict_type:<20} {x.person_id}  {x.matched_entity}  {expiry}")


@app.command("create-exclusion")
def create_exclusion_cmd(
    org: str = typer.Option(..., help="Organization id"),
    person: str = typer.Option(..., help="Person the exclusion applies to"),
    entity: str = typer.Option(..., help="Matched entity name"),
    conflict_type: str = typer.Option(..., "--type", help="Conflict type"),
    reason: str = typer.Option(..., help="Why this match is acceptable"),
    scope: str = typer.Option("PERMANENT", help="PERMANENT, TIME_LIMITED or ONE_TIME"),
    expires_at: Optional[str] = typer.Option(None, help="Expiry for TIME_LIMITED (ISO-8601)"),
    notes: Optional[str] = typer.Option(None),
    by: Optional[str] = typer.Option(None, help="Creator id"),
) -> None:
    """Create a standing exclusion."""
    from disclosure_engine.contracts import CreateExclusionRequest
    from disclosure_engine.exclusions import create_exclusion

    with _domain_errors():
        request = CreateExclusionRequest(
            person_id=person,
            matched_entity=entity,
            conflict_type=conflict_type,
            reason=reason,
            notes=notes,
            scope=scope,
            expires_at=_parse_datetime(expires_at, "expires_at"),
        )
        exclusion = create_exclusion(org, request, created_by=by)
    typer.echo(f"Exclusion {exclusion.id} created ({exclusion.scope})")


@app.command("deactivate-exclusion")
def deactivate_exclusion_cmd(
    exclusion_id: str = typer.Argument(...),
    org: str = typer.Option(..., help="Organization id"),
) -> None:
    """Deactivate an exclusion."""
    from disclosure_engine.exclusions import deactivate_exclusion

    with _domain_errors():
        exclusion = deactivate_exclusion(exclusion_id, org)
    typer.echo(f"Exclusion {exclusion.id} deactivated")


@app.command("rules")
def rules(
    org: str = typer.Option(..., help="Organization id"),
    disclosure_type: Optional[str] = typer.Option(None, "--type", help="Only rules for this disclosure type"),
    active_only: bool = typer.Option(False, help="Only active rules"),
) -> None:
    """List threshold rules, highest priority first."""
    from disclosure_engine.rules import list_rules

    found = list_rules(org, active_only=active_only, disclosure_type=disclosure_type)
    typer.echo(f"Rules: {len(found)}")
    for r in found:
        state = "active" if r.is_active else "inactive"
        typer.echo(f"  {r.id}  p={r.priority:<3} {state:<8} {r.action:<16} {r.apply_mode:<16} {r.name}")


@app.command("create-rule")
def create_rule_cmd(
    path: str = typer.Argument(..., help="Rule definition (YAML or JSON)"),
    org: str = typer.Option(..., help="Organization id"),
    by: Optional[str] = typer.Option(None, help="Creator id"),
) -> None:
    """Create a threshold rule from a definition file."""
    from disclosure_engine.contracts import CreateRuleRequest
    from disclosure_engine.rules import create_rule

    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    with _domain_errors():
        rule = create_rule(org, CreateRuleRequest.model_validate(data), created_by=by)
    typer.echo(f"Rule {rule.id} created: {rule.name} ({rule.action})")


@app.command("deactivate-rule")
def deactivate_rule_cmd(
    rule_id: str = typer.Argument(...),
    org: str = typer.Option(..., help="Organization id"),
) -> None:
    """Deactivate a threshold rule."""
    from disclosure_engine.rules import deactivate_rule

    with _domain_errors():
        rule = deactivate_rule(rule_id, org)
    typer.echo(f"Rule {rule.id} deactivated")


@app.command("apply-rule")
def apply_rule(
    rule_id: str = typer.Argument(...),
    org: str = typer.Option(..., help="Organization id"),
    config: Optional[str] = typer.Option(None, help="Evaluation settings YAML"),
) -> None:
    """Apply a RETROACTIVE rule to stored disclosures."""
    from disclosure_engine.settings import load_settings
    from disclosure_engine.thresholds import apply_rule_retroactively

    with _domain_errors():
        summary = apply_rule_retroactively(rule_id, org, settings=load_settings(config))
    typer.echo(
        f"Rule {summary.rule_id}: evaluated {summary.evaluated}, triggered {summary.triggered}, "
        f"skipped {summary.skipped}, failed {summary.failed}"
    )
    if summary.scan_capped:
        typer.echo("  warning: disclosure scan hit its cap; rerun after raising scan_caps.retroactive")


@app.command("timeline")
def timeline(
    entity: str = typer.Argument(..., help="Entity name"),
    org: str = typer.Option(..., help="Organization id"),
) -> None:
    """Show the history of one external entity."""
    from disclosure_engine.timeline import get_entity_timeline

    with _domain_errors():
        result = get_entity_timeline(entity, org)
    stats = result.statistics
    typer.echo(
        f"{result.entity_name}: {result.total_events} events, {stats.total_disclosures} disclosures, "
        f"{stats.total_conflicts} conflicts, {stats.total_cases} cases, {stats.unique_persons} people"
    )
    for e in result.events:
        typer.echo(f"  {e.occurred_at.isoformat()}  {e.event_type:<20} {e.description}")


@app.command("health")
def health(
    hours: int = typer.Option(24, help="Window in hours"),
    org: Optional[str] = typer.Option(None, help="Organization id (default: all)"),
    output: Optional[str] = typer.Option(None, help="Write health snapshot JSON to file"),
) -> None:
    """Compute and display evaluation health metrics."""
    from disclosure_engine.observability import compute_health_snapshot, render_text

    snapshot = compute_health_snapshot(hours=hours, organization_id=org)
    if output:
        with open(output, "w", encoding="utf-8") as f:
            json.dump(snapshot, f, indent=2)
        typer.echo(f"Health snapshot written to {output}")
    else:
        typer.echo(render_text(snapshot))

