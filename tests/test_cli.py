from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import typer

from disclosure_engine import cli
from disclosure_engine.contracts import AlertQuery
from disclosure_engine.db import repo


def _seed_self_dealing():
    now = datetime.now(timezone.utc)
    for days_ago in (30, 0):
        last = repo.insert_disclosure(
            {
                "organization_id": "org-1",
                "person_id": "p-1",
                "disclosure_type": "GIFT",
                "related_company": "Acme Corp",
                "disclosure_value": 600,
                "created_at": now - timedelta(days=days_ago),
            }
        )
    return last


def test_score_command(capsys):
    cli.score_names(a="ACME CORP.", b="Acme Corp", boosted=True)
    out = capsys.readouterr().out
    assert "confidence=97" in out
    assert "method=containment" in out


def test_db_check_requires_database_url(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(typer.BadParameter):
        cli.db_check()


def test_evaluate_and_review_flow(sqlite_db, tmp_path, capsys):
    config = tmp_path / "evaluation.yaml"
    config.write_text("max_workers: 1\n", encoding="utf-8")
    rule_file = tmp_path / "rule.yaml"
    rule_file.write_text(
        """
name: Large gifts
disclosure_types: [GIFT]
conditions:
  - field: disclosureValue
    operator: gte
    value: 500
action: CREATE_CASE
""",
        encoding="utf-8",
    )
    cli.create_rule_cmd(path=str(rule_file), org="org-1", by="admin")
    current = _seed_self_dealing()

    cli.evaluate(disclosure_id=current["id"], org="org-1", config=str(config))
    out = capsys.readouterr().out
    assert "Recommended action CREATE_CASE" in out

    alert = repo.query_alerts("org-1", AlertQuery())[0][0]
    cli.escalate(alert_id=alert.id, org="org-1", case_id="case-1", notes=None)
    cli.resolve(alert_id=alert.id, org="org-1", by="reviewer-1", notes="done")
    cli.alerts(org="org-1", status=["RESOLVED"], conflict_type=None, severity=None, entity=None, page=1, page_size=20)
    out = capsys.readouterr().out
    assert "ESCALATED -> case case-1" in out
    assert "Alerts: 1" in out
    assert "RESOLVED" in out


def test_domain_errors_become_bad_parameter(sqlite_db):
    with pytest.raises(typer.BadParameter):
        cli.resolve(alert_id="missing", org="org-1", by="reviewer-1", notes=None)
    with pytest.raises(typer.BadParameter):
        cli.timeline(entity="  ", org="org-1")
    with pytest.raises(typer.BadParameter):
        cli.create_exclusion_cmd(
            org="org-1",
            person="p-1",
            entity="Acme Corp",
            conflict_type="SELF_DEALING",
            reason="temporary waiver",
            scope="TIME_LIMITED",
            expires_at=None,
            notes=None,
            by=None,
        )
    with pytest.raises(typer.BadParameter):
        cli.dismiss(
            alert_id="missing",
            org="org-1",
            category="NOT_A_CATEGORY",
            reason="x",
            by="reviewer-1",
            create_exclusion=False,
            scope="PERMANENT",
            expires_at=None,
            notes=None,
        )


def test_exclusion_commands(sqlite_db, capsys):
    cli.create_exclusion_cmd(
        org="org-1",
        person="p-1",
        entity="Acme Corp",
        conflict_type="SELF_DEALING",
        reason="approved",
        scope="PERMANENT",
        expires_at=None,
        notes=None,
        by="admin",
    )
    cli.exclusions(org="org-1", person=None, include_inactive=False, page=1, page_size=20)
    out = capsys.readouterr().out
    assert "Exclusions: 1" in out

    exclusion_id = out.splitlines()[1].split()[0]
    cli.deactivate_exclusion_cmd(exclusion_id=exclusion_id, org="org-1")
    with pytest.raises(typer.BadParameter):
        cli.deactivate_exclusion_cmd(exclusion_id=exclusion_id, org="org-1")


def test_rules_and_health_commands(sqlite_db, tmp_path, capsys):
    rule_file = tmp_path / "rule.yaml"
    rule_file.write_text(
        "name: Back-check\ndisclosure_types: [GIFT]\napply_mode: RETROACTIVE\n"
        "conditions: [{field: disclosureValue, operator: gt, value: 100}]\naction: NOTIFY\n",
        encoding="utf-8",
    )
    config = tmp_path / "evaluation.yaml"
    config.write_text("max_workers: 1\n", encoding="utf-8")
    _seed_self_dealing()

    cli.create_rule_cmd(path=str(rule_file), org="org-1", by=None)
    rule_id = capsys.readouterr().out.split()[1]
    cli.apply_rule(rule_id=rule_id, org="org-1", config=str(config))
    cli.rules(org="org-1", disclosure_type=None, active_only=True)
    out = capsys.readouterr().out
    assert "evaluated 2, triggered 2" in out
    assert "Rules: 1" in out

    cli.deactivate_rule_cmd(rule_id=rule_id, org="org-1")
    with pytest.raises(typer.BadParameter):
        cli.apply_rule(rule_id=rule_id, org="org-1", config=str(config))

    output = tmp_path / "health.json"
    cli.health(hours=24, org="org-1", output=str(output))
    assert output.exists()
    cli.health(hours=24, org="org-1", output=None)
    assert "Threshold triggers:" in capsys.readouterr().out
