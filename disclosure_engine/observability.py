from __future__ import annotations

import json
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional

from disclosure_engine.contracts import ConflictSeverity, ConflictStatus, ExclusionScope, ThresholdAction
from disclosure_engine.db import repo


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _pct(numerator: int, denominator: int) -> float:
    if denominator <= 0:
        return 0.0
    return round((float(numerator) / float(denominator)) * 100.0, 2)


def _safe_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _counts(values: Iterable[Any], keys: Iterable[str]) -> Dict[str, int]:
    c = Counter(str(v or "") for v in values)
    return {k: int(c.get(k, 0)) for k in keys}


def summarize_alert_rows(alert_rows: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    alerts = list(alert_rows)
    total = len(alerts)

    by_status = _counts((a.get("status") for a in alerts), [s.value for s in ConflictStatus])
    by_severity = _counts((a.get("severity") for a in alerts), [s.value for s in ConflictSeverity])
    by_type = dict(sorted(Counter(str(a.get("conflict_type")) for a in alerts).items()))

    reviewed = by_status["DISMISSED"] + by_status["ESCALATED"] + by_status["RESOLVED"]
    dismissed = sum(bool(a.get("dismissed_at")) for a in alerts)

    avg_confidence = 0.0
    if total > 0:
        avg_confidence = round(sum(_safe_float(a.get("match_confidence")) for a in alerts) / float(total), 2)

    return {
        "alerts": total,
        "avg_confidence": avg_confidence,
        "status_counts": by_status,
        "severity_counts": by_severity,
        "type_counts": by_type,
        "reviewed": int(reviewed),
        "dismissal_rate_pct": _pct(int(dismissed), int(reviewed)),
    }


def summarize_trigger_rows(trigger_rows: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    triggers = list(trigger_rows)
    return {
        "triggers": len(triggers),
        "action_counts": _counts((t.get("action_taken") for t in triggers), [a.value for a in ThresholdAction]),
        "rules_fired": len({t.get("rule_id") for t in triggers}),
        "disclosures_flagged": len({t.get("disclosure_id") for t in triggers}),
    }


def summarize_exclusion_rows(exclusion_rows: Iterable[Dict[str, Any]], now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or _now_utc()
    rows = list(exclusion_rows)
    expired = 0
    for r in rows:
        expires_at = r.get("expires_at")
        if expires_at is not None and expires_at <= now:
            expired += 1
    return {
        "active_exclusions": len(rows),
        "scope_counts": _counts((r.get("scope") for r in rows), [s.value for s in ExclusionScope]),
        # flagged active but past expiry; inert, candidates for cleanup
        "expired_but_active": int(expired),
    }


def compute_health_snapshot(hours: int = 24, organization_id: Optional[str] = None) -> Dict[str, Any]:
    since = _now_utc() - timedelta(hours=hours)
    alerts = repo.load_alert_rows(since, organization_id)
    triggers = repo.load_trigger_log_rows(since, organization_id)
    exclusions = repo.load_active_exclusion_rows(organization_id)

    return {
        "generated_at": _now_utc().isoformat().replace("+00:00", "Z"),
        "window_hours": int(hours),
        "organization_id": organization_id,
        "alerts": summarize_alert_rows(alerts),
        "thresholds": summarize_trigger_rows(triggers),
        "exclusions": summarize_exclusion_rows(exclusions),
    }


def render_text(snapshot: Dict[str, Any]) -> str:
    alerts = snapshot.get("alerts") or {}
    thresholds = snapshot.get("thresholds") or {}
    exclusions = snapshot.get("exclusions") or {}

    lines = [
        f"Generated:      {snapshot.get('generated_at')}",
        f"Window (hours): {snapshot.get('window_hours')}",
        f"Organization:   {snapshot.get('organization_id') or 'all'}",
        "",
        "Conflict alerts:",
        f"  - alerts: {alerts.get('alerts', 0)}",
        f"  - avg confidence: {alerts.get('avg_confidence', 0.0)}",
        f"  - status: {json.dumps(alerts.get('status_counts', {}), sort_keys=True)}",
        f"  - severity: {json.dumps(alerts.get('severity_counts', {}), sort_keys=True)}",
        f"  - dismissal rate: {alerts.get('dismissal_rate_pct', 0.0)}%",
        "",
        "Alert types:",
    ]
    type_counts = alerts.get("type_counts") or {}
    if type_counts:
        for conflict_type, count in sorted(type_counts.items()):
            lines.append(f"  - {conflict_type}: {count}")
    else:
        lines.append("  - none")

    lines.extend(
        [
            "",
            "Threshold triggers:",
            f"  - triggers: {thresholds.get('triggers', 0)}",
            f"  - rules fired: {thresholds.get('rules_fired', 0)}",
            f"  - actions: {json.dumps(thresholds.get('action_counts', {}), sort_keys=True)}",
            "",
            "Exclusions:",
            f"  - active: {exclusions.get('active_exclusions', 0)}",
            f"  - scopes: {json.dumps(exclusions.get('scope_counts', {}), sort_keys=True)}",
            f"  - expired but still active: {exclusions.get('expired_but_active', 0)}",
        ]
    )
    return "\n".join(lines)
