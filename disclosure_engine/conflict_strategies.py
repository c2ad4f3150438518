"""
The four conflict detectors. Each one is a pure function over rows already
loaded from the data store, so they can run concurrently and be tested
without a database.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from disclosure_engine.contracts import (
    CaseContext,
    ConflictSeverity,
    ConflictType,
    DateRange,
    DetectedConflict,
    DisclosureContext,
    EmployeeContext,
    SeverityFactors,
)
from disclosure_engine.settings import EvaluationSettings
from disclosure_engine.severity import determine_severity
from disclosure_engine.similarity import MatchResult, match, normalize, round_half_up

NAME_FIELDS = ("related_company", "related_person")


def disclosed_names(disclosure: Mapping[str, Any]) -> List[str]:
    """Distinct non-empty entity names carried by a disclosure, company first."""
    names: List[str] = []
    seen = set()
    for key in NAME_FIELDS:
        value = (disclosure.get(key) or "").strip()
        if value and normalize(value) not in seen:
            seen.add(normalize(value))
            names.append(value)
    return names


def _best_match(
    candidate: Optional[str], names: Sequence[str], settings: EvaluationSettings, boosted: bool
) -> Optional[MatchResult]:
    if not candidate or not candidate.strip():
        return None
    best: Optional[MatchResult] = None
    for name in names:
        result = match(candidate, name, settings.thresholds, boosted=boosted)
        if result.matched and (best is None or result.confidence > best.confidence):
            best = result
    return best


def _distinct(values: Iterable[Any]) -> List[Any]:
    out: List[Any] = []
    for v in values:
        if v is not None and v not in out:
            out.append(v)
    return out


def _date_range(rows: Sequence[Mapping[str, Any]]) -> Optional[DateRange]:
    dates: List[datetime] = [r["created_at"] for r in rows if r.get("created_at") is not None]
    if not dates:
        return None
    return DateRange(start=min(dates), end=max(dates))


def _total_value(rows: Sequence[Mapping[str, Any]]) -> Optional[float]:
    values = [float(r["disclosure_value"]) for r in rows if r.get("disclosure_value") is not None]
    return round(sum(values), 2) if values else None


def check_self_dealing(
    names: Sequence[str],
    prior_disclosures: Sequence[Mapping[str, Any]],
    settings: EvaluationSettings,
) -> List[DetectedConflict]:
    """
    The person's own earlier disclosures that name the same entity.

    Matches are grouped per matched entity; every matching prior disclosure
    beyond the first adds weight, so repeat self-references escalate.
    """
    if not names:
        return []
    boosted = ConflictType.SELF_DEALING in settings.boosted_strategies

    groups: Dict[str, Dict[str, Any]] = defaultdict(lambda: {"entity": None, "confidence": 0, "rows": []})
    for row in prior_disclosures:
        best: Optional[MatchResult] = None
        for key in NAME_FIELDS:
            result = _best_match(row.get(key), names, settings, boosted)
            if result is not None and (best is None or result.confidence > best.confidence):
                best = result
        if best is None:
            continue
        g = groups[normalize(best.matched_entity)]
        g["entity"] = g["entity"] or best.matched_entity
        g["confidence"] = max(g["confidence"], best.confidence)
        g["rows"].append(row)

    conflicts: List[DetectedConflict] = []
    for key, g in groups.items():
        rows = g["rows"]
        factors = [f"Prior disclosure {r['id']} names {g['entity']}" for r in rows] if len(rows) > 1 else []
        conflicts.append(
            DetectedConflict(
                conflict_type=ConflictType.SELF_DEALING,
                severity=determine_severity(g["confidence"], factors),
                summary=(
                    f"Discloser previously reported a relationship with '{g['entity']}' "
                    f"in {len(rows)} disclosure(s)"
                ),
                matched_entity=g["entity"],
                match_confidence=g["confidence"],
                match_details=DisclosureContext(
                    prior_disclosure_ids=[r["id"] for r in rows],
                    total_value=_total_value(rows),
                    currency=next((r["currency"] for r in rows if r.get("currency")), None),
                    date_range=_date_range(rows),
                    disclosure_types=_distinct(r.get("disclosure_type") for r in rows),
                ),
                severity_factors=SeverityFactors(
                    factors=factors,
                    historical_occurrences=len(rows),
                    value_at_risk=_total_value(rows),
                    match_confidence=g["confidence"],
                ),
                dedupe_key=f"entity:{key}",
            )
        )
    return conflicts


def check_hris_match(
    names: Sequence[str],
    person_id: str,
    employees: Sequence[Mapping[str, Any]],
    settings: EvaluationSettings,
) -> List[DetectedConflict]:
    """Active employees whose name matches the disclosed party (possible nepotism)."""
    if not names:
        return []
    boosted = ConflictType.HRIS_MATCH in settings.boosted_strategies

    conflicts: List[DetectedConflict] = []
    for emp in employees:
        # the discloser's own directory entry is never a conflict
        if emp.get("person_id") and emp.get("person_id") == person_id:
            continue
        best = _best_match(emp.get("full_name"), names, settings, boosted)
        if best is None:
            continue
        dept = emp.get("department") or "unknown department"
        conflicts.append(
            DetectedConflict(
                conflict_type=ConflictType.HRIS_MATCH,
                severity=determine_severity(best.confidence),
                summary=f"Disclosed party matches active employee {emp['full_name']} ({dept})",
                matched_entity=emp["full_name"],
                match_confidence=best.confidence,
                match_details=EmployeeContext(
                    employee_id=emp["id"],
                    person_id=emp.get("person_id"),
                    name=emp["full_name"],
                    department=emp.get("department"),
                    job_title=emp.get("job_title"),
                    manager_id=emp.get("manager_id"),
                    manager_name=emp.get("manager_name"),
                ),
                severity_factors=SeverityFactors(match_confidence=best.confidence),
                dedupe_key=f"employee:{emp['id']}",
            )
        )
    return conflicts


def check_prior_cases(
    names: Sequence[str],
    subjects: Sequence[Mapping[str, Any]],
    settings: EvaluationSettings,
) -> List[DetectedConflict]:
    """
    Case subjects matching the disclosed party, folded into one conflict:
      - confidence: mean of the best match per case
      - severity: HIGH above `prior_case_high_above` distinct cases, else MEDIUM
    """
    if not names:
        return []
    boosted = ConflictType.PRIOR_CASE_HISTORY in settings.boosted_strategies

    per_case: Dict[str, Dict[str, Any]] = {}
    for subject in subjects:
        best = _best_match(subject.get("external_name"), names, settings, boosted)
        if best is None:
            continue
        case_id = str(subject["case_id"])
        entry = per_case.setdefault(case_id, {"confidence": 0, "entity": None, "subjects": []})
        if best.confidence > entry["confidence"]:
            entry["confidence"] = best.confidence
            entry["entity"] = best.matched_entity
        entry["subjects"].append(subject)

    if not per_case:
        return []

    cases = list(per_case.values())
    confidence = round_half_up(sum(c["confidence"] for c in cases) / len(cases))
    top = max(cases, key=lambda c: c["confidence"])
    subjects_hit = [s for c in cases for s in c["subjects"]]
    severity = (
        ConflictSeverity.HIGH if len(cases) > settings.prior_case_high_above else ConflictSeverity.MEDIUM
    )
    return [
        DetectedConflict(
            conflict_type=ConflictType.PRIOR_CASE_HISTORY,
            severity=severity,
            summary=f"Disclosed party '{top['entity']}' appears in {len(cases)} prior case(s)",
            matched_entity=top["entity"],
            match_confidence=confidence,
            match_details=CaseContext(
                case_ids=list(per_case.keys()),
                case_references=_distinct(s.get("case_reference") for s in subjects_hit),
                case_types=_distinct(s.get("case_type") for s in subjects_hit),
                outcomes=_distinct(s.get("case_outcome") for s in subjects_hit),
                roles=_distinct(s.get("role") for s in subjects_hit),
            ),
            severity_factors=SeverityFactors(
                factors=[f"Subject in case {cid}" for cid in per_case],
                historical_occurrences=len(cases),
                match_confidence=confidence,
            ),
            dedupe_key="prior-cases",
        )
    ]


def check_relationship_patterns(
    names: Sequence[str],
    other_disclosures: Sequence[Mapping[str, Any]],
    settings: EvaluationSettings,
) -> List[DetectedConflict]:
    """Several other people disclosing the same entity."""
    if not names:
        return []
    boosted = ConflictType.RELATIONSHIP_PATTERN in settings.boosted_strategies

    conflicts: List[DetectedConflict] = []
    for name in names:
        hits: List[Dict[str, Any]] = []
        for row in other_disclosures:
            best: Optional[MatchResult] = None
            for key in NAME_FIELDS:
                result = _best_match(row.get(key), [name], settings, boosted)
                if result is not None and (best is None or result.confidence > best.confidence):
                    best = result
            if best is not None:
                hits.append({"row": row, "confidence": best.confidence})
        people = _distinct(h["row"]["person_id"] for h in hits)
        if len(people) < settings.pattern_min_people:
            continue

        rows = [h["row"] for h in hits]
        confidence = round_half_up(sum(h["confidence"] for h in hits) / len(hits))
        severity = (
            ConflictSeverity.HIGH if len(people) >= settings.pattern_high_people else ConflictSeverity.MEDIUM
        )
        conflicts.append(
            DetectedConflict(
                conflict_type=ConflictType.RELATIONSHIP_PATTERN,
                severity=severity,
                summary=f"{len(people) + 1} employees have disclosed relationships with '{name}'",
                matched_entity=name,
                match_confidence=confidence,
                match_details=DisclosureContext(
                    prior_disclosure_ids=[r["id"] for r in rows],
                    total_value=_total_value(rows),
                    currency=next((r["currency"] for r in rows if r.get("currency")), None),
                    date_range=_date_range(rows),
                    disclosure_types=_distinct(r.get("disclosure_type") for r in rows),
                    person_ids=people,
                ),
                severity_factors=SeverityFactors(
                    factors=[f"{len(people)} other people disclosed {name}"],
                    historical_occurrences=len(rows),
                    match_confidence=confidence,
                ),
                dedupe_key=f"pattern:{normalize(name)}",
            )
        )
    return conflicts
