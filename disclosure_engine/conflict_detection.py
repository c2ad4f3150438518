"""Conflict detection: load sources, run the strategies, honor exclusions, persist alerts."""

from __future__ import annotations

import dataclasses
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, NamedTuple, Optional, Sequence, Tuple

from disclosure_engine.conflict_strategies import (
    check_hris_match,
    check_prior_cases,
    check_relationship_patterns,
    check_self_dealing,
    disclosed_names,
)
from disclosure_engine.contracts import (
    ConflictAlert,
    ConflictCheckResult,
    ConflictDetectedEvent,
    ConflictStatus,
    DetectedConflict,
)
from disclosure_engine.db import repo
from disclosure_engine.errors import NotFoundError
from disclosure_engine.events import EventPublisher
from disclosure_engine.exclusions import is_excluded
from disclosure_engine.hashing import alert_key
from disclosure_engine.settings import EvaluationSettings, load_settings
from disclosure_engine.similarity import MatchThresholds

logger = logging.getLogger(__name__)


class StrategyOutcome(NamedTuple):
    name: str
    conflicts: List[DetectedConflict]
    capped: bool


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def run_concurrently(tasks: Mapping[str, Callable[[], Any]], max_workers: int) -> Dict[str, Any]:
    """Run independent read-only tasks; sequentially when max_workers <= 1. Errors propagate."""
    if max_workers <= 1 or len(tasks) <= 1:
        return {name: fn() for name, fn in tasks.items()}
    with ThreadPoolExecutor(max_workers=min(max_workers, len(tasks))) as pool:
        futures = {name: pool.submit(fn) for name, fn in tasks.items()}
        return {name: f.result() for name, f in futures.items()}


def strategy_tasks(
    disclosure: Mapping[str, Any], person_id: str, settings: EvaluationSettings
) -> Dict[str, Callable[[], StrategyOutcome]]:
    """One zero-arg callable per strategy; each loads its own source rows then matches."""
    org_id = disclosure["organization_id"]
    disclosure_id = disclosure["id"]
    names = disclosed_names(disclosure)
    if not names:
        return {}
    caps = settings.scan_caps

    def self_dealing() -> StrategyOutcome:
        rows, capped = repo.load_person_disclosures(org_id, person_id, disclosure_id, caps.disclosures)
        return StrategyOutcome("self_dealing", check_self_dealing(names, rows, settings), capped)

    def hris() -> StrategyOutcome:
        rows, capped = repo.load_active_employees(org_id, caps.directory)
        return StrategyOutcome("directory", check_hris_match(names, person_id, rows, settings), capped)

    def prior_cases() -> StrategyOutcome:
        rows, capped = repo.load_case_subjects(org_id, caps.cases)
        return StrategyOutcome("case_subjects", check_prior_cases(names, rows, settings), capped)

    def patterns() -> StrategyOutcome:
        rows, capped = repo.load_other_disclosures(org_id, person_id, caps.disclosures)
        return StrategyOutcome("other_disclosures", check_relationship_patterns(names, rows, settings), capped)

    return {
        "self_dealing": self_dealing,
        "hris": hris,
        "prior_cases": prior_cases,
        "patterns": patterns,
    }


def merge_candidates(outcomes: Sequence[StrategyOutcome]) -> Tuple[List[DetectedConflict], List[str]]:
    """
    Combine strategy output, keeping the most confident candidate per
    (type, dedupe key). Also returns the sources whose scan cap was hit.
    """
    best: Dict[Tuple[str, str], DetectedConflict] = {}
    cap_hits: List[str] = []
    for outcome in outcomes:
        if outcome.capped:
            cap_hits.append(outcome.name)
        for c in outcome.conflicts:
            key = (str(c.conflict_type), c.dedupe_key)
            if key not in best or c.match_confidence > best[key].match_confidence:
                best[key] = c
    return list(best.values()), cap_hits


def apply_exclusions(
    candidates: Sequence[DetectedConflict],
    person_id: str,
    organization_id: str,
    settings: EvaluationSettings,
    now: Optional[datetime] = None,
) -> Tuple[List[DetectedConflict], int, List[str]]:
    """Returns (kept, excluded count, distinct exclusion ids that applied)."""
    kept: List[DetectedConflict] = []
    excluded = 0
    applied: List[str] = []
    for c in candidates:
        check = is_excluded(
            person_id,
            c.matched_entity,
            c.conflict_type,
            organization_id,
            match_bar=settings.exclusion_match_bar,
            now=now,
        )
        if check.excluded:
            excluded += 1
            if check.exclusion_id and check.exclusion_id not in applied:
                applied.append(check.exclusion_id)
            continue
        kept.append(c)
    return kept, excluded, applied


def persist_conflicts(
    organization_id: str,
    disclosure_id: str,
    conflicts: Sequence[DetectedConflict],
    evaluation_version: int,
) -> List[ConflictAlert]:
    rows = [
        {
            "alert_key": alert_key(disclosure_id, str(c.conflict_type), c.dedupe_key, evaluation_version),
            "organization_id": organization_id,
            "disclosure_id": disclosure_id,
            "conflict_type": str(c.conflict_type),
            "severity": str(c.severity),
            "status": str(ConflictStatus.OPEN),
            "summary": c.summary,
            "matched_entity": c.matched_entity,
            "match_confidence": c.match_confidence,
            "match_details": c.match_details.model_dump(mode="json"),
            "severity_factors": c.severity_factors.model_dump(mode="json") if c.severity_factors else None,
        }
        for c in conflicts
    ]
    return repo.insert_alerts(rows)


def finalize_conflicts(
    disclosure: Mapping[str, Any],
    person_id: str,
    outcomes: Sequence[StrategyOutcome],
    settings: EvaluationSettings,
) -> ConflictCheckResult:
    """Write phase: exclusions, persistence, result. Runs after every strategy finished."""
    org_id = disclosure["organization_id"]
    disclosure_id = disclosure["id"]
    now = _now_utc()

    candidates, cap_hits = merge_candidates(outcomes)
    for source in cap_hits:
        logger.warning(f"Conflict scan of {source} hit its row cap for disclosure {disclosure_id}; results may be incomplete")

    kept, excluded, applied = apply_exclusions(candidates, person_id, org_id, settings, now=now)
    alerts = persist_conflicts(org_id, disclosure_id, kept, settings.evaluation_version)

    if alerts or excluded:
        logger.info(
            f"Disclosure {disclosure_id}: {len(alerts)} conflict(s) raised, {excluded} suppressed by exclusions"
        )
    return ConflictCheckResult(
        disclosure_id=disclosure_id,
        person_id=person_id,
        checked_at=now,
        conflict_count=len(alerts),
        conflicts=alerts,
        excluded_conflict_count=excluded,
        applied_exclusion_ids=applied,
        scan_cap_hits=cap_hits,
    )


def conflict_event(organization_id: str, result: ConflictCheckResult) -> ConflictDetectedEvent:
    return ConflictDetectedEvent(
        organization_id=organization_id,
        disclosure_id=result.disclosure_id,
        person_id=result.person_id,
        conflict_count=result.conflict_count,
        conflicts=result.conflicts,
    )


def detect_conflicts(
    disclosure_id: str,
    person_id: str,
    organization_id: str,
    config: Optional[MatchThresholds] = None,
    *,
    settings: Optional[EvaluationSettings] = None,
    publisher: Optional[EventPublisher] = None,
) -> ConflictCheckResult:
    """Run all four strategies for a stored disclosure and raise alerts for what is not excluded."""
    settings = settings or load_settings()
    if config is not None:
        settings = dataclasses.replace(settings, thresholds=config)

    disclosure = repo.get_disclosure(disclosure_id, organization_id)
    if disclosure is None:
        raise NotFoundError(f"disclosure {disclosure_id} not found")

    outcomes = run_concurrently(strategy_tasks(disclosure, person_id, settings), settings.max_workers)
    result = finalize_conflicts(disclosure, person_id, list(outcomes.values()), settings)

    if publisher is not None and result.conflict_count > 0:
        publisher.publish(conflict_event(organization_id, result))
    return result
