"""Entry point invoked when a disclosure is submitted."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Mapping, Optional

from disclosure_engine.aggregates import disclosure_facts
from disclosure_engine.conflict_detection import (
    conflict_event,
    finalize_conflicts,
    run_concurrently,
    strategy_tasks,
)
from disclosure_engine.contracts import DisclosureEvaluation, ThresholdTriggeredEvent
from disclosure_engine.db import repo
from disclosure_engine.errors import NotFoundError
from disclosure_engine.events import EventPublisher
from disclosure_engine.settings import EvaluationSettings, load_settings
from disclosure_engine.thresholds import record_triggers, run_threshold_rules

logger = logging.getLogger(__name__)

THRESHOLD_TASK = "threshold"


def evaluate_submission(
    disclosure_id: str,
    organization_id: str,
    *,
    disclosure_type: Optional[str] = None,
    fact_data: Optional[Mapping[str, Any]] = None,
    person_id: Optional[str] = None,
    settings: Optional[EvaluationSettings] = None,
    publisher: Optional[EventPublisher] = None,
) -> DisclosureEvaluation:
    """
    Evaluate a stored disclosure against threshold rules and all conflict strategies.

    Reads happen first (concurrently when max_workers > 1); alerts and trigger
    logs are written only after every strategy and rule has finished. Caller
    facts override the ones derived from the stored disclosure.
    """
    settings = settings or load_settings()
    disclosure = repo.get_disclosure(disclosure_id, organization_id)
    if disclosure is None:
        raise NotFoundError(f"disclosure {disclosure_id} not found")

    disclosure_type = disclosure_type or disclosure["disclosure_type"]
    person_id = person_id or disclosure["person_id"]
    facts: Dict[str, Any] = disclosure_facts(disclosure)
    facts.update(fact_data or {})

    tasks: Dict[str, Callable[[], Any]] = dict(strategy_tasks(disclosure, person_id, settings))
    tasks[THRESHOLD_TASK] = lambda: run_threshold_rules(
        organization_id,
        disclosure_id,
        disclosure_type,
        facts,
        person_id,
        settings=settings,
        related_company=disclosure.get("related_company"),
    )
    results = run_concurrently(tasks, settings.max_workers)

    threshold = results.pop(THRESHOLD_TASK)
    conflicts = finalize_conflicts(disclosure, person_id, list(results.values()), settings)
    if threshold.triggered:
        record_triggers(
            organization_id, disclosure_id, person_id, threshold.triggered_rules, settings.evaluation_version
        )

    if publisher is not None:
        if conflicts.conflict_count > 0:
            publisher.publish(conflict_event(organization_id, conflicts))
        if threshold.triggered:
            publisher.publish(
                ThresholdTriggeredEvent(
                    organization_id=organization_id,
                    disclosure_id=disclosure_id,
                    person_id=person_id,
                    triggered_rules=threshold.triggered_rules,
                    recommended_action=threshold.recommended_action,
                )
            )

    logger.info(
        f"Evaluated disclosure {disclosure_id}: conflicts={conflicts.conflict_count} "
        f"excluded={conflicts.excluded_conflict_count} rules={len(threshold.triggered_rules)} "
        f"action={threshold.recommended_action}"
    )
    return DisclosureEvaluation(
        disclosure_id=disclosure_id,
        organization_id=organization_id,
        person_id=person_id,
        threshold=threshold,
        conflicts=conflicts,
    )
