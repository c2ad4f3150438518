from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional

import yaml

from disclosure_engine.contracts import ConflictType
from disclosure_engine.errors import MatchConfigurationError
from disclosure_engine.similarity import MatchThresholds

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/evaluation.yaml"
DEFAULT_SCAN_CAP = 1000


@dataclass(frozen=True)
class ScanCaps:
    directory: int = DEFAULT_SCAN_CAP
    cases: int = DEFAULT_SCAN_CAP
    disclosures: int = DEFAULT_SCAN_CAP
    aggregate: int = DEFAULT_SCAN_CAP
    retroactive: int = DEFAULT_SCAN_CAP


@dataclass(frozen=True)
class EvaluationSettings:
    thresholds: MatchThresholds = field(default_factory=MatchThresholds)
    exclusion_match_bar: int = 90
    scan_caps: ScanCaps = field(default_factory=ScanCaps)
    pattern_min_people: int = 2
    pattern_high_people: int = 5
    prior_case_high_above: int = 2
    boosted_strategies: FrozenSet[ConflictType] = frozenset(
        {ConflictType.SELF_DEALING, ConflictType.RELATIONSHIP_PATTERN}
    )
    max_workers: int = 5
    evaluation_version: int = 1


def resolve_thresholds(raw: Optional[Dict[str, Any]]) -> MatchThresholds:
    """Build match thresholds from config; invalid values fall back to defaults."""
    if not raw:
        return MatchThresholds()
    try:
        return MatchThresholds(
            min_threshold=int(raw.get("min_threshold", 60)),
            low_band=int(raw.get("low_band", 75)),
            high_band=int(raw.get("high_band", 90)),
            exact_band=int(raw.get("exact_band", 100)),
        )
    except (MatchConfigurationError, TypeError, ValueError) as exc:
        logger.warning(f"Invalid match thresholds {raw!r}, using defaults: {exc}")
        return MatchThresholds()


def _scan_caps(raw: Optional[Dict[str, Any]]) -> ScanCaps:
    raw = raw or {}
    return ScanCaps(
        directory=int(raw.get("directory", DEFAULT_SCAN_CAP)),
        cases=int(raw.get("cases", DEFAULT_SCAN_CAP)),
        disclosures=int(raw.get("disclosures", DEFAULT_SCAN_CAP)),
        aggregate=int(raw.get("aggregate", DEFAULT_SCAN_CAP)),
        retroactive=int(raw.get("retroactive", DEFAULT_SCAN_CAP)),
    )


def settings_from_dict(data: Dict[str, Any]) -> EvaluationSettings:
    pattern = data.get("relationship_pattern", {}) or {}
    prior = data.get("prior_cases", {}) or {}
    boosted_raw = data.get("boosted_strategies")
    if boosted_raw is None:
        boosted = EvaluationSettings.boosted_strategies
    else:
        boosted = frozenset(ConflictType(x) for x in boosted_raw)

    return EvaluationSettings(
        thresholds=resolve_thresholds(data.get("thresholds")),
        exclusion_match_bar=int(data.get("exclusion_match_bar", 90)),
        scan_caps=_scan_caps(data.get("scan_caps")),
        pattern_min_people=int(pattern.get("min_people", 2)),
        pattern_high_people=int(pattern.get("high_people", 5)),
        prior_case_high_above=int(prior.get("high_above", 2)),
        boosted_strategies=boosted,
        max_workers=int(data.get("max_workers", 5)),
        evaluation_version=int(data.get("evaluation_version", 1)),
    )


def load_settings(path: Optional[str] = None) -> EvaluationSettings:
    path = path or os.getenv("EVALUATION_CONFIG") or DEFAULT_CONFIG_PATH
    if not os.path.exists(path):
        logger.info(f"No evaluation config at {path}, using defaults")
        return EvaluationSettings()

    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    return settings_from_dict(data)
