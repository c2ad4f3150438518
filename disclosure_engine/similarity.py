"""Approximate string matching for entity names.

Scores are integers in 0..100. The plain scorer is normalized edit distance;
the boosted scorer additionally rewards one name containing the other, which
catches suffix noise such as "Acme Corp" vs "ACME CORP." or "Acme Holdings Inc".
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

import jellyfish

from disclosure_engine.errors import MatchConfigurationError


@dataclass(frozen=True)
class MatchThresholds:
    min_threshold: int = 60
    low_band: int = 75
    high_band: int = 90
    exact_band: int = 100

    def __post_init__(self) -> None:
        bounds = (self.min_threshold, self.low_band, self.high_band, self.exact_band)
        if any(b < 0 or b > 100 for b in bounds):
            raise MatchConfigurationError(f"match thresholds must be within 0..100: {bounds}")
        if list(bounds) != sorted(bounds):
            raise MatchConfigurationError(f"match thresholds must be non-decreasing: {bounds}")

    def band(self, confidence: int) -> str:
        if confidence >= self.exact_band:
            return "exact"
        if confidence >= self.high_band:
            return "high"
        if confidence >= self.low_band:
            return "low"
        if confidence >= self.min_threshold:
            return "marginal"
        return "none"


@dataclass(frozen=True)
class MatchResult:
    matched: bool
    confidence: int
    matched_entity: str
    band: str
    method: str


def normalize(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def score(a: Optional[str], b: Optional[str]) -> int:
    """Normalized edit-distance similarity, 0..100."""
    na, nb = normalize(a), normalize(b)
    if na == nb:
        return 100
    if not na or not nb:
        return 0
    distance = jellyfish.levenshtein_distance(na, nb)
    return round_half_up((1 - distance / max(len(na), len(nb))) * 100)


def containment_score(a: Optional[str], b: Optional[str]) -> Optional[int]:
    """70..100 when one normalized name contains the other, else None."""
    na, nb = normalize(a), normalize(b)
    if not na or not nb:
        return None
    if na not in nb and nb not in na:
        return None
    shorter, longer = sorted((len(na), len(nb)))
    return round_half_up(70 + (shorter / longer) * 30)


def match(
    candidate: Optional[str],
    reference: Optional[str],
    thresholds: MatchThresholds = MatchThresholds(),
    *,
    boosted: bool = False,
) -> MatchResult:
    """
    Compare a stored name (candidate) against the disclosed name (reference).

    The boolean decision only uses `min_threshold`; the bands are for display.
    """
    confidence = score(candidate, reference)
    method = "exact" if confidence == 100 else "levenshtein"
    if boosted and confidence < 100:
        contained = containment_score(candidate, reference)
        if contained is not None:
            confidence, method = contained, "containment"

    return MatchResult(
        matched=confidence >= thresholds.min_threshold and confidence > 0,
        confidence=confidence,
        matched_entity=(candidate or "").strip(),
        band=thresholds.band(confidence),
        method=method,
    )
