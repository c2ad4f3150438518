from __future__ import annotations

from typing import Sequence

from disclosure_engine.contracts import ConflictSeverity


def determine_severity(confidence: int, factors: Sequence[str] = ()) -> ConflictSeverity:
    """Severity tier from match confidence plus the number of aggravating factors."""
    n = len(factors)
    if confidence >= 95 or n >= 3:
        return ConflictSeverity.CRITICAL
    if confidence >= 85 or n >= 2:
        return ConflictSeverity.HIGH
    if confidence >= 75:
        return ConflictSeverity.MEDIUM
    return ConflictSeverity.LOW


_RANK = {
    ConflictSeverity.LOW: 0,
    ConflictSeverity.MEDIUM: 1,
    ConflictSeverity.HIGH: 2,
    ConflictSeverity.CRITICAL: 3,
}


def severity_rank(severity: ConflictSeverity) -> int:
    return _RANK[ConflictSeverity(severity)]
