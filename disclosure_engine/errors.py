"""Error taxonomy for the evaluation engine."""

from __future__ import annotations


class ComplianceError(Exception):
    """Base class for errors raised by the evaluation engine."""


class NotFoundError(ComplianceError):
    """Referenced disclosure, rule, alert or exclusion does not exist for the organization."""


class InvalidStateError(ComplianceError):
    """Operation rejected because the target is in the wrong state."""


class RuleEvaluationError(ComplianceError):
    """A single threshold rule could not be evaluated."""

    def __init__(self, rule_id: str, message: str):
        super().__init__(f"rule {rule_id}: {message}")
        self.rule_id = rule_id


class MatchConfigurationError(ComplianceError, ValueError):
    """Fuzzy-match thresholds are out of range or out of order."""


class InvalidRequestError(ComplianceError, ValueError):
    """Caller input rejected before any lookup, such as a blank entity name."""
