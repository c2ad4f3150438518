from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum
from typing import Annotated, Any, ClassVar, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    TypeAdapter,
    field_validator,
    model_validator,
)


class ConflictType(StrEnum):
    SELF_DEALING = "SELF_DEALING"
    HRIS_MATCH = "HRIS_MATCH"
    PRIOR_CASE_HISTORY = "PRIOR_CASE_HISTORY"
    RELATIONSHIP_PATTERN = "RELATIONSHIP_PATTERN"
    VENDOR_MATCH = "VENDOR_MATCH"


class ConflictSeverity(StrEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ConflictStatus(StrEnum):
    OPEN = "OPEN"
    DISMISSED = "DISMISSED"
    ESCALATED = "ESCALATED"
    RESOLVED = "RESOLVED"


class ExclusionScope(StrEnum):
    PERMANENT = "PERMANENT"
    TIME_LIMITED = "TIME_LIMITED"
    ONE_TIME = "ONE_TIME"


class DismissalCategory(StrEnum):
    FALSE_MATCH_DIFFERENT_ENTITY = "FALSE_MATCH_DIFFERENT_ENTITY"
    FALSE_MATCH_NAME_COLLISION = "FALSE_MATCH_NAME_COLLISION"
    ALREADY_REVIEWED = "ALREADY_REVIEWED"
    PRE_APPROVED_EXCEPTION = "PRE_APPROVED_EXCEPTION"
    BELOW_THRESHOLD = "BELOW_THRESHOLD"
    OTHER = "OTHER"


class ThresholdAction(StrEnum):
    FLAG_REVIEW = "FLAG_REVIEW"
    CREATE_CASE = "CREATE_CASE"
    REQUIRE_APPROVAL = "REQUIRE_APPROVAL"
    NOTIFY = "NOTIFY"


# Higher wins when several rules fire for one disclosure.
ACTION_PRIORITY: Dict[ThresholdAction, int] = {
    ThresholdAction.CREATE_CASE: 4,
    ThresholdAction.REQUIRE_APPROVAL: 3,
    ThresholdAction.FLAG_REVIEW: 2,
    ThresholdAction.NOTIFY: 1,
}


class ApplyMode(StrEnum):
    FORWARD_ONLY = "FORWARD_ONLY"
    RETROACTIVE = "RETROACTIVE"
    RETROACTIVE_DATE = "RETROACTIVE_DATE"


class ConditionOperator(StrEnum):
    eq = "eq"
    neq = "neq"
    gt = "gt"
    gte = "gte"
    lt = "lt"
    lte = "lte"
    contains = "contains"
    not_contains = "not_contains"
    in_ = "in"
    not_in = "not_in"


COMPARISON_OPERATORS = frozenset(
    {ConditionOperator.gt, ConditionOperator.gte, ConditionOperator.lt, ConditionOperator.lte}
)
MEMBERSHIP_OPERATORS = frozenset({ConditionOperator.in_, ConditionOperator.not_in})
CONTAINMENT_OPERATORS = frozenset({ConditionOperator.contains, ConditionOperator.not_contains})


class Conjunction(StrEnum):
    AND = "AND"
    OR = "OR"


class AggregateFunction(StrEnum):
    SUM = "SUM"
    COUNT = "COUNT"
    AVG = "AVG"
    MAX = "MAX"


class WindowType(StrEnum):
    rolling = "rolling"
    calendar = "calendar"


class WindowPeriod(StrEnum):
    days = "days"
    months = "months"
    years = "years"


AGGREGATE_DIMENSIONS = frozenset({"person", "entity", "category"})


class TimelineEventType(StrEnum):
    DISCLOSURE_SUBMITTED = "DISCLOSURE_SUBMITTED"
    CONFLICT_DETECTED = "CONFLICT_DETECTED"
    CONFLICT_DISMISSED = "CONFLICT_DISMISSED"
    CONFLICT_ESCALATED = "CONFLICT_ESCALATED"
    CONFLICT_RESOLVED = "CONFLICT_RESOLVED"
    CASE_INVOLVEMENT = "CASE_INVOLVEMENT"
    EXCLUSION_CREATED = "EXCLUSION_CREATED"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Match context (one populated arm per alert)
# ---------------------------------------------------------------------------


class VendorContext(BaseModel):
    kind: Literal["vendor"] = "vendor"
    vendor_id: Optional[str] = None
    vendor_name: str
    contract_value: Optional[float] = None
    currency: Optional[str] = None
    approval_level: Optional[str] = None
    vendor_status: Optional[str] = None
    relationship_start_date: Optional[str] = None


class EmployeeContext(BaseModel):
    kind: Literal["employee"] = "employee"
    employee_id: Optional[str] = None
    person_id: Optional[str] = None
    name: str
    department: Optional[str] = None
    job_title: Optional[str] = None
    relationship: Optional[str] = None
    manager_id: Optional[str] = None
    manager_name: Optional[str] = None


class DateRange(BaseModel):
    start: datetime
    end: datetime


class DisclosureContext(BaseModel):
    kind: Literal["disclosure"] = "disclosure"
    prior_disclosure_ids: List[str] = Field(default_factory=list)
    total_value: Optional[float] = None
    currency: Optional[str] = None
    date_range: Optional[DateRange] = None
    disclosure_types: List[str] = Field(default_factory=list)
    person_ids: List[str] = Field(default_factory=list)


class CaseContext(BaseModel):
    kind: Literal["case"] = "case"
    case_ids: List[str] = Field(default_factory=list)
    case_references: List[str] = Field(default_factory=list)
    case_types: List[str] = Field(default_factory=list)
    outcomes: List[str] = Field(default_factory=list)
    roles: List[str] = Field(default_factory=list)


MatchDetails = Annotated[
    Union[VendorContext, EmployeeContext, DisclosureContext, CaseContext],
    Field(discriminator="kind"),
]
match_details_adapter: TypeAdapter[Any] = TypeAdapter(MatchDetails)


class SeverityFactors(BaseModel):
    factors: List[str] = Field(default_factory=list)
    threshold_exceeded: Optional[bool] = None
    historical_occurrences: Optional[int] = None
    value_at_risk: Optional[float] = None
    match_confidence: Optional[int] = None


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------


class DetectedConflict(BaseModel):
    """A candidate conflict produced by a strategy, before exclusions and persistence."""

    conflict_type: ConflictType
    severity: ConflictSeverity
    summary: str
    matched_entity: str
    match_confidence: int = Field(ge=0, le=100)
    match_details: MatchDetails
    severity_factors: Optional[SeverityFactors] = None
    # Identifies "the same conflict" within one disclosure (employee id, entity key, ...).
    dedupe_key: str


class ConflictAlert(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    alert_key: str
    organization_id: str
    disclosure_id: str
    conflict_type: ConflictType
    severity: ConflictSeverity
    status: ConflictStatus
    summary: str
    matched_entity: str
    match_confidence: int
    match_details: MatchDetails
    severity_factors: Optional[SeverityFactors] = None

    dismissed_category: Optional[DismissalCategory] = None
    dismissed_reason: Optional[str] = None
    dismissed_by: Optional[str] = None
    dismissed_at: Optional[datetime] = None
    escalated_to_case_id: Optional[str] = None
    escalated_at: Optional[datetime] = None
    escalation_notes: Optional[str] = None
    exclusion_id: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AlertQuery(BaseModel):
    status: List[ConflictStatus] = Field(default_factory=list)
    conflict_type: List[ConflictType] = Field(default_factory=list)
    severity: List[ConflictSeverity] = Field(default_factory=list)
    disclosure_id: Optional[str] = None
    matched_entity: Optional[str] = None
    min_confidence: Optional[int] = Field(default=None, ge=0, le=100)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)


class AlertPage(BaseModel):
    items: List[ConflictAlert] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 20
    total_pages: int = 0
    has_more: bool = False


class DismissAlertRequest(BaseModel):
    category: DismissalCategory
    reason: str = Field(min_length=1)
    create_exclusion: bool = False
    exclusion_scope: ExclusionScope = ExclusionScope.PERMANENT
    exclusion_expires_at: Optional[datetime] = None
    exclusion_notes: Optional[str] = None


class ConflictCheckResult(BaseModel):
    disclosure_id: str
    person_id: str
    checked_at: datetime
    conflict_count: int = 0
    conflicts: List[ConflictAlert] = Field(default_factory=list)
    excluded_conflict_count: int = 0
    applied_exclusion_ids: List[str] = Field(default_factory=list)
    scan_cap_hits: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Exclusions
# ---------------------------------------------------------------------------


class CreateExclusionRequest(BaseModel):
    person_id: str = Field(min_length=1)
    matched_entity: str = Field(min_length=1)
    conflict_type: ConflictType
    reason: str = Field(min_length=1)
    notes: Optional[str] = None
    scope: ExclusionScope = ExclusionScope.PERMANENT
    expires_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _time_limited_needs_expiry(self) -> "CreateExclusionRequest":
        if self.scope == ExclusionScope.TIME_LIMITED and self.expires_at is None:
            raise ValueError("TIME_LIMITED exclusions require expires_at")
        if self.expires_at is not None:
            self.expires_at = _as_utc(self.expires_at)
        return self


class ConflictExclusion(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    person_id: str
    matched_entity: str
    conflict_type: ConflictType
    reason: str
    notes: Optional[str] = None
    scope: ExclusionScope
    expires_at: Optional[datetime] = None
    is_active: bool = True
    created_by: Optional[str] = None
    created_from_alert_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def in_force(self, now: datetime) -> bool:
        """Active and, when an expiry is set, not yet expired."""
        if not self.is_active:
            return False
        if self.expires_at is None:
            return True
        return _as_utc(self.expires_at) > _as_utc(now)


class ExclusionCheck(BaseModel):
    excluded: bool
    exclusion_id: Optional[str] = None


class ExclusionPage(BaseModel):
    items: List[ConflictExclusion] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 20


# ---------------------------------------------------------------------------
# Threshold rules
# ---------------------------------------------------------------------------

Scalar = Union[StrictBool, StrictInt, StrictFloat, datetime, str]
RuleValue = Union[Scalar, List[Union[StrictBool, StrictInt, StrictFloat, str]]]


def _parse_number(value: str) -> Optional[float]:
    try:
        return float(value)
    except ValueError:
        return None


def _parse_datetime(value: str) -> Optional[datetime]:
    s = value.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        return _as_utc(datetime.fromisoformat(s))
    except ValueError:
        return None


class RuleCondition(BaseModel):
    """One field comparison. `conjunction` links it to the next condition."""

    field: str = Field(min_length=1)
    operator: ConditionOperator
    value: RuleValue
    conjunction: Optional[Conjunction] = None

    @model_validator(mode="after")
    def _check_value_type(self) -> "RuleCondition":
        op = self.operator
        value = self.value

        if op in MEMBERSHIP_OPERATORS:
            if not isinstance(value, list):
                raise ValueError(f"operator '{op}' needs a list value")
            return self

        if isinstance(value, list):
            raise ValueError(f"operator '{op}' does not accept a list value")

        if op in COMPARISON_OPERATORS:
            if isinstance(value, bool):
                raise ValueError(f"operator '{op}' needs a number or date, got a boolean")
            if isinstance(value, str):
                number = _parse_number(value)
                if number is not None:
                    self.value = number
                    return self
                parsed = _parse_datetime(value)
                if parsed is None:
                    raise ValueError(f"operator '{op}' needs a number or date, got {value!r}")
                self.value = parsed
            elif isinstance(value, datetime):
                self.value = _as_utc(value)
            return self

        if op in CONTAINMENT_OPERATORS and isinstance(value, bool):
            raise ValueError(f"operator '{op}' needs a string or number")
        return self


class TimeWindow(BaseModel):
    type: WindowType = WindowType.rolling
    period: WindowPeriod = WindowPeriod.months
    value: int = Field(default=12, ge=1)


class AggregateConfig(BaseModel):
    dimensions: List[str] = Field(default_factory=list)
    time_window: Optional[TimeWindow] = None
    group_by: List[str] = Field(default_factory=list)
    aggregate_field: str = "disclosureValue"
    aggregate_function: AggregateFunction = AggregateFunction.SUM

    @field_validator("dimensions")
    @classmethod
    def _known_dimensions(cls, value: List[str]) -> List[str]:
        unknown = sorted(set(value) - AGGREGATE_DIMENSIONS)
        if unknown:
            raise ValueError(f"unknown aggregate dimension(s): {', '.join(unknown)}")
        return value


class ActionConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    case_template_id: Optional[str] = None
    case_title: Optional[str] = None
    notify_users: List[str] = Field(default_factory=list)
    notify_roles: List[str] = Field(default_factory=list)
    workflow_template_id: Optional[str] = None


class ThresholdRuleBase(BaseModel):
    name: str = Field(min_length=3, max_length=200)
    description: Optional[str] = None
    disclosure_types: List[str] = Field(min_length=1)
    conditions: List[RuleCondition] = Field(min_length=1)
    aggregate_config: Optional[AggregateConfig] = None
    action: ThresholdAction
    action_config: Optional[ActionConfig] = None
    apply_mode: ApplyMode = ApplyMode.FORWARD_ONLY
    apply_from: Optional[datetime] = None
    priority: int = Field(default=0, ge=0, le=100)

    @model_validator(mode="after")
    def _apply_from_required(self) -> "ThresholdRuleBase":
        if self.apply_mode == ApplyMode.RETROACTIVE_DATE and self.apply_from is None:
            raise ValueError("RETROACTIVE_DATE rules require apply_from")
        if self.apply_from is not None:
            self.apply_from = _as_utc(self.apply_from)
        return self


class CreateRuleRequest(ThresholdRuleBase):
    pass


class UpdateRuleRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=3, max_length=200)
    description: Optional[str] = None
    disclosure_types: Optional[List[str]] = Field(default=None, min_length=1)
    conditions: Optional[List[RuleCondition]] = Field(default=None, min_length=1)
    aggregate_config: Optional[AggregateConfig] = None
    action: Optional[ThresholdAction] = None
    action_config: Optional[ActionConfig] = None
    apply_mode: Optional[ApplyMode] = None
    apply_from: Optional[datetime] = None
    priority: Optional[int] = Field(default=None, ge=0, le=100)
    is_active: Optional[bool] = None


class ThresholdRule(ThresholdRuleBase):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    is_active: bool = True
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ContributingDisclosure(BaseModel):
    id: str
    date: datetime
    value: float


class AggregateBreakdown(BaseModel):
    related_disclosures: List[ContributingDisclosure] = Field(default_factory=list)
    current_value: float = 0.0
    total_value: float = 0.0
    aggregate_function: AggregateFunction = AggregateFunction.SUM
    aggregate_field: str = "disclosureValue"
    dimensions: List[str] = Field(default_factory=list)
    window_start: datetime
    window_end: datetime
    scan_capped: bool = False


class TriggeredRule(BaseModel):
    rule_id: str
    rule_name: str
    action: ThresholdAction
    priority: int = 0
    evaluated_value: float
    threshold_value: Optional[float] = None
    aggregate_breakdown: Optional[AggregateBreakdown] = None
    action_config: Optional[ActionConfig] = None


class ThresholdTriggerLog(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    rule_id: str
    disclosure_id: str
    person_id: str
    evaluated_value: float
    threshold_value: Optional[float] = None
    aggregate_breakdown: Optional[AggregateBreakdown] = None
    action_taken: ThresholdAction
    triggered_at: Optional[datetime] = None


class ThresholdEvaluationResult(BaseModel):
    triggered: bool = False
    triggered_rules: List[TriggeredRule] = Field(default_factory=list)
    recommended_action: Optional[ThresholdAction] = None
    failed_rule_ids: List[str] = Field(default_factory=list)


class RetroactiveRunSummary(BaseModel):
    rule_id: str
    evaluated: int = 0
    triggered: int = 0
    skipped: int = 0
    failed: int = 0
    scan_capped: bool = False


# ---------------------------------------------------------------------------
# Facade result + events
# ---------------------------------------------------------------------------


class DisclosureEvaluation(BaseModel):
    disclosure_id: str
    organization_id: str
    person_id: str
    threshold: ThresholdEvaluationResult
    conflicts: ConflictCheckResult

    @property
    def requires_case(self) -> bool:
        return self.threshold.recommended_action == ThresholdAction.CREATE_CASE


class ConflictDetectedEvent(BaseModel):
    name: ClassVar[str] = "conflict.detected"

    organization_id: str
    disclosure_id: str
    person_id: str
    conflict_count: int
    conflicts: List[ConflictAlert]


class ThresholdTriggeredEvent(BaseModel):
    name: ClassVar[str] = "threshold.triggered"

    organization_id: str
    disclosure_id: str
    person_id: str
    triggered_rules: List[TriggeredRule]
    recommended_action: Optional[ThresholdAction] = None


# ---------------------------------------------------------------------------
# Entity timeline
# ---------------------------------------------------------------------------


class TimelineEvent(BaseModel):
    event_type: TimelineEventType
    occurred_at: datetime
    description: str
    disclosure_id: Optional[str] = None
    conflict_alert_id: Optional[str] = None
    case_id: Optional[str] = None
    person_id: Optional[str] = None


class TimelineStatistics(BaseModel):
    total_disclosures: int = 0
    total_conflicts: int = 0
    total_cases: int = 0
    unique_persons: int = 0
    earliest: Optional[datetime] = None
    latest: Optional[datetime] = None


class EntityTimeline(BaseModel):
    entity_name: str
    total_events: int = 0
    events: List[TimelineEvent] = Field(default_factory=list)
    statistics: TimelineStatistics = Field(default_factory=TimelineStatistics)
