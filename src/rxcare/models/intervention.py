"""
Clinical Intervention Models

Pydantic models for the intervention aggregate and its embedded parts:
strategies, team assignments, outcome and follow-up.

The aggregate is a single document. Strategies, assignments, outcome and
follow-up are never stored or addressed on their own.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from rxcare.models.base import BaseEntity, UtcDatetime, utcnow
from rxcare.validators import new_object_id

INTERVENTION_NUMBER_PATTERN = r"^CI-\d{6}-\d{4}$"


# =============================================================================
# Enumerations
# =============================================================================

class InterventionCategory(str, Enum):
    """Clinical problem category."""
    DRUG_THERAPY_PROBLEM = "drug_therapy_problem"
    ADVERSE_DRUG_REACTION = "adverse_drug_reaction"
    MEDICATION_NONADHERENCE = "medication_nonadherence"
    DRUG_INTERACTION = "drug_interaction"
    DOSING_ISSUE = "dosing_issue"
    CONTRAINDICATION = "contraindication"
    OTHER = "other"


class InterventionPriority(str, Enum):
    """Clinical urgency."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class InterventionStatus(str, Enum):
    """Workflow state."""
    IDENTIFIED = "identified"
    PLANNING = "planning"
    IN_PROGRESS = "in_progress"
    IMPLEMENTED = "implemented"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class StrategyType(str, Enum):
    """Remediation plan type."""
    MEDICATION_REVIEW = "medication_review"
    DOSE_ADJUSTMENT = "dose_adjustment"
    ALTERNATIVE_THERAPY = "alternative_therapy"
    DISCONTINUATION = "discontinuation"
    ADDITIONAL_MONITORING = "additional_monitoring"
    PATIENT_COUNSELING = "patient_counseling"
    PHYSICIAN_CONSULTATION = "physician_consultation"
    CUSTOM = "custom"


class StrategyPriority(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


class AssignmentRole(str, Enum):
    PHARMACIST = "pharmacist"
    PHYSICIAN = "physician"
    NURSE = "nurse"
    PATIENT = "patient"
    CAREGIVER = "caregiver"


class AssignmentStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PatientResponse(str, Enum):
    IMPROVED = "improved"
    NO_CHANGE = "no_change"
    WORSENED = "worsened"
    UNKNOWN = "unknown"


OPEN_STATUSES = (
    InterventionStatus.IDENTIFIED,
    InterventionStatus.PLANNING,
    InterventionStatus.IN_PROGRESS,
    InterventionStatus.IMPLEMENTED,
)

# Linear progression used for completion percentage and next-step hints
STATUS_ORDER = (
    InterventionStatus.IDENTIFIED,
    InterventionStatus.PLANNING,
    InterventionStatus.IN_PROGRESS,
    InterventionStatus.IMPLEMENTED,
    InterventionStatus.COMPLETED,
)


# =============================================================================
# Embedded Models
# =============================================================================

class _Embedded(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, validate_assignment=True)


class InterventionStrategy(_Embedded):
    """A proposed remediation plan."""

    id: str = Field(default_factory=new_object_id)
    type: StrategyType
    description: str = Field(..., min_length=10, max_length=500)
    rationale: str = Field(..., min_length=10, max_length=500)
    expected_outcome: str = Field(..., min_length=20, max_length=500)
    priority: StrategyPriority = StrategyPriority.SECONDARY


class TeamAssignment(_Embedded):
    """A task delegated to a team member."""

    user_id: str
    role: AssignmentRole
    task: str = Field(..., min_length=1, max_length=300)
    status: AssignmentStatus = AssignmentStatus.PENDING
    assigned_at: UtcDatetime = Field(default_factory=utcnow)
    completed_at: UtcDatetime | None = None
    notes: str | None = Field(default=None, max_length=500)

    @property
    def is_active(self) -> bool:
        return self.status in (AssignmentStatus.PENDING, AssignmentStatus.IN_PROGRESS)


class ClinicalParameter(_Embedded):
    """A measured value before and after the intervention."""

    parameter: str = Field(..., min_length=1, max_length=100)
    before_value: str | None = Field(default=None, max_length=50)
    after_value: str | None = Field(default=None, max_length=50)
    unit: str | None = Field(default=None, max_length=20)
    improvement_percentage: float | None = Field(default=None, ge=-100, le=1000)


class SuccessMetrics(_Embedded):
    problem_resolved: bool = False
    medication_optimized: bool = False
    adherence_improved: bool = False
    cost_savings: float | None = Field(default=None, ge=0)
    quality_of_life_improved: bool = False
    satisfaction_score: int | None = Field(default=None, ge=1, le=5)


class InterventionOutcome(_Embedded):
    """Recorded clinical result."""

    patient_response: PatientResponse
    clinical_parameters: list[ClinicalParameter] = Field(default_factory=list)
    adverse_effects: str | None = Field(default=None, max_length=1000)
    additional_issues: str | None = Field(default=None, max_length=1000)
    success_metrics: SuccessMetrics = Field(default_factory=SuccessMetrics)


class FollowUp(_Embedded):
    """Follow-up scheduling record."""

    required: bool
    scheduled_date: UtcDatetime | None = None
    completed_date: UtcDatetime | None = None
    notes: str | None = Field(default=None, max_length=500)
    next_review_date: UtcDatetime | None = None


# =============================================================================
# Aggregate
# =============================================================================

class ClinicalIntervention(BaseEntity):
    """
    Clinical intervention aggregate.

    A tracked remediation case opened against a patient's drug-therapy
    problem. Workflow status moves identified -> planning -> in_progress
    -> implemented -> completed, with cancelled reachable from any open
    state.
    """

    model_config = ConfigDict(
        from_attributes=True,
        str_strip_whitespace=True,
        validate_assignment=True,
    )

    # Identity
    intervention_number: str = Field(..., pattern=INTERVENTION_NUMBER_PATTERN)
    patient_id: str = Field(..., description="Patient reference")
    identified_by: str = Field(..., description="Identifying user")

    # Classification
    category: InterventionCategory
    priority: InterventionPriority

    # Narrative
    issue_description: str = Field(..., min_length=10, max_length=1000)
    implementation_notes: str | None = Field(default=None, max_length=2000)

    # Workflow
    status: InterventionStatus = InterventionStatus.IDENTIFIED
    strategies: list[InterventionStrategy] = Field(default_factory=list)
    assignments: list[TeamAssignment] = Field(default_factory=list)
    outcomes: InterventionOutcome | None = None
    follow_up: FollowUp | None = None

    # Timing
    identified_date: UtcDatetime = Field(default_factory=utcnow)
    started_at: UtcDatetime = Field(default_factory=utcnow)
    completed_at: UtcDatetime | None = None
    estimated_duration: int | None = Field(default=None, ge=0, description="Minutes")
    actual_duration: int | None = Field(default=None, ge=0, description="Minutes")

    # Cross-references
    related_mtr_id: str | None = None
    related_dtp_ids: list[str] = Field(default_factory=list)

    @field_validator("related_dtp_ids")
    @classmethod
    def _unique_dtp_ids(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(value))

    # -------------------------------------------------------------------------
    # Derived helpers
    # -------------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def completion_percentage(self) -> int:
        """Progress through the linear workflow; cancelled counts as 0."""
        if self.status == InterventionStatus.CANCELLED:
            return 0
        index = STATUS_ORDER.index(self.status)
        return round((index + 1) / len(STATUS_ORDER) * 100)

    def next_step(self) -> InterventionStatus | None:
        if self.status not in STATUS_ORDER or self.status == InterventionStatus.COMPLETED:
            return None
        return STATUS_ORDER[STATUS_ORDER.index(self.status) + 1]

    def can_complete(self) -> bool:
        return (
            self.status == InterventionStatus.IMPLEMENTED
            and len(self.strategies) > 0
            and self.outcomes is not None
            and self.outcomes.patient_response is not None
        )

    def duration_days(self, now: datetime | None = None) -> int:
        """Whole days from start to completion (or to now while open)."""
        end = self.completed_at or now or utcnow()
        return max((end - self.started_at).days, 0)

    def is_overdue(self, thresholds: dict[str, int], now: datetime | None = None) -> bool:
        """
        Open interventions running longer than their priority threshold.

        Args:
            thresholds: Days allowed per priority value
            now: Reference time
        """
        if not self.is_open:
            return False
        limit = thresholds.get(self.priority.value, 7)
        return ((now or utcnow()) - self.started_at).days > limit

    def has_active_assignment(self, user_id: str) -> bool:
        return any(a.user_id == user_id and a.is_active for a in self.assignments)

    def find_assignment(self, user_id: str) -> TeamAssignment | None:
        """Most recent assignment for a user."""
        for assignment in reversed(self.assignments):
            if assignment.user_id == user_id:
                return assignment
        return None

    def find_strategy(self, strategy_id: str) -> InterventionStrategy | None:
        for strategy in self.strategies:
            if strategy.id == strategy_id:
                return strategy
        return None
