"""
Intervention Workflow

Status state machine for interventions and their team assignments.

The transition tables are the single source of truth for both
validation and allowed-action introspection.
"""

from datetime import datetime

import structlog

from rxcare.errors import BusinessRuleError
from rxcare.models.base import utcnow
from rxcare.models.intervention import (
    AssignmentStatus,
    ClinicalIntervention,
    InterventionStatus,
)

logger = structlog.get_logger(__name__)


# =============================================================================
# Transition Tables
# =============================================================================

STATUS_TRANSITIONS: dict[InterventionStatus, frozenset[InterventionStatus]] = {
    InterventionStatus.IDENTIFIED: frozenset({InterventionStatus.PLANNING, InterventionStatus.CANCELLED}),
    InterventionStatus.PLANNING: frozenset({InterventionStatus.IN_PROGRESS, InterventionStatus.CANCELLED}),
    InterventionStatus.IN_PROGRESS: frozenset({InterventionStatus.IMPLEMENTED, InterventionStatus.CANCELLED}),
    InterventionStatus.IMPLEMENTED: frozenset({InterventionStatus.COMPLETED, InterventionStatus.CANCELLED}),
    InterventionStatus.COMPLETED: frozenset(),
    InterventionStatus.CANCELLED: frozenset(),
}

ASSIGNMENT_TRANSITIONS: dict[AssignmentStatus, frozenset[AssignmentStatus]] = {
    AssignmentStatus.PENDING: frozenset({AssignmentStatus.IN_PROGRESS, AssignmentStatus.CANCELLED}),
    AssignmentStatus.IN_PROGRESS: frozenset({AssignmentStatus.COMPLETED, AssignmentStatus.CANCELLED}),
    AssignmentStatus.COMPLETED: frozenset(),
    AssignmentStatus.CANCELLED: frozenset(),
}

# States that require at least one strategy
_NEEDS_STRATEGY = (
    InterventionStatus.PLANNING,
    InterventionStatus.IN_PROGRESS,
    InterventionStatus.IMPLEMENTED,
    InterventionStatus.COMPLETED,
)

# States that require a recorded patient response
_NEEDS_OUTCOME = (InterventionStatus.IMPLEMENTED, InterventionStatus.COMPLETED)


def can_transition(current: InterventionStatus, target: InterventionStatus) -> bool:
    """Check a status move. Staying in the same state is always allowed."""
    current, target = InterventionStatus(current), InterventionStatus(target)
    return current == target or target in STATUS_TRANSITIONS[current]


def allowed_transitions(status: InterventionStatus) -> list[InterventionStatus]:
    """Statuses reachable from the given one, in workflow order."""
    targets = STATUS_TRANSITIONS[InterventionStatus(status)]
    return [s for s in InterventionStatus if s in targets]


def is_terminal(status: InterventionStatus) -> bool:
    return not STATUS_TRANSITIONS[InterventionStatus(status)]


def can_transition_assignment(current: AssignmentStatus, target: AssignmentStatus) -> bool:
    return AssignmentStatus(target) in ASSIGNMENT_TRANSITIONS[AssignmentStatus(current)]


# =============================================================================
# Guards
# =============================================================================

def require_transition(intervention: ClinicalIntervention, target: InterventionStatus) -> None:
    """Raise BusinessRuleError when the move is not in the table."""
    if not can_transition(intervention.status, target):
        logger.warning(
            "Rejected status transition",
            intervention_id=intervention.id,
            from_status=intervention.status.value,
            to_status=InterventionStatus(target).value,
        )
        raise BusinessRuleError(
            "Invalid status transition",
            details={
                "from": intervention.status.value,
                "to": InterventionStatus(target).value,
                "allowed": [s.value for s in allowed_transitions(intervention.status)],
            },
        )


def check_invariants(intervention: ClinicalIntervention) -> None:
    """
    Validate aggregate invariants for the current status.

    Raises:
        BusinessRuleError: A status precondition is not met
    """
    status = intervention.status
    if status in _NEEDS_STRATEGY and not intervention.strategies:
        raise BusinessRuleError(
            "At least one intervention strategy is required",
            details={"status": status.value},
        )
    if status in _NEEDS_OUTCOME and (
        intervention.outcomes is None or not intervention.outcomes.patient_response
    ):
        raise BusinessRuleError(
            "Patient response outcome is required for implemented/completed interventions",
            details={"status": status.value},
        )


def apply_completion(intervention: ClinicalIntervention, now: datetime | None = None) -> None:
    """Stamp completion time and the actual duration in minutes."""
    now = now or utcnow()
    intervention.completed_at = now
    if intervention.started_at:
        minutes = round((now - intervention.started_at).total_seconds() / 60)
        intervention.actual_duration = max(minutes, 0)
