"""
RxCare Domain Models

Pydantic models for the intervention aggregate, its audit ledger and the
collaborator records it references.
"""

from rxcare.models.base import BaseEntity, utcnow
from rxcare.models.intervention import (
    AssignmentRole,
    AssignmentStatus,
    ClinicalIntervention,
    ClinicalParameter,
    FollowUp,
    InterventionCategory,
    InterventionOutcome,
    InterventionPriority,
    InterventionStatus,
    InterventionStrategy,
    OPEN_STATUSES,
    PatientResponse,
    StrategyPriority,
    StrategyType,
    SuccessMetrics,
    TeamAssignment,
)
from rxcare.models.audit import AuditLogEntry, ComplianceCategory, RiskLevel
from rxcare.models.people import MtrReference, Patient, StaffUser

__all__ = [
    "BaseEntity",
    "utcnow",
    # Intervention
    "ClinicalIntervention",
    "InterventionCategory",
    "InterventionPriority",
    "InterventionStatus",
    "InterventionStrategy",
    "StrategyType",
    "StrategyPriority",
    "TeamAssignment",
    "AssignmentRole",
    "AssignmentStatus",
    "InterventionOutcome",
    "ClinicalParameter",
    "SuccessMetrics",
    "PatientResponse",
    "FollowUp",
    "OPEN_STATUSES",
    # Audit
    "AuditLogEntry",
    "RiskLevel",
    "ComplianceCategory",
    # Collaborators
    "Patient",
    "StaffUser",
    "MtrReference",
]
