"""
Outcome & Follow-up Recorder

Records the clinical result of an intervention and manages its follow-up
schedule. Recording an outcome on an in-progress intervention promotes it
to implemented.
"""

from datetime import datetime
from typing import Any, Callable

import structlog
from pydantic import BaseModel, ConfigDict, Field

from rxcare.audit.service import AuditService, RequestMeta
from rxcare.db.store import InterventionStore
from rxcare.errors import BusinessRuleError, ValidationError
from rxcare.models.base import utcnow
from rxcare.models.intervention import (
    ClinicalIntervention,
    ClinicalParameter,
    FollowUp,
    InterventionOutcome,
    InterventionStatus,
    PatientResponse,
    SuccessMetrics,
)
from rxcare.services.base import AggregateService, service_errors, snapshot
from rxcare.validators import parse_datetime

logger = structlog.get_logger(__name__)


class SuccessMetricsInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    problem_resolved: bool | None = None
    medication_optimized: bool | None = None
    adherence_improved: bool | None = None
    cost_savings: float | None = Field(default=None, ge=0)
    quality_of_life_improved: bool | None = None
    satisfaction_score: int | None = Field(default=None, ge=1, le=5)


class OutcomeInput(BaseModel):
    """Outcome as supplied by a caller; metrics are partial."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    patient_response: PatientResponse
    clinical_parameters: list[ClinicalParameter] = Field(default_factory=list)
    adverse_effects: str | None = Field(default=None, max_length=1000)
    additional_issues: str | None = Field(default=None, max_length=1000)
    success_metrics: SuccessMetricsInput | None = None


def merge_outcome(current: InterventionOutcome | None, update: OutcomeInput) -> InterventionOutcome:
    """
    Fold an outcome update onto the recorded one.

    Clinical parameters merge by parameter name, later values winning.
    Success metrics merge field by field; unset fields keep their value.
    """
    parameters: dict[str, ClinicalParameter] = {}
    if current is not None:
        parameters.update((p.parameter, p) for p in current.clinical_parameters)
    parameters.update((p.parameter, p) for p in update.clinical_parameters)

    metrics = current.success_metrics.model_dump() if current else SuccessMetrics().model_dump()
    if update.success_metrics is not None:
        metrics.update(update.success_metrics.model_dump(exclude_unset=True))

    fields = update.model_fields_set
    return InterventionOutcome(
        patient_response=update.patient_response,
        clinical_parameters=list(parameters.values()),
        adverse_effects=(
            update.adverse_effects if "adverse_effects" in fields or current is None
            else current.adverse_effects
        ),
        additional_issues=(
            update.additional_issues if "additional_issues" in fields or current is None
            else current.additional_issues
        ),
        success_metrics=SuccessMetrics(**metrics),
    )


def _check_outcome_input(data: Any) -> None:
    if not isinstance(data, dict):
        raise ValidationError("Outcome data is required")
    if not data.get("patient_response"):
        raise ValidationError("Patient response is required", field="patient_response")
    for index, parameter in enumerate(data.get("clinical_parameters") or []):
        name = parameter.get("parameter") if isinstance(parameter, dict) else None
        if not isinstance(name, str) or not name.strip():
            raise ValidationError(
                "Clinical parameter name is required",
                field=f"clinical_parameters.{index}.parameter",
            )


class OutcomeService(AggregateService):
    def __init__(
        self,
        store: InterventionStore,
        audit: AuditService,
        clock: Callable[[], datetime] = utcnow,
    ):
        super().__init__(store, audit, clock)

    async def record_outcome(
        self,
        intervention_id: str,
        outcome: dict[str, Any] | OutcomeInput,
        user_id: str,
        tenant_id: str,
        request: RequestMeta | None = None,
    ) -> ClinicalIntervention:
        """
        Record or amend the clinical outcome.

        Raises:
            ValidationError: Missing patient response or unnamed parameter
            BusinessRuleError: Intervention was cancelled
        """
        user_id, tenant_id, scope = self._actor(user_id, tenant_id)
        async with service_errors("record_outcome", intervention_id=intervention_id, user_id=user_id):
            if not isinstance(outcome, OutcomeInput):
                _check_outcome_input(outcome)
                outcome = OutcomeInput.model_validate(outcome)

            item = await self._load(scope, intervention_id)
            if item.status == InterventionStatus.CANCELLED:
                raise BusinessRuleError("Cannot record outcomes for a cancelled intervention")
            before = snapshot(item)
            previous_status = item.status

            item.outcomes = merge_outcome(item.outcomes, outcome)
            if item.status == InterventionStatus.IN_PROGRESS:
                item.status = InterventionStatus.IMPLEMENTED
            saved = await self._save(scope, item, user_id)

        details: dict[str, Any] = {
            "patient_response": saved.outcomes.patient_response.value,
            "parameters_recorded": len(outcome.clinical_parameters),
        }
        if saved.status != previous_status:
            details["status_change"] = {"from": previous_status.value, "to": saved.status.value}
        await self._record("RECORD_OUTCOME", saved, user_id, details, before=before, request=request)
        return saved

    async def schedule_follow_up(
        self,
        intervention_id: str,
        follow_up: dict[str, Any],
        user_id: str,
        tenant_id: str,
        request: RequestMeta | None = None,
    ) -> ClinicalIntervention:
        """
        Set the follow-up schedule.

        ``required`` must be a boolean. When it is true ``scheduled_date``
        must parse to a date.
        """
        user_id, tenant_id, scope = self._actor(user_id, tenant_id)
        async with service_errors("schedule_follow_up", intervention_id=intervention_id, user_id=user_id):
            if not isinstance(follow_up, dict):
                raise ValidationError("Follow-up data is required")
            required = follow_up.get("required")
            if not isinstance(required, bool):
                raise ValidationError("Follow-up required flag must be a boolean", field="required")
            scheduled = parse_datetime(follow_up.get("scheduled_date"), "scheduled_date")
            if required and scheduled is None:
                raise ValidationError(
                    "Valid scheduled date is required when follow-up is required",
                    field="scheduled_date",
                )
            next_review = parse_datetime(follow_up.get("next_review_date"), "next_review_date")

            item = await self._load(scope, intervention_id)
            item.follow_up = FollowUp(
                required=required,
                scheduled_date=scheduled,
                notes=follow_up.get("notes"),
                next_review_date=next_review,
                completed_date=item.follow_up.completed_date if item.follow_up else None,
            )
            saved = await self._save(scope, item, user_id)

        await self._record(
            "SCHEDULE_FOLLOW_UP", saved, user_id,
            {
                "required": required,
                "scheduled_date": scheduled.isoformat() if scheduled else None,
            },
            request=request,
        )
        return saved

    async def complete_follow_up(
        self,
        intervention_id: str,
        user_id: str,
        tenant_id: str,
        notes: str | None = None,
        next_review_date: Any = None,
        request: RequestMeta | None = None,
    ) -> ClinicalIntervention:
        user_id, tenant_id, scope = self._actor(user_id, tenant_id)
        async with service_errors("complete_follow_up", intervention_id=intervention_id, user_id=user_id):
            next_review = parse_datetime(next_review_date, "next_review_date")
            item = await self._load(scope, intervention_id)
            if item.follow_up is None or not item.follow_up.required:
                raise BusinessRuleError("No follow-up is scheduled for this intervention")
            if item.follow_up.completed_date is not None:
                raise BusinessRuleError("Follow-up already completed")

            item.follow_up = FollowUp.model_validate({
                **item.follow_up.model_dump(),
                "completed_date": self.clock(),
                "notes": notes if notes is not None else item.follow_up.notes,
                "next_review_date": next_review or item.follow_up.next_review_date,
            })
            saved = await self._save(scope, item, user_id)

        await self._record(
            "COMPLETE_FOLLOW_UP", saved, user_id,
            {"completed_date": saved.follow_up.completed_date.isoformat()},
            request=request,
        )
        return saved
