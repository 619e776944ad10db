"""
Clinical Intervention Service

Lifecycle operations on the intervention aggregate:
- Create with numbering and duplicate warning
- Create from a drug therapy problem
- Field and status updates guarded by the workflow table
- Soft delete
- Strategy add/update
- MTR linking
- Event notifications

Every mutation is a version-checked write followed by an audit entry.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

import structlog
from pydantic import BaseModel, ConfigDict, Field

from rxcare.audit.service import AuditService, RequestMeta
from rxcare.collaborators import MtrDirectory, PatientDirectory, UserDirectory
from rxcare.db.store import InterventionFilter, InterventionStore
from rxcare.errors import BusinessRuleError, NotFoundError, ValidationError
from rxcare.models.base import UtcDatetime, utcnow
from rxcare.models.intervention import (
    ClinicalIntervention,
    FollowUp,
    InterventionCategory,
    InterventionOutcome,
    InterventionPriority,
    InterventionStatus,
    InterventionStrategy,
    StrategyPriority,
    StrategyType,
)
from rxcare.notifications.dispatcher import (
    NotificationDispatcher,
    NotificationReport,
    NotificationUrgency,
)
from rxcare.services.base import AggregateService, service_errors, snapshot
from rxcare.services.duplicates import DuplicateDetector
from rxcare.services.numbering import NumberingService
from rxcare.services.strategies import map_dtp_category, priority_from_problem, strategies_for_dtp
from rxcare.tenancy import scope_for
from rxcare.validators import parse_datetime, validate_object_id
from rxcare import workflow

logger = structlog.get_logger(__name__)


# =============================================================================
# Inputs
# =============================================================================

class StrategyInput(BaseModel):
    """Strategy as supplied by a caller. The id is assigned on add."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    type: StrategyType
    description: str = Field(..., min_length=10, max_length=500)
    rationale: str = Field(..., min_length=10, max_length=500)
    expected_outcome: str = Field(..., min_length=20, max_length=500)
    priority: StrategyPriority = StrategyPriority.SECONDARY


class StrategyUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    type: StrategyType | None = None
    description: str | None = Field(default=None, min_length=10, max_length=500)
    rationale: str | None = Field(default=None, min_length=10, max_length=500)
    expected_outcome: str | None = Field(default=None, min_length=20, max_length=500)
    priority: StrategyPriority | None = None


class InterventionCreate(BaseModel):
    """Fields accepted when opening an intervention."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    patient_id: str
    category: InterventionCategory
    priority: InterventionPriority
    issue_description: str = Field(..., min_length=10, max_length=1000)
    implementation_notes: str | None = Field(default=None, max_length=2000)
    strategies: list[StrategyInput] = Field(default_factory=list)
    identified_date: UtcDatetime | None = None
    estimated_duration: int | None = Field(default=None, ge=0)
    related_mtr_id: str | None = None
    related_dtp_ids: list[str] = Field(default_factory=list)


class InterventionUpdate(BaseModel):
    """Fields a caller may change. Unset fields are left alone."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    category: InterventionCategory | None = None
    priority: InterventionPriority | None = None
    issue_description: str | None = Field(default=None, min_length=10, max_length=1000)
    implementation_notes: str | None = Field(default=None, max_length=2000)
    estimated_duration: int | None = Field(default=None, ge=0)
    status: InterventionStatus | None = None
    outcomes: InterventionOutcome | None = None
    follow_up: FollowUp | None = None


class DrugTherapyProblemInput(BaseModel):
    """A drug therapy problem an intervention is raised from."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    dtp_id: str
    patient_id: str
    category: str = Field(..., min_length=1, max_length=100)
    severity: str | None = None
    description: str = Field(..., min_length=10, max_length=1000)
    mtr_id: str | None = None


@dataclass
class CreateResult:
    intervention: ClinicalIntervention
    duplicates: list[ClinicalIntervention] = field(default_factory=list)


def _parse(model: type[BaseModel], data: Any, message: str) -> Any:
    if isinstance(data, model):
        return data
    if not isinstance(data, dict):
        raise ValidationError(message)
    return model.model_validate(data)


# =============================================================================
# Service
# =============================================================================

class InterventionService(AggregateService):
    """
    Intervention lifecycle operations.

    Usage:
        service = container.interventions
        result = await service.create({...}, user_id, workplace_id)
        item = await service.update(result.intervention.id, {"status": "planning"}, user_id, workplace_id)
    """

    def __init__(
        self,
        store: InterventionStore,
        audit: AuditService,
        numbering: NumberingService,
        duplicates: DuplicateDetector,
        patients: PatientDirectory,
        users: UserDirectory,
        mtrs: MtrDirectory,
        dispatcher: NotificationDispatcher,
        clock: Callable[[], datetime] = utcnow,
    ):
        super().__init__(store, audit, clock)
        self.numbering = numbering
        self.duplicates = duplicates
        self.patients = patients
        self.users = users
        self.mtrs = mtrs
        self.dispatcher = dispatcher

    # -------------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------------

    async def create(
        self,
        data: dict[str, Any] | InterventionCreate,
        user_id: str,
        tenant_id: str,
        request: RequestMeta | None = None,
    ) -> CreateResult:
        """
        Open an intervention.

        Status starts at identified, or planning when strategies are
        supplied. Likely duplicates are returned alongside, not blocked.

        Raises:
            ValidationError: Missing or malformed fields
            NotFoundError: Patient or identifying user not in this workplace
        """
        user_id, tenant_id, scope = self._actor(user_id, tenant_id)
        async with service_errors("create_intervention", user_id=user_id, tenant_id=tenant_id):
            payload = _parse(InterventionCreate, data, "Intervention data is required")
            patient_id = validate_object_id(payload.patient_id, "patient_id")

            patient = await self.patients.find_by_id(patient_id, tenant_id)
            if patient is None:
                raise NotFoundError("Patient not found")
            user = await self.users.find_by_id(user_id)
            if user is None or (user.workplace_id and user.workplace_id != tenant_id):
                raise NotFoundError("User not found")
            if payload.related_mtr_id:
                await self._require_mtr(payload.related_mtr_id, patient_id, tenant_id)
            dtp_ids = [validate_object_id(d, "related_dtp_ids") for d in payload.related_dtp_ids]

            duplicates = await self.duplicates.find_duplicates(
                patient_id, payload.category, tenant_id, now=self.clock()
            )

            now = self.clock()
            strategies = [InterventionStrategy(**s.model_dump()) for s in payload.strategies]

            async def insert(number: str) -> ClinicalIntervention:
                item = ClinicalIntervention(
                    tenant_id=tenant_id,
                    intervention_number=number,
                    patient_id=patient_id,
                    identified_by=user_id,
                    category=payload.category,
                    priority=payload.priority,
                    issue_description=payload.issue_description,
                    implementation_notes=payload.implementation_notes,
                    strategies=strategies,
                    status=InterventionStatus.PLANNING if strategies else InterventionStatus.IDENTIFIED,
                    identified_date=parse_datetime(payload.identified_date, "identified_date") or now,
                    started_at=now,
                    estimated_duration=payload.estimated_duration,
                    related_mtr_id=payload.related_mtr_id,
                    related_dtp_ids=dtp_ids,
                    created_by=user_id,
                    updated_by=user_id,
                    created_at=now,
                    updated_at=now,
                )
                workflow.check_invariants(item)
                return await self.store.insert(item)

            item = await self.numbering.allocate_and_insert(tenant_id, insert, now=now)

        logger.info(
            "Clinical intervention created",
            intervention_id=item.id,
            intervention_number=item.intervention_number,
            tenant_id=tenant_id,
            duplicates_found=len(duplicates),
        )
        await self._record(
            "CREATE",
            item,
            user_id,
            {
                "intervention_number": item.intervention_number,
                "category": item.category.value,
                "priority": item.priority.value,
                "patient_id": item.patient_id,
                "duplicates_found": len(duplicates),
            },
            request=request,
        )
        return CreateResult(intervention=item, duplicates=duplicates)

    async def create_from_dtp(
        self,
        problem: dict[str, Any] | DrugTherapyProblemInput,
        user_id: str,
        tenant_id: str,
        request: RequestMeta | None = None,
    ) -> CreateResult:
        """
        Open an intervention for a drug therapy problem.

        Category, priority and a starter strategy are derived from the
        problem. The problem id is kept in related_dtp_ids.
        """
        async with service_errors("create_from_dtp", user_id=user_id, tenant_id=tenant_id):
            dtp = _parse(DrugTherapyProblemInput, problem, "Drug therapy problem is required")
            payload = InterventionCreate(
                patient_id=dtp.patient_id,
                category=map_dtp_category(dtp.category),
                priority=priority_from_problem(dtp.severity, dtp.category),
                issue_description=dtp.description,
                strategies=[
                    StrategyInput(**s.model_dump(exclude={"id"})) for s in strategies_for_dtp(dtp.category)
                ],
                related_mtr_id=dtp.mtr_id,
                related_dtp_ids=[dtp.dtp_id],
            )
        return await self.create(payload, user_id, tenant_id, request=request)

    # -------------------------------------------------------------------------
    # Read
    # -------------------------------------------------------------------------

    async def get_by_id(
        self,
        intervention_id: str,
        tenant_id: str,
        user_id: str | None = None,
        request: RequestMeta | None = None,
    ) -> ClinicalIntervention:
        """Scoped fetch. Records read access when the reader is known."""
        scope = scope_for(tenant_id)
        async with service_errors("get_intervention", intervention_id=intervention_id):
            item = await self._load(scope, intervention_id)
        if user_id:
            await self.audit.log_access(item.id, user_id, scope.tenant_id, "read", request=request)
        return item

    async def get_for_mtr(self, mtr_id: str, tenant_id: str) -> list[ClinicalIntervention]:
        scope = scope_for(tenant_id)
        mtr_id = validate_object_id(mtr_id, "mtr_id")
        async with service_errors("get_interventions_for_mtr", mtr_id=mtr_id):
            return await self.store.find(scope, InterventionFilter(related_mtr_id=mtr_id))

    # -------------------------------------------------------------------------
    # Update / delete
    # -------------------------------------------------------------------------

    async def update(
        self,
        intervention_id: str,
        updates: dict[str, Any] | InterventionUpdate,
        user_id: str,
        tenant_id: str,
        request: RequestMeta | None = None,
    ) -> ClinicalIntervention:
        """
        Apply field updates and an optional status transition.

        Raises:
            NotFoundError: Not in this workplace
            BusinessRuleError: Transition not allowed or preconditions unmet
            ConflictError: Another write landed first
        """
        user_id, tenant_id, scope = self._actor(user_id, tenant_id)
        async with service_errors("update_intervention", intervention_id=intervention_id, user_id=user_id):
            payload = _parse(InterventionUpdate, updates, "Update data is required")
            changes = payload.model_dump(exclude_unset=True)
            item = await self._load(scope, intervention_id)
            before = snapshot(item)
            previous_status = item.status

            target = changes.pop("status", None)
            for name in ("category", "priority", "issue_description", "implementation_notes",
                         "estimated_duration"):
                if name in changes:
                    if changes[name] is None and name in ("category", "priority", "issue_description"):
                        raise ValidationError(f"{name} cannot be cleared", field=name)
                    setattr(item, name, changes[name])
            if "outcomes" in changes:
                item.outcomes = payload.outcomes
            if "follow_up" in changes:
                item.follow_up = payload.follow_up

            if target is not None and InterventionStatus(target) != item.status:
                target = InterventionStatus(target)
                workflow.require_transition(item, target)
                item.status = target
                if target == InterventionStatus.COMPLETED:
                    workflow.apply_completion(item, self.clock())
                elif target == InterventionStatus.CANCELLED:
                    item.completed_at = self.clock()
            workflow.check_invariants(item)

            saved = await self._save(scope, item, user_id)

        action = "UPDATE"
        if saved.status != previous_status:
            action = {
                InterventionStatus.COMPLETED: "COMPLETE",
                InterventionStatus.CANCELLED: "CANCEL",
            }.get(saved.status, "UPDATE")
        details = {"updated_fields": sorted(k for k in payload.model_dump(exclude_unset=True))}
        if saved.status != previous_status:
            details["status_change"] = {"from": previous_status.value, "to": saved.status.value}
        if "priority" in changes:
            details["priority"] = saved.priority.value
        await self._record(action, saved, user_id, details, before=before, request=request)

        if saved.status != previous_status:
            await self._notify_assignees(saved, previous_status)
        return saved

    async def delete(
        self,
        intervention_id: str,
        user_id: str,
        tenant_id: str,
        request: RequestMeta | None = None,
    ) -> bool:
        """
        Soft delete. Completed interventions cannot be deleted.

        Returns False when the intervention vanished before the write.
        """
        user_id, tenant_id, scope = self._actor(user_id, tenant_id)
        async with service_errors("delete_intervention", intervention_id=intervention_id, user_id=user_id):
            item = await self._load(scope, intervention_id)
            if item.status == InterventionStatus.COMPLETED:
                raise BusinessRuleError("Cannot delete completed interventions")
            before = snapshot(item)
            item.is_deleted = True
            try:
                saved = await self._save(scope, item, user_id)
            except NotFoundError:
                return False

        await self._record(
            "DELETE",
            saved,
            user_id,
            {"intervention_number": saved.intervention_number},
            before=before,
            request=request,
        )
        return True

    # -------------------------------------------------------------------------
    # Strategies
    # -------------------------------------------------------------------------

    async def add_strategy(
        self,
        intervention_id: str,
        strategy: dict[str, Any] | StrategyInput,
        user_id: str,
        tenant_id: str,
        request: RequestMeta | None = None,
    ) -> ClinicalIntervention:
        """Append a strategy, promoting identified to planning."""
        user_id, tenant_id, scope = self._actor(user_id, tenant_id)
        async with service_errors("add_strategy", intervention_id=intervention_id, user_id=user_id):
            payload = _parse(StrategyInput, strategy, "Strategy data is required")
            item = await self._load(scope, intervention_id)
            if workflow.is_terminal(item.status):
                raise BusinessRuleError(
                    "Cannot add strategies to a closed intervention",
                    details={"status": item.status.value},
                )
            item.strategies.append(InterventionStrategy(**payload.model_dump()))
            if item.status == InterventionStatus.IDENTIFIED:
                item.status = InterventionStatus.PLANNING
            saved = await self._save(scope, item, user_id)

        await self._record(
            "ADD_STRATEGY", saved, user_id,
            {"strategy_type": payload.type.value, "strategy_id": saved.strategies[-1].id},
            request=request,
        )
        return saved

    async def update_strategy(
        self,
        intervention_id: str,
        strategy_id: str,
        updates: dict[str, Any] | StrategyUpdate,
        user_id: str,
        tenant_id: str,
        request: RequestMeta | None = None,
    ) -> ClinicalIntervention:
        user_id, tenant_id, scope = self._actor(user_id, tenant_id)
        async with service_errors("update_strategy", intervention_id=intervention_id, strategy_id=strategy_id):
            payload = _parse(StrategyUpdate, updates, "Strategy updates are required")
            item = await self._load(scope, intervention_id)
            current = item.find_strategy(strategy_id)
            if current is None:
                raise NotFoundError("Strategy not found")

            changes = {k: v for k, v in payload.model_dump(exclude_unset=True).items() if v is not None}
            merged = InterventionStrategy.model_validate({**current.model_dump(), **changes})
            item.strategies = [merged if s.id == strategy_id else s for s in item.strategies]
            saved = await self._save(scope, item, user_id)

        await self._record(
            "UPDATE_STRATEGY", saved, user_id,
            {"strategy_id": strategy_id, "updated_fields": sorted(changes)},
            request=request,
        )
        return saved

    # -------------------------------------------------------------------------
    # MTR linking
    # -------------------------------------------------------------------------

    async def _require_mtr(self, mtr_id: str, patient_id: str, tenant_id: str):
        mtr_id = validate_object_id(mtr_id, "mtr_id")
        mtr = await self.mtrs.find_by_id(mtr_id, tenant_id)
        if mtr is None:
            raise NotFoundError("MTR not found")
        if mtr.patient_id != patient_id:
            raise BusinessRuleError(
                "MTR belongs to a different patient",
                details={"mtr_id": mtr_id},
            )
        return mtr

    async def link_to_mtr(
        self,
        intervention_id: str,
        mtr_id: str,
        user_id: str,
        tenant_id: str,
        request: RequestMeta | None = None,
    ) -> ClinicalIntervention:
        user_id, tenant_id, scope = self._actor(user_id, tenant_id)
        async with service_errors("link_to_mtr", intervention_id=intervention_id, mtr_id=mtr_id):
            item = await self._load(scope, intervention_id)
            mtr = await self._require_mtr(mtr_id, item.patient_id, tenant_id)
            item.related_mtr_id = mtr.id
            saved = await self._save(scope, item, user_id)

        await self._record("LINK_MTR", saved, user_id, {"mtr_id": mtr.id}, request=request)
        return saved

    # -------------------------------------------------------------------------
    # Notifications
    # -------------------------------------------------------------------------

    async def notify_intervention(
        self,
        intervention_id: str,
        event: str,
        recipients: list[str],
        message: str,
        user_id: str,
        tenant_id: str,
        urgency: NotificationUrgency | str = NotificationUrgency.NORMAL,
    ) -> NotificationReport:
        """Send an event about an intervention and audit the outcome."""
        user_id, tenant_id, scope = self._actor(user_id, tenant_id)
        async with service_errors("notify_intervention", intervention_id=intervention_id):
            item = await self._load(scope, intervention_id)
            urgency = NotificationUrgency(urgency)
            recipients = [validate_object_id(r, "recipients") for r in recipients]

        report = await self._dispatch(event, recipients, message, urgency, item)
        await self._record(
            "SEND_NOTIFICATIONS",
            item,
            user_id,
            {
                "event": event,
                "recipients": len(recipients),
                "sent": report.sent,
                "failed": report.failed,
                "retrying": report.retrying,
            },
        )
        return report

    async def _dispatch(
        self,
        event: str,
        recipients: list[str],
        message: str,
        urgency: NotificationUrgency,
        item: ClinicalIntervention,
    ) -> NotificationReport:
        try:
            return await self.dispatcher.notify(
                event,
                recipients,
                message,
                urgency,
                subject=f"{item.intervention_number}: {event.replace('_', ' ')}",
            )
        except Exception as e:
            logger.error(
                "Notification dispatch failed",
                intervention_id=item.id,
                event_name=event,
                error=str(e),
                exc_info=True,
            )
            return NotificationReport(failed=len(recipients))

    async def _notify_assignees(self, item: ClinicalIntervention, previous: InterventionStatus) -> None:
        recipients = [a.user_id for a in item.assignments if a.is_active]
        if item.status == InterventionStatus.COMPLETED:
            recipients.append(item.identified_by)
        if not recipients:
            return
        urgency = (
            NotificationUrgency.HIGH
            if item.priority in (InterventionPriority.HIGH, InterventionPriority.CRITICAL)
            else NotificationUrgency.NORMAL
        )
        await self._dispatch(
            "intervention_status_changed",
            recipients,
            f"Intervention {item.intervention_number} moved from {previous.value} to {item.status.value}.",
            urgency,
            item,
        )
