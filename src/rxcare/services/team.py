"""
Team Assignments

Per-intervention task delegation and cross-intervention workload:
- Assign, progress and remove team members
- Assignment lookups per user
- Workload and per-user statistics
- Assignment history with its audit entries
"""

from datetime import datetime, timedelta
from typing import Any, Callable

import structlog
from pydantic import BaseModel, ConfigDict, Field

from rxcare.audit.service import AuditService, RequestMeta
from rxcare.collaborators import UserDirectory
from rxcare.db.store import AuditQuery, InterventionFilter, InterventionStore
from rxcare.errors import BusinessRuleError, NotFoundError, ValidationError
from rxcare.models.base import utcnow
from rxcare.models.intervention import (
    AssignmentRole,
    AssignmentStatus,
    ClinicalIntervention,
    InterventionPriority,
    InterventionStatus,
    TeamAssignment,
)
from rxcare.notifications.dispatcher import NotificationDispatcher, NotificationUrgency
from rxcare.services.base import AggregateService, service_errors
from rxcare.tenancy import scope_for
from rxcare.validators import validate_object_id
from rxcare import workflow

logger = structlog.get_logger(__name__)

ASSIGNMENT_ACTIONS = (
    "INTERVENTION_ASSIGN_TEAM_MEMBER",
    "INTERVENTION_UPDATE_ASSIGNMENT",
    "INTERVENTION_REMOVE_ASSIGNMENT",
)


class AssignmentInput(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    user_id: str
    role: AssignmentRole
    task: str = Field(..., min_length=1, max_length=300)
    notes: str | None = Field(default=None, max_length=500)


class TeamService(AggregateService):
    """
    Team assignment sub-workflow.

    Assignment moves pending -> in_progress | cancelled and
    in_progress -> completed | cancelled. Completed and cancelled are final.
    """

    def __init__(
        self,
        store: InterventionStore,
        audit: AuditService,
        users: UserDirectory,
        dispatcher: NotificationDispatcher,
        overdue_days: int = 7,
        clock: Callable[[], datetime] = utcnow,
    ):
        super().__init__(store, audit, clock)
        self.users = users
        self.dispatcher = dispatcher
        self.overdue_days = overdue_days

    async def _notify(self, event: str, recipients: list[str], message: str, item: ClinicalIntervention) -> None:
        urgency = (
            NotificationUrgency.HIGH
            if item.priority in (InterventionPriority.HIGH, InterventionPriority.CRITICAL)
            else NotificationUrgency.NORMAL
        )
        try:
            await self.dispatcher.notify(
                event, recipients, message, urgency,
                subject=f"{item.intervention_number}: {event.replace('_', ' ')}",
            )
        except Exception as e:
            logger.error("Assignment notification failed", intervention_id=item.id, error=str(e))

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def assign(
        self,
        intervention_id: str,
        assignment: dict[str, Any] | AssignmentInput,
        user_id: str,
        tenant_id: str,
        request: RequestMeta | None = None,
    ) -> ClinicalIntervention:
        """
        Add a pending assignment. Promotes planning to in_progress.

        Raises:
            NotFoundError: Intervention or assignee not in this workplace
            BusinessRuleError: Closed intervention, or the user already holds
                an active assignment on it
        """
        user_id, tenant_id, scope = self._actor(user_id, tenant_id)
        async with service_errors("assign_team_member", intervention_id=intervention_id, user_id=user_id):
            if isinstance(assignment, dict):
                assignment = AssignmentInput.model_validate(assignment)
            elif not isinstance(assignment, AssignmentInput):
                raise ValidationError("Assignment data is required")
            assignee_id = validate_object_id(assignment.user_id, "assignment.user_id")

            item = await self._load(scope, intervention_id)
            if workflow.is_terminal(item.status):
                raise BusinessRuleError(
                    "Cannot assign team members to a closed intervention",
                    details={"status": item.status.value},
                )
            assignee = await self.users.find_by_id(assignee_id)
            if assignee is None or (assignee.workplace_id and assignee.workplace_id != tenant_id):
                raise NotFoundError("Assigned user not found")
            if item.has_active_assignment(assignee_id):
                raise BusinessRuleError("User already has an active assignment for this intervention")

            item.assignments.append(TeamAssignment(
                user_id=assignee_id,
                role=assignment.role,
                task=assignment.task,
                notes=assignment.notes,
                status=AssignmentStatus.PENDING,
                assigned_at=self.clock(),
            ))
            if item.status == InterventionStatus.PLANNING:
                item.status = InterventionStatus.IN_PROGRESS
            workflow.check_invariants(item)
            saved = await self._save(scope, item, user_id)

        await self._record(
            "ASSIGN_TEAM_MEMBER", saved, user_id,
            {"assigned_user_id": assignee_id, "role": assignment.role.value, "task": assignment.task},
            request=request,
        )
        await self._notify(
            "intervention_assigned",
            [assignee_id],
            f"You have been assigned to intervention {saved.intervention_number}: {assignment.task}",
            saved,
        )
        return saved

    async def update_assignment_status(
        self,
        intervention_id: str,
        assignee_id: str,
        status: AssignmentStatus | str,
        user_id: str,
        tenant_id: str,
        notes: str | None = None,
        request: RequestMeta | None = None,
    ) -> ClinicalIntervention:
        user_id, tenant_id, scope = self._actor(user_id, tenant_id)
        assignee_id = validate_object_id(assignee_id, "assignee_id")
        try:
            status = AssignmentStatus(status)
        except ValueError:
            raise ValidationError(f"Invalid assignment status: {status!r}", field="status") from None

        async with service_errors("update_assignment_status", intervention_id=intervention_id, user_id=user_id):
            item = await self._load(scope, intervention_id)
            current = item.find_assignment(assignee_id)
            if current is None:
                raise NotFoundError("Assignment not found")
            previous = current.status
            if not workflow.can_transition_assignment(previous, status):
                raise BusinessRuleError(
                    "Invalid assignment status transition",
                    details={"from": previous.value, "to": status.value},
                )
            current.status = status
            if notes is not None:
                current.notes = notes
            if status == AssignmentStatus.COMPLETED:
                current.completed_at = self.clock()
            saved = await self._save(scope, item, user_id)

        await self._record(
            "UPDATE_ASSIGNMENT", saved, user_id,
            {"assigned_user_id": assignee_id, "from": previous.value, "to": status.value},
            request=request,
        )
        if saved.identified_by != user_id:
            await self._notify(
                "assignment_status_changed",
                [saved.identified_by],
                f"Assignment on {saved.intervention_number} is now {status.value}.",
                saved,
            )
        return saved

    async def remove(
        self,
        intervention_id: str,
        assignee_id: str,
        user_id: str,
        tenant_id: str,
        reason: str | None = None,
        request: RequestMeta | None = None,
    ) -> ClinicalIntervention:
        """Delete an assignment entry. Completed assignments stay."""
        user_id, tenant_id, scope = self._actor(user_id, tenant_id)
        assignee_id = validate_object_id(assignee_id, "assignee_id")
        async with service_errors("remove_assignment", intervention_id=intervention_id, user_id=user_id):
            item = await self._load(scope, intervention_id)
            current = item.find_assignment(assignee_id)
            if current is None:
                raise NotFoundError("Assignment not found")
            if current.status == AssignmentStatus.COMPLETED:
                raise BusinessRuleError("Cannot remove completed assignments")
            item.assignments = [a for a in item.assignments if a is not current]
            saved = await self._save(scope, item, user_id)

        await self._record(
            "REMOVE_ASSIGNMENT", saved, user_id,
            {
                "removed_user_id": assignee_id,
                "role": current.role.value,
                "reason": reason or "Assignment removed",
            },
            request=request,
        )
        return saved

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_user_assignments(
        self,
        user_id: str,
        tenant_id: str,
        status: AssignmentStatus | str | None = None,
    ) -> list[ClinicalIntervention]:
        """Interventions holding an assignment for the user."""
        scope = scope_for(tenant_id)
        user_id = validate_object_id(user_id, "user_id")
        try:
            status = AssignmentStatus(status) if status else None
        except ValueError:
            raise ValidationError(f"Invalid assignment status: {status!r}", field="status") from None
        async with service_errors("get_user_assignments", user_id=user_id):
            return await self.store.find(
                scope, InterventionFilter(assigned_to=user_id, assignment_status=status)
            )

    async def workload_stats(
        self,
        tenant_id: str,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
    ) -> dict[str, Any]:
        """
        Assignment counts overall and per user.

        The optional range applies to intervention creation time. Average
        completion time is in milliseconds.
        """
        scope = scope_for(tenant_id)
        async with service_errors("workload_stats", tenant_id=scope.tenant_id):
            items = await self.store.find(
                scope, InterventionFilter(created_from=date_from, created_to=date_to)
            )

            totals = {"total": 0, "active": 0, "completed": 0}
            per_user: dict[str, dict[str, Any]] = {}
            for item in items:
                for assignment in item.assignments:
                    totals["total"] += 1
                    stats = per_user.setdefault(assignment.user_id, {
                        "active": 0, "completed": 0, "times": [],
                    })
                    if assignment.status == AssignmentStatus.COMPLETED:
                        totals["completed"] += 1
                        stats["completed"] += 1
                        if assignment.completed_at:
                            elapsed = assignment.completed_at - assignment.assigned_at
                            stats["times"].append(elapsed.total_seconds() * 1000)
                    elif assignment.is_active:
                        totals["active"] += 1
                        stats["active"] += 1

            workloads = []
            for assignee_id, stats in per_user.items():
                user = await self.users.find_by_id(assignee_id)
                times = stats["times"]
                workloads.append({
                    "user_id": assignee_id,
                    "user_name": user.display_name if user else assignee_id,
                    "active_assignments": stats["active"],
                    "completed_assignments": stats["completed"],
                    "average_completion_time": sum(times) / len(times) if times else 0,
                })

        return {
            "total_assignments": totals["total"],
            "active_assignments": totals["active"],
            "completed_assignments": totals["completed"],
            "user_workloads": workloads,
        }

    async def user_assignment_stats(self, user_id: str, tenant_id: str) -> dict[str, Any]:
        """Per-user counts; active assignments older than the threshold are overdue."""
        scope = scope_for(tenant_id)
        user_id = validate_object_id(user_id, "user_id")
        async with service_errors("user_assignment_stats", user_id=user_id):
            items = await self.store.find(scope, InterventionFilter(assigned_to=user_id))

        now = self.clock()
        limit = timedelta(days=self.overdue_days)
        total = active = completed = overdue = 0
        for item in items:
            for assignment in item.assignments:
                if assignment.user_id != user_id:
                    continue
                total += 1
                if assignment.is_active:
                    active += 1
                    if now - assignment.assigned_at > limit:
                        overdue += 1
                elif assignment.status == AssignmentStatus.COMPLETED:
                    completed += 1

        return {
            "total_assignments": total,
            "active_assignments": active,
            "completed_assignments": completed,
            "overdue_assignments": overdue,
            "completion_rate": completed / total * 100 if total else 0,
        }

    async def assignment_history(self, intervention_id: str, tenant_id: str) -> dict[str, Any]:
        scope = scope_for(tenant_id)
        async with service_errors("assignment_history", intervention_id=intervention_id):
            item = await self._load(scope, intervention_id)
            trail = await self.audit.store.query(AuditQuery(
                tenant_id=scope.tenant_id,
                intervention_ids=(item.id,),
                actions=ASSIGNMENT_ACTIONS,
            ))
        return {"assignments": item.assignments, "audit_trail": trail}
