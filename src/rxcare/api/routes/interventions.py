"""
Clinical Intervention Routes

REST endpoints over the intervention services. Handlers translate HTTP
input into service calls and wrap results in the success envelope;
errors are mapped by the application's exception handlers.
"""

from typing import Any

from fastapi import APIRouter, Body, Depends, Query, Response, status
from pydantic import BaseModel, Field

from rxcare.api.deps import RequestContext, get_container, require_action
from rxcare.container import RxCareContainer
from rxcare.errors import NotFoundError
from rxcare.models.base import UtcDatetime
from rxcare.models.intervention import AssignmentStatus, InterventionPriority
from rxcare.notifications.dispatcher import NotificationUrgency
from rxcare.services import strategies
from rxcare.services.interventions import (
    DrugTherapyProblemInput,
    InterventionCreate,
    InterventionUpdate,
    StrategyInput,
    StrategyUpdate,
)
from rxcare.services.team import AssignmentInput
from rxcare.tenancy import scope_for
from rxcare.validators import parse_datetime, validate_object_id

router = APIRouter(prefix="/interventions", tags=["Clinical Interventions"])


# =============================================================================
# Request Models
# =============================================================================

class AssignmentStatusUpdate(BaseModel):
    status: AssignmentStatus
    notes: str | None = Field(default=None, max_length=500)


class FollowUpCompletion(BaseModel):
    notes: str | None = Field(default=None, max_length=500)
    next_review_date: UtcDatetime | None = None


class MtrLink(BaseModel):
    mtr_id: str


class NotificationRequest(BaseModel):
    event: str = Field(..., min_length=1, max_length=100)
    recipients: list[str] = Field(..., min_length=1)
    message: str = Field(..., min_length=1, max_length=2000)
    urgency: NotificationUrgency = NotificationUrgency.NORMAL


class StrategyRecommendationRequest(BaseModel):
    category: str
    priority: InterventionPriority
    issue_description: str = ""
    patient_age: int | None = Field(default=None, ge=0, le=150)
    current_medications: list[str] = Field(default_factory=list)
    conditions: list[str] = Field(default_factory=list)


def ok(data: Any, **extra: Any) -> dict[str, Any]:
    return {"success": True, "data": data, **extra}


# =============================================================================
# Collection & Reports
# =============================================================================

@router.get("")
async def list_interventions(
    patient_id: str | None = None,
    category: str | None = None,
    priority: str | None = None,
    status_filter: str | None = Query(default=None, alias="status"),
    identified_by: str | None = None,
    assigned_to: str | None = None,
    date_from: str | None = None,
    date_to: str | None = None,
    search: str | None = None,
    page: int = 1,
    limit: int | None = None,
    sort_by: str = "identified_date",
    sort_order: str = "desc",
    ctx: RequestContext = Depends(require_action("intervention:read")),
    container: RxCareContainer = Depends(get_container),
):
    """List interventions with filters, sorting and pagination."""
    result = await container.reporting.list_interventions(
        ctx.tenant_id,
        {
            "patient_id": patient_id,
            "category": category,
            "priority": priority,
            "status": status_filter,
            "identified_by": identified_by,
            "assigned_to": assigned_to,
            "date_from": date_from,
            "date_to": date_to,
            "search": search,
        },
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return ok(result["data"], pagination=result["pagination"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_intervention(
    payload: InterventionCreate,
    ctx: RequestContext = Depends(require_action("intervention:create")),
    container: RxCareContainer = Depends(get_container),
):
    result = await container.interventions.create(payload, ctx.user_id, ctx.tenant_id, request=ctx.meta)
    return ok(result.intervention, duplicates=result.duplicates)


@router.post("/from-dtp", status_code=status.HTTP_201_CREATED)
async def create_from_dtp(
    payload: DrugTherapyProblemInput,
    ctx: RequestContext = Depends(require_action("intervention:create")),
    container: RxCareContainer = Depends(get_container),
):
    result = await container.interventions.create_from_dtp(payload, ctx.user_id, ctx.tenant_id, request=ctx.meta)
    return ok(result.intervention, duplicates=result.duplicates)


@router.get("/dashboard")
async def dashboard(
    date_from: str | None = None,
    date_to: str | None = None,
    ctx: RequestContext = Depends(require_action("intervention:report")),
    container: RxCareContainer = Depends(get_container),
):
    return ok(await container.reporting.dashboard_metrics(ctx.tenant_id, date_from, date_to))


@router.get("/analytics/trends")
async def trends(
    date_from: str | None = None,
    date_to: str | None = None,
    period: str = "month",
    group_by: str = "category",
    ctx: RequestContext = Depends(require_action("intervention:report")),
    container: RxCareContainer = Depends(get_container),
):
    return ok(await container.reporting.trend_analysis(
        ctx.tenant_id, date_from, date_to, period=period, group_by=group_by,
    ))


@router.get("/reports/outcomes")
async def outcome_report(
    date_from: str | None = None,
    date_to: str | None = None,
    category: str | None = None,
    priority: str | None = None,
    ctx: RequestContext = Depends(require_action("intervention:report")),
    container: RxCareContainer = Depends(get_container),
):
    return ok(await container.reporting.outcome_report(
        ctx.tenant_id, date_from, date_to, category=category, priority=priority,
    ))


@router.get("/reports/cost-savings")
async def cost_savings_report(
    date_from: str | None = None,
    date_to: str | None = None,
    ctx: RequestContext = Depends(require_action("intervention:report")),
    container: RxCareContainer = Depends(get_container),
):
    return ok(await container.reporting.cost_savings_report(ctx.tenant_id, date_from, date_to))


@router.get("/reports/compliance")
async def compliance_report(
    date_from: str,
    date_to: str,
    ctx: RequestContext = Depends(require_action("intervention:audit")),
    container: RxCareContainer = Depends(get_container),
):
    return ok(await container.audit.compliance_report(
        ctx.tenant_id,
        parse_datetime(date_from, "date_from"),
        parse_datetime(date_to, "date_to"),
    ))


@router.get("/export")
async def export_interventions(
    format: str = "csv",
    category: str | None = None,
    priority: str | None = None,
    status_filter: str | None = Query(default=None, alias="status"),
    date_from: str | None = None,
    date_to: str | None = None,
    ctx: RequestContext = Depends(require_action("intervention:export")),
    container: RxCareContainer = Depends(get_container),
):
    result = await container.exports.export(
        ctx.tenant_id,
        {
            "category": category,
            "priority": priority,
            "status": status_filter,
            "date_from": date_from,
            "date_to": date_to,
        },
        format=format,
        user_id=ctx.user_id,
        request=ctx.meta,
    )
    return Response(
        content=result.content,
        media_type=result.media_type,
        headers={"Content-Disposition": f'attachment; filename="{result.filename}"'},
    )


@router.get("/search/patients")
async def search_patients(
    q: str = Query(..., min_length=1),
    limit: int = Query(default=10, ge=1, le=50),
    ctx: RequestContext = Depends(require_action("intervention:read")),
    container: RxCareContainer = Depends(get_container),
):
    return ok(await container.reporting.search_patients(q, ctx.tenant_id, limit))


@router.get("/patients/{patient_id}/summary")
async def patient_summary(
    patient_id: str,
    ctx: RequestContext = Depends(require_action("intervention:read")),
    container: RxCareContainer = Depends(get_container),
):
    return ok(await container.reporting.patient_summary(patient_id, ctx.tenant_id))


@router.get("/mtr/{mtr_id}")
async def interventions_for_mtr(
    mtr_id: str,
    ctx: RequestContext = Depends(require_action("intervention:read")),
    container: RxCareContainer = Depends(get_container),
):
    return ok(await container.interventions.get_for_mtr(mtr_id, ctx.tenant_id))


# =============================================================================
# Assignments & Workload
# =============================================================================

@router.get("/assignments/me")
async def my_assignments(
    status_filter: AssignmentStatus | None = Query(default=None, alias="status"),
    ctx: RequestContext = Depends(require_action("intervention:read")),
    container: RxCareContainer = Depends(get_container),
):
    return ok(await container.team.get_user_assignments(ctx.user_id, ctx.tenant_id, status_filter))


@router.get("/assignments/users/{user_id}/stats")
async def user_assignment_stats(
    user_id: str,
    ctx: RequestContext = Depends(require_action("intervention:report")),
    container: RxCareContainer = Depends(get_container),
):
    return ok(await container.team.user_assignment_stats(user_id, ctx.tenant_id))


@router.get("/workload")
async def workload(
    date_from: str | None = None,
    date_to: str | None = None,
    ctx: RequestContext = Depends(require_action("intervention:report")),
    container: RxCareContainer = Depends(get_container),
):
    return ok(await container.team.workload_stats(
        ctx.tenant_id,
        parse_datetime(date_from, "date_from"),
        parse_datetime(date_to, "date_to"),
    ))


# =============================================================================
# Strategy Knowledge Base
# =============================================================================

@router.get("/strategies/categories/{category}")
async def recommended_strategies(
    category: str,
    ctx: RequestContext = Depends(require_action("intervention:read")),
):
    return ok([t.to_dict() for t in strategies.recommended_for(category)])


@router.post("/strategies/recommendations")
async def generate_recommendations(
    payload: StrategyRecommendationRequest,
    ctx: RequestContext = Depends(require_action("intervention:read")),
):
    factors = strategies.PatientFactors(
        age=payload.patient_age,
        conditions=payload.conditions,
        current_medications=payload.current_medications,
    )
    ranked = strategies.generate(payload.category, payload.priority, payload.issue_description, factors)
    return ok([t.to_dict() for t in ranked])


@router.post("/strategies/validate")
async def validate_strategy(
    payload: dict[str, Any] = Body(...),
    ctx: RequestContext = Depends(require_action("intervention:read")),
):
    result = strategies.validate_custom(payload)
    return ok({"is_valid": result.is_valid, "errors": result.errors})


# =============================================================================
# Single Intervention
# =============================================================================

@router.get("/{intervention_id}")
async def get_intervention(
    intervention_id: str,
    ctx: RequestContext = Depends(require_action("intervention:read")),
    container: RxCareContainer = Depends(get_container),
):
    item = await container.interventions.get_by_id(
        intervention_id, ctx.tenant_id, user_id=ctx.user_id, request=ctx.meta,
    )
    return ok(item, progress=container.reporting.progress(item))


@router.patch("/{intervention_id}")
async def update_intervention(
    intervention_id: str,
    payload: InterventionUpdate,
    ctx: RequestContext = Depends(require_action("intervention:update")),
    container: RxCareContainer = Depends(get_container),
):
    item = await container.interventions.update(
        intervention_id, payload, ctx.user_id, ctx.tenant_id, request=ctx.meta,
    )
    return ok(item)


@router.delete("/{intervention_id}")
async def delete_intervention(
    intervention_id: str,
    ctx: RequestContext = Depends(require_action("intervention:delete")),
    container: RxCareContainer = Depends(get_container),
):
    deleted = await container.interventions.delete(
        intervention_id, ctx.user_id, ctx.tenant_id, request=ctx.meta,
    )
    if not deleted:
        raise NotFoundError("Clinical intervention not found")
    return ok({"deleted": True})


@router.post("/{intervention_id}/strategies")
async def add_strategy(
    intervention_id: str,
    payload: StrategyInput,
    ctx: RequestContext = Depends(require_action("intervention:update")),
    container: RxCareContainer = Depends(get_container),
):
    return ok(await container.interventions.add_strategy(
        intervention_id, payload, ctx.user_id, ctx.tenant_id, request=ctx.meta,
    ))


@router.patch("/{intervention_id}/strategies/{strategy_id}")
async def update_strategy(
    intervention_id: str,
    strategy_id: str,
    payload: StrategyUpdate,
    ctx: RequestContext = Depends(require_action("intervention:update")),
    container: RxCareContainer = Depends(get_container),
):
    return ok(await container.interventions.update_strategy(
        intervention_id, strategy_id, payload, ctx.user_id, ctx.tenant_id, request=ctx.meta,
    ))


@router.post("/{intervention_id}/assignments")
async def assign_team_member(
    intervention_id: str,
    payload: AssignmentInput,
    ctx: RequestContext = Depends(require_action("intervention:assign")),
    container: RxCareContainer = Depends(get_container),
):
    return ok(await container.team.assign(
        intervention_id, payload, ctx.user_id, ctx.tenant_id, request=ctx.meta,
    ))


@router.patch("/{intervention_id}/assignments/{user_id}")
async def update_assignment(
    intervention_id: str,
    user_id: str,
    payload: AssignmentStatusUpdate,
    ctx: RequestContext = Depends(require_action("intervention:update")),
    container: RxCareContainer = Depends(get_container),
):
    return ok(await container.team.update_assignment_status(
        intervention_id, user_id, payload.status, ctx.user_id, ctx.tenant_id,
        notes=payload.notes, request=ctx.meta,
    ))


@router.delete("/{intervention_id}/assignments/{user_id}")
async def remove_assignment(
    intervention_id: str,
    user_id: str,
    reason: str | None = None,
    ctx: RequestContext = Depends(require_action("intervention:assign")),
    container: RxCareContainer = Depends(get_container),
):
    return ok(await container.team.remove(
        intervention_id, user_id, ctx.user_id, ctx.tenant_id, reason=reason, request=ctx.meta,
    ))


@router.get("/{intervention_id}/assignments/history")
async def assignment_history(
    intervention_id: str,
    ctx: RequestContext = Depends(require_action("intervention:read")),
    container: RxCareContainer = Depends(get_container),
):
    return ok(await container.team.assignment_history(intervention_id, ctx.tenant_id))


@router.put("/{intervention_id}/outcome")
async def record_outcome(
    intervention_id: str,
    payload: dict[str, Any] = Body(...),
    ctx: RequestContext = Depends(require_action("intervention:update")),
    container: RxCareContainer = Depends(get_container),
):
    return ok(await container.outcomes.record_outcome(
        intervention_id, payload, ctx.user_id, ctx.tenant_id, request=ctx.meta,
    ))


@router.put("/{intervention_id}/follow-up")
async def schedule_follow_up(
    intervention_id: str,
    payload: dict[str, Any] = Body(...),
    ctx: RequestContext = Depends(require_action("intervention:update")),
    container: RxCareContainer = Depends(get_container),
):
    return ok(await container.outcomes.schedule_follow_up(
        intervention_id, payload, ctx.user_id, ctx.tenant_id, request=ctx.meta,
    ))


@router.post("/{intervention_id}/follow-up/complete")
async def complete_follow_up(
    intervention_id: str,
    payload: FollowUpCompletion,
    ctx: RequestContext = Depends(require_action("intervention:update")),
    container: RxCareContainer = Depends(get_container),
):
    return ok(await container.outcomes.complete_follow_up(
        intervention_id, ctx.user_id, ctx.tenant_id,
        notes=payload.notes, next_review_date=payload.next_review_date, request=ctx.meta,
    ))


@router.post("/{intervention_id}/link-mtr")
async def link_to_mtr(
    intervention_id: str,
    payload: MtrLink,
    ctx: RequestContext = Depends(require_action("intervention:update")),
    container: RxCareContainer = Depends(get_container),
):
    return ok(await container.interventions.link_to_mtr(
        intervention_id, payload.mtr_id, ctx.user_id, ctx.tenant_id, request=ctx.meta,
    ))


@router.post("/{intervention_id}/notifications")
async def send_notifications(
    intervention_id: str,
    payload: NotificationRequest,
    ctx: RequestContext = Depends(require_action("intervention:update")),
    container: RxCareContainer = Depends(get_container),
):
    report = await container.interventions.notify_intervention(
        intervention_id, payload.event, payload.recipients, payload.message,
        ctx.user_id, ctx.tenant_id, urgency=payload.urgency,
    )
    return ok({
        "sent": report.sent,
        "failed": report.failed,
        "retrying": report.retrying,
        "notification_ids": report.notification_ids,
    })


@router.get("/{intervention_id}/audit-trail")
async def audit_trail(
    intervention_id: str,
    page: int = 1,
    limit: int = 50,
    date_from: str | None = None,
    date_to: str | None = None,
    ctx: RequestContext = Depends(require_action("intervention:audit")),
    container: RxCareContainer = Depends(get_container),
):
    intervention_id = validate_object_id(intervention_id, "intervention_id")
    if await container.store.get(scope_for(ctx.tenant_id), intervention_id) is None:
        raise NotFoundError("Clinical intervention not found")
    return ok(await container.audit.audit_trail(
        intervention_id,
        ctx.tenant_id,
        page=page,
        limit=limit,
        start_date=parse_datetime(date_from, "date_from"),
        end_date=parse_datetime(date_to, "date_to"),
    ))
