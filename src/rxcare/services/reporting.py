"""
Query & Reporting Engine

Read-only views over a tenant's interventions:
- Filtered, sorted, paginated listing
- Per-patient summary
- Dashboard metrics and monthly trend
- Time-bucketed trend analysis
- Patient search annotated with intervention counts
- Outcome and cost-savings reports

Nothing here mutates state or writes audit entries.
"""

import math
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

import structlog

from rxcare.collaborators import PatientDirectory
from rxcare.config import InterventionSettings
from rxcare.db.store import SORTABLE_FIELDS, InterventionFilter, InterventionStore, SortSpec
from rxcare.errors import ValidationError
from rxcare.models.base import utcnow
from rxcare.models.intervention import (
    ClinicalIntervention,
    InterventionCategory,
    InterventionPriority,
    InterventionStatus,
    PatientResponse,
    StrategyType,
)
from rxcare.services.base import service_errors
from rxcare.tenancy import scope_for
from rxcare.validators import clamp_pagination, parse_datetime, validate_object_id

logger = structlog.get_logger(__name__)

TREND_PERIODS = ("day", "week", "month", "quarter")
TREND_GROUPS = ("category", "priority", "status", "total")

# Categories where a resolved problem counts as an avoided adverse event
_ADVERSE_EVENT_CATEGORIES = (
    InterventionCategory.ADVERSE_DRUG_REACTION,
    InterventionCategory.DRUG_INTERACTION,
    InterventionCategory.CONTRAINDICATION,
)


@dataclass
class CostParameters:
    """Unit costs for the savings model."""
    adverse_event_cost: float = 5000.0
    hospital_admission_cost: float = 15000.0
    medication_waste_cost: float = 200.0
    pharmacist_hourly_cost: float = 50.0
    default_minutes: int = 30


# =============================================================================
# Helpers
# =============================================================================

def _enum_or_none(enum_type, value: Any, field: str):
    if value is None or value == "":
        return None
    try:
        return enum_type(value)
    except ValueError:
        raise ValidationError(f"Invalid {field}: {value!r}", field=field) from None


def _statuses(value: Any) -> tuple[InterventionStatus, ...] | None:
    if value is None or value == "" or value == []:
        return None
    values = value.split(",") if isinstance(value, str) else list(value)
    return tuple(_enum_or_none(InterventionStatus, v.strip() if isinstance(v, str) else v, "status")
                 for v in values)


def build_filter(params: dict[str, Any]) -> InterventionFilter:
    """Translate caller-facing filter keys into a store filter."""
    for key in ("patient_id", "identified_by", "assigned_to"):
        if params.get(key):
            validate_object_id(params[key], key)
    search = params.get("search")
    return InterventionFilter(
        patient_id=params.get("patient_id") or None,
        category=_enum_or_none(InterventionCategory, params.get("category"), "category"),
        priority=_enum_or_none(InterventionPriority, params.get("priority"), "priority"),
        statuses=_statuses(params.get("status")),
        identified_by=params.get("identified_by") or None,
        assigned_to=params.get("assigned_to") or None,
        identified_from=parse_datetime(params.get("date_from"), "date_from"),
        identified_to=parse_datetime(params.get("date_to"), "date_to"),
        search=search.strip() if isinstance(search, str) and search.strip() else None,
    )


def is_successful(item: ClinicalIntervention) -> bool:
    """Completed with the problem marked resolved."""
    return (
        item.status == InterventionStatus.COMPLETED
        and item.outcomes is not None
        and item.outcomes.success_metrics.problem_resolved
    )


def _improved(item: ClinicalIntervention) -> bool:
    return item.outcomes is not None and item.outcomes.patient_response == PatientResponse.IMPROVED


def period_key(moment: datetime, period: str) -> str:
    if period == "day":
        return moment.strftime("%Y-%m-%d")
    if period == "week":
        year, week, _ = moment.isocalendar()
        return f"{year}-W{week:02d}"
    if period == "quarter":
        return f"{moment.year}-Q{(moment.month - 1) // 3 + 1}"
    return moment.strftime("%Y-%m")


def _rate(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0


def summarize(item: ClinicalIntervention) -> dict[str, Any]:
    """Compact row for recent-activity lists."""
    return {
        "id": item.id,
        "intervention_number": item.intervention_number,
        "category": item.category.value,
        "priority": item.priority.value,
        "status": item.status.value,
        "identified_date": item.identified_date,
        "patient_id": item.patient_id,
    }


def cost_savings(
    interventions: list[ClinicalIntervention],
    parameters: CostParameters | None = None,
) -> dict[str, Any]:
    """
    Modelled savings from completed interventions.

    Adverse events are avoided by completed improved safety interventions.
    Admissions are avoided by resolved high or critical interventions.
    Waste is reduced by optimized medications and discontinuations. The
    pharmacist's time is the cost side. The net figure is floored at zero.
    """
    p = parameters or CostParameters()
    completed = [i for i in interventions if i.status == InterventionStatus.COMPLETED]

    adverse_events = sum(
        1 for i in completed if i.category in _ADVERSE_EVENT_CATEGORIES and _improved(i)
    )
    admissions = sum(
        1 for i in completed
        if i.priority in (InterventionPriority.HIGH, InterventionPriority.CRITICAL) and is_successful(i)
    )
    waste = sum(
        1 for i in completed
        if (i.outcomes is not None and i.outcomes.success_metrics.medication_optimized)
        or any(s.type == StrategyType.DISCONTINUATION for s in i.strategies)
    )
    minutes = sum(i.actual_duration if i.actual_duration is not None else p.default_minutes
                  for i in completed)

    gross = (
        adverse_events * p.adverse_event_cost
        + admissions * p.hospital_admission_cost
        + waste * p.medication_waste_cost
    )
    pharmacist_cost = minutes / 60 * p.pharmacist_hourly_cost
    return {
        "completed_interventions": len(completed),
        "adverse_events_avoided": adverse_events,
        "hospital_admissions_avoided": admissions,
        "medication_waste_reduced": waste,
        "gross_savings": round(gross, 2),
        "pharmacist_cost": round(pharmacist_cost, 2),
        "net_savings": round(max(gross - pharmacist_cost, 0), 2),
    }


# =============================================================================
# Service
# =============================================================================

class ReportingService:
    def __init__(
        self,
        store: InterventionStore,
        patients: PatientDirectory,
        settings: InterventionSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.patients = patients
        self.settings = settings or InterventionSettings()
        self.clock = clock

    async def list_interventions(
        self,
        tenant_id: str,
        filters: dict[str, Any] | None = None,
        page: Any = 1,
        limit: Any = None,
        sort_by: str = "identified_date",
        sort_order: str = "desc",
    ) -> dict[str, Any]:
        """
        Paginated listing.

        An unknown tenant or no matches yields an empty page.
        """
        scope = scope_for(tenant_id)
        page, limit = clamp_pagination(
            page, limit,
            default_limit=self.settings.default_page_size,
            max_limit=self.settings.max_page_size,
        )
        if sort_by not in SORTABLE_FIELDS:
            raise ValidationError(f"Invalid sort field: {sort_by!r}", field="sort_by")
        if sort_order not in ("asc", "desc"):
            raise ValidationError(f"Invalid sort order: {sort_order!r}", field="sort_order")
        query = build_filter(filters or {})

        async with service_errors("list_interventions", tenant_id=scope.tenant_id):
            total = await self.store.count(scope, query)
            data = await self.store.find(
                scope,
                query,
                sort=SortSpec(sort_by, descending=sort_order == "desc"),
                skip=(page - 1) * limit,
                limit=limit,
            )

        pages = math.ceil(total / limit) if total else 0
        return {
            "data": data,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": pages,
                "has_next": page < pages,
                "has_prev": page > 1,
            },
        }

    def progress(self, item: ClinicalIntervention) -> dict[str, Any]:
        """Workflow position of one intervention."""
        now = self.clock()
        next_status = item.next_step()
        return {
            "completion_percentage": item.completion_percentage(),
            "next_step": next_status.value if next_status else None,
            "can_complete": item.can_complete(),
            "duration_days": item.duration_days(now),
            "is_overdue": item.is_overdue(self.settings.overdue_thresholds(), now),
        }

    async def patient_summary(self, patient_id: str, tenant_id: str) -> dict[str, Any]:
        scope = scope_for(tenant_id)
        patient_id = validate_object_id(patient_id, "patient_id")
        async with service_errors("patient_summary", patient_id=patient_id):
            items = await self.store.find(
                scope,
                InterventionFilter(patient_id=patient_id),
                sort=SortSpec("identified_date", descending=True),
            )

        return {
            "total_interventions": len(items),
            "active_interventions": sum(1 for i in items if i.is_open),
            "completed_interventions": sum(1 for i in items if i.status == InterventionStatus.COMPLETED),
            "successful_interventions": sum(1 for i in items if is_successful(i)),
            "category_breakdown": dict(Counter(i.category.value for i in items)),
            "recent_interventions": [summarize(i) for i in items[:self.settings.recent_list_size]],
        }

    async def dashboard_metrics(
        self,
        tenant_id: str,
        date_from: Any = None,
        date_to: Any = None,
    ) -> dict[str, Any]:
        """
        Headline numbers for a date range on identified date.

        Overdue means open with a follow-up date already passed. Delayed
        means open for longer than the priority's allowed days. Resolution
        time is in days.
        """
        scope = scope_for(tenant_id)
        query = InterventionFilter(
            identified_from=parse_datetime(date_from, "date_from"),
            identified_to=parse_datetime(date_to, "date_to"),
        )
        async with service_errors("dashboard_metrics", tenant_id=scope.tenant_id):
            items = await self.store.find(scope, query, sort=SortSpec("identified_date", descending=True))

            now = self.clock()
            thresholds = self.settings.overdue_thresholds()
            completed = [i for i in items if i.status == InterventionStatus.COMPLETED]
            successful = [i for i in completed if is_successful(i)]
            overdue = [
                i for i in items
                if i.is_open
                and i.follow_up is not None
                and i.follow_up.scheduled_date is not None
                and i.follow_up.completed_date is None
                and i.follow_up.scheduled_date < now
            ]
            delayed = [i for i in items if i.is_overdue(thresholds, now)]
            resolution = [
                (i.completed_at - i.started_at).total_seconds() / 86400
                for i in completed if i.completed_at
            ]

            monthly: dict[str, dict[str, int]] = {}
            for item in items:
                bucket = monthly.setdefault(period_key(item.identified_date, "month"),
                                            {"total": 0, "completed": 0, "successful": 0})
                bucket["total"] += 1
                if item.status == InterventionStatus.COMPLETED:
                    bucket["completed"] += 1
                if is_successful(item):
                    bucket["successful"] += 1

        return {
            "total_interventions": len(items),
            "active_interventions": sum(1 for i in items if i.is_open),
            "completed_interventions": len(completed),
            "overdue_interventions": len(overdue),
            "delayed_interventions": len(delayed),
            "success_rate": _rate(len(successful), len(completed)),
            "average_resolution_time": round(sum(resolution) / len(resolution), 1) if resolution else 0,
            "total_cost_savings": sum(
                i.outcomes.success_metrics.cost_savings or 0 for i in items if i.outcomes
            ),
            "category_distribution": dict(Counter(i.category.value for i in items)),
            "priority_distribution": dict(Counter(i.priority.value for i in items)),
            "monthly_trends": [
                {
                    "month": month,
                    "total": bucket["total"],
                    "completed": bucket["completed"],
                    "success_rate": _rate(bucket["successful"], bucket["completed"]),
                }
                for month, bucket in sorted(monthly.items())
            ],
            "recent_interventions": [summarize(i) for i in items[:self.settings.recent_list_size]],
        }

    async def trend_analysis(
        self,
        tenant_id: str,
        date_from: Any = None,
        date_to: Any = None,
        period: str = "month",
        group_by: str = "category",
    ) -> list[dict[str, Any]]:
        """
        Counts per time bucket and dimension, ordered by bucket then group.

        ``group_by='total'`` collapses the dimension.
        """
        scope = scope_for(tenant_id)
        if period not in TREND_PERIODS:
            raise ValidationError(f"Invalid period: {period!r}", field="period")
        if group_by not in TREND_GROUPS:
            raise ValidationError(f"Invalid group_by: {group_by!r}", field="group_by")
        query = InterventionFilter(
            identified_from=parse_datetime(date_from, "date_from"),
            identified_to=parse_datetime(date_to, "date_to"),
        )
        async with service_errors("trend_analysis", tenant_id=scope.tenant_id):
            items = await self.store.find(scope, query)

        groups: dict[tuple[str, str | None], dict[str, int]] = {}
        for item in items:
            group = None if group_by == "total" else getattr(item, group_by).value
            bucket = groups.setdefault(
                (period_key(item.identified_date, period), group),
                {"count": 0, "completed": 0, "successful": 0},
            )
            bucket["count"] += 1
            if item.status == InterventionStatus.COMPLETED:
                bucket["completed"] += 1
            if _improved(item):
                bucket["successful"] += 1

        return [
            {"period": key, "group": group, **bucket}
            for (key, group), bucket in sorted(groups.items(), key=lambda kv: (kv[0][0], kv[0][1] or ""))
        ]

    async def search_patients(self, query: str, tenant_id: str, limit: int = 10) -> list[dict[str, Any]]:
        """Name or MRN search, annotated with intervention activity."""
        scope = scope_for(tenant_id)
        if not isinstance(query, str) or not query.strip():
            raise ValidationError("Search query is required", field="query")
        try:
            limit = min(max(int(limit), 1), self.settings.max_page_size)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid limit: {limit!r}", field="limit") from None

        async with service_errors("search_patients", tenant_id=scope.tenant_id):
            patients = await self.patients.search(query.strip(), scope.tenant_id, limit)
            results = []
            for patient in patients[:limit]:
                items = await self.store.find(scope, InterventionFilter(patient_id=patient.id))
                results.append({
                    "id": patient.id,
                    "mrn": patient.mrn,
                    "first_name": patient.first_name,
                    "last_name": patient.last_name,
                    "date_of_birth": patient.date_of_birth,
                    "age": patient.age(self.clock().date()),
                    "intervention_count": len(items),
                    "active_intervention_count": sum(1 for i in items if i.is_open),
                    "last_intervention_date": max((i.identified_date for i in items), default=None),
                })
        return results

    async def outcome_report(
        self,
        tenant_id: str,
        date_from: Any = None,
        date_to: Any = None,
        category: Any = None,
        priority: Any = None,
    ) -> dict[str, Any]:
        """Success counts where success means the patient improved."""
        scope = scope_for(tenant_id)
        query = InterventionFilter(
            category=_enum_or_none(InterventionCategory, category, "category"),
            priority=_enum_or_none(InterventionPriority, priority, "priority"),
            identified_from=parse_datetime(date_from, "date_from"),
            identified_to=parse_datetime(date_to, "date_to"),
        )
        async with service_errors("outcome_report", tenant_id=scope.tenant_id):
            items = await self.store.find(scope, query)

        completed = [i for i in items if i.status == InterventionStatus.COMPLETED]
        successful = [i for i in completed if _improved(i)]

        by_category: dict[str, dict[str, int]] = {}
        for item in items:
            row = by_category.setdefault(item.category.value, {"total": 0, "completed": 0, "successful": 0})
            row["total"] += 1
            if item.status == InterventionStatus.COMPLETED:
                row["completed"] += 1
                if _improved(item):
                    row["successful"] += 1

        return {
            "summary": {
                "total_interventions": len(items),
                "completed_interventions": len(completed),
                "successful_interventions": len(successful),
                "success_rate": _rate(len(successful), len(completed)),
            },
            "category_breakdown": [
                {"category": name, **row, "success_rate": _rate(row["successful"], row["completed"])}
                for name, row in sorted(by_category.items())
            ],
        }

    async def cost_savings_report(
        self,
        tenant_id: str,
        date_from: Any = None,
        date_to: Any = None,
        parameters: CostParameters | None = None,
    ) -> dict[str, Any]:
        scope = scope_for(tenant_id)
        query = InterventionFilter(
            identified_from=parse_datetime(date_from, "date_from"),
            identified_to=parse_datetime(date_to, "date_to"),
        )
        async with service_errors("cost_savings_report", tenant_id=scope.tenant_id):
            items = await self.store.find(scope, query)
        return cost_savings(items, parameters)
