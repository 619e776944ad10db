"""
Intervention Audit Trail

Append-only audit ledger for clinical intervention activity:
- Mutation logging with risk classification and field diffs
- Read-access logging
- Per-intervention audit trail with summary
- Workplace compliance report
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

import structlog

from rxcare.db.store import AuditQuery, AuditStore, InterventionFilter, InterventionStore
from rxcare.models.audit import (
    AuditLogEntry,
    ComplianceCategory,
    RiskLevel,
    SYSTEM_TARGET,
)
from rxcare.models.base import utcnow
from rxcare.tenancy import TenantScope
from rxcare.validators import clamp_pagination

logger = structlog.get_logger(__name__)

ACTION_PREFIX = "INTERVENTION_"


@dataclass(frozen=True)
class RequestMeta:
    """Request context recorded alongside an audit entry."""
    ip_address: str | None = None
    user_agent: str | None = None
    request_id: str | None = None


def determine_risk_level(action: str, details: dict[str, Any] | None = None) -> RiskLevel:
    """
    Classify an action by risk.

    DELETE/CANCEL are critical; OUTCOME/COMPLETE or critical priority are
    high; UPDATE/ASSIGN/STRATEGY are medium; everything else is low.
    """
    action = action.upper()
    if "DELETE" in action or "CANCEL" in action:
        return RiskLevel.CRITICAL
    if "OUTCOME" in action or "COMPLETE" in action or (details or {}).get("priority") == "critical":
        return RiskLevel.HIGH
    if "UPDATE" in action or "ASSIGN" in action or "STRATEGY" in action:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def changed_fields(old_values: dict[str, Any] | None, new_values: dict[str, Any] | None) -> list[str]:
    """Keys whose values differ between two snapshots."""
    if not old_values or not new_values:
        return []
    keys = list(dict.fromkeys([*old_values.keys(), *new_values.keys()]))
    return [k for k in keys if old_values.get(k) != new_values.get(k)]


# =============================================================================
# Audit Service
# =============================================================================

class AuditService:
    """
    Audit ledger writer and reader.

    Writes never raise: a failed append is logged and the triggering
    business operation carries on.

    Usage:
        audit = AuditService(MemoryAuditStore(), store)
        await audit.log_activity("CREATE", intervention.id, user_id, tenant_id, {...})
    """

    def __init__(
        self,
        store: AuditStore,
        interventions: InterventionStore,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.interventions = interventions
        self.clock = clock

    async def log_activity(
        self,
        action: str,
        intervention_id: str | None,
        user_id: str,
        tenant_id: str,
        details: dict[str, Any] | None = None,
        request: RequestMeta | None = None,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
    ) -> AuditLogEntry | None:
        """Record a mutating action as INTERVENTION_<ACTION>."""
        try:
            details = dict(details or {})
            details["service"] = "clinical-intervention"
            request = request or RequestMeta()
            entry = AuditLogEntry(
                timestamp=self.clock(),
                action=f"{ACTION_PREFIX}{action.upper()}",
                intervention_id=intervention_id or SYSTEM_TARGET,
                user_id=user_id,
                tenant_id=tenant_id,
                details=details,
                risk_level=determine_risk_level(action, details),
                compliance_category=ComplianceCategory.CLINICAL_DOCUMENTATION,
                old_values=old_values,
                new_values=new_values,
                changed_fields=changed_fields(old_values, new_values),
                ip_address=request.ip_address,
                user_agent=request.user_agent,
                request_id=request.request_id,
            )
            await self.store.append(entry)
            logger.info("Clinical intervention activity", **entry.to_log_dict())
            return entry
        except Exception as e:
            logger.error(
                "Error logging clinical intervention activity",
                action=action,
                intervention_id=intervention_id,
                user_id=user_id,
                tenant_id=tenant_id,
                error=str(e),
                exc_info=True,
            )
            return None

    async def log_access(
        self,
        intervention_id: str,
        user_id: str,
        tenant_id: str,
        access_type: str,
        request: RequestMeta | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditLogEntry | None:
        """Record read/export/delete access to an intervention."""
        try:
            request = request or RequestMeta()
            entry = AuditLogEntry(
                timestamp=self.clock(),
                action=f"ACCESS_INTERVENTION_{access_type.upper()}",
                intervention_id=intervention_id,
                user_id=user_id,
                tenant_id=tenant_id,
                details={"access_type": access_type, **(details or {})},
                risk_level=RiskLevel.HIGH if access_type == "delete" else RiskLevel.MEDIUM,
                compliance_category=ComplianceCategory.DATA_ACCESS,
                ip_address=request.ip_address,
                user_agent=request.user_agent,
                request_id=request.request_id,
            )
            await self.store.append(entry)
            return entry
        except Exception as e:
            logger.error(
                "Error logging intervention access",
                intervention_id=intervention_id,
                user_id=user_id,
                access_type=access_type,
                error=str(e),
            )
            return None

    async def audit_trail(
        self,
        intervention_id: str,
        tenant_id: str,
        page: int | None = 1,
        limit: int | None = 50,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> dict[str, Any]:
        """
        Paginated audit history for one intervention.

        The summary covers the whole filtered trail, not just the page.
        """
        page, limit = clamp_pagination(page, limit, default_limit=50, max_limit=200)
        base = AuditQuery(
            tenant_id=tenant_id,
            intervention_ids=(intervention_id,),
            start=start_date,
            end=end_date,
        )
        everything = await self.store.query(base)
        logs = everything[(page - 1) * limit:page * limit]
        total = len(everything)

        return {
            "logs": logs,
            "total": total,
            "page": page,
            "limit": limit,
            "summary": {
                "total_actions": total,
                "unique_users": len({e.user_id for e in everything}),
                "last_activity": everything[0].timestamp if everything else None,
                "risk_activities": sum(1 for e in everything if e.is_high_risk),
            },
        }

    async def compliance_report(
        self,
        tenant_id: str,
        start: datetime,
        end: datetime,
        intervention_ids: list[str] | None = None,
    ) -> dict[str, Any]:
        """
        Score audit coverage for interventions created in a date range.

        Per intervention: no audits is non-compliant; any high-risk
        activity is a warning (critical risk above two); fewer than three
        audits is a warning. The aggregate score is the rounded share of
        compliant interventions, 100 when there are none.
        """
        scope = TenantScope(tenant_id)
        interventions = await self.interventions.find(
            scope, InterventionFilter(created_from=start, created_to=end)
        )
        if intervention_ids:
            wanted = set(intervention_ids)
            interventions = [i for i in interventions if i.id in wanted]

        logs = await self.store.query(AuditQuery(tenant_id=tenant_id, start=start, end=end))
        by_intervention: dict[str, list[AuditLogEntry]] = {}
        for entry in logs:
            by_intervention.setdefault(entry.intervention_id, []).append(entry)

        rows = []
        for item in interventions:
            audits = by_intervention.get(item.id, [])
            audit_count = len(audits)
            risk_count = sum(1 for e in audits if e.is_high_risk)

            status, risk = "compliant", RiskLevel.LOW
            if audit_count == 0:
                status, risk = "non-compliant", RiskLevel.HIGH
            elif risk_count > 0:
                status = "warning"
                risk = RiskLevel.CRITICAL if risk_count > 2 else RiskLevel.MEDIUM
            elif audit_count < 3:
                status, risk = "warning", RiskLevel.MEDIUM

            rows.append({
                "intervention_id": item.id,
                "intervention_number": item.intervention_number,
                "audit_count": audit_count,
                "last_audit": max((e.timestamp for e in audits), default=item.created_at),
                "compliance_status": status,
                "risk_level": risk.value,
            })

        total = len(interventions)
        risk_activities = sum(1 for e in logs if e.is_high_risk)
        compliant = sum(1 for r in rows if r["compliance_status"] == "compliant")
        score = round(compliant / total * 100) if total else 100

        recommendations = []
        if score < 80:
            recommendations.append("Improve audit trail completeness for clinical interventions")
        if risk_activities > total * 0.1:
            recommendations.append("Review high-risk activities and implement additional controls")
        if any(r["audit_count"] == 0 for r in rows):
            recommendations.append("Ensure all interventions have proper audit logging")

        logger.info(
            "Compliance report generated",
            tenant_id=tenant_id,
            interventions=total,
            compliance_score=score,
        )
        return {
            "summary": {
                "total_interventions": total,
                "audited_actions": len(logs),
                "compliance_score": score,
                "risk_activities": risk_activities,
            },
            "intervention_compliance": rows,
            "recommendations": recommendations,
        }
