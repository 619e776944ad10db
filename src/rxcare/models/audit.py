"""
Audit Models

Immutable audit ledger entries for intervention activity.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from rxcare.models.base import UtcDatetime, utcnow
from rxcare.validators import new_object_id

SYSTEM_TARGET = "system"


class RiskLevel(str, Enum):
    """Audit event severity."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ComplianceCategory(str, Enum):
    CLINICAL_DOCUMENTATION = "clinical_documentation"
    DATA_ACCESS = "data_access"


HIGH_RISK_LEVELS = (RiskLevel.HIGH, RiskLevel.CRITICAL)


class AuditLogEntry(BaseModel):
    """A single audit ledger entry. Never updated once written."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_object_id)
    timestamp: UtcDatetime = Field(default_factory=utcnow)

    # Action (what)
    action: str
    intervention_id: str = SYSTEM_TARGET

    # Actor (who)
    user_id: str
    tenant_id: str

    # Details
    details: dict[str, Any] = Field(default_factory=dict)
    risk_level: RiskLevel = RiskLevel.LOW
    compliance_category: ComplianceCategory = ComplianceCategory.CLINICAL_DOCUMENTATION
    old_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None
    changed_fields: list[str] = Field(default_factory=list)

    # Request context (how/where)
    ip_address: str | None = None
    user_agent: str | None = None
    request_id: str | None = None

    @property
    def is_high_risk(self) -> bool:
        return self.risk_level in HIGH_RISK_LEVELS

    def to_log_dict(self) -> dict:
        """Convert to dictionary for logging."""
        return {
            "audit_id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "action": self.action,
            "intervention_id": self.intervention_id,
            "user_id": self.user_id,
            "tenant_id": self.tenant_id,
            "risk_level": self.risk_level.value,
        }
