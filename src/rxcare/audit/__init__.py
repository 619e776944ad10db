"""
RxCare Audit

Append-only audit ledger for clinical intervention activity.
"""

from rxcare.audit.service import (
    AuditService,
    RequestMeta,
    changed_fields,
    determine_risk_level,
)

__all__ = [
    "AuditService",
    "RequestMeta",
    "changed_fields",
    "determine_risk_level",
]
