"""
RxCare Persistence

Tenant-scoped document stores for interventions and the audit ledger.
"""

from rxcare.db.store import (
    AuditQuery,
    AuditStore,
    InterventionFilter,
    InterventionStore,
    SORTABLE_FIELDS,
    SortSpec,
)
from rxcare.db.memory import MemoryAuditStore, MemoryInterventionStore

__all__ = [
    "AuditQuery",
    "AuditStore",
    "InterventionFilter",
    "InterventionStore",
    "SORTABLE_FIELDS",
    "SortSpec",
    "MemoryAuditStore",
    "MemoryInterventionStore",
]
