"""
Document Store Interfaces

Abstract persistence contracts for interventions and the audit ledger.

Every read and write takes a TenantScope, so an unscoped lookup cannot be
expressed. Implementations:
- MemoryInterventionStore / MemoryAuditStore (development, tests)
- PostgresInterventionStore / PostgresAuditStore (asyncpg, JSONB documents)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable

from rxcare.models.audit import AuditLogEntry
from rxcare.models.intervention import (
    AssignmentStatus,
    ClinicalIntervention,
    InterventionCategory,
    InterventionPriority,
    InterventionStatus,
)
from rxcare.tenancy import TenantScope

SORTABLE_FIELDS = (
    "identified_date",
    "priority",
    "status",
    "category",
    "intervention_number",
    "created_at",
    "updated_at",
)

PRIORITY_RANK = {
    InterventionPriority.LOW: 0,
    InterventionPriority.MEDIUM: 1,
    InterventionPriority.HIGH: 2,
    InterventionPriority.CRITICAL: 3,
}


# =============================================================================
# Query Objects
# =============================================================================

@dataclass
class InterventionFilter:
    """Field filters combined with AND. None means "any"."""
    patient_id: str | None = None
    category: InterventionCategory | None = None
    priority: InterventionPriority | None = None
    statuses: tuple[InterventionStatus, ...] | None = None
    identified_by: str | None = None
    assigned_to: str | None = None
    assignment_status: AssignmentStatus | None = None
    related_mtr_id: str | None = None
    exclude_id: str | None = None

    # Ranges (inclusive)
    identified_from: datetime | None = None
    identified_to: datetime | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None

    # Case-insensitive substring over number, issue description and notes
    search: str | None = None

    def matches(self, item: ClinicalIntervention) -> bool:
        """Evaluate the filter against a loaded intervention."""
        if self.patient_id and item.patient_id != self.patient_id:
            return False
        if self.category and item.category != self.category:
            return False
        if self.priority and item.priority != self.priority:
            return False
        if self.statuses is not None and item.status not in self.statuses:
            return False
        if self.identified_by and item.identified_by != self.identified_by:
            return False
        if self.related_mtr_id and item.related_mtr_id != self.related_mtr_id:
            return False
        if self.exclude_id and item.id == self.exclude_id:
            return False
        if self.assigned_to and not any(
            a.user_id == self.assigned_to
            and (self.assignment_status is None or a.status == self.assignment_status)
            for a in item.assignments
        ):
            return False
        if self.identified_from and item.identified_date < self.identified_from:
            return False
        if self.identified_to and item.identified_date > self.identified_to:
            return False
        if self.created_from and item.created_at < self.created_from:
            return False
        if self.created_to and item.created_at > self.created_to:
            return False
        if self.search:
            needle = self.search.lower()
            haystack = (
                item.intervention_number,
                item.issue_description,
                item.implementation_notes or "",
            )
            if not any(needle in text.lower() for text in haystack):
                return False
        return True


@dataclass
class SortSpec:
    field: str = "identified_date"
    descending: bool = True


def sort_key(field_name: str):
    """Key function for in-process sorting on a whitelisted field."""
    if field_name == "priority":
        return lambda item: PRIORITY_RANK[item.priority]

    def key(item: ClinicalIntervention) -> Any:
        value = getattr(item, field_name)
        return value.value if hasattr(value, "value") else value
    return key


@dataclass
class AuditQuery:
    """Audit ledger selection, always within one tenant."""
    tenant_id: str
    intervention_ids: tuple[str, ...] | None = None
    actions: tuple[str, ...] | None = None
    start: datetime | None = None
    end: datetime | None = None
    skip: int = 0
    limit: int | None = None

    def matches(self, entry: AuditLogEntry) -> bool:
        if entry.tenant_id != self.tenant_id:
            return False
        if self.intervention_ids is not None and entry.intervention_id not in self.intervention_ids:
            return False
        if self.actions is not None and entry.action not in self.actions:
            return False
        if self.start and entry.timestamp < self.start:
            return False
        if self.end and entry.timestamp > self.end:
            return False
        return True


# =============================================================================
# Store Contracts
# =============================================================================

class InterventionStore(ABC):
    """
    Tenant-scoped intervention document store.

    Writes use a version token: update_if_version only succeeds when the
    stored version still equals the one the caller loaded.
    """

    async def connect(self) -> None:
        """Open connections. No-op for in-process stores."""

    async def close(self) -> None:
        """Release connections. No-op for in-process stores."""

    @abstractmethod
    async def insert(self, intervention: ClinicalIntervention) -> ClinicalIntervention:
        """
        Insert a new document.

        Raises:
            DuplicateKeyError: (tenant_id, intervention_number) already taken
        """

    @abstractmethod
    async def get(self, scope: TenantScope, intervention_id: str) -> ClinicalIntervention | None:
        """Fetch by id within the scope; None when absent or not visible."""

    @abstractmethod
    async def find(
        self,
        scope: TenantScope,
        filters: InterventionFilter | None = None,
        sort: SortSpec | None = None,
        skip: int = 0,
        limit: int | None = None,
    ) -> list[ClinicalIntervention]:
        """Filtered, sorted, paginated listing."""

    @abstractmethod
    async def count(self, scope: TenantScope, filters: InterventionFilter | None = None) -> int:
        """Number of documents matching the filter."""

    @abstractmethod
    async def update_if_version(
        self,
        scope: TenantScope,
        intervention: ClinicalIntervention,
        expected_version: int,
    ) -> ClinicalIntervention | None:
        """
        Replace the document if its stored version equals expected_version.

        Returns the saved document with an incremented version, or None when
        the document is missing or was modified concurrently.
        """

    @abstractmethod
    async def max_number_with_prefix(self, tenant_id: str, prefix: str) -> str | None:
        """Highest intervention number starting with prefix, deleted included."""


class AuditStore(ABC):
    """Append-only audit ledger. There is no update or delete."""

    async def connect(self) -> None:
        """Open connections. No-op for in-process stores."""

    async def close(self) -> None:
        """Release connections. No-op for in-process stores."""

    @abstractmethod
    async def append(self, entry: AuditLogEntry) -> None:
        """Persist an entry."""

    @abstractmethod
    async def query(self, query: AuditQuery) -> list[AuditLogEntry]:
        """Entries matching the query, newest first."""

    @abstractmethod
    async def count(self, query: AuditQuery) -> int:
        """Number of entries matching the query, ignoring skip/limit."""


def newest_first(entries: Iterable[AuditLogEntry]) -> list[AuditLogEntry]:
    return sorted(entries, key=lambda e: e.timestamp, reverse=True)
