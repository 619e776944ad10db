"""
In-Memory Document Stores

Process-local stores for development and tests. They honour the same
contracts as the PostgreSQL adapters: tenant scoping, the unique
(tenant, number) index, version-checked updates and an append-only
audit ledger.
"""

import asyncio

import structlog

from rxcare.db.store import (
    AuditQuery,
    AuditStore,
    InterventionFilter,
    InterventionStore,
    SortSpec,
    newest_first,
    sort_key,
)
from rxcare.errors import DuplicateKeyError, StoreUnavailableError
from rxcare.models.audit import AuditLogEntry
from rxcare.models.intervention import ClinicalIntervention
from rxcare.tenancy import TenantScope

logger = structlog.get_logger(__name__)


class MemoryInterventionStore(InterventionStore):
    """
    Intervention store backed by a dict of documents.

    Documents are kept as plain dumps and re-validated on every read, so
    callers never share mutable state with the store.
    """

    def __init__(self):
        self._documents: dict[str, dict] = {}
        self._numbers: set[tuple[str, str]] = set()
        self._lock = asyncio.Lock()
        # Flip to False to simulate an unreachable backend
        self.available = True

    def _check(self) -> None:
        if not self.available:
            raise StoreUnavailableError("In-memory store marked unavailable")

    def _load(self, document: dict) -> ClinicalIntervention:
        return ClinicalIntervention.model_validate(document)

    async def connect(self) -> None:
        logger.info("Using in-memory intervention store")

    async def insert(self, intervention: ClinicalIntervention) -> ClinicalIntervention:
        self._check()
        async with self._lock:
            key = (intervention.tenant_id, intervention.intervention_number)
            if key in self._numbers:
                raise DuplicateKeyError(
                    f"Intervention number {intervention.intervention_number} already exists"
                )
            if intervention.id in self._documents:
                raise DuplicateKeyError(f"Intervention id {intervention.id} already exists")
            self._numbers.add(key)
            self._documents[intervention.id] = intervention.model_dump()
        return self._load(self._documents[intervention.id])

    async def get(self, scope: TenantScope, intervention_id: str) -> ClinicalIntervention | None:
        self._check()
        document = self._documents.get(intervention_id)
        if document is None or not scope.matches(document):
            return None
        return self._load(document)

    def _select(self, scope: TenantScope, filters: InterventionFilter | None) -> list[ClinicalIntervention]:
        items = [self._load(d) for d in self._documents.values() if scope.matches(d)]
        if filters is None:
            return items
        return [item for item in items if filters.matches(item)]

    async def find(
        self,
        scope: TenantScope,
        filters: InterventionFilter | None = None,
        sort: SortSpec | None = None,
        skip: int = 0,
        limit: int | None = None,
    ) -> list[ClinicalIntervention]:
        self._check()
        sort = sort or SortSpec()
        items = sorted(self._select(scope, filters), key=lambda i: i.id)
        items.sort(key=sort_key(sort.field), reverse=sort.descending)
        end = None if limit is None else skip + limit
        return items[skip:end]

    async def count(self, scope: TenantScope, filters: InterventionFilter | None = None) -> int:
        self._check()
        return len(self._select(scope, filters))

    async def update_if_version(
        self,
        scope: TenantScope,
        intervention: ClinicalIntervention,
        expected_version: int,
    ) -> ClinicalIntervention | None:
        self._check()
        async with self._lock:
            current = self._documents.get(intervention.id)
            if current is None or current.get("tenant_id") != scope.tenant_id:
                return None
            if current.get("version") != expected_version:
                logger.debug(
                    "Version mismatch on update",
                    intervention_id=intervention.id,
                    expected=expected_version,
                    actual=current.get("version"),
                )
                return None
            document = intervention.model_dump()
            document["version"] = expected_version + 1
            self._documents[intervention.id] = document
        return self._load(document)

    async def max_number_with_prefix(self, tenant_id: str, prefix: str) -> str | None:
        self._check()
        numbers = [
            number for tenant, number in self._numbers
            if tenant == tenant_id and number.startswith(prefix)
        ]
        return max(numbers) if numbers else None


class MemoryAuditStore(AuditStore):
    """Append-only list of audit entries."""

    def __init__(self):
        self._entries: list[AuditLogEntry] = []
        self.available = True

    def _check(self) -> None:
        if not self.available:
            raise StoreUnavailableError("In-memory audit store marked unavailable")

    async def append(self, entry: AuditLogEntry) -> None:
        self._check()
        self._entries.append(entry)

    async def query(self, query: AuditQuery) -> list[AuditLogEntry]:
        self._check()
        # Reversed first so equal timestamps keep newest-inserted first
        matched = newest_first(e for e in reversed(self._entries) if query.matches(e))
        end = None if query.limit is None else query.skip + query.limit
        return matched[query.skip:end]

    async def count(self, query: AuditQuery) -> int:
        self._check()
        return sum(1 for e in self._entries if query.matches(e))
