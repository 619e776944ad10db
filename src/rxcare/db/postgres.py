"""
PostgreSQL Document Stores

Interventions and audit entries stored as JSONB documents via asyncpg.

Tables:
- interventions: id, tenant_id, intervention_number, is_deleted, version, doc
  with a unique index on (tenant_id, intervention_number)
- intervention_audit_log: insert-only, one row per entry
"""

from typing import Any

import asyncpg
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from rxcare.db.store import (
    AuditQuery,
    AuditStore,
    InterventionFilter,
    InterventionStore,
    SORTABLE_FIELDS,
    SortSpec,
)
from rxcare.errors import DuplicateKeyError, StoreUnavailableError
from rxcare.models.audit import AuditLogEntry
from rxcare.models.intervention import ClinicalIntervention
from rxcare.tenancy import TenantScope

logger = structlog.get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS interventions (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    intervention_number TEXT NOT NULL,
    is_deleted BOOLEAN NOT NULL DEFAULT FALSE,
    version INTEGER NOT NULL DEFAULT 0,
    doc JSONB NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS interventions_tenant_number
    ON interventions (tenant_id, intervention_number);
CREATE INDEX IF NOT EXISTS interventions_tenant_patient
    ON interventions (tenant_id, (doc->>'patient_id'));

CREATE TABLE IF NOT EXISTS intervention_audit_log (
    seq BIGSERIAL,
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    intervention_id TEXT NOT NULL,
    action TEXT NOT NULL,
    ts TIMESTAMPTZ NOT NULL,
    entry JSONB NOT NULL
);
CREATE INDEX IF NOT EXISTS audit_tenant_intervention
    ON intervention_audit_log (tenant_id, intervention_id, ts DESC);
"""

_SORT_EXPRESSIONS = {
    "identified_date": "(doc->>'identified_date')::timestamptz",
    "created_at": "(doc->>'created_at')::timestamptz",
    "updated_at": "(doc->>'updated_at')::timestamptz",
    "intervention_number": "intervention_number",
    "status": "doc->>'status'",
    "category": "doc->>'category'",
    "priority": (
        "CASE doc->>'priority' WHEN 'low' THEN 0 WHEN 'medium' THEN 1 "
        "WHEN 'high' THEN 2 WHEN 'critical' THEN 3 END"
    ),
}

# Errors that mean the server could not be reached
_CONNECTION_ERRORS = (OSError, asyncpg.PostgresConnectionError, asyncpg.InterfaceError)


class _Where:
    """Accumulates SQL conditions with positional parameters."""

    def __init__(self):
        self.conditions: list[str] = []
        self.params: list[Any] = []

    def add(self, template: str, *values: Any) -> None:
        placeholders = []
        for value in values:
            self.params.append(value)
            placeholders.append(f"${len(self.params)}")
        self.conditions.append(template.format(*placeholders))

    @property
    def sql(self) -> str:
        return " AND ".join(self.conditions) if self.conditions else "TRUE"


def like_pattern(text: str) -> str:
    """Substring match pattern with LIKE wildcards in the input taken literally."""
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _scoped(scope: TenantScope, filters: InterventionFilter | None) -> _Where:
    where = _Where()
    where.add("tenant_id = {}", scope.tenant_id)
    if not scope.include_deleted:
        where.conditions.append("NOT is_deleted")
    if filters is None:
        return where

    for name in ("patient_id", "identified_by", "related_mtr_id"):
        value = getattr(filters, name)
        if value:
            where.add(f"doc->>'{name}' = {{}}", value)
    if filters.category:
        where.add("doc->>'category' = {}", filters.category.value)
    if filters.priority:
        where.add("doc->>'priority' = {}", filters.priority.value)
    if filters.statuses is not None:
        where.add("doc->>'status' = ANY({}::text[])", [s.value for s in filters.statuses])
    if filters.exclude_id:
        where.add("id <> {}", filters.exclude_id)
    if filters.assigned_to:
        if filters.assignment_status:
            where.add(
                "EXISTS (SELECT 1 FROM jsonb_array_elements(doc->'assignments') a "
                "WHERE a->>'user_id' = {} AND a->>'status' = {})",
                filters.assigned_to, filters.assignment_status.value,
            )
        else:
            where.add(
                "EXISTS (SELECT 1 FROM jsonb_array_elements(doc->'assignments') a "
                "WHERE a->>'user_id' = {})",
                filters.assigned_to,
            )
    if filters.identified_from:
        where.add("(doc->>'identified_date')::timestamptz >= {}", filters.identified_from)
    if filters.identified_to:
        where.add("(doc->>'identified_date')::timestamptz <= {}", filters.identified_to)
    if filters.created_from:
        where.add("(doc->>'created_at')::timestamptz >= {}", filters.created_from)
    if filters.created_to:
        where.add("(doc->>'created_at')::timestamptz <= {}", filters.created_to)
    if filters.search:
        where.add(
            "(intervention_number ILIKE {0} ESCAPE '\\' "
            "OR doc->>'issue_description' ILIKE {0} ESCAPE '\\' "
            "OR coalesce(doc->>'implementation_notes', '') ILIKE {0} ESCAPE '\\')",
            like_pattern(filters.search),
        )
    return where


class _PostgresBase:
    """Shared pool lifecycle with retried connect."""

    def __init__(self, settings, pool: asyncpg.Pool | None = None):
        self.settings = settings
        self.pool = pool

    async def connect(self) -> None:
        if self.pool is not None:
            return
        pg = self.settings.postgres
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.settings.store.connect_attempts),
                wait=wait_exponential(multiplier=1, min=1, max=10),
                retry=retry_if_exception_type(_CONNECTION_ERRORS),
                reraise=True,
            ):
                with attempt:
                    logger.info("Connecting to PostgreSQL", host=pg.host, database=pg.database)
                    self.pool = await asyncpg.create_pool(
                        dsn=pg.connection_url,
                        min_size=pg.min_pool_size,
                        max_size=pg.max_pool_size,
                    )
        except _CONNECTION_ERRORS as e:
            logger.error("PostgreSQL connection failed", error=str(e))
            raise StoreUnavailableError("PostgreSQL is unreachable") from e

        async with self.pool.acquire() as conn:
            await conn.execute(SCHEMA)
        logger.info("PostgreSQL store ready")

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            self.pool = None

    def _require_pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise StoreUnavailableError("Store not connected. Call connect() first.")
        return self.pool


class PostgresInterventionStore(_PostgresBase, InterventionStore):
    """
    Intervention store backed by PostgreSQL JSONB.

    Usage:
        store = PostgresInterventionStore(settings)
        await store.connect()
        item = await store.get(scope_for("workplace-1"), intervention_id)
    """

    async def insert(self, intervention: ClinicalIntervention) -> ClinicalIntervention:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO interventions (id, tenant_id, intervention_number, is_deleted, version, doc)
                    VALUES ($1, $2, $3, $4, $5, $6::jsonb)
                    """,
                    intervention.id,
                    intervention.tenant_id,
                    intervention.intervention_number,
                    intervention.is_deleted,
                    intervention.version,
                    intervention.model_dump_json(),
                )
        except asyncpg.UniqueViolationError as e:
            raise DuplicateKeyError(str(e)) from e
        except _CONNECTION_ERRORS as e:
            raise StoreUnavailableError(str(e)) from e
        return intervention

    async def get(self, scope: TenantScope, intervention_id: str) -> ClinicalIntervention | None:
        where = _scoped(scope, None)
        where.add("id = {}", intervention_id)
        try:
            async with self._require_pool().acquire() as conn:
                row = await conn.fetchrow(
                    f"SELECT doc, version FROM interventions WHERE {where.sql}", *where.params
                )
        except _CONNECTION_ERRORS as e:
            raise StoreUnavailableError(str(e)) from e
        return self._row_to_model(row) if row else None

    async def find(
        self,
        scope: TenantScope,
        filters: InterventionFilter | None = None,
        sort: SortSpec | None = None,
        skip: int = 0,
        limit: int | None = None,
    ) -> list[ClinicalIntervention]:
        sort = sort or SortSpec()
        if sort.field not in SORTABLE_FIELDS:
            raise ValueError(f"Unsortable field: {sort.field}")
        where = _scoped(scope, filters)
        direction = "DESC" if sort.descending else "ASC"
        query = (
            f"SELECT doc, version FROM interventions WHERE {where.sql} "
            f"ORDER BY {_SORT_EXPRESSIONS[sort.field]} {direction}, id ASC"
        )
        params = list(where.params)
        if limit is not None:
            params.append(limit)
            query += f" LIMIT ${len(params)}"
        if skip:
            params.append(skip)
            query += f" OFFSET ${len(params)}"
        try:
            async with self._require_pool().acquire() as conn:
                rows = await conn.fetch(query, *params)
        except _CONNECTION_ERRORS as e:
            raise StoreUnavailableError(str(e)) from e
        return [self._row_to_model(row) for row in rows]

    async def count(self, scope: TenantScope, filters: InterventionFilter | None = None) -> int:
        where = _scoped(scope, filters)
        try:
            async with self._require_pool().acquire() as conn:
                return await conn.fetchval(
                    f"SELECT COUNT(*) FROM interventions WHERE {where.sql}", *where.params
                )
        except _CONNECTION_ERRORS as e:
            raise StoreUnavailableError(str(e)) from e

    async def update_if_version(
        self,
        scope: TenantScope,
        intervention: ClinicalIntervention,
        expected_version: int,
    ) -> ClinicalIntervention | None:
        saved = intervention.model_copy(update={"version": expected_version + 1})
        try:
            async with self._require_pool().acquire() as conn:
                row = await conn.fetchrow(
                    """
                    UPDATE interventions
                    SET doc = $1::jsonb, version = $2, is_deleted = $3
                    WHERE id = $4 AND tenant_id = $5 AND version = $6
                    RETURNING id
                    """,
                    saved.model_dump_json(),
                    saved.version,
                    saved.is_deleted,
                    saved.id,
                    scope.tenant_id,
                    expected_version,
                )
        except _CONNECTION_ERRORS as e:
            raise StoreUnavailableError(str(e)) from e
        return saved if row else None

    async def max_number_with_prefix(self, tenant_id: str, prefix: str) -> str | None:
        try:
            async with self._require_pool().acquire() as conn:
                return await conn.fetchval(
                    """
                    SELECT max(intervention_number) FROM interventions
                    WHERE tenant_id = $1 AND intervention_number LIKE $2
                    """,
                    tenant_id,
                    f"{prefix}%",
                )
        except _CONNECTION_ERRORS as e:
            raise StoreUnavailableError(str(e)) from e

    @staticmethod
    def _row_to_model(row) -> ClinicalIntervention:
        item = ClinicalIntervention.model_validate_json(row["doc"])
        return item.model_copy(update={"version": row["version"]})


class PostgresAuditStore(_PostgresBase, AuditStore):
    """Insert-only audit ledger table."""

    @staticmethod
    def _where(query: AuditQuery) -> _Where:
        where = _Where()
        where.add("tenant_id = {}", query.tenant_id)
        if query.intervention_ids is not None:
            where.add("intervention_id = ANY({}::text[])", list(query.intervention_ids))
        if query.actions is not None:
            where.add("action = ANY({}::text[])", list(query.actions))
        if query.start:
            where.add("ts >= {}", query.start)
        if query.end:
            where.add("ts <= {}", query.end)
        return where

    async def append(self, entry: AuditLogEntry) -> None:
        try:
            async with self._require_pool().acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO intervention_audit_log (id, tenant_id, intervention_id, action, ts, entry)
                    VALUES ($1, $2, $3, $4, $5, $6::jsonb)
                    """,
                    entry.id,
                    entry.tenant_id,
                    entry.intervention_id,
                    entry.action,
                    entry.timestamp,
                    entry.model_dump_json(),
                )
        except _CONNECTION_ERRORS as e:
            raise StoreUnavailableError(str(e)) from e

    async def query(self, query: AuditQuery) -> list[AuditLogEntry]:
        where = self._where(query)
        sql = f"SELECT entry FROM intervention_audit_log WHERE {where.sql} ORDER BY ts DESC, seq DESC"
        params = list(where.params)
        if query.limit is not None:
            params.append(query.limit)
            sql += f" LIMIT ${len(params)}"
        if query.skip:
            params.append(query.skip)
            sql += f" OFFSET ${len(params)}"
        try:
            async with self._require_pool().acquire() as conn:
                rows = await conn.fetch(sql, *params)
        except _CONNECTION_ERRORS as e:
            raise StoreUnavailableError(str(e)) from e
        return [AuditLogEntry.model_validate_json(row["entry"]) for row in rows]

    async def count(self, query: AuditQuery) -> int:
        where = self._where(query)
        try:
            async with self._require_pool().acquire() as conn:
                return await conn.fetchval(
                    f"SELECT COUNT(*) FROM intervention_audit_log WHERE {where.sql}", *where.params
                )
        except _CONNECTION_ERRORS as e:
            raise StoreUnavailableError(str(e)) from e
