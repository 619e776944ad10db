"""
Service Base

Shared plumbing for services that mutate the intervention aggregate:
scoped load, version-checked save, audit snapshot and error translation.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable

import structlog
from pydantic import ValidationError as PydanticValidationError

from rxcare.audit.service import AuditService, RequestMeta
from rxcare.db.store import InterventionStore
from rxcare.errors import (
    ConflictError,
    InternalError,
    NotFoundError,
    RxCareError,
    from_pydantic,
)
from rxcare.models.base import utcnow
from rxcare.models.intervention import ClinicalIntervention
from rxcare.tenancy import TenantScope, scope_for
from rxcare.validators import require_actor, validate_object_id

logger = structlog.get_logger(__name__)

# Fields left out of audit snapshots
_SNAPSHOT_EXCLUDE = {"version", "updated_at", "updated_by"}


@asynccontextmanager
async def service_errors(operation: str, **context: Any):
    """
    Translate failures inside a service operation.

    Domain errors pass through, pydantic errors become ValidationError and
    anything else is logged with full context and surfaced as InternalError.
    """
    try:
        yield
    except RxCareError:
        raise
    except PydanticValidationError as e:
        raise from_pydantic(e) from e
    except Exception as e:
        logger.error(
            f"Error in {operation}",
            operation=operation,
            error=str(e),
            exc_info=True,
            **context,
        )
        raise InternalError() from e


def snapshot(item: ClinicalIntervention) -> dict[str, Any]:
    """JSON-safe view of an intervention for audit diffs."""
    return item.model_dump(mode="json", exclude=_SNAPSHOT_EXCLUDE)


class AggregateService:
    """Base for services working on one intervention at a time."""

    def __init__(
        self,
        store: InterventionStore,
        audit: AuditService,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.audit = audit
        self.clock = clock

    @staticmethod
    def _actor(user_id: Any, tenant_id: Any) -> tuple[str, str, TenantScope]:
        user_id, tenant_id = require_actor(user_id, tenant_id)
        return validate_object_id(user_id, "user_id"), tenant_id, scope_for(tenant_id)

    async def _load(self, scope: TenantScope, intervention_id: Any) -> ClinicalIntervention:
        intervention_id = validate_object_id(intervention_id, "intervention_id")
        item = await self.store.get(scope, intervention_id)
        if item is None:
            raise NotFoundError("Clinical intervention not found")
        return item

    async def _save(
        self, scope: TenantScope, item: ClinicalIntervention, user_id: str
    ) -> ClinicalIntervention:
        """Version-checked write of a loaded intervention."""
        expected = item.version
        item.updated_by = user_id
        item.updated_at = self.clock()
        saved = await self.store.update_if_version(scope, item, expected)
        if saved is not None:
            return saved
        if await self.store.get(scope, item.id) is None:
            raise NotFoundError("Clinical intervention not found")
        logger.warning(
            "Concurrent modification detected",
            intervention_id=item.id,
            tenant_id=scope.tenant_id,
            expected_version=expected,
        )
        raise ConflictError(
            "Intervention was modified concurrently",
            details={"intervention_id": item.id},
        )

    async def _record(
        self,
        action: str,
        item: ClinicalIntervention,
        user_id: str,
        details: dict[str, Any] | None = None,
        before: dict[str, Any] | None = None,
        request: RequestMeta | None = None,
    ) -> None:
        await self.audit.log_activity(
            action,
            item.id,
            user_id,
            item.tenant_id,
            details,
            request=request,
            old_values=before,
            new_values=snapshot(item) if before is not None else None,
        )
