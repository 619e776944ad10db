"""
Tenant Scoping Guard

Workplace (tenant) isolation for every intervention read and write.

Stores only accept a TenantScope, so an unscoped lookup cannot be
expressed. A document belonging to another tenant is indistinguishable
from one that does not exist.
"""

from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any

import structlog

from rxcare.errors import ValidationError

logger = structlog.get_logger(__name__)

# Context variable for the current workplace (task-safe)
_current_tenant: ContextVar["TenantScope | None"] = ContextVar("current_tenant", default=None)


@dataclass(frozen=True)
class TenantScope:
    """Mandatory filter applied to every document access."""
    tenant_id: str
    include_deleted: bool = False

    def matches(self, document: dict[str, Any]) -> bool:
        """Check whether a stored document is visible in this scope."""
        if document.get("tenant_id") != self.tenant_id:
            return False
        if not self.include_deleted and document.get("is_deleted") is True:
            return False
        return True

    def as_filter(self) -> dict[str, Any]:
        """The scope as a plain filter mapping."""
        query: dict[str, Any] = {"tenant_id": self.tenant_id}
        if not self.include_deleted:
            query["is_deleted"] = {"$ne": True}
        return query


def scope_for(tenant_id: Any) -> TenantScope:
    """Build a scope, rejecting an empty tenant identifier."""
    if not tenant_id or not isinstance(tenant_id, str) or not tenant_id.strip():
        raise ValidationError("Workplace identifier is required", field="tenant_id")
    return TenantScope(tenant_id=tenant_id.strip())


class TenantContext:
    """
    Tenant context manager for request-scoped isolation.

    Usage:
        async with TenantContext("workplace-1"):
            scope = require_tenant()
    """

    def __init__(self, tenant_id: str):
        self.scope = scope_for(tenant_id)
        self._token = None

    def __enter__(self):
        self._token = _current_tenant.set(self.scope)
        return self.scope

    def __exit__(self, exc_type, exc_val, exc_tb):
        _current_tenant.reset(self._token)
        return False

    async def __aenter__(self):
        return self.__enter__()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return self.__exit__(exc_type, exc_val, exc_tb)


def get_current_tenant() -> TenantScope | None:
    """Get the current tenant scope from context."""
    return _current_tenant.get()


def require_tenant() -> TenantScope:
    """Get the current tenant scope or raise."""
    scope = get_current_tenant()
    if scope is None:
        raise ValidationError("No workplace context", field="tenant_id")
    return scope
