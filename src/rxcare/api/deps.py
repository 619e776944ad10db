"""
Request Dependencies

Request context, container lookup and access checks shared by routes.
Authentication happens upstream; the caller's identity arrives in
X-User-Id and X-Workplace-Id headers. The workplace is bound to the
tenant context by TenantContextMiddleware before routing.
"""

from typing import Callable

import structlog
from fastapi import Depends, Header, HTTPException, Request, status
from pydantic import BaseModel

from rxcare.audit.service import RequestMeta
from rxcare.container import RxCareContainer
from rxcare.tenancy import require_tenant

logger = structlog.get_logger(__name__)


class RequestContext(BaseModel):
    """Who is calling, for which workplace."""
    user_id: str
    tenant_id: str
    meta: RequestMeta


def get_container(request: Request) -> RxCareContainer:
    return request.app.state.container


async def get_request_context(
    request: Request,
    x_user_id: str | None = Header(default=None),
    x_workplace_id: str | None = Header(default=None),
    x_request_id: str | None = Header(default=None),
) -> RequestContext:
    if not x_user_id or not x_workplace_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-Id and X-Workplace-Id headers are required",
        )
    return RequestContext(
        user_id=x_user_id,
        tenant_id=require_tenant().tenant_id,
        meta=RequestMeta(
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
            request_id=x_request_id,
        ),
    )


def require_action(action: str) -> Callable:
    """
    Dependency factory enforcing the access gate for one action.

    Usage:
        ctx: RequestContext = Depends(require_action("intervention:update"))
    """

    async def checker(
        ctx: RequestContext = Depends(get_request_context),
        container: RxCareContainer = Depends(get_container),
    ) -> RequestContext:
        if not await container.gate.is_allowed(ctx.user_id, action):
            logger.warning("Permission denied", user_id=ctx.user_id, action=action)
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied: {action}",
            )
        return ctx

    return checker
