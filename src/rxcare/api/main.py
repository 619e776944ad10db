"""
RxCare API Main Application

FastAPI application factory: lifespan, error mapping and routers.

Run with:
    uvicorn rxcare.api.main:create_app --factory
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.datastructures import Headers
from starlette.types import ASGIApp, Receive, Scope, Send

from rxcare import __version__
from rxcare.api.routes import interventions_router
from rxcare.container import RxCareContainer, build_container
from rxcare.errors import InternalError, RxCareError, from_pydantic
from rxcare.observability.logging import configure_logging
from rxcare.tenancy import TenantContext

logger = structlog.get_logger(__name__)


class TenantContextMiddleware:
    """Bind the X-Workplace-Id header to the tenant context for one request."""

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        tenant_id = ""
        if scope["type"] == "http":
            tenant_id = Headers(scope=scope).get("x-workplace-id", "").strip()
        if not tenant_id:
            await self.app(scope, receive, send)
            return
        with TenantContext(tenant_id):
            await self.app(scope, receive, send)


def create_app(container: RxCareContainer | None = None) -> FastAPI:
    """
    Build the application around a service container.

    Tests pass a container wired with in-memory stores and fakes; the
    default builds one from settings.
    """
    container = container or build_container()
    settings = container.settings
    configure_logging(settings.app.log_level, settings.app.log_json)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("Starting RxCare API", env=settings.app.env, debug=settings.app.debug)
        await container.start()
        yield
        logger.info("Shutting down RxCare API")
        await container.stop()

    app = FastAPI(
        title="RxCare Clinical Interventions API",
        description="Pharmacy clinical intervention workflow",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.container = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(TenantContextMiddleware)

    # =========================================================================
    # Error Mapping
    # =========================================================================

    @app.exception_handler(RxCareError)
    async def rxcare_error_handler(request: Request, exc: RxCareError):
        if exc.status_code >= 500:
            logger.error("Request failed", path=request.url.path, code=exc.code, error=exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        error = from_pydantic(exc)
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(
            "Unhandled exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=exc,
        )
        error = InternalError()
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    # =========================================================================
    # Health
    # =========================================================================

    @app.get("/health", tags=["Health"])
    async def health_check():
        return {
            "status": "healthy",
            "version": __version__,
            "store": type(container.store).__name__,
            "pending_notifications": len(container.dispatcher.pending()),
        }

    app.include_router(interventions_router, prefix="/v1")
    return app
