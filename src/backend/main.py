"""
PollGuard Backend Application

Vote-integrity gate for public polls: rate limiting, fraud scoring and
challenge verification in front of the Poll Voting Service.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from api.v1 import router as api_v1_router
from core.config import settings
from core.events import create_start_app_handler, create_stop_app_handler
from core.middleware import RequestIdMiddleware, SecurityHeadersMiddleware

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events."""
    await create_start_app_handler(app)()
    yield
    await create_stop_app_handler(app)()


def create_application() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title=settings.APP_NAME,
        description="Vote-integrity protection gate for public polls",
        version="1.0.0",
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
        openapi_url="/openapi.json" if settings.DEBUG else None,
        lifespan=lifespan,
    )

    # Add middleware (order matters - processed in reverse)
    application.add_middleware(SecurityHeadersMiddleware)
    application.add_middleware(RequestIdMiddleware)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Request-ID"],
        expose_headers=[
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-Request-ID",
        ],
    )
    application.add_middleware(GZipMiddleware, minimum_size=1000)

    application.include_router(api_v1_router, prefix="/api/v1")

    @application.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler to catch unhandled exceptions.

        Returns a structured JSON body so error responses still pass through
        the CORS middleware with headers attached.
        """
        logger.exception(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
            method=request.method,
        )

        return JSONResponse(
            status_code=500,
            content={
                "detail": "An internal server error occurred. Please try again later.",
                "error_type": type(exc).__name__ if settings.DEBUG else "InternalServerError",
            },
        )

    @application.get("/health", tags=["Health"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint for load balancers and monitoring."""
        return {"status": "healthy", "service": "pollguard-api"}

    @application.get("/health/services", tags=["Health"])
    async def service_status(request: Request) -> dict:
        """
        Store configuration status for deployment validation.

        Reports "degraded" when the gate is running on in-memory stores while
        the Azure backend was requested.
        """
        stores = getattr(request.app.state, "gate_stores", None)
        engine = getattr(request.app.state, "vote_gate", None)
        active_backend = stores.backend if stores is not None else None

        services = {
            "gate_stores": {
                "configured": active_backend == settings.GATE_STORE_BACKEND,
                "details": {
                    "requested_backend": settings.GATE_STORE_BACKEND,
                    "active_backend": active_backend,
                },
            },
            "audit_logger": {
                "configured": engine is not None and engine.audit.running,
                "details": {
                    "pending_events": engine.audit.pending if engine is not None else 0,
                    "store": type(stores.audit_events).__name__ if stores is not None else None,
                },
            },
        }

        all_configured = all(svc["configured"] for svc in services.values())

        return {
            "status": "healthy" if all_configured else "degraded",
            "all_services_configured": all_configured,
            "services": services,
        }

    @application.get("/", tags=["Root"])
    async def root() -> dict[str, str]:
        """Root endpoint with API information."""
        return {
            "name": settings.APP_NAME,
            "version": "1.0.0",
            "docs": "/docs" if settings.DEBUG else "Documentation disabled in production",
        }

    return application


app = create_application()
