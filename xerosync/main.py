"""
FastAPI application factory with middleware, CORS, and request tracing.
"""

import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from xerosync import __version__
from xerosync.config import get_settings
from xerosync.errors import (
    AggregationDataError,
    AggregationInputError,
    AuthenticationRequired,
    ConnectionNotFound,
    InsufficientPermissions,
    InvalidOAuthState,
    RateLimitExceeded,
    XeroSyncError,
)
from xerosync.routers import analytics, cron, sync, xero_auth
from xerosync.services import build_services
from xerosync.storage import get_storage
from xerosync.utils.logging import configure_logging, get_logger

# Configure logging at module level
configure_logging()
logger = get_logger(__name__)

_ERROR_STATUS = {
    AuthenticationRequired: status.HTTP_401_UNAUTHORIZED,
    InsufficientPermissions: status.HTTP_403_FORBIDDEN,
    ConnectionNotFound: status.HTTP_404_NOT_FOUND,
    InvalidOAuthState: status.HTTP_400_BAD_REQUEST,
    AggregationInputError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    AggregationDataError: status.HTTP_503_SERVICE_UNAVAILABLE,
    RateLimitExceeded: status.HTTP_429_TOO_MANY_REQUESTS,
}


def error_status(error: XeroSyncError) -> int:
    """HTTP status for an engine error; upstream Xero failures map to 502."""
    for error_type, status_code in _ERROR_STATUS.items():
        if isinstance(error, error_type):
            return status_code
    return status.HTTP_502_BAD_GATEWAY


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.
    Builds the service graph on startup and closes the shared HTTP client on shutdown.
    """
    settings = get_settings()

    logger.info(
        "application_startup",
        version=app.version,
        runtime_mode=settings.runtime_mode.value,
        dev_mode=settings.dev_mode,
    )

    app.state.services = build_services(settings, get_storage())

    yield

    await app.state.services.aclose()
    logger.info("application_shutdown")


def create_app() -> FastAPI:
    """
    Application factory.
    Creates and configures FastAPI application instance.
    """
    settings = get_settings()

    app = FastAPI(
        title="XeroSync API",
        description="Xero connection lifecycle, incremental ledger sync and financial analytics",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

    # Request tracing middleware
    @app.middleware("http")
    async def request_tracing_middleware(request: Request, call_next):
        """Add request ID and timing to all requests."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        logger.info(
            "request_started",
            method=request.method,
            path=request.url.path,
            client=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            logger.info(
                "request_completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
            )

            return response
        except Exception as e:
            logger.error(
                "request_failed",
                method=request.method,
                path=request.url.path,
                error=str(e),
                exc_info=True,
            )
            return JSONResponse(
                status_code=500,
                content={
                    "success": False,
                    "error": "Internal server error",
                    "request_id": request_id,
                },
                headers={"X-Request-ID": request_id},
            )

    @app.exception_handler(XeroSyncError)
    async def xero_sync_error_handler(request: Request, exc: XeroSyncError):
        status_code = error_status(exc)
        logger.warning(
            "request_rejected",
            path=request.url.path,
            error=exc.code,
            status_code=status_code,
        )
        headers = None
        if isinstance(exc, RateLimitExceeded) and exc.retry_after is not None:
            headers = {"Retry-After": str(max(1, int(exc.retry_after)))}
        return JSONResponse(
            status_code=status_code,
            content={"success": False, "error": exc.code, "message": exc.message},
            headers=headers,
        )

    # Health check endpoint
    @app.get("/health", tags=["System"])
    async def health_check():
        """Health check endpoint for load balancers and monitoring."""
        return {
            "status": "healthy",
            "version": app.version,
            "runtime_mode": get_settings().runtime_mode.value,
        }

    # Include routers
    app.include_router(xero_auth.router, prefix="/api/auth/xero", tags=["Xero OAuth"])
    app.include_router(cron.router, prefix="/api/cron", tags=["Scheduler"])
    app.include_router(sync.router, prefix="/api/sync", tags=["Sync"])
    app.include_router(analytics.router, prefix="/api/analytics", tags=["Analytics"])

    logger.info("application_configured", routers_count=4)

    return app


# Create application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "xerosync.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_reload,
        log_level=settings.log_level.lower(),
    )
