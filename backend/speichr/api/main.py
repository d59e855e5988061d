"""
Speichr - FastAPI Application
=============================

Main application factory with all routers and middleware.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from speichr.api import (
    alerts,
    connections,
    governance,
    incidents,
    keys,
    namespaces,
    observability,
    retention,
    workflows,
)
from speichr.core.config import settings
from speichr.core.database import close_db, init_db
from speichr.core.errors import ErrorCode, OperationFailure
from speichr.core.service import SpeichrService, build_service

logging.basicConfig(level=settings.LOG_LEVEL.upper(), format="%(message)s")

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer() if settings.is_production else structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

ERROR_STATUS = {
    ErrorCode.VALIDATION_ERROR: status.HTTP_400_BAD_REQUEST,
    ErrorCode.UNAUTHORIZED: status.HTTP_403_FORBIDDEN,
    ErrorCode.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorCode.NOT_SUPPORTED: status.HTTP_501_NOT_IMPLEMENTED,
    ErrorCode.CONNECTION_FAILED: status.HTTP_502_BAD_GATEWAY,
    ErrorCode.TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
    ErrorCode.INTERNAL_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


class HealthResponse(BaseModel):
    status: str
    version: str
    environment: str
    storage_backend: str


# ==========================================================================
# Lifespan
# ==========================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    Startup:
    - Create tables when persisting through SQL
    - Build the service unless one was injected

    Shutdown:
    - Stop background export jobs
    - Close database connections
    """
    logger.info("Starting Speichr", version=settings.APP_VERSION, storage=settings.STORAGE_BACKEND)
    use_sql = settings.STORAGE_BACKEND == "sql"

    if use_sql:
        await init_db()
        logger.info("Database initialized")

    if getattr(app.state, "service", None) is None:
        app.state.service = build_service(settings)

    yield

    logger.info("Shutting down Speichr")
    await app.state.service.shutdown()
    if use_sql:
        await close_db()
        logger.info("Database connections closed")


# ==========================================================================
# App Factory
# ==========================================================================

def create_app(service: Optional[SpeichrService] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        service: Prebuilt service; built from settings at startup when None

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Operations console for Redis and Memcached connections",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        openapi_url="/openapi.json" if settings.is_development else None,
        lifespan=lifespan,
    )
    app.state.service = service

    # ==========================================================================
    # Middleware
    # ==========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ==========================================================================
    # Exception Handlers
    # ==========================================================================

    @app.exception_handler(OperationFailure)
    async def operation_failure_handler(request: Request, exc: OperationFailure) -> JSONResponse:
        """Map operation failures to HTTP statuses."""
        status_code = ERROR_STATUS.get(exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR)
        if status_code >= 500:
            logger.warning(
                "operation_failed",
                code=exc.code.value,
                message=exc.message,
                path=request.url.path,
            )
        return JSONResponse(status_code=status_code, content={"error": exc.to_dict()})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(
            "Unhandled exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
        )

        if settings.is_development:
            message = str(exc)
        else:
            message = "An unexpected error occurred"

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": OperationFailure(ErrorCode.INTERNAL_ERROR, message).to_dict(),
            },
        )

    # ==========================================================================
    # Routers
    # ==========================================================================

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    async def health_check() -> HealthResponse:
        return HealthResponse(
            status="healthy",
            version=settings.APP_VERSION,
            environment=settings.ENVIRONMENT,
            storage_backend=settings.STORAGE_BACKEND,
        )

    for module in (
        connections,
        namespaces,
        keys,
        workflows,
        governance,
        alerts,
        retention,
        observability,
        incidents,
    ):
        app.include_router(module.router, prefix=settings.API_V1_PREFIX)

    @app.get("/", tags=["Root"])
    async def root() -> dict:
        """Root endpoint with API info."""
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs" if settings.is_development else "Disabled in production",
            "health": "/health",
            "api": settings.API_V1_PREFIX,
        }

    return app


# ==========================================================================
# Application Instance
# ==========================================================================

app = create_app()


# ==========================================================================
# Development Server
# ==========================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "speichr.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
        log_level="info",
    )
