"""
Main FastAPI application.

Online store API with:
- CORS configuration
- Domain error mapping
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from commerce import __version__
from commerce.config import get_settings
from commerce.container import ServiceContainer, build_container
from commerce.core.errors import CommerceError
from commerce.database.connection import close_db, init_db
from commerce.monitoring.logging import setup_logging
from commerce.monitoring.metrics import metrics

from .routes import ALL_ROUTERS

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Builds the service container unless one was injected (tests).
    """
    settings = get_settings()
    owns_container = getattr(app.state, "container", None) is None

    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        test_mode=settings.is_test_mode,
    )

    if owns_container:
        try:
            await init_db()
            logger.info("database_initialized")
        except Exception as e:
            logger.error("database_initialization_failed", error=str(e))
            raise
        app.state.container = build_container(settings)

    yield

    logger.info("application_shutdown")
    if owns_container:
        try:
            await app.state.container.close()
            await close_db()
            logger.info("database_connections_closed")
        except Exception as e:
            logger.error("database_shutdown_error", error=str(e))


def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    """Build the FastAPI application, optionally around an existing container."""
    settings = get_settings()

    app = FastAPI(
        title="Commerce Platform",
        description=(
            "Online store backend: catalog, inventory, carts, saga-based checkout, "
            "payments, shipping, reviews, notifications and search."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    if container is not None:
        app.state.container = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """
        Add request ID to all requests for tracing.

        A client-supplied X-Request-ID is kept so calls can be correlated
        across services; it also becomes the correlation id of outbox events.
        """
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        start_time = time.time()

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id

            duration = time.time() - start_time
            metrics.record_http_request(request.method, response.status_code, duration)
            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=duration,
            )
            return response

        except Exception as e:
            duration = time.time() - start_time
            metrics.record_http_request(request.method, 500, duration)
            logger.error("request_failed", error=str(e), duration_seconds=duration)
            raise

        finally:
            structlog.contextvars.clear_contextvars()

    @app.exception_handler(CommerceError)
    async def commerce_error_handler(request: Request, exc: CommerceError) -> JSONResponse:
        """Map domain errors to their HTTP status."""
        log = logger.warning if exc.status_code < 500 else logger.error
        log(
            "domain_error",
            error_type=type(exc).__name__,
            error=exc.message,
            status_code=exc.status_code,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": type(exc).__name__,
                "message": exc.message,
                "details": exc.details,
            },
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions."""
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "InternalServerError",
                "message": "An unexpected error occurred. Please try again later.",
            },
        )

    for router in ALL_ROUTERS:
        app.include_router(router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": __version__,
            "status": "operational",
            "environment": settings.app_env,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


def get_app() -> FastAPI:
    """Uvicorn factory entry point."""
    setup_logging()
    return create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "commerce.api.main:get_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )
