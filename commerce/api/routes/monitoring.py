"""
Health and metrics routes.
"""
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from commerce.api.dependencies import get_container
from commerce.api.schemas import HealthCheckResponse
from commerce.container import ServiceContainer

logger = structlog.get_logger(__name__)

monitoring_router = APIRouter(tags=["monitoring"])


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await container.health.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    return await container.health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint; 503 while a dependency is down",
)
async def readiness(container: ServiceContainer = Depends(get_container)) -> Any:
    result = await container.health.readiness()
    if result["status"] != "healthy":
        logger.warning("readiness_check_failed", checks=result["checks"])
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=result)
    return result


@monitoring_router.get("/metrics", summary="Prometheus metrics", include_in_schema=False)
async def prometheus_metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
