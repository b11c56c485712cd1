"""
Monitoring Routes

Provides a liveness endpoint and Prometheus metrics for observability.
"""

import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel

from app.config import settings
from app.services.sse_manager import SSEManager, get_sse_manager
from app.utils.metrics import set_app_info, update_connection_gauges, update_uptime

router = APIRouter(tags=["Monitoring"])

# Application start time for uptime calculation
APP_START_TIME = time.time()

# Initialize app info metrics
set_app_info(version=settings.app_version, environment=settings.environment)


class HealthStatus(BaseModel):
    """Health check response model."""

    status: str
    timestamp: str
    version: str
    uptime_seconds: float
    heartbeat_running: bool
    total_connections: int


@router.get("/health", response_model=HealthStatus)
async def health_check(manager: SSEManager = Depends(get_sse_manager)) -> HealthStatus:
    """
    Liveness probe endpoint.

    Returns basic health status. Used by load balancers and
    orchestrators to determine if the application is alive.
    """
    return HealthStatus(
        status="healthy",
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=settings.app_version,
        uptime_seconds=round(time.time() - APP_START_TIME, 2),
        heartbeat_running=manager.heartbeat.running,
        total_connections=manager.total_connections(),
    )


@router.get("/metrics")
async def prometheus_metrics(manager: SSEManager = Depends(get_sse_manager)) -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format for scraping.
    """
    update_uptime(APP_START_TIME)
    update_connection_gauges(manager.total_connections(), len(manager.list_client_ids()))

    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
