"""
Prometheus Metrics Module

Provides application metrics using the prometheus_client library.
Metrics are exposed at /metrics endpoint for Prometheus scraping.
"""

import time
from collections.abc import Callable

from prometheus_client import Counter, Gauge, Histogram, Info
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# =============================================================================
# Application Info
# =============================================================================

APP_INFO = Info("sse_app", "SSE dispatch application information")


def set_app_info(version: str, environment: str) -> None:
    """Set application info labels."""
    APP_INFO.info({"version": version, "environment": environment})


# =============================================================================
# HTTP Request Metrics
# =============================================================================

HTTP_REQUESTS_TOTAL = Counter(
    "sse_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "sse_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

HTTP_REQUESTS_IN_PROGRESS = Gauge(
    "sse_http_requests_in_progress",
    "Number of HTTP requests currently being processed",
    ["method"],
)

# =============================================================================
# Event Stream Metrics
# =============================================================================

# Updated by SSEManager on every add/remove
SSE_CONNECTIONS_ACTIVE = Gauge(
    "sse_connections_active",
    "Number of open event-stream connections",
)

SSE_CLIENTS_ACTIVE = Gauge(
    "sse_clients_active",
    "Number of clients holding at least one open connection",
)

SSE_FRAMES_SENT_TOTAL = Counter(
    "sse_frames_sent_total",
    "Total event frames written successfully",
    ["scope"],  # unicast / broadcast / heartbeat / connected
)

SSE_WRITE_FAILURES_TOTAL = Counter(
    "sse_write_failures_total",
    "Total failed frame writes (each one evicts its connection)",
    ["scope"],
)

# =============================================================================
# Application Health Metrics
# =============================================================================

APP_UPTIME_SECONDS = Gauge(
    "sse_uptime_seconds",
    "Application uptime in seconds",
)

# =============================================================================
# Prometheus Metrics Middleware
# =============================================================================


class PrometheusMiddleware(BaseHTTPMiddleware):
    """
    Middleware to collect HTTP request metrics for Prometheus.

    Tracks:
    - Request count by method, endpoint, and status code
    - Request duration by method and endpoint
    - In-progress requests by method

    Event-stream subscriptions are skipped: they stay open for the lifetime
    of the client and would distort the duration histogram.
    """

    # Endpoints to exclude from metrics (to avoid noise)
    EXCLUDED_PATHS = {"/metrics", "/health", "/favicon.ico"}
    EXCLUDED_PREFIXES = ("/api/v1/sse/subscribe/",)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if path in self.EXCLUDED_PATHS or path.startswith(self.EXCLUDED_PREFIXES):
            return await call_next(request)

        method = request.method
        endpoint = self._normalize_path(path)

        HTTP_REQUESTS_IN_PROGRESS.labels(method=method).inc()
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception:
            status_code = 500
            raise
        finally:
            duration = time.perf_counter() - start_time
            HTTP_REQUEST_DURATION_SECONDS.labels(method=method, endpoint=endpoint).observe(duration)
            HTTP_REQUESTS_TOTAL.labels(method=method, endpoint=endpoint, status_code=str(status_code)).inc()
            HTTP_REQUESTS_IN_PROGRESS.labels(method=method).dec()

        return response

    @staticmethod
    def _normalize_path(path: str) -> str:
        """
        Normalize URL path for metrics by replacing dynamic segments.

        Examples:
            /api/v1/items/123 -> /api/v1/items/{id}
            /api/v1/sse/client_1700000000000_abc123xyz -> /api/v1/sse/{client_id}
        """
        parts = path.split("/")
        normalized = []

        for part in parts:
            if part.isdigit():
                normalized.append("{id}")
            elif part.startswith("client_"):
                normalized.append("{client_id}")
            elif part and len(part) == 36 and "-" in part:
                # UUID pattern
                normalized.append("{uuid}")
            else:
                normalized.append(part)

        return "/".join(normalized)


# =============================================================================
# Helper Functions
# =============================================================================


def update_connection_gauges(total_connections: int, total_clients: int) -> None:
    """Push the registry's current size into the connection gauges."""
    SSE_CONNECTIONS_ACTIVE.set(total_connections)
    SSE_CLIENTS_ACTIVE.set(total_clients)


def record_frames_sent(scope: str, count: int = 1) -> None:
    """Record successfully written frames for a dispatch scope."""
    if count:
        SSE_FRAMES_SENT_TOTAL.labels(scope=scope).inc(count)


def record_write_failure(scope: str) -> None:
    """Record a failed frame write (the connection has been evicted)."""
    SSE_WRITE_FAILURES_TOTAL.labels(scope=scope).inc()


def update_uptime(start_time: float) -> None:
    """Update application uptime."""
    APP_UPTIME_SECONDS.set(time.time() - start_time)
