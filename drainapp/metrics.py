import time

import psutil
from prometheus_client import Counter, Gauge, Histogram, Info, generate_latest, CONTENT_TYPE_LATEST
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# ── Metric definitions ──

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "path"],
    buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

active_requests = Gauge("active_requests", "Number of in-flight requests")

sessions_attached = Gauge("sessions_attached", "Client sessions attached to this instance")

sessions_pinned = Gauge("sessions_pinned", "Client sessions pinned to this instance's slot")

session_migrations_total = Counter(
    "session_migrations_total",
    "Sessions told to migrate to the new slot",
    ["reason"],
)

drain_requests_total = Counter("drain_requests_total", "New-version notifications received")

memory_usage_bytes = Gauge("memory_usage_bytes", "Process RSS memory in bytes")

deployment_slot = Info("deployment", "Current deployment slot and version")


# ── Helper functions ──

def set_session_counts(total: int, pinned: int):
    sessions_attached.set(total)
    sessions_pinned.set(pinned)


def record_migration(reason: str):
    session_migrations_total.labels(reason=reason).inc()


def record_drain_request():
    drain_requests_total.inc()


def update_memory_metric():
    """Update the memory usage gauge."""
    process = psutil.Process()
    memory_usage_bytes.set(process.memory_info().rss)


def set_deployment_info(slot: str, version: str):
    """Set deployment info metric."""
    deployment_slot.info({"slot": slot, "version": version})


def metrics_response() -> Response:
    """Generate Prometheus metrics response."""
    update_memory_metric()
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )


# ── Middleware ──

class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        active_requests.inc()
        start = time.perf_counter()

        try:
            response = await call_next(request)
            duration = time.perf_counter() - start

            http_requests_total.labels(
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
            ).inc()

            http_request_duration_seconds.labels(
                method=request.method,
                path=request.url.path,
            ).observe(duration)

            return response
        except Exception:
            http_requests_total.labels(
                method=request.method,
                path=request.url.path,
                status_code=500,
            ).inc()
            raise
        finally:
            active_requests.dec()
