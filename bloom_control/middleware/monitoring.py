"""
Monitoring middleware: request ids, request logging and Prometheus metrics.
"""
import re
import time
import uuid
from typing import Callable

from fastapi import FastAPI, Request, Response
from loguru import logger
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST

from ..models.enums import ServerState


# Request metrics
http_requests_total = Counter(
    'bloom_http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration_seconds = Histogram(
    'bloom_http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)

active_requests = Gauge(
    'bloom_active_requests',
    'Number of active requests'
)

# Lifecycle metrics
state_transitions_total = Counter(
    'bloom_state_transitions_total',
    'Server state transitions',
    ['from_state', 'to_state']
)

server_state = Gauge(
    'bloom_server_state',
    'Current server state (1 for the active state)',
    ['state']
)

admission_denials_total = Counter(
    'bloom_admission_denials_total',
    'Requests rejected by admission control',
    ['endpoint', 'reason']
)

external_failures_total = Counter(
    'bloom_external_failures_total',
    'Failed calls to external collaborators',
    ['service', 'operation']
)


def add_monitoring_middleware(app: FastAPI):
    """
    Add request monitoring to the app.
    Tracks metrics, logs requests, and adds request IDs for tracing.
    """

    @app.middleware("http")
    async def monitoring_middleware(request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        start_time = time.time()
        endpoint = normalize_endpoint(request.url.path)

        active_requests.inc()

        log_context = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "client_host": request.client.host if request.client else "unknown",
        }

        with logger.contextualize(**log_context):
            logger.debug(f"Request started: {request.method} {request.url.path}")

            try:
                response = await call_next(request)
                duration = time.time() - start_time

                http_requests_total.labels(
                    method=request.method,
                    endpoint=endpoint,
                    status=response.status_code
                ).inc()
                http_request_duration_seconds.labels(
                    method=request.method,
                    endpoint=endpoint
                ).observe(duration)

                response.headers["X-Request-ID"] = request_id
                response.headers["X-Response-Time"] = f"{duration:.3f}"

                logger.info(
                    f"Request completed: {request.method} {request.url.path} "
                    f"{response.status_code} in {duration:.3f}s"
                )
                return response

            except Exception as e:
                duration = time.time() - start_time
                http_requests_total.labels(
                    method=request.method,
                    endpoint=endpoint,
                    status=500
                ).inc()
                logger.error(
                    f"Request failed: {request.method} {request.url.path} "
                    f"after {duration:.3f}s: {type(e).__name__}: {e}"
                )
                raise

            finally:
                active_requests.dec()

    @app.get("/metrics", include_in_schema=False, tags=["monitoring"])
    async def metrics():
        """Prometheus metrics endpoint."""
        return Response(
            content=generate_latest(),
            media_type=CONTENT_TYPE_LATEST,
            headers={"Cache-Control": "no-cache, no-store, must-revalidate"}
        )


def normalize_endpoint(path: str) -> str:
    """
    Normalize endpoint path for metrics by replacing path parameters.

    Examples:
    - /api/projects/12 -> /api/projects/{id}
    """
    path = re.sub(r'/\d+', '/{id}', path)
    path = re.sub(r'/[a-zA-Z0-9_\-]{16,}', '/{id}', path)
    return path


def record_transition(from_state: ServerState, to_state: ServerState):
    """Record a lifecycle transition and update the state gauge."""
    if from_state == to_state:
        return
    state_transitions_total.labels(from_state=from_state.value, to_state=to_state.value).inc()
    for state in ServerState:
        server_state.labels(state=state.value).set(1 if state == to_state else 0)


def record_admission_denied(endpoint: str, reason: str):
    admission_denials_total.labels(endpoint=endpoint, reason=reason).inc()


def record_external_failure(service: str, operation: str):
    external_failures_total.labels(service=service, operation=operation).inc()
