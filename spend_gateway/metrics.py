"""Prometheus metrics for the spend gateway.

Labels are kept low-cardinality: outcome names and stable error codes only,
never permission hashes or identities.
"""
from __future__ import annotations

import os
import time
from typing import Callable, Optional

from fastapi import Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest


def _env_bool(name: str, default: bool = True) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


HTTP_REQUESTS_TOTAL = Counter(
    "spg_http_requests_total",
    "Total HTTP requests received",
    ["method", "route", "status"],
)
HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "spg_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)
REGISTRY_OPS_TOTAL = Counter(
    "spg_registry_operations_total",
    "Approvals and revocations processed",
    ["operation", "outcome"],
)
SPEND_TOTAL = Counter(
    "spg_spend_attempts_total",
    "Spend attempts by outcome",
    ["outcome"],
)
REJECTIONS_TOTAL = Counter(
    "spg_rejections_total",
    "Rejected operations by error code",
    ["code", "kind"],
)
LOCKDOWN_ACTIVE = Gauge(
    "spg_lockdown_active",
    "1 if the store is in lockdown",
)


def record_registry_op(operation: str, outcome: str) -> None:
    REGISTRY_OPS_TOTAL.labels(operation=str(operation), outcome=str(outcome)).inc()


def record_spend(outcome: str) -> None:
    SPEND_TOTAL.labels(outcome=str(outcome)).inc()


def record_rejection(code: str, kind: str) -> None:
    REJECTIONS_TOTAL.labels(code=str(code), kind=str(kind)).inc()


def set_lockdown_active(active: bool) -> None:
    LOCKDOWN_ACTIVE.set(1.0 if active else 0.0)


def instrument_fastapi(app, authorize: Optional[Callable] = None) -> None:
    """Attach /metrics endpoint and request middleware to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.
    """
    if not _env_bool("SPG_METRICS_ENABLED", True):
        return

    @app.middleware("http")
    async def _metrics_middleware(request: Request, call_next):
        start = time.time()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            route = request.scope.get("route")
            route_path = getattr(route, "path", None) or request.url.path
            HTTP_REQUESTS_TOTAL.labels(method=request.method, route=route_path, status=str(status)).inc()
            HTTP_REQUEST_LATENCY_SECONDS.labels(method=request.method, route=route_path).observe(time.time() - start)

    @app.get("/metrics")
    async def metrics_endpoint(request: Request):
        if authorize is not None and not authorize(request):
            return Response(status_code=403, content="FORBIDDEN")
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
