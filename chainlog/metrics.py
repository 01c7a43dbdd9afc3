"""Prometheus metrics for the chainlog gateway.

Metrics goals:
- low-cardinality labels (never subject ids, fingerprints or caller ids)
- internal observability for trail operations, identity rejections and lockdown
"""
from __future__ import annotations

import os
import time
from typing import Callable, Optional

from fastapi import FastAPI, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest


def _env_bool(name: str, default: bool = True) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


# ---------------------------
# Core metric objects
# ---------------------------
HTTP_REQUESTS_TOTAL = Counter(
    "chainlog_http_requests_total",
    "Total HTTP requests received",
    ["method", "route", "status"],
)
HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "chainlog_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)
OPERATIONS_TOTAL = Counter(
    "chainlog_operations_total",
    "Total audit engine operations",
    ["operation", "outcome"],
)
IDENTITY_REJECT_TOTAL = Counter(
    "chainlog_identity_reject_total",
    "Total requests rejected by identity extraction",
    ["kind", "mode"],
)
VERIFICATIONS_TOTAL = Counter(
    "chainlog_verifications_total",
    "Total verification results",
    ["valid"],
)
LOCKDOWN_ACTIVE = Gauge(
    "chainlog_lockdown_active",
    "1 if the store is in lockdown / fail-closed mode",
)


def record_operation(operation: str, outcome: str) -> None:
    OPERATIONS_TOTAL.labels(operation=str(operation), outcome=str(outcome)).inc()


def record_identity_reject(kind: str, mode: str) -> None:
    IDENTITY_REJECT_TOTAL.labels(kind=str(kind), mode=str(mode)).inc()


def record_verification(valid: bool) -> None:
    VERIFICATIONS_TOTAL.labels(valid="true" if valid else "false").inc()


def set_lockdown_active(active: bool) -> None:
    LOCKDOWN_ACTIVE.set(1.0 if active else 0.0)


def instrument_fastapi(app: FastAPI, authorize: Optional[Callable[[Request], bool]] = None) -> None:
    """Attach /metrics endpoint and request middleware to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.
    """
    if not _env_bool("CHAINLOG_METRICS_ENABLED", True):
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
            # Route templates keep label cardinality low; raw paths carry ids.
            route_path = getattr(route, "path", None) or "unmatched"
            HTTP_REQUESTS_TOTAL.labels(method=request.method, route=route_path, status=str(status)).inc()
            HTTP_REQUEST_LATENCY_SECONDS.labels(method=request.method, route=route_path).observe(
                time.time() - start
            )

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint(request: Request):
        if authorize is not None and not authorize(request):
            # avoid leaking existence details
            return Response(status_code=403, content="FORBIDDEN")
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
