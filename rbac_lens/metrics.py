"""Prometheus metrics for RBAC Lens.

Metrics goals:
- low-cardinality labels (no subject names, no resource names)
- internal observability for resolutions, diagnostics, audit appends and
  verification, and storage lockdown
"""
from __future__ import annotations

import time
from typing import Callable, Optional

from fastapi import Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest


# ---------------------------
# Core metric objects
# ---------------------------
HTTP_REQUESTS_TOTAL = Counter(
    "rbac_http_requests_total",
    "Total HTTP requests received",
    ["method", "route", "status"],
)
HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "rbac_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)
RESOLUTIONS_TOTAL = Counter(
    "rbac_resolutions_total",
    "Total resolver calls",
    ["operation", "outcome"],
)
RESOLVER_DIAGNOSTICS_TOTAL = Counter(
    "rbac_resolver_diagnostics_total",
    "Bindings skipped during resolution",
    ["code"],
)
AUDIT_APPENDS_TOTAL = Counter(
    "rbac_audit_appends_total",
    "Audit chain append attempts",
    ["outcome"],
)
AUDIT_VERIFICATIONS_TOTAL = Counter(
    "rbac_audit_verifications_total",
    "Audit chain verification runs",
    ["outcome"],
)
LOCKDOWN_ACTIVE = Gauge(
    "rbac_storage_lockdown_active",
    "1 if audit storage is in lockdown / fail-closed mode",
)
STORAGE_FAULTS_TOTAL = Counter(
    "rbac_storage_faults_total",
    "SQLite errors seen by audit storage, by operation and fault class",
    ["operation", "fault"],
)


def record_resolution(operation: str, outcome: str) -> None:
    RESOLUTIONS_TOTAL.labels(operation=str(operation), outcome=str(outcome)).inc()


def record_diagnostic(code: str) -> None:
    RESOLVER_DIAGNOSTICS_TOTAL.labels(code=str(code)).inc()


def record_audit_append(outcome: str) -> None:
    AUDIT_APPENDS_TOTAL.labels(outcome=str(outcome)).inc()


def record_audit_verification(ok: bool) -> None:
    AUDIT_VERIFICATIONS_TOTAL.labels(outcome="ok" if ok else "divergent").inc()


def set_lockdown_active(active: bool) -> None:
    LOCKDOWN_ACTIVE.set(1.0 if active else 0.0)


def record_storage_fault(operation: str, fault: str) -> None:
    STORAGE_FAULTS_TOTAL.labels(operation=str(operation), fault=str(fault)).inc()


def instrument_fastapi(app, authorize: Optional[Callable[[Request], bool]] = None) -> None:
    """Attach /metrics endpoint and request middleware to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.
    """

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

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint(request: Request):
        if authorize is not None and not authorize(request):
            # avoid leaking existence details
            return Response(status_code=403, content="FORBIDDEN")
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
