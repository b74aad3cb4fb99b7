"""Prometheus metrics for the sealed-envelope engine.

Metrics goals:
- low-cardinality labels (source kind, outcome, route; never session ids)
- visibility into entropy failures and audit gaps (missed commitments/reveals)
"""
from __future__ import annotations

import os
import time
from typing import Callable, Optional

from fastapi import Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


def _env_bool(name: str, default: bool = True) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


HTTP_REQUESTS_TOTAL = Counter(
    "sep_http_requests_total",
    "Total HTTP requests received",
    ["method", "route", "status"],
)
HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "sep_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)
ENTROPY_FETCH_TOTAL = Counter(
    "sep_entropy_fetch_total",
    "Entropy fetches by source kind and outcome",
    ["source", "outcome"],
)
ENTROPY_BYTES_TOTAL = Counter(
    "sep_entropy_bytes_total",
    "Raw bytes delivered by entropy sources",
    ["source"],
)
COMMITMENTS_TOTAL = Counter(
    "sep_commitments_total",
    "Tape commitments by outcome (published, failed)",
    ["outcome"],
)
REVEALS_TOTAL = Counter(
    "sep_reveals_total",
    "Tape reveals by outcome (written, failed, skipped)",
    ["outcome"],
)
STALE_PREPARATIONS_TOTAL = Counter(
    "sep_stale_preparations_total",
    "Trial preparations abandoned because a newer one started",
)


def record_entropy_fetch(source: str, outcome: str, n_bytes: int = 0) -> None:
    ENTROPY_FETCH_TOTAL.labels(source=str(source), outcome=str(outcome)).inc()
    if n_bytes > 0:
        ENTROPY_BYTES_TOTAL.labels(source=str(source)).inc(n_bytes)


def record_commitment(outcome: str) -> None:
    COMMITMENTS_TOTAL.labels(outcome=str(outcome)).inc()


def record_reveal(outcome: str) -> None:
    REVEALS_TOTAL.labels(outcome=str(outcome)).inc()


def record_stale_preparation() -> None:
    STALE_PREPARATIONS_TOTAL.inc()


def instrument_fastapi(app, authorize: Optional[Callable] = None) -> None:
    """Attach /metrics endpoint and request middleware to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.
    """
    if not _env_bool("SEP_METRICS_ENABLED", True):
        return

    @app.middleware("http")
    async def _metrics_middleware(request, call_next):
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
            # avoid leaking existence details
            return Response(status_code=403, content="FORBIDDEN")
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
