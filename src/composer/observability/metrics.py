from __future__ import annotations

"""Prometheus metrics for the Composer FastAPI backend.

Adds an HTTP middleware that records request latency per method/path/status
and the counters the conversation engine reports routing outcomes to.
"""

import time
from typing import Callable, Awaitable

from prometheus_client import Counter, Histogram
from starlette.requests import Request
from starlette.responses import Response

# Histogram buckets chosen for web latencies (seconds)
REQUEST_LATENCY = Histogram(
    "composer_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0),
)

ROUTING_OUTCOMES = Counter(
    "composer_routing_outcomes",
    "Final routing of streamed responses by declared intent",
    labelnames=("declared_intent", "outcome"),
)

CLASSIFIER_FALLBACKS = Counter(
    "composer_classifier_fallbacks",
    "Classifications that defaulted to draft because the classifier failed",
    labelnames=("reason",),
)


def record_routing_outcome(declared_intent: str | None, outcome: str) -> None:
    try:
        ROUTING_OUTCOMES.labels(declared_intent=declared_intent or "general", outcome=outcome).inc()
    except Exception:
        pass


def record_classifier_fallback(reason: str) -> None:
    try:
        CLASSIFIER_FALLBACKS.labels(reason=reason).inc()
    except Exception:
        pass


def sanitize_path(path: str) -> str:
    """Reduce high-cardinality paths (e.g., /threads/{id}) to a coarse label."""
    if not path:
        return "/"
    segs = path.split("?")[0].split("/")
    if len(segs) > 1:
        return "/" + segs[1]
    return path


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        # Avoid observing the metrics endpoint itself
        if request.url.path.startswith("/metrics"):
            return await call_next(request)
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        try:
            REQUEST_LATENCY.labels(
                method=request.method,
                path=sanitize_path(request.url.path),
                status=str(response.status_code),
            ).observe(elapsed)
        except Exception:
            pass
        return response

    return middleware
