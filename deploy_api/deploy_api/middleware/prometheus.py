"""Prometheus metrics: HTTP RED middleware plus deployment lifecycle counters.

Path normalisation collapses path parameters (``/orgs/org-1/apps/app-9`` ->
``/orgs/{id}/apps/{id}``) to keep label cardinality bounded.
"""

from __future__ import annotations

import logging
import re
import time

from prometheus_client import Counter, Gauge, Histogram
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

HTTP_REQUESTS_TOTAL = Counter(
    "deploy_http_requests_total",
    "Total HTTP requests by method, path, and status code",
    ["method", "path", "status_code"],
)

HTTP_REQUEST_DURATION = Histogram(
    "deploy_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

DEPLOYMENTS_TOTAL = Counter(
    "deploy_deployments_total",
    "Deployment attempts by outcome (started, running, preview, failed, timed_out)",
    ["outcome"],
)

PROVIDER_EVENTS_TOTAL = Counter(
    "deploy_provider_events_total",
    "Provider progress events by disposition (applied, stale, unknown)",
    ["disposition"],
)

DRAFT_PREVIEWS_EXPIRED_TOTAL = Counter(
    "deploy_draft_previews_expired_total",
    "Draft previews destroyed after their TTL elapsed",
)

ACTIVE_STREAMS = Gauge(
    "deploy_active_progress_streams",
    "Number of open progress stream subscriptions",
)

# ---------------------------------------------------------------------------
# Path normalisation
# ---------------------------------------------------------------------------

_ID_SEGMENT_AFTER = re.compile(r"/(orgs|apps|members|drafts|applications)/[^/]+")


def _normalise_path(path: str) -> str:
    """Replace the identifier after each collection segment with ``{id}``."""
    return _ID_SEGMENT_AFTER.sub(lambda m: f"/{m.group(1)}/{{id}}", path)


# Paths excluded from metrics recording.
_SKIP_PATHS: frozenset[str] = frozenset({"/metrics", "/docs", "/redoc", "/openapi.json", "/favicon.ico"})


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Record HTTP request rate, error rate, and latency."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if path in _SKIP_PATHS:
            return await call_next(request)

        method = request.method
        normalised = _normalise_path(path)

        start = time.monotonic()
        response = await call_next(request)
        duration = time.monotonic() - start

        HTTP_REQUESTS_TOTAL.labels(method=method, path=normalised, status_code=str(response.status_code)).inc()
        HTTP_REQUEST_DURATION.labels(method=method, path=normalised).observe(duration)
        return response
