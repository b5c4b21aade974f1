"""Access logging for control-plane requests.

One record per request on the ``deploy_api.access`` logger.  OrgApp routes
are tagged with the ``org_app`` they touch so a deployment's launch,
stream and provider callbacks can be followed in the logs.
"""

from __future__ import annotations

import logging
import re
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("deploy_api.access")

CORRELATION_HEADER = "X-Correlation-ID"

# Provider callback token, forwarded credentials and session cookies.
_MASKED_HEADERS = ("authorization", "cookie", "x-provider-token")

_ORG_APP_PATH = re.compile(r"^/api/v1/orgs/(?P<org>[^/]+)(?:/apps/(?P<app>[^/]+))?")


def _masked_headers(request: Request) -> dict[str, str]:
    headers = dict(request.headers.items())
    for name in _MASKED_HEADERS:
        if name in headers:
            headers[name] = "***"
    return headers


def _org_app(path: str) -> str | None:
    match = _ORG_APP_PATH.match(path)
    if match is None:
        return None
    if match.group("app"):
        return f"{match.group('org')}/{match.group('app')}"
    return match.group("org")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tag each request with a correlation id and log its outcome.

    The id comes from ``X-Correlation-ID`` when the gateway sets one and
    is echoed on the response.  5xx responses log at ERROR, 4xx at WARNING.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        started = time.monotonic()

        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[CORRELATION_HEADER] = correlation_id
            return response
        finally:
            entry = {
                "method": request.method,
                "path": request.url.path,
                "org_app": _org_app(request.url.path),
                "status_code": status_code,
                "duration_ms": round((time.monotonic() - started) * 1000, 2),
                "correlation_id": correlation_id,
                "user_id": request.headers.get("X-User-ID", "anonymous"),
                "headers": _masked_headers(request),
            }
            level = logging.ERROR if status_code >= 500 else logging.WARNING if status_code >= 400 else logging.INFO
            logger.log(level, "%s %s -> %d", request.method, request.url.path, status_code, extra={"request": entry})
