"""Middleware components for the deployment API."""

from __future__ import annotations

from deploy_api.middleware.logging import RequestLoggingMiddleware
from deploy_api.middleware.prometheus import PrometheusMiddleware

__all__ = [
    "PrometheusMiddleware",
    "RequestLoggingMiddleware",
]
