"""API router modules for the deployment lifecycle control plane."""

from __future__ import annotations

from deploy_api.routers import catalog, drafts, health, metrics, org_apps, provider_events

__all__ = [
    "catalog",
    "drafts",
    "health",
    "metrics",
    "org_apps",
    "provider_events",
]
