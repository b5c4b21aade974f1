"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from deploy_core.state.database import get_engine, get_session
from deploy_core.state.repository import (
    ApplicationRepository,
    DraftPreviewRepository,
    HostnameRepository,
    OrganizationRepository,
    OrgAppRepository,
)
from deploy_core.state.store import StateStore

__all__ = [
    "ApplicationRepository",
    "DraftPreviewRepository",
    "HostnameRepository",
    "OrgAppRepository",
    "OrganizationRepository",
    "StateStore",
    "get_engine",
    "get_session",
]
