"""FastAPI dependency injection for settings, the state store, the provider and services."""

from __future__ import annotations

import logging
from typing import Annotated

from deploy_core.config import LifecycleSettings, load_lifecycle_settings
from deploy_core.models.orgapp import MemberRole
from deploy_core.state.database import get_engine
from deploy_core.state.repository import OrganizationRepository
from deploy_core.state.store import StateStore
from fastapi import Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncEngine

from deploy_api.config import APISettings, load_api_settings
from deploy_api.services.access_service import AccessService
from deploy_api.services.catalog_service import CatalogService
from deploy_api.services.draft_service import DraftService
from deploy_api.services.event_bus import EventBus, get_event_bus
from deploy_api.services.fork_service import ForkService
from deploy_api.services.orchestrator import DeploymentOrchestrator
from deploy_api.services.progress_streamer import ProgressHub
from deploy_api.services.provider_client import ComputeProvider, ProviderClient
from deploy_api.services.subdomain_service import SubdomainService
from deploy_api.services.version_tracker import VersionTracker

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None
_lifecycle_cache: LifecycleSettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


def get_lifecycle_settings() -> LifecycleSettings:
    """Return the cached :class:`LifecycleSettings` singleton."""
    global _lifecycle_cache  # noqa: PLW0603
    if _lifecycle_cache is None:
        _lifecycle_cache = load_lifecycle_settings()
    return _lifecycle_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]
LifecycleDep = Annotated[LifecycleSettings, Depends(get_lifecycle_settings)]

# ---------------------------------------------------------------------------
# Database / state store
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_store: StateStore | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine and the store on top of it."""
    global _engine, _store  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _store = StateStore(_engine)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _store  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _store = None


def get_store() -> StateStore:
    if _store is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _store


StoreDep = Annotated[StateStore, Depends(get_store)]

# ---------------------------------------------------------------------------
# Compute provider
# ---------------------------------------------------------------------------

_provider: ProviderClient | None = None


def init_provider(settings: APISettings) -> ProviderClient:
    """Create and cache the global :class:`ProviderClient`."""
    global _provider  # noqa: PLW0603
    _provider = ProviderClient(
        base_url=settings.provider_url,
        timeout=settings.provider_timeout,
        api_key=settings.provider_api_key.get_secret_value(),
    )
    return _provider


async def dispose_provider() -> None:
    """Close the provider client's underlying HTTP pool."""
    global _provider  # noqa: PLW0603
    if _provider is not None:
        await _provider.close()
        _provider = None


def get_provider() -> ComputeProvider:
    """Return the cached provider client singleton."""
    if _provider is None:
        raise RuntimeError(
            "Provider client has not been initialised. Ensure init_provider() is called during application startup."
        )
    return _provider


ProviderDep = Annotated[ComputeProvider, Depends(get_provider)]

# ---------------------------------------------------------------------------
# Progress hub and event bus
# ---------------------------------------------------------------------------

_hub = ProgressHub()


def get_progress_hub() -> ProgressHub:
    return _hub


HubDep = Annotated[ProgressHub, Depends(get_progress_hub)]
BusDep = Annotated[EventBus, Depends(get_event_bus)]

# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


def get_orchestrator(
    store: StoreDep,
    provider: ProviderDep,
    hub: HubDep,
    lifecycle: LifecycleDep,
    settings: SettingsDep,
    bus: BusDep,
) -> DeploymentOrchestrator:
    return DeploymentOrchestrator(store, provider, hub, lifecycle, bus=bus, callback_url=settings.callback_url)


def get_draft_service(
    store: StoreDep,
    provider: ProviderDep,
    lifecycle: LifecycleDep,
    settings: SettingsDep,
    bus: BusDep,
) -> DraftService:
    return DraftService(store, provider, lifecycle, bus=bus, callback_url=settings.callback_url)


def get_subdomain_service(store: StoreDep, lifecycle: LifecycleDep, bus: BusDep) -> SubdomainService:
    return SubdomainService(store, lifecycle, bus=bus)


def get_access_service(store: StoreDep, bus: BusDep) -> AccessService:
    return AccessService(store, bus=bus)


def get_version_tracker(store: StoreDep, bus: BusDep) -> VersionTracker:
    return VersionTracker(store, bus=bus)


def get_fork_service(store: StoreDep, provider: ProviderDep, bus: BusDep) -> ForkService:
    return ForkService(store, provider, bus=bus)


def get_catalog_service(
    store: StoreDep,
    access: Annotated[AccessService, Depends(get_access_service)],
) -> CatalogService:
    return CatalogService(store, access)


OrchestratorDep = Annotated[DeploymentOrchestrator, Depends(get_orchestrator)]
DraftServiceDep = Annotated[DraftService, Depends(get_draft_service)]
SubdomainServiceDep = Annotated[SubdomainService, Depends(get_subdomain_service)]
AccessServiceDep = Annotated[AccessService, Depends(get_access_service)]
VersionTrackerDep = Annotated[VersionTracker, Depends(get_version_tracker)]
ForkServiceDep = Annotated[ForkService, Depends(get_fork_service)]
CatalogServiceDep = Annotated[CatalogService, Depends(get_catalog_service)]

# ---------------------------------------------------------------------------
# Caller identity
# ---------------------------------------------------------------------------


def get_user_id(x_user_id: Annotated[str | None, Header()] = None) -> str:
    """Return the caller's user id as forwarded by the upstream gateway."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Authentication required")
    return x_user_id.strip()


UserDep = Annotated[str, Depends(get_user_id)]


async def require_org_member(org_id: str, user_id: UserDep, store: StoreDep) -> str:
    """Reject callers who are not on the organization's roster."""
    async with store.session() as session:
        member_ids = await OrganizationRepository(session).member_ids(org_id)
    if user_id not in member_ids:
        logger.warning("User %s denied access to organization %s", user_id, org_id)
        raise HTTPException(status_code=403, detail="You are not a member of this organization")
    return user_id


MemberDep = Annotated[str, Depends(require_org_member)]

_ADMIN_ROLES = frozenset({MemberRole.OWNER, MemberRole.ADMIN})


async def require_org_admin(org_id: str, user_id: UserDep, store: StoreDep) -> str:
    """Reject callers who may not change the organization's apps.

    Plain members can follow a deployment but only owners and admins add,
    remove, deploy or reconfigure an OrgApp.
    """
    async with store.session() as session:
        role = await OrganizationRepository(session).member_role(org_id, user_id)
    if role is None:
        logger.warning("User %s denied access to organization %s", user_id, org_id)
        raise HTTPException(status_code=403, detail="You are not a member of this organization")
    if role not in _ADMIN_ROLES:
        logger.warning("User %s (%s) denied app management in organization %s", user_id, role.value, org_id)
        raise HTTPException(status_code=403, detail="Only owners and admins can manage apps")
    return user_id


AdminDep = Annotated[str, Depends(require_org_admin)]
