"""Shared fixtures for deploy_api tests.

Services run against a real file-backed SQLite store and an in-memory
fake compute provider that records every call.  The FastAPI app gets the
same objects through dependency overrides, so router tests and service
tests see identical behaviour.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from deploy_core.config import LifecycleSettings
from deploy_core.errors import ProviderError
from deploy_core.models.orgapp import MemberRole
from deploy_core.state.repository import ApplicationRepository, OrganizationRepository
from deploy_core.state.sqlite_adapter import create_local_tables, get_local_engine
from deploy_core.state.store import StateStore
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine

from deploy_api.config import APISettings
from deploy_api.dependencies import (
    get_lifecycle_settings,
    get_progress_hub,
    get_provider,
    get_settings,
    get_store,
)
from deploy_api.main import create_app
from deploy_api.services.access_service import AccessService
from deploy_api.services.catalog_service import CatalogService
from deploy_api.services.draft_service import DraftService
from deploy_api.services.event_bus import EventBus, EventPayload, get_event_bus
from deploy_api.services.orchestrator import DeploymentOrchestrator
from deploy_api.services.progress_streamer import ProgressHub
from deploy_api.services.provider_client import DeployRequest

CALLBACK_URL = "http://control-plane.test/api/v1/provider/events"


# ---------------------------------------------------------------------------
# Fake compute provider
# ---------------------------------------------------------------------------


class FakeProvider:
    """In-memory compute provider.

    Attempt references are ``att-1``, ``att-2``, ... in call order.  Set
    ``deploy_error`` / ``draft_error`` / ``fork_error`` / ``destroy_error``
    to make the next calls raise.
    """

    def __init__(self) -> None:
        self.deploys: list[DeployRequest] = []
        self.drafts: list[tuple[str, str | None]] = []
        self.destroyed: list[str] = []
        self.forks: list[str] = []
        self.deploy_error: ProviderError | None = None
        self.draft_error: ProviderError | None = None
        self.fork_error: ProviderError | None = None
        self.destroy_error: ProviderError | None = None
        self._counter = 0

    def _next_ref(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}-{self._counter}"

    async def deploy(self, request: DeployRequest) -> str:
        self.deploys.append(request)
        if self.deploy_error is not None:
            raise self.deploy_error
        return self._next_ref("att")

    async def deploy_draft(self, generated_app_id: str, callback_url: str | None = None) -> str:
        self.drafts.append((generated_app_id, callback_url))
        if self.draft_error is not None:
            raise self.draft_error
        return self._next_ref("draft")

    async def destroy(self, instance_id: str) -> None:
        self.destroyed.append(instance_id)
        if self.destroy_error is not None:
            raise self.destroy_error

    async def fork(self, generated_app_id: str) -> str:
        self.forks.append(generated_app_id)
        if self.fork_error is not None:
            raise self.fork_error
        return self._next_ref("fork")

    async def health_check(self) -> bool:
        return True

    @property
    def call_count(self) -> int:
        return len(self.deploys) + len(self.drafts) + len(self.destroyed) + len(self.forks)


# ---------------------------------------------------------------------------
# Store and services
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    engine = get_local_engine(tmp_path / "api-state.db")
    await create_local_tables(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def store(engine: AsyncEngine) -> StateStore:
    """Seeded store.

    * ``org-1`` "Acme Inc" (slug ``acme``): u1 (OWNER), u2
    * ``org-2`` "Globex" (slug ``globex``): u9 (OWNER)
    * ``app-1`` "Budget Tracker" v1, generated app ``gen-1`` owned by org-2
    * ``app-2`` "Leave Planner" v3, no generated app
    * ``app-3`` "Acme CRM" v1, generated app ``gen-own`` owned by org-1
    """
    store = StateStore(engine)
    async with store.session() as session:
        orgs = OrganizationRepository(session)
        await orgs.create("org-1", "Acme Inc", "acme")
        await orgs.create("org-2", "Globex", "globex")
        await orgs.add_member("org-1", "u1", role=MemberRole.OWNER, email="u1@acme.test", name="Uma")
        await orgs.add_member("org-1", "u2", email="u2@acme.test", name="Ugo")
        await orgs.add_member("org-2", "u9", role=MemberRole.OWNER)
        apps = ApplicationRepository(session)
        await apps.create("app-1", "Budget Tracker", latest_version="1", generated_app_id="gen-1")
        await apps.create("app-2", "Leave Planner", latest_version="3")
        await apps.create("app-3", "Acme CRM", latest_version="1", generated_app_id="gen-own")
        await apps.record_generated_app("gen-1", owner_org_id="org-2", created_by="u9")
        await apps.record_generated_app("gen-own", owner_org_id="org-1", created_by="u1")
    return store


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def hub() -> ProgressHub:
    return ProgressHub()


@pytest.fixture
def events() -> list[EventPayload]:
    """Every payload emitted on the ``bus`` fixture, in order."""
    return []


@pytest.fixture
def bus(events: list[EventPayload]) -> EventBus:
    bus = EventBus()

    async def _record(payload: EventPayload) -> None:
        events.append(payload)

    bus.register_handler(_record)
    return bus


@pytest.fixture
def lifecycle_settings() -> LifecycleSettings:
    return LifecycleSettings(
        deploy_timeout_seconds=600,
        draft_ttl_days=7,
        base_domain="go4it.live",
        hostname_max_length=30,
    )


@pytest.fixture
def orchestrator(
    store: StateStore,
    provider: FakeProvider,
    hub: ProgressHub,
    lifecycle_settings: LifecycleSettings,
    bus: EventBus,
) -> DeploymentOrchestrator:
    return DeploymentOrchestrator(store, provider, hub, lifecycle_settings, bus=bus, callback_url=CALLBACK_URL)


@pytest.fixture
def draft_service(
    store: StateStore, provider: FakeProvider, lifecycle_settings: LifecycleSettings, bus: EventBus
) -> DraftService:
    return DraftService(store, provider, lifecycle_settings, bus=bus, callback_url=CALLBACK_URL)


@pytest.fixture
def access_service(store: StateStore, bus: EventBus) -> AccessService:
    return AccessService(store, bus=bus)


@pytest.fixture
def catalog(store: StateStore, access_service: AccessService) -> CatalogService:
    return CatalogService(store, access_service)


# ---------------------------------------------------------------------------
# FastAPI app (async httpx)
# ---------------------------------------------------------------------------


@pytest.fixture
def test_settings(tmp_path: Path) -> APISettings:
    return APISettings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'api-state.db'}",
        provider_url="http://provider.test",
        callback_base_url="http://control-plane.test",
        provider_callback_secret="s3cret",
        sweep_enabled=False,
    )


@pytest.fixture
def app(
    test_settings: APISettings,
    store: StateStore,
    provider: FakeProvider,
    hub: ProgressHub,
    lifecycle_settings: LifecycleSettings,
    bus: EventBus,
) -> FastAPI:
    """Create a FastAPI app wired to the test store, fake provider and recording bus."""
    application = create_app()
    overrides: dict[Any, Any] = {
        get_settings: lambda: test_settings,
        get_store: lambda: store,
        get_provider: lambda: provider,
        get_progress_hub: lambda: hub,
        get_lifecycle_settings: lambda: lifecycle_settings,
        get_event_bus: lambda: bus,
    }
    application.dependency_overrides.update(overrides)
    return application


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Async httpx client acting as member ``u1`` of ``org-1``."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", headers={"X-User-ID": "u1"}) as ac:
        yield ac
