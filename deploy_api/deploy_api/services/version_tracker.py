"""Publishing new application versions and reporting drift."""

from __future__ import annotations

import logging

from deploy_core.errors import InvalidTransition, NotFound
from deploy_core.lifecycle.versioning import bump_version
from deploy_core.models.orgapp import OrgAppRecord, OrgAppStatus
from deploy_core.state.repository import ApplicationRepository, OrgAppRepository
from deploy_core.state.store import StateStore
from pydantic import BaseModel

from deploy_api.services.event_bus import EventBus, EventType, get_event_bus

logger = logging.getLogger(__name__)


class PublishResult(BaseModel):
    app_id: str
    previous_version: str
    latest_version: str
    propagated: int


class VersionStatus(BaseModel):
    """Drift view of one OrgApp."""

    org_id: str
    app_id: str
    status: OrgAppStatus
    deployed_version: str | None
    latest_version: str
    needs_update: bool


class VersionTracker:
    """Move an application's latest version and surface which instances lag it."""

    def __init__(self, store: StateStore, *, bus: EventBus | None = None) -> None:
        self._store = store
        self._bus = bus or get_event_bus()

    async def publish_update(self, app_id: str, version: str | None = None) -> PublishResult:
        """Publish a new version of *app_id* and copy it onto every OrgApp.

        Parameters
        ----------
        app_id:
            Catalog application to publish.
        version:
            Explicit new version; when omitted the current one is bumped.

        Raises
        ------
        NotFound
            If the application does not exist.
        InvalidTransition
            If *version* equals the current latest version.
        """
        async with self._store.session() as session:
            apps = ApplicationRepository(session)
            app = await apps.get(app_id, for_update=True)
            if app is None:
                raise NotFound(f"Application {app_id} not found")
            previous = app.latest_version
            latest = version.strip() if version and version.strip() else bump_version(previous)
            if latest == previous:
                raise InvalidTransition(f"Version {latest} is already the latest version of {app_id}")
            await apps.set_latest_version(app_id, latest)
            propagated = await OrgAppRepository(session).set_latest_version(app_id, latest)

        logger.info("Published %s version %s -> %s (%d org app(s))", app_id, previous, latest, propagated)
        await self._bus.emit(
            EventType.APP_PUBLISHED,
            data={"app_id": app_id, "previous_version": previous, "latest_version": latest},
        )
        return PublishResult(app_id=app_id, previous_version=previous, latest_version=latest, propagated=propagated)

    async def list_outdated(self, org_id: str) -> list[OrgAppRecord]:
        return [r for r in await self._store.list_by_org(org_id) if r.needs_update]

    async def status(self, org_id: str, app_id: str) -> VersionStatus:
        record = await self._store.require(org_id, app_id)
        return VersionStatus(
            org_id=record.org_id,
            app_id=record.app_id,
            status=record.status,
            deployed_version=record.deployed_version,
            latest_version=record.latest_version,
            needs_update=record.needs_update,
        )
