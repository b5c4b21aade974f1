"""Custom hostname allocation for OrgApps.

The reservation table is the arbiter of the global namespace: a new
hostname is reserved first, then written to the OrgApp with a
compare-and-swap, and only then is the previous hostname released.  A
failed write gives the new reservation back.
"""

from __future__ import annotations

import logging

from deploy_core.config import LifecycleSettings
from deploy_core.errors import AlreadyTaken, InvalidFormat, LifecycleError, NotFound
from deploy_core.lifecycle.hostnames import hostname_url, suggest_hostname, validate_hostname
from deploy_core.models.orgapp import OrgAppRecord, OrgAppStatus
from deploy_core.state.repository import ApplicationRepository, OrganizationRepository
from deploy_core.state.store import StateStore
from pydantic import BaseModel

from deploy_api.services.event_bus import EventBus, EventType, get_event_bus

logger = logging.getLogger(__name__)


class SubdomainInfo(BaseModel):
    """Current hostname of an OrgApp plus a suggested one."""

    hostname: str | None
    url: str | None
    suggestion: str
    suggestion_available: bool


class SubdomainService:
    """Reserve and suggest hostnames in the namespace shared by all organizations."""

    def __init__(self, store: StateStore, settings: LifecycleSettings, *, bus: EventBus | None = None) -> None:
        self._store = store
        self._settings = settings
        self._bus = bus or get_event_bus()

    async def reserve(self, org_id: str, app_id: str, candidate: str) -> OrgAppRecord:
        """Give the OrgApp the hostname *candidate*.

        Reserving the hostname an OrgApp already holds is a no-op.  When the
        OrgApp is RUNNING its ``deploy_url`` moves to the new hostname.

        Raises
        ------
        InvalidFormat
            If *candidate* is malformed or reserved by the platform.
        AlreadyTaken
            If another OrgApp holds the hostname.
        NotFound
            If the OrgApp does not exist.
        """
        hostname = validate_hostname(candidate, self._settings.hostname_max_length)
        await self._store.require(org_id, app_id)

        if not await self._store.reserve_hostname(hostname, org_id, app_id):
            raise AlreadyTaken(f"'{hostname}' is already taken. Please choose another subdomain.")

        previous: str | None = None

        def _assign(current: OrgAppRecord) -> OrgAppRecord | None:
            nonlocal previous
            previous = current.hostname
            if current.hostname == hostname:
                return None
            update: dict[str, object] = {"hostname": hostname}
            if current.status == OrgAppStatus.RUNNING:
                update["deploy_url"] = hostname_url(hostname, self._settings.base_domain)
            return current.model_copy(update=update)

        try:
            updated = await self._store.mutate(org_id, app_id, _assign)
        except LifecycleError:
            if previous != hostname:
                await self._store.release_hostname(hostname, org_id, app_id)
            raise

        if previous == hostname:
            return updated
        if previous:
            await self._store.release_hostname(previous, org_id, app_id)

        logger.info("Hostname for %s/%s changed from %s to %s", org_id, app_id, previous or "-", hostname)
        await self._bus.emit(
            EventType.HOSTNAME_CHANGED,
            org_id=org_id,
            data={"app_id": app_id, "hostname": hostname, "previous": previous},
        )
        return updated

    async def suggest(self, org_id: str, app_id: str) -> SubdomainInfo:
        """Report the current hostname and propose ``{app-title}-{org-slug}``."""
        record = await self._store.require(org_id, app_id)
        async with self._store.session() as session:
            org = await OrganizationRepository(session).get(org_id)
            app = await ApplicationRepository(session).get(app_id)
        if org is None or app is None:
            raise NotFound(f"App {app_id} is not added to organization {org_id}")

        suggestion = suggest_hostname(app.title, org.slug, self._settings.hostname_max_length)
        return SubdomainInfo(
            hostname=record.hostname,
            url=hostname_url(record.hostname, self._settings.base_domain) if record.hostname else None,
            suggestion=suggestion,
            suggestion_available=await self._is_available(suggestion, org_id, app_id),
        )

    async def _is_available(self, hostname: str, org_id: str, app_id: str) -> bool:
        try:
            validate_hostname(hostname, self._settings.hostname_max_length)
        except InvalidFormat:
            return False
        holder = await self._store.hostname_holder(hostname)
        return holder is None or holder == (org_id, app_id)
