"""Organizations, their members, catalog applications and adding apps to orgs."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from deploy_core.errors import Conflict, InvalidFormat, NotFound
from deploy_core.lifecycle.hostnames import slugify
from deploy_core.models.orgapp import MemberRecord, MemberRole, OrgAppRecord
from deploy_core.state.repository import ApplicationRepository, OrgAppRepository, OrganizationRepository
from deploy_core.state.store import StateStore
from deploy_core.state.tables import ApplicationTable, OrganizationTable

from deploy_api.services.access_service import AccessService

logger = logging.getLogger(__name__)


class CatalogService:
    """Business logic for the tenant roster and the application catalog.

    Parameters
    ----------
    store:
        State store shared with the lifecycle services.
    access:
        Used to revoke a departing member's grants.
    """

    def __init__(self, store: StateStore, access: AccessService) -> None:
        self._store = store
        self._access = access

    # -- Organizations -------------------------------------------------------

    async def create_org(
        self,
        org_id: str,
        name: str,
        *,
        owner_user_id: str,
        slug: str | None = None,
        owner_email: str | None = None,
        owner_name: str | None = None,
    ) -> dict[str, Any]:
        """Create an organization with *owner_user_id* as its OWNER.

        Raises
        ------
        InvalidFormat
            If no usable slug can be derived.
        Conflict
            If the id or slug is already in use.
        """
        org_slug = slugify(slug or name)
        if not org_slug:
            raise InvalidFormat("Organization slug must contain letters or numbers")
        async with self._store.session() as session:
            repo = OrganizationRepository(session)
            if not await repo.create(org_id, name, org_slug):
                raise Conflict(f"Organization id '{org_id}' or slug '{org_slug}' is already in use")
            await repo.add_member(org_id, owner_user_id, role=MemberRole.OWNER, email=owner_email, name=owner_name)
            org = await repo.get(org_id)
        logger.info("Created organization %s (slug=%s) owned by %s", org_id, org_slug, owner_user_id)
        return self._org_to_dict(org)

    async def get_org(self, org_id: str) -> dict[str, Any]:
        async with self._store.session() as session:
            org = await OrganizationRepository(session).get(org_id)
        if org is None:
            raise NotFound(f"Organization {org_id} not found")
        return self._org_to_dict(org)

    async def add_member(
        self,
        org_id: str,
        user_id: str,
        *,
        role: MemberRole = MemberRole.MEMBER,
        email: str | None = None,
        name: str | None = None,
    ) -> MemberRecord:
        """Add a member; adding an existing member changes nothing."""
        async with self._store.session() as session:
            repo = OrganizationRepository(session)
            if await repo.get(org_id) is None:
                raise NotFound(f"Organization {org_id} not found")
            await repo.add_member(org_id, user_id, role=role, email=email, name=name)
            members = await repo.list_members(org_id)
        return next(m for m in members if m.user_id == user_id)

    async def list_members(self, org_id: str) -> list[MemberRecord]:
        async with self._store.session() as session:
            return await OrganizationRepository(session).list_members(org_id)

    async def remove_member(self, org_id: str, user_id: str) -> int:
        """Remove a member and revoke their access everywhere in the organization.

        Returns the number of OrgApps whose access set changed.
        """
        async with self._store.session() as session:
            removed = await OrganizationRepository(session).remove_member(org_id, user_id)
        if not removed:
            raise NotFound(f"User {user_id} is not a member of organization {org_id}")
        logger.info("Removed %s from %s", user_id, org_id)
        return await self._access.prune_member(org_id, user_id)

    # -- Applications --------------------------------------------------------

    async def create_application(
        self,
        app_id: str,
        title: str,
        *,
        latest_version: str = "1",
        generated_app_id: str | None = None,
        owner_org_id: str | None = None,
        created_by: str | None = None,
    ) -> dict[str, Any]:
        """Publish a catalog entry, recording the lineage of its generated app."""
        async with self._store.session() as session:
            apps = ApplicationRepository(session)
            if not await apps.create(
                app_id, title, latest_version=latest_version, generated_app_id=generated_app_id
            ):
                raise Conflict(f"Application {app_id} already exists")
            if generated_app_id:
                await apps.record_generated_app(generated_app_id, owner_org_id=owner_org_id, created_by=created_by)
            app = await apps.get(app_id)
        logger.info("Created application %s (version %s)", app_id, latest_version)
        return self._app_to_dict(app)

    async def get_application(self, app_id: str) -> dict[str, Any]:
        async with self._store.session() as session:
            app = await ApplicationRepository(session).get(app_id)
        if app is None:
            raise NotFound(f"Application {app_id} not found")
        return self._app_to_dict(app)

    # -- OrgApps -------------------------------------------------------------

    async def add_app_to_org(self, org_id: str, app_id: str) -> OrgAppRecord:
        """Create the OrgApp in ADDED with access granted to every current member.

        Raises
        ------
        NotFound
            If the organization or application does not exist.
        Conflict
            If the app is already added to the organization.
        """
        async with self._store.session() as session:
            orgs = OrganizationRepository(session)
            if await orgs.get(org_id) is None:
                raise NotFound(f"Organization {org_id} not found")
            # Locked so a concurrent publish either precedes this read or
            # propagates onto the new row after it commits.
            app = await ApplicationRepository(session).get(app_id, for_update=True)
            if app is None:
                raise NotFound(f"Application {app_id} not found")
            member_ids = await orgs.member_ids(org_id)
            record = OrgAppRecord(
                org_id=org_id,
                app_id=app_id,
                latest_version=app.latest_version,
                generated_app_id=app.generated_app_id,
                access_member_ids=frozenset(member_ids),
                added_at=datetime.now(UTC),
            )
            if not await OrgAppRepository(session).insert(record):
                raise Conflict(f"App {app_id} is already added to organization {org_id}")
        record = record.model_copy(update={"version": 1})
        logger.info("Added %s to %s with %d member(s) granted access", app_id, org_id, len(member_ids))
        return record

    async def list_org_apps(self, org_id: str) -> list[OrgAppRecord]:
        return await self._store.list_by_org(org_id)

    async def get_org_app(self, org_id: str, app_id: str) -> OrgAppRecord:
        return await self._store.require(org_id, app_id)

    # -- Serialisation -------------------------------------------------------

    @staticmethod
    def _org_to_dict(org: OrganizationTable | None) -> dict[str, Any]:
        if org is None:
            return {}
        return {
            "id": org.id,
            "name": org.name,
            "slug": org.slug,
            "created_at": org.created_at.isoformat() if org.created_at else None,
        }

    @staticmethod
    def _app_to_dict(app: ApplicationTable | None) -> dict[str, Any]:
        if app is None:
            return {}
        return {
            "id": app.id,
            "title": app.title,
            "latest_version": app.latest_version,
            "generated_app_id": app.generated_app_id,
            "created_at": app.created_at.isoformat() if app.created_at else None,
        }
