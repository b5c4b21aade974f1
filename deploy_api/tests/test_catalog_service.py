"""Tests for organizations, members and the application catalog."""

from __future__ import annotations

from unittest.mock import patch

import pytest
from deploy_core.errors import Conflict, InvalidFormat, NotFound
from deploy_core.models.orgapp import MemberRole, OrgAppStatus
from deploy_core.state.repository import ApplicationRepository, OrgAppRepository
from deploy_core.state.store import StateStore

from deploy_api.services.catalog_service import CatalogService


class TestOrganizations:
    @pytest.mark.asyncio
    async def test_create_org_with_owner(self, catalog: CatalogService) -> None:
        org = await catalog.create_org("org-3", "New Co", owner_user_id="u5", owner_email="u5@new.test")

        assert org["id"] == "org-3"
        assert org["slug"] == "new-co"
        members = await catalog.list_members("org-3")
        assert [(m.user_id, m.role) for m in members] == [("u5", MemberRole.OWNER)]

    @pytest.mark.asyncio
    async def test_duplicate_slug(self, catalog: CatalogService) -> None:
        with pytest.raises(Conflict):
            await catalog.create_org("org-3", "Acme", owner_user_id="u5")

    @pytest.mark.asyncio
    async def test_unusable_slug(self, catalog: CatalogService) -> None:
        with pytest.raises(InvalidFormat):
            await catalog.create_org("org-3", "!!!", owner_user_id="u5")

    @pytest.mark.asyncio
    async def test_get_org(self, catalog: CatalogService) -> None:
        assert (await catalog.get_org("org-1"))["name"] == "Acme Inc"
        with pytest.raises(NotFound):
            await catalog.get_org("org-404")


class TestMembers:
    @pytest.mark.asyncio
    async def test_add_member_is_idempotent(self, catalog: CatalogService) -> None:
        member = await catalog.add_member("org-1", "u3", role=MemberRole.ADMIN, name="Ida")
        again = await catalog.add_member("org-1", "u3")

        assert member.role == MemberRole.ADMIN
        assert again.role == MemberRole.ADMIN
        assert [m.user_id for m in await catalog.list_members("org-1")] == ["u1", "u2", "u3"]

    @pytest.mark.asyncio
    async def test_add_member_to_missing_org(self, catalog: CatalogService) -> None:
        with pytest.raises(NotFound):
            await catalog.add_member("org-404", "u3")

    @pytest.mark.asyncio
    async def test_remove_member_revokes_access(self, catalog: CatalogService, store: StateStore) -> None:
        await catalog.add_app_to_org("org-1", "app-1")

        revoked = await catalog.remove_member("org-1", "u2")

        assert revoked == 1
        assert (await store.require("org-1", "app-1")).access_member_ids == frozenset({"u1"})
        with pytest.raises(NotFound):
            await catalog.remove_member("org-1", "u2")


class TestApplications:
    @pytest.mark.asyncio
    async def test_create_application_records_lineage(self, catalog: CatalogService, store: StateStore) -> None:
        app = await catalog.create_application(
            "app-9", "Expense Claims", generated_app_id="gen-9", owner_org_id="org-1", created_by="u1"
        )

        assert app["latest_version"] == "1"
        async with store.session() as session:
            lineage = await ApplicationRepository(session).get_generated_app("gen-9")
        assert lineage is not None
        assert lineage.owner_org_id == "org-1"

    @pytest.mark.asyncio
    async def test_duplicate_application(self, catalog: CatalogService) -> None:
        with pytest.raises(Conflict):
            await catalog.create_application("app-1", "Budget Tracker")

    @pytest.mark.asyncio
    async def test_get_application(self, catalog: CatalogService) -> None:
        assert (await catalog.get_application("app-2"))["latest_version"] == "3"
        with pytest.raises(NotFound):
            await catalog.get_application("app-404")


class TestAddAppToOrg:
    @pytest.mark.asyncio
    async def test_added_record(self, catalog: CatalogService) -> None:
        record = await catalog.add_app_to_org("org-1", "app-2")

        assert record.status == OrgAppStatus.ADDED
        assert record.latest_version == "3"
        assert record.deployed_version is None
        assert record.needs_update is False
        assert record.attempt_id == 0
        assert record.version == 1
        assert [r.app_id for r in await catalog.list_org_apps("org-1")] == ["app-2"]

    @pytest.mark.asyncio
    async def test_version_is_read_in_the_inserting_transaction(
        self, catalog: CatalogService, store: StateStore
    ) -> None:
        calls: list[tuple[str, object, bool]] = []
        real_get = ApplicationRepository.get
        real_insert = OrgAppRepository.insert

        async def _get(repo: ApplicationRepository, app_id: str, *, for_update: bool = False):
            calls.append(("get", repo._session, for_update))
            return await real_get(repo, app_id, for_update=for_update)

        async def _insert(repo: OrgAppRepository, record):
            calls.append(("insert", repo._session, False))
            return await real_insert(repo, record)

        with patch.object(ApplicationRepository, "get", _get), patch.object(OrgAppRepository, "insert", _insert):
            record = await catalog.add_app_to_org("org-1", "app-2")

        (read, read_session, locked), (write, write_session, _) = calls
        assert (read, write) == ("get", "insert")
        assert read_session is write_session
        assert locked is True
        assert (await store.require("org-1", "app-2")).latest_version == record.latest_version == "3"

    @pytest.mark.asyncio
    async def test_adding_twice_conflicts(self, catalog: CatalogService) -> None:
        await catalog.add_app_to_org("org-1", "app-2")
        with pytest.raises(Conflict):
            await catalog.add_app_to_org("org-1", "app-2")

    @pytest.mark.asyncio
    async def test_missing_org_or_app(self, catalog: CatalogService) -> None:
        with pytest.raises(NotFound):
            await catalog.add_app_to_org("org-404", "app-1")
        with pytest.raises(NotFound):
            await catalog.add_app_to_org("org-1", "app-404")

    @pytest.mark.asyncio
    async def test_get_org_app(self, catalog: CatalogService) -> None:
        await catalog.add_app_to_org("org-2", "app-1")
        assert (await catalog.get_org_app("org-2", "app-1")).access_member_ids == frozenset({"u9"})
        with pytest.raises(NotFound):
            await catalog.get_org_app("org-1", "app-1")
