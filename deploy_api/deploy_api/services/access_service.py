"""Which organization members may use an OrgApp."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from deploy_core.errors import InvalidMember, LifecycleError
from deploy_core.models.orgapp import MemberRecord, OrgAppRecord
from deploy_core.state.repository import OrganizationRepository
from deploy_core.state.store import StateStore

from deploy_api.services.event_bus import EventBus, EventType, get_event_bus

logger = logging.getLogger(__name__)


class AccessService:
    """Replace, list and prune OrgApp access grants.

    Grants are validated against the roster as it is read at call time.
    Emptying the grants leaves a running instance alone; it only blocks
    the next launch.
    """

    def __init__(self, store: StateStore, *, bus: EventBus | None = None) -> None:
        self._store = store
        self._bus = bus or get_event_bus()

    async def set_access(self, org_id: str, app_id: str, member_ids: Iterable[str]) -> OrgAppRecord:
        """Replace the OrgApp's access set with *member_ids* (deduplicated).

        Raises
        ------
        InvalidMember
            If any id is not a current member of the organization.  Nothing
            is written in that case.
        NotFound
            If the OrgApp does not exist.
        """
        requested = frozenset(m.strip() for m in member_ids if m and m.strip())
        await self._store.require(org_id, app_id)

        roster = await self._roster_ids(org_id)
        invalid = requested - roster
        if invalid:
            raise InvalidMember(
                f"Not members of this organization: {', '.join(sorted(invalid))}",
                invalid_ids=sorted(invalid),
            )

        def _replace(current: OrgAppRecord) -> OrgAppRecord | None:
            if current.access_member_ids == requested:
                return None
            return current.model_copy(update={"access_member_ids": requested})

        updated = await self._store.mutate(org_id, app_id, _replace)
        logger.info("Access for %s/%s set to %d member(s)", org_id, app_id, len(requested))
        await self._bus.emit(
            EventType.ACCESS_CHANGED,
            org_id=org_id,
            data={"app_id": app_id, "member_count": len(requested)},
        )
        return updated

    async def get_access(self, org_id: str, app_id: str) -> list[MemberRecord]:
        """Members currently granted access, in roster order."""
        record = await self._store.require(org_id, app_id)
        async with self._store.session() as session:
            members = await OrganizationRepository(session).list_members(org_id)
        return [m for m in members if m.user_id in record.access_member_ids]

    async def prune_member(self, org_id: str, user_id: str) -> int:
        """Remove *user_id* from every OrgApp of the organization.

        Best effort: a record that cannot be updated is logged and skipped.
        Returns the number of OrgApps changed.
        """

        def _without_user(current: OrgAppRecord) -> OrgAppRecord | None:
            if user_id not in current.access_member_ids:
                return None
            return current.model_copy(update={"access_member_ids": current.access_member_ids - {user_id}})

        pruned = 0
        for record in await self._store.list_by_org(org_id):
            if user_id not in record.access_member_ids:
                continue
            try:
                await self._store.mutate(org_id, record.app_id, _without_user)
                pruned += 1
            except LifecycleError as exc:
                logger.warning("Could not revoke %s from %s/%s: %s", user_id, org_id, record.app_id, exc.message)
        if pruned:
            logger.info("Revoked %s from %d app(s) in %s", user_id, pruned, org_id)
        return pruned

    async def _roster_ids(self, org_id: str) -> set[str]:
        async with self._store.session() as session:
            return await OrganizationRepository(session).member_ids(org_id)
