"""Transactional State Store for OrgApps, hostnames and draft previews.

Every public method opens its own short transaction through
:func:`deploy_core.state.database.get_session`; no call holds a
transaction open across a provider request or a stream wait.  OrgApp
writes are whole-record compare-and-swap: the record passed to
:meth:`StateStore.upsert` carries the ``version`` the caller read, and a
mismatch raises :class:`~deploy_core.errors.Conflict`.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from deploy_core.errors import Conflict, NotFound
from deploy_core.models.draft import DraftPreviewRecord
from deploy_core.models.orgapp import OrgAppRecord
from deploy_core.state.database import get_session
from deploy_core.state.repository import DraftPreviewRepository, HostnameRepository, OrgAppRepository

logger = logging.getLogger(__name__)

# A mutation returns the replacement record, or None to leave the row alone.
Mutation = Callable[[OrgAppRecord], OrgAppRecord | None | Awaitable[OrgAppRecord | None]]


class StateStore:
    """Durable keyed storage of OrgApp records with optimistic concurrency."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """One committed-or-rolled-back transaction for ad-hoc repository work."""
        async with get_session(self._engine) as session:
            yield session

    # -- OrgApps -------------------------------------------------------------

    async def get(self, org_id: str, app_id: str) -> OrgAppRecord | None:
        async with self.session() as session:
            return await OrgAppRepository(session).get(org_id, app_id)

    async def require(self, org_id: str, app_id: str) -> OrgAppRecord:
        record = await self.get(org_id, app_id)
        if record is None:
            raise NotFound(f"App {app_id} is not added to organization {org_id}")
        return record

    async def insert(self, record: OrgAppRecord) -> OrgAppRecord:
        """Persist a brand-new OrgApp.

        Raises
        ------
        Conflict
            If ``(org_id, app_id)`` already exists.
        """
        async with self.session() as session:
            inserted = await OrgAppRepository(session).insert(record)
        if not inserted:
            raise Conflict(f"App {record.app_id} is already added to organization {record.org_id}")
        return record.model_copy(update={"version": 1})

    async def upsert(self, record: OrgAppRecord) -> OrgAppRecord:
        """Compare-and-swap *record* against the version it was read at.

        A record with ``version == 0`` has never been stored and is inserted.

        Returns
        -------
        OrgAppRecord
            The stored record with its new ``version``.

        Raises
        ------
        Conflict
            If the stored version no longer matches ``record.version``.
        """
        if record.version == 0:
            return await self.insert(record)
        async with self.session() as session:
            swapped = await OrgAppRepository(session).compare_and_swap(record)
        if not swapped:
            raise Conflict(f"App {record.app_id} changed while it was being updated; reload and try again")
        return record.model_copy(update={"version": record.version + 1})

    async def delete(self, org_id: str, app_id: str, expected_version: int | None = None) -> bool:
        async with self.session() as session:
            return await OrgAppRepository(session).delete(org_id, app_id, expected_version)

    async def remove(self, org_id: str, app_id: str) -> OrgAppRecord | None:
        """Delete an OrgApp and release its hostnames in one transaction.

        Returns the record as it was at deletion, or None if it did not exist.
        """
        async with self.session() as session:
            # Write first so the transaction holds the write lock before it reads.
            released = await HostnameRepository(session).release_all(org_id, app_id)
            repo = OrgAppRepository(session)
            record = await repo.get(org_id, app_id)
            if record is None:
                return None
            await repo.delete(org_id, app_id)
        logger.info("Removed %s/%s (released %d hostname(s))", org_id, app_id, released)
        return record

    async def list_by_org(self, org_id: str) -> list[OrgAppRecord]:
        async with self.session() as session:
            return await OrgAppRepository(session).list_by_org(org_id)

    async def list_by_app(self, app_id: str) -> list[OrgAppRecord]:
        async with self.session() as session:
            return await OrgAppRepository(session).list_by_app(app_id)

    async def list_stuck_deploying(self, cutoff: datetime) -> list[OrgAppRecord]:
        async with self.session() as session:
            return await OrgAppRepository(session).list_stuck_deploying(cutoff)

    async def find_by_provider_attempt(self, provider_attempt_ref: str) -> OrgAppRecord | None:
        async with self.session() as session:
            return await OrgAppRepository(session).find_by_provider_attempt(provider_attempt_ref)

    async def mutate(self, org_id: str, app_id: str, fn: Mutation) -> OrgAppRecord:
        """Read, apply *fn*, and compare-and-swap, retrying once on ``Conflict``.

        *fn* may be sync or async and may raise to abort; returning ``None``
        leaves the record untouched and returns the current read.

        Raises
        ------
        NotFound
            If the OrgApp does not exist.
        Conflict
            If the second attempt also loses the race.
        """
        for attempt in (1, 2):
            current = await self.require(org_id, app_id)
            replacement = fn(current)
            if isinstance(replacement, Awaitable):
                replacement = await replacement
            if replacement is None:
                return current
            try:
                return await self.upsert(replacement)
            except Conflict:
                if attempt == 2:
                    raise
                logger.info("CAS conflict on %s/%s; re-reading and retrying once", org_id, app_id)
        raise AssertionError("unreachable")

    # -- Hostnames -----------------------------------------------------------

    async def reserve_hostname(self, hostname: str, org_id: str, app_id: str) -> bool:
        """Atomically claim *hostname* for ``(org_id, app_id)``.

        Returns True if the pair holds the reservation afterwards (newly
        claimed or already held), False if another OrgApp holds it.
        """
        async with self.session() as session:
            holder = await HostnameRepository(session).reserve(hostname, org_id, app_id)
        return holder == (org_id, app_id)

    async def hostname_holder(self, hostname: str) -> tuple[str, str] | None:
        async with self.session() as session:
            return await HostnameRepository(session).holder(hostname)

    async def release_hostname(self, hostname: str, org_id: str, app_id: str) -> bool:
        async with self.session() as session:
            return await HostnameRepository(session).release(hostname, org_id, app_id)

    async def release_all_hostnames(self, org_id: str, app_id: str) -> int:
        async with self.session() as session:
            return await HostnameRepository(session).release_all(org_id, app_id)

    # -- Draft previews ------------------------------------------------------

    async def claim_draft(self, record: DraftPreviewRecord, now: datetime) -> bool:
        async with self.session() as session:
            return await DraftPreviewRepository(session).claim(record, now)

    async def get_draft(self, generated_app_id: str) -> DraftPreviewRecord | None:
        async with self.session() as session:
            return await DraftPreviewRepository(session).get(generated_app_id)

    async def update_draft(self, generated_app_id: str, *, expected_ref: str | None = None, **values: object) -> bool:
        async with self.session() as session:
            return await DraftPreviewRepository(session).update(generated_app_id, expected_ref=expected_ref, **values)

    async def delete_draft(self, generated_app_id: str) -> bool:
        async with self.session() as session:
            return await DraftPreviewRepository(session).delete(generated_app_id)

    async def list_drafts(self, owner_user_id: str) -> list[DraftPreviewRecord]:
        async with self.session() as session:
            return await DraftPreviewRepository(session).list_by_owner(owner_user_id)

    async def list_expired_drafts(self, now: datetime) -> list[DraftPreviewRecord]:
        async with self.session() as session:
            return await DraftPreviewRepository(session).list_expired(now)

    async def find_draft_by_provider_attempt(self, provider_attempt_ref: str) -> DraftPreviewRecord | None:
        async with self.session() as session:
            return await DraftPreviewRepository(session).find_by_provider_attempt(provider_attempt_ref)
