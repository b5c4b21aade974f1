"""Repository classes providing access to the deployment state tables.

Each repository takes an ``AsyncSession`` and operates within the caller's
transaction boundary.  Writes call ``session.flush()``; the caller commits
(usually through :func:`deploy_core.state.database.get_session`).

OrgApp and draft writes are conditional updates that return whether a
row matched, so callers can implement compare-and-swap on top of them.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from deploy_core.models.draft import DraftPreviewRecord, DraftStatus
from deploy_core.models.orgapp import DeployMode, MemberRecord, MemberRole, OrgAppRecord, OrgAppStatus
from deploy_core.state.tables import (
    ApplicationTable,
    DraftPreviewTable,
    GeneratedAppTable,
    HostnameReservationTable,
    MemberTable,
    OrganizationTable,
    OrgAppTable,
)

logger = logging.getLogger(__name__)


async def _dialect_upsert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware ``INSERT ... ON CONFLICT DO NOTHING``.

    Returns the execution result; ``rowcount`` is 1 when the row was
    inserted and 0 when an existing row won.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# Row <-> record conversion
# ---------------------------------------------------------------------------

_ORGAPP_COLUMNS = (
    "status",
    "deployed_version",
    "latest_version",
    "hostname",
    "generated_app_id",
    "machine_ref",
    "deploy_url",
    "attempt_id",
    "provider_attempt_ref",
    "attempt_target_version",
    "attempt_mode",
    "last_error",
    "status_message",
    "deployed_at",
    "last_progress_at",
)


def orgapp_from_row(row: OrgAppTable) -> OrgAppRecord:
    return OrgAppRecord(
        org_id=row.org_id,
        app_id=row.app_id,
        status=OrgAppStatus(row.status),
        deployed_version=row.deployed_version,
        latest_version=row.latest_version,
        hostname=row.hostname,
        access_member_ids=frozenset(row.access_member_ids or ()),
        generated_app_id=row.generated_app_id,
        machine_ref=row.machine_ref,
        deploy_url=row.deploy_url,
        attempt_id=row.attempt_id,
        provider_attempt_ref=row.provider_attempt_ref,
        attempt_target_version=row.attempt_target_version,
        attempt_mode=DeployMode(row.attempt_mode) if row.attempt_mode else None,
        last_error=row.last_error,
        status_message=row.status_message,
        added_at=row.added_at,
        deployed_at=row.deployed_at,
        last_progress_at=row.last_progress_at,
        version=row.version,
    )


def _orgapp_values(record: OrgAppRecord) -> dict[str, Any]:
    values: dict[str, Any] = {col: getattr(record, col) for col in _ORGAPP_COLUMNS}
    values["status"] = record.status.value
    values["attempt_mode"] = record.attempt_mode.value if record.attempt_mode else None
    values["access_member_ids"] = sorted(record.access_member_ids)
    return values


def draft_from_row(row: DraftPreviewTable) -> DraftPreviewRecord:
    return DraftPreviewRecord(
        generated_app_id=row.generated_app_id,
        owner_user_id=row.owner_user_id,
        status=DraftStatus(row.status),
        preview_url=row.preview_url,
        machine_ref=row.machine_ref,
        provider_attempt_ref=row.provider_attempt_ref,
        last_error=row.last_error,
        expires_at=row.expires_at,
        created_at=row.created_at,
    )


# ---------------------------------------------------------------------------
# OrganizationRepository
# ---------------------------------------------------------------------------


class OrganizationRepository:
    """CRUD for ``organizations`` and their ``org_members`` roster."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, org_id: str, name: str, slug: str) -> bool:
        """Insert an organization.  Returns False if the id or slug is taken."""
        existing = await self._session.execute(
            select(OrganizationTable.id).where(or_(OrganizationTable.id == org_id, OrganizationTable.slug == slug))
        )
        if existing.first() is not None:
            return False
        self._session.add(OrganizationTable(id=org_id, name=name, slug=slug))
        await self._session.flush()
        return True

    async def get(self, org_id: str) -> OrganizationTable | None:
        return await self._session.get(OrganizationTable, org_id)

    async def add_member(
        self,
        org_id: str,
        user_id: str,
        *,
        role: MemberRole = MemberRole.MEMBER,
        email: str | None = None,
        name: str | None = None,
    ) -> bool:
        """Add *user_id* to the roster; idempotent.  Returns True if newly added."""
        result = await _dialect_upsert_nothing(
            self._session,
            MemberTable,
            values={"org_id": org_id, "user_id": user_id, "role": role.value, "email": email, "name": name},
            index_elements=["org_id", "user_id"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0

    async def remove_member(self, org_id: str, user_id: str) -> bool:
        result = await self._session.execute(
            delete(MemberTable).where(MemberTable.org_id == org_id, MemberTable.user_id == user_id)
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def list_members(self, org_id: str) -> list[MemberRecord]:
        result = await self._session.execute(
            select(MemberTable).where(MemberTable.org_id == org_id).order_by(MemberTable.user_id)
        )
        return [
            MemberRecord(org_id=row.org_id, user_id=row.user_id, role=MemberRole(row.role), email=row.email, name=row.name)
            for row in result.scalars().all()
        ]

    async def member_ids(self, org_id: str) -> set[str]:
        result = await self._session.execute(select(MemberTable.user_id).where(MemberTable.org_id == org_id))
        return set(result.scalars().all())

    async def member_role(self, org_id: str, user_id: str) -> MemberRole | None:
        result = await self._session.execute(
            select(MemberTable.role).where(MemberTable.org_id == org_id, MemberTable.user_id == user_id)
        )
        role = result.scalar_one_or_none()
        return MemberRole(role) if role is not None else None


# ---------------------------------------------------------------------------
# ApplicationRepository
# ---------------------------------------------------------------------------


class ApplicationRepository:
    """Catalog entries and generated-app lineage."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        app_id: str,
        title: str,
        *,
        latest_version: str = "1",
        generated_app_id: str | None = None,
    ) -> bool:
        result = await _dialect_upsert_nothing(
            self._session,
            ApplicationTable,
            values={
                "id": app_id,
                "title": title,
                "latest_version": latest_version,
                "generated_app_id": generated_app_id,
            },
            index_elements=["id"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0

    async def get(self, app_id: str, *, for_update: bool = False) -> ApplicationTable | None:
        """Fetch a catalog entry; *for_update* row-locks it until the transaction ends."""
        return await self._session.get(ApplicationTable, app_id, with_for_update=for_update)

    async def set_latest_version(self, app_id: str, version: str) -> None:
        await self._session.execute(
            update(ApplicationTable).where(ApplicationTable.id == app_id).values(latest_version=version)
        )
        await self._session.flush()

    async def record_generated_app(
        self,
        generated_app_id: str,
        *,
        owner_org_id: str | None,
        created_by: str | None = None,
        forked_from_id: str | None = None,
    ) -> bool:
        """Record lineage for a generated app; existing lineage is left untouched."""
        result = await _dialect_upsert_nothing(
            self._session,
            GeneratedAppTable,
            values={
                "id": generated_app_id,
                "owner_org_id": owner_org_id,
                "created_by": created_by,
                "forked_from_id": forked_from_id,
            },
            index_elements=["id"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0

    async def get_generated_app(self, generated_app_id: str) -> GeneratedAppTable | None:
        return await self._session.get(GeneratedAppTable, generated_app_id)


# ---------------------------------------------------------------------------
# OrgAppRepository
# ---------------------------------------------------------------------------


class OrgAppRepository:
    """Versioned OrgApp rows.  Every write is conditional on ``version``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, org_id: str, app_id: str) -> OrgAppRecord | None:
        row = await self._session.get(OrgAppTable, (org_id, app_id))
        return orgapp_from_row(row) if row is not None else None

    async def insert(self, record: OrgAppRecord) -> bool:
        """Insert *record* at version 1.  Returns False if the pair already exists."""
        values = _orgapp_values(record)
        values.update(org_id=record.org_id, app_id=record.app_id, version=1)
        if record.added_at is not None:
            values["added_at"] = record.added_at
        result = await _dialect_upsert_nothing(
            self._session, OrgAppTable, values=values, index_elements=["org_id", "app_id"]
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0

    async def compare_and_swap(self, record: OrgAppRecord) -> bool:
        """Write *record* iff the stored version still equals ``record.version``.

        The stored version is incremented on success.
        """
        stmt = (
            update(OrgAppTable)
            .where(
                OrgAppTable.org_id == record.org_id,
                OrgAppTable.app_id == record.app_id,
                OrgAppTable.version == record.version,
            )
            .values(**_orgapp_values(record), version=record.version + 1)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def delete(self, org_id: str, app_id: str, expected_version: int | None = None) -> bool:
        stmt = delete(OrgAppTable).where(OrgAppTable.org_id == org_id, OrgAppTable.app_id == app_id)
        if expected_version is not None:
            stmt = stmt.where(OrgAppTable.version == expected_version)
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def list_by_org(self, org_id: str) -> list[OrgAppRecord]:
        result = await self._session.execute(
            select(OrgAppTable).where(OrgAppTable.org_id == org_id).order_by(OrgAppTable.added_at, OrgAppTable.app_id)
        )
        return [orgapp_from_row(row) for row in result.scalars().all()]

    async def list_by_app(self, app_id: str) -> list[OrgAppRecord]:
        result = await self._session.execute(
            select(OrgAppTable).where(OrgAppTable.app_id == app_id).order_by(OrgAppTable.org_id)
        )
        return [orgapp_from_row(row) for row in result.scalars().all()]

    async def list_stuck_deploying(self, cutoff: datetime) -> list[OrgAppRecord]:
        """DEPLOYING rows whose last progress is older than *cutoff*."""
        result = await self._session.execute(
            select(OrgAppTable)
            .where(
                OrgAppTable.status == OrgAppStatus.DEPLOYING.value,
                or_(OrgAppTable.last_progress_at.is_(None), OrgAppTable.last_progress_at < cutoff),
            )
            .order_by(OrgAppTable.last_progress_at)
        )
        return [orgapp_from_row(row) for row in result.scalars().all()]

    async def find_by_provider_attempt(self, provider_attempt_ref: str) -> OrgAppRecord | None:
        result = await self._session.execute(
            select(OrgAppTable).where(OrgAppTable.provider_attempt_ref == provider_attempt_ref).limit(1)
        )
        row = result.scalar_one_or_none()
        return orgapp_from_row(row) if row is not None else None

    async def set_latest_version(self, app_id: str, version: str) -> int:
        """Propagate a newly published version to every OrgApp of *app_id*.

        Bumps each row's CAS version so writers holding a stale read retry.
        """
        result = await self._session.execute(
            update(OrgAppTable)
            .where(OrgAppTable.app_id == app_id)
            .values(latest_version=version, version=OrgAppTable.version + 1)
        )
        await self._session.flush()
        return result.rowcount or 0  # type: ignore[attr-defined]

    async def count_by_status(self, org_id: str) -> dict[str, int]:
        result = await self._session.execute(
            select(OrgAppTable.status, func.count())
            .where(OrgAppTable.org_id == org_id)
            .group_by(OrgAppTable.status)
        )
        return {status: count for status, count in result.all()}


# ---------------------------------------------------------------------------
# HostnameRepository
# ---------------------------------------------------------------------------


class HostnameRepository:
    """Global hostname reservations keyed by hostname."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def reserve(self, hostname: str, org_id: str, app_id: str) -> tuple[str, str]:
        """Insert-if-absent, then report who holds *hostname*.

        Returns the ``(org_id, app_id)`` holding the reservation after the
        insert attempt; it equals the caller's pair when the caller won or
        already held it.
        """
        await _dialect_upsert_nothing(
            self._session,
            HostnameReservationTable,
            values={"hostname": hostname, "org_id": org_id, "app_id": app_id},
            index_elements=["hostname"],
        )
        await self._session.flush()
        result = await self._session.execute(
            select(HostnameReservationTable.org_id, HostnameReservationTable.app_id).where(
                HostnameReservationTable.hostname == hostname
            )
        )
        holder_org, holder_app = result.one()
        return holder_org, holder_app

    async def holder(self, hostname: str) -> tuple[str, str] | None:
        result = await self._session.execute(
            select(HostnameReservationTable.org_id, HostnameReservationTable.app_id).where(
                HostnameReservationTable.hostname == hostname
            )
        )
        row = result.first()
        return (row[0], row[1]) if row is not None else None

    async def release(self, hostname: str, org_id: str, app_id: str) -> bool:
        """Delete the reservation only if it is held by ``(org_id, app_id)``."""
        result = await self._session.execute(
            delete(HostnameReservationTable).where(
                HostnameReservationTable.hostname == hostname,
                HostnameReservationTable.org_id == org_id,
                HostnameReservationTable.app_id == app_id,
            )
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def release_all(self, org_id: str, app_id: str) -> int:
        result = await self._session.execute(
            delete(HostnameReservationTable).where(
                HostnameReservationTable.org_id == org_id,
                HostnameReservationTable.app_id == app_id,
            )
        )
        await self._session.flush()
        return result.rowcount or 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# DraftPreviewRepository
# ---------------------------------------------------------------------------


class DraftPreviewRepository:
    """User-owned draft previews keyed by generated app id."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def claim(self, record: DraftPreviewRecord, now: datetime) -> bool:
        """Create *record* unless a live draft already exists for its generated app.

        Expired or FAILED drafts are cleared first so a new preview can
        replace them.  Returns False when a live draft blocks the claim.
        """
        await self._session.execute(
            delete(DraftPreviewTable).where(
                DraftPreviewTable.generated_app_id == record.generated_app_id,
                or_(
                    DraftPreviewTable.expires_at <= now,
                    DraftPreviewTable.status == DraftStatus.FAILED.value,
                ),
            )
        )
        result = await _dialect_upsert_nothing(
            self._session,
            DraftPreviewTable,
            values={
                "generated_app_id": record.generated_app_id,
                "owner_user_id": record.owner_user_id,
                "status": record.status.value,
                "expires_at": record.expires_at,
                "created_at": record.created_at or now,
            },
            index_elements=["generated_app_id"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0

    async def get(self, generated_app_id: str) -> DraftPreviewRecord | None:
        row = await self._session.get(DraftPreviewTable, generated_app_id)
        return draft_from_row(row) if row is not None else None

    async def update(self, generated_app_id: str, *, expected_ref: str | None = None, **values: Any) -> bool:
        """Update a draft; when *expected_ref* is given, only if it is still the current attempt."""
        if "status" in values and isinstance(values["status"], DraftStatus):
            values["status"] = values["status"].value
        stmt = update(DraftPreviewTable).where(DraftPreviewTable.generated_app_id == generated_app_id)
        if expected_ref is not None:
            stmt = stmt.where(DraftPreviewTable.provider_attempt_ref == expected_ref)
        result = await self._session.execute(stmt.values(**values))
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def delete(self, generated_app_id: str) -> bool:
        result = await self._session.execute(
            delete(DraftPreviewTable).where(DraftPreviewTable.generated_app_id == generated_app_id)
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def list_by_owner(self, owner_user_id: str) -> list[DraftPreviewRecord]:
        result = await self._session.execute(
            select(DraftPreviewTable)
            .where(DraftPreviewTable.owner_user_id == owner_user_id)
            .order_by(DraftPreviewTable.created_at.desc())
        )
        return [draft_from_row(row) for row in result.scalars().all()]

    async def list_expired(self, now: datetime, limit: int = 100) -> list[DraftPreviewRecord]:
        result = await self._session.execute(
            select(DraftPreviewTable)
            .where(DraftPreviewTable.expires_at <= now)
            .order_by(DraftPreviewTable.expires_at)
            .limit(limit)
        )
        return [draft_from_row(row) for row in result.scalars().all()]

    async def find_by_provider_attempt(self, provider_attempt_ref: str) -> DraftPreviewRecord | None:
        result = await self._session.execute(
            select(DraftPreviewTable).where(DraftPreviewTable.provider_attempt_ref == provider_attempt_ref).limit(1)
        )
        row = result.scalar_one_or_none()
        return draft_from_row(row) if row is not None else None
