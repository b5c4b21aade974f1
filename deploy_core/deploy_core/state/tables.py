"""SQLAlchemy 2.0 ORM table definitions for the deployment state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for Alembic and the repository layer.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    PrimaryKeyConstraint,
    String,
    Text,
    TypeDecorator,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON (TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


def _utcnow() -> datetime:
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware timestamp that always reads back in UTC.

    SQLite drops tzinfo on storage; values read back are re-tagged as UTC
    so comparisons with ``datetime.now(UTC)`` never mix naive and aware.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all deployment state tables."""


# ---------------------------------------------------------------------------
# Organizations and members
# ---------------------------------------------------------------------------


class OrganizationTable(Base):
    """Tenant boundary.  ``slug`` feeds suggested hostnames."""

    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    slug: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)


class MemberTable(Base):
    """Roster of users belonging to an organization."""

    __tablename__ = "org_members"

    org_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="MEMBER")
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    joined_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        PrimaryKeyConstraint("org_id", "user_id"),
        Index("ix_org_members_user", "user_id"),
    )


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class ApplicationTable(Base):
    """Published catalog entry; ``latest_version`` moves on every publish."""

    __tablename__ = "applications"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    latest_version: Mapped[str] = mapped_column(String(64), nullable=False, default="1")
    generated_app_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)


class GeneratedAppTable(Base):
    """Local mirror of generated-app lineage used to decide fork-on-modify."""

    __tablename__ = "generated_apps"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_org_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    forked_from_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_generated_apps_owner_org", "owner_org_id"),)


# ---------------------------------------------------------------------------
# OrgApps
# ---------------------------------------------------------------------------


class OrgAppTable(Base):
    """One organization's instance of one application.

    ``version`` is the compare-and-swap counter: every write is
    ``UPDATE ... WHERE version = :expected`` and increments it.
    """

    __tablename__ = "org_apps"

    org_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    app_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("applications.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="ADDED")
    deployed_version: Mapped[str | None] = mapped_column(String(64), nullable=True)
    latest_version: Mapped[str] = mapped_column(String(64), nullable=False)
    hostname: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    access_member_ids: Mapped[list[str]] = mapped_column(_JsonType, nullable=False, default=list)
    generated_app_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    machine_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    deploy_url: Mapped[str | None] = mapped_column(String(512), nullable=True)

    attempt_id: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    provider_attempt_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    attempt_target_version: Mapped[str | None] = mapped_column(String(64), nullable=True)
    attempt_mode: Mapped[str | None] = mapped_column(String(16), nullable=True)

    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    status_message: Mapped[str | None] = mapped_column(String(256), nullable=True)

    added_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    deployed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_progress_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (
        PrimaryKeyConstraint("org_id", "app_id"),
        Index("ix_org_apps_app", "app_id"),
        Index("ix_org_apps_provider_attempt", "provider_attempt_ref"),
        Index("ix_org_apps_status_progress", "status", "last_progress_at"),
    )


class HostnameReservationTable(Base):
    """Global hostname namespace.  The primary key is the uniqueness arbiter."""

    __tablename__ = "hostname_reservations"

    hostname: Mapped[str] = mapped_column(String(64), primary_key=True)
    org_id: Mapped[str] = mapped_column(String(64), nullable=False)
    app_id: Mapped[str] = mapped_column(String(64), nullable=False)
    reserved_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_hostname_reservations_owner", "org_id", "app_id"),)


# ---------------------------------------------------------------------------
# Draft previews
# ---------------------------------------------------------------------------


class DraftPreviewTable(Base):
    """User-owned throwaway deployment of an unpublished generated app."""

    __tablename__ = "draft_previews"

    generated_app_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="DEPLOYING")
    preview_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    machine_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    provider_attempt_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_draft_previews_expires_at", "expires_at"),
        Index("ix_draft_previews_owner", "owner_user_id"),
        Index("ix_draft_previews_provider_attempt", "provider_attempt_ref"),
    )
