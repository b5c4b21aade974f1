"""Initial deployment state schema.

Creates organizations, org_members, applications, generated_apps,
org_apps, hostname_reservations and draft_previews.

Revision ID: 001
Revises: None
Create Date: 2026-09-01 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_JSON = postgresql.JSONB().with_variant(sa.JSON(), "sqlite")


def _ts(name: str, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def upgrade() -> None:
    op.create_table(
        "organizations",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("slug", sa.String(64), nullable=False, unique=True),
        _ts("created_at"),
    )

    op.create_table(
        "org_members",
        sa.Column("org_id", sa.String(64), sa.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("role", sa.String(16), nullable=False, server_default="MEMBER"),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("name", sa.String(256), nullable=True),
        _ts("joined_at"),
        sa.PrimaryKeyConstraint("org_id", "user_id"),
    )
    op.create_index("ix_org_members_user", "org_members", ["user_id"])

    op.create_table(
        "applications",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("title", sa.String(256), nullable=False),
        sa.Column("latest_version", sa.String(64), nullable=False, server_default="1"),
        sa.Column("generated_app_id", sa.String(64), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
    )

    op.create_table(
        "generated_apps",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("owner_org_id", sa.String(64), nullable=True),
        sa.Column("created_by", sa.String(128), nullable=True),
        sa.Column("forked_from_id", sa.String(64), nullable=True),
        _ts("created_at"),
    )
    op.create_index("ix_generated_apps_owner_org", "generated_apps", ["owner_org_id"])

    op.create_table(
        "org_apps",
        sa.Column("org_id", sa.String(64), sa.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("app_id", sa.String(64), sa.ForeignKey("applications.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="ADDED"),
        sa.Column("deployed_version", sa.String(64), nullable=True),
        sa.Column("latest_version", sa.String(64), nullable=False),
        sa.Column("hostname", sa.String(64), nullable=True, unique=True),
        sa.Column("access_member_ids", _JSON, nullable=False),
        sa.Column("generated_app_id", sa.String(64), nullable=True),
        sa.Column("machine_ref", sa.String(128), nullable=True),
        sa.Column("deploy_url", sa.String(512), nullable=True),
        sa.Column("attempt_id", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("provider_attempt_ref", sa.String(128), nullable=True),
        sa.Column("attempt_target_version", sa.String(64), nullable=True),
        sa.Column("attempt_mode", sa.String(16), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("status_message", sa.String(256), nullable=True),
        _ts("added_at"),
        _ts("deployed_at", nullable=True),
        _ts("last_progress_at", nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("org_id", "app_id"),
    )
    op.create_index("ix_org_apps_app", "org_apps", ["app_id"])
    op.create_index("ix_org_apps_provider_attempt", "org_apps", ["provider_attempt_ref"])
    op.create_index("ix_org_apps_status_progress", "org_apps", ["status", "last_progress_at"])

    op.create_table(
        "hostname_reservations",
        sa.Column("hostname", sa.String(64), primary_key=True),
        sa.Column("org_id", sa.String(64), nullable=False),
        sa.Column("app_id", sa.String(64), nullable=False),
        _ts("reserved_at"),
    )
    op.create_index("ix_hostname_reservations_owner", "hostname_reservations", ["org_id", "app_id"])

    op.create_table(
        "draft_previews",
        sa.Column("generated_app_id", sa.String(64), primary_key=True),
        sa.Column("owner_user_id", sa.String(128), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="DEPLOYING"),
        sa.Column("preview_url", sa.String(512), nullable=True),
        sa.Column("machine_ref", sa.String(128), nullable=True),
        sa.Column("provider_attempt_ref", sa.String(128), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        _ts("created_at"),
    )
    op.create_index("ix_draft_previews_expires_at", "draft_previews", ["expires_at"])
    op.create_index("ix_draft_previews_owner", "draft_previews", ["owner_user_id"])
    op.create_index("ix_draft_previews_provider_attempt", "draft_previews", ["provider_attempt_ref"])


def downgrade() -> None:
    op.drop_table("draft_previews")
    op.drop_table("hostname_reservations")
    op.drop_table("org_apps")
    op.drop_table("generated_apps")
    op.drop_table("applications")
    op.drop_table("org_members")
    op.drop_table("organizations")
