"""Domain records for organization-scoped application instances.

An ``OrgAppRecord`` is the whole-record unit the state store reads and
compare-and-swaps.  Records are immutable pydantic models; every state
change produces a new record via ``model_copy(update=...)`` and is
persisted against the ``version`` the caller originally read.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_serializer

from deploy_core.lifecycle.versioning import needs_update


class OrgAppStatus(str, Enum):
    """Lifecycle state of an OrgApp instance."""

    ADDED = "ADDED"
    DEPLOYING = "DEPLOYING"
    PREVIEW = "PREVIEW"
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"
    FAILED = "FAILED"


class MemberRole(str, Enum):
    """Role of a user inside an organization."""

    OWNER = "OWNER"
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"


class DeployMode(str, Enum):
    """How the provider should route the instance produced by an attempt."""

    PRODUCTION = "production"
    PREVIEW = "preview"
    GO_LIVE = "go_live"


class OrgAppRecord(BaseModel):
    """The association of one organization to one application."""

    model_config = ConfigDict(frozen=True)

    org_id: str = Field(..., min_length=1)
    app_id: str = Field(..., min_length=1)
    status: OrgAppStatus = OrgAppStatus.ADDED
    deployed_version: str | None = Field(
        default=None,
        description="Version serving traffic, or None if never deployed.",
    )
    latest_version: str = Field(
        ...,
        description="Denormalized copy of the application's latest published version.",
    )
    hostname: str | None = None
    access_member_ids: frozenset[str] = Field(default_factory=frozenset)
    generated_app_id: str | None = None

    machine_ref: str | None = Field(
        default=None,
        description="External instance identifier at the compute provider.",
    )
    deploy_url: str | None = None

    attempt_id: int = Field(
        default=0,
        ge=0,
        description="Monotonic attempt counter; 0 means no attempt has been made.",
    )
    provider_attempt_ref: str | None = None
    attempt_target_version: str | None = None
    attempt_mode: DeployMode | None = None

    last_error: str | None = None
    status_message: str | None = None

    added_at: datetime | None = None
    deployed_at: datetime | None = None
    last_progress_at: datetime | None = None

    version: int = Field(default=0, ge=0, description="Compare-and-swap counter.")

    @computed_field  # type: ignore[prop-decorator]
    @property
    def needs_update(self) -> bool:
        """Drift flag: the deployed version differs from the latest published one."""
        return needs_update(self.deployed_version, self.latest_version)

    @property
    def key(self) -> tuple[str, str]:
        return (self.org_id, self.app_id)

    @field_serializer("access_member_ids")
    def _sorted_access(self, value: frozenset[str]) -> list[str]:
        return sorted(value)


class MemberRecord(BaseModel):
    """A user attached to an organization."""

    model_config = ConfigDict(frozen=True)

    org_id: str
    user_id: str
    role: MemberRole = MemberRole.MEMBER
    email: str | None = None
    name: str | None = None
