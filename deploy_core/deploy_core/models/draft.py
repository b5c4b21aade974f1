"""Draft preview records: throwaway deployments of unpublished apps."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from deploy_core.lifecycle.drafts import days_until_expiry


class DraftStatus(str, Enum):
    DEPLOYING = "DEPLOYING"
    READY = "READY"
    FAILED = "FAILED"


class DraftPreviewRecord(BaseModel):
    """Persisted state of one draft preview, keyed by generated app id."""

    model_config = ConfigDict(frozen=True)

    generated_app_id: str = Field(..., min_length=1)
    owner_user_id: str = Field(..., min_length=1)
    status: DraftStatus = DraftStatus.DEPLOYING
    preview_url: str | None = None
    machine_ref: str | None = None
    provider_attempt_ref: str | None = None
    last_error: str | None = None
    expires_at: datetime
    created_at: datetime | None = None


class PreviewHandle(BaseModel):
    """Caller-facing view of a draft preview with expiry computed at read time."""

    generated_app_id: str
    status: DraftStatus
    preview_url: str | None
    expires_at: datetime
    days_until_expiry: int
    expired: bool
    error: str | None = None

    @classmethod
    def from_record(cls, record: DraftPreviewRecord, now: datetime) -> PreviewHandle:
        days = days_until_expiry(record.expires_at, now)
        return cls(
            generated_app_id=record.generated_app_id,
            status=record.status,
            preview_url=record.preview_url,
            expires_at=record.expires_at,
            days_until_expiry=days,
            expired=days <= 0,
            error=record.last_error,
        )
