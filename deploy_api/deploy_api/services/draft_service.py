"""Draft previews: short-lived deployments of unpublished generated apps.

A draft belongs to the user who created it, not to an organization, and
gets no OrgApp and no hostname.  Expiry is computed at read time, so a
listing is correct even when the sweeper has not run yet.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from deploy_core.config import LifecycleSettings
from deploy_core.errors import AlreadyInProgress, ProviderError
from deploy_core.lifecycle.drafts import compute_expiry, is_expired
from deploy_core.models.draft import DraftPreviewRecord, DraftStatus, PreviewHandle
from deploy_core.models.progress import DeployStage
from deploy_core.state.store import StateStore

from deploy_api.services.event_bus import EventBus, EventType, get_event_bus
from deploy_api.services.provider_client import ComputeProvider, EventDisposition, ProviderEvent

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class DraftService:
    """Create, list, resolve and expire draft previews.

    Parameters
    ----------
    store:
        State store holding the draft records.
    provider:
        Compute provider that runs the previews.
    settings:
        Supplies ``draft_ttl_days``.
    bus:
        Event bus; the global bus by default.
    callback_url:
        Where the provider should push progress events.
    """

    def __init__(
        self,
        store: StateStore,
        provider: ComputeProvider,
        settings: LifecycleSettings,
        *,
        bus: EventBus | None = None,
        callback_url: str | None = None,
    ) -> None:
        self._store = store
        self._provider = provider
        self._settings = settings
        self._bus = bus or get_event_bus()
        self._callback_url = callback_url

    async def deploy_draft(self, user_id: str, generated_app_id: str) -> PreviewHandle:
        """Start a preview of *generated_app_id* owned by *user_id*.

        A provider failure is recorded on the draft and returned as a FAILED
        handle rather than raised.

        Raises
        ------
        AlreadyInProgress
            If a live (unexpired, not failed) draft already exists for the app.
        """
        now = _utcnow()
        existing = await self._store.get_draft(generated_app_id)
        if existing is not None and existing.machine_ref and (
            existing.status == DraftStatus.FAILED or is_expired(existing.expires_at, now)
        ):
            await self._destroy_quietly(existing.machine_ref)

        record = DraftPreviewRecord(
            generated_app_id=generated_app_id,
            owner_user_id=user_id,
            status=DraftStatus.DEPLOYING,
            expires_at=compute_expiry(now, self._settings.draft_ttl_days),
            created_at=now,
        )
        if not await self._store.claim_draft(record, now):
            raise AlreadyInProgress(f"A preview of {generated_app_id} is already live")

        try:
            provider_ref = await self._provider.deploy_draft(generated_app_id, self._callback_url)
        except ProviderError as exc:
            logger.warning("Provider rejected draft preview of %s: %s", generated_app_id, exc.message)
            await self._store.update_draft(generated_app_id, status=DraftStatus.FAILED, last_error=exc.message)
            failed = record.model_copy(update={"status": DraftStatus.FAILED, "last_error": exc.message})
            return PreviewHandle.from_record(failed, now)

        await self._store.update_draft(generated_app_id, provider_attempt_ref=provider_ref)
        logger.info("Draft preview of %s started for %s (attempt %s)", generated_app_id, user_id, provider_ref)
        await self._bus.emit(
            EventType.DRAFT_CREATED,
            data={"generated_app_id": generated_app_id, "owner_user_id": user_id},
        )
        return PreviewHandle.from_record(record.model_copy(update={"provider_attempt_ref": provider_ref}), now)

    async def list_drafts(self, user_id: str, now: datetime | None = None) -> list[PreviewHandle]:
        """The user's drafts, newest first, with expiry computed against *now*."""
        now = now or _utcnow()
        return [PreviewHandle.from_record(r, now) for r in await self._store.list_drafts(user_id)]

    async def handle_provider_event(self, event: ProviderEvent) -> EventDisposition:
        """Resolve a draft from a provider callback.  Intermediate stages are not stored."""
        draft = await self._store.find_draft_by_provider_attempt(event.attempt_id)
        if draft is None:
            return EventDisposition.UNKNOWN
        if draft.status != DraftStatus.DEPLOYING:
            return EventDisposition.STALE

        if event.stage in (DeployStage.RUNNING, DeployStage.PREVIEW):
            values: dict[str, object] = {
                "status": DraftStatus.READY,
                "preview_url": event.fly_url,
                "machine_ref": event.instance_id or event.attempt_id,
            }
        elif event.stage == DeployStage.FAILED:
            values = {"status": DraftStatus.FAILED, "last_error": event.error or event.message or "Preview failed"}
        else:
            return EventDisposition.APPLIED

        if not await self._store.update_draft(draft.generated_app_id, expected_ref=event.attempt_id, **values):
            return EventDisposition.STALE
        logger.info("Draft preview of %s resolved at stage %s", draft.generated_app_id, event.stage.value)
        return EventDisposition.APPLIED

    async def sweep_expired(self, now: datetime | None = None) -> int:
        """Destroy every expired preview.  Returns how many records were deleted."""
        now = now or _utcnow()
        removed = 0
        for draft in await self._store.list_expired_drafts(now):
            if draft.machine_ref:
                await self._destroy_quietly(draft.machine_ref)
            if await self._store.delete_draft(draft.generated_app_id):
                removed += 1
                await self._bus.emit(
                    EventType.DRAFT_EXPIRED,
                    data={"generated_app_id": draft.generated_app_id, "owner_user_id": draft.owner_user_id},
                )
        if removed:
            logger.info("Expired %d draft preview(s)", removed)
        return removed

    async def _destroy_quietly(self, machine_ref: str) -> None:
        try:
            await self._provider.destroy(machine_ref)
        except ProviderError as exc:
            logger.warning("Could not destroy preview instance %s: %s", machine_ref, exc.message)
