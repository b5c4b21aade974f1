"""Deployment orchestrator: drives OrgApps through their lifecycle.

Every transition is computed by :mod:`deploy_core.lifecycle.state_machine`
and persisted through :meth:`StateStore.mutate`, which compare-and-swaps
against the version that was read.  The DEPLOYING transition is stored
*before* the provider is called, so two racing launches resolve in the
store (one wins, the other re-reads DEPLOYING and gets
``AlreadyInProgress``) and no transaction is held across provider I/O.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta

from deploy_core.config import LifecycleSettings
from deploy_core.errors import Conflict, InvalidFormat, LifecycleError, NotFound, ProviderError, Timeout
from deploy_core.lifecycle import state_machine
from deploy_core.lifecycle.hostnames import suggest_hostname, validate_hostname
from deploy_core.lifecycle.state_machine import LifecycleAction
from deploy_core.models.orgapp import DeployMode, OrgAppRecord, OrgAppStatus
from deploy_core.models.progress import DeployStage, ProgressEvent
from deploy_core.state.repository import ApplicationRepository, OrganizationRepository
from deploy_core.state.store import StateStore

from deploy_api.services.event_bus import EventBus, EventType, get_event_bus
from deploy_api.services.progress_streamer import ProgressHub
from deploy_api.services.provider_client import ComputeProvider, DeployRequest, EventDisposition, ProviderEvent

logger = logging.getLogger(__name__)

# Rounds of StateStore.mutate (each already retried once) for recording a provider ref.
_ATTACH_ROUNDS = 3


_TERMINAL_EVENT_TYPES: dict[OrgAppStatus, EventType] = {
    OrgAppStatus.RUNNING: EventType.DEPLOY_RUNNING,
    OrgAppStatus.PREVIEW: EventType.DEPLOY_PREVIEW,
    OrgAppStatus.FAILED: EventType.DEPLOY_FAILED,
}


class _StaleEvent(Exception):
    """Raised inside a mutation when the attempt it targets is no longer current."""


def _utcnow() -> datetime:
    return datetime.now(UTC)


class DeploymentOrchestrator:
    """Launch, retry, promote, update, stop and remove OrgApp instances.

    Parameters
    ----------
    store:
        Transactional OrgApp store.
    provider:
        Compute provider client.
    hub:
        Progress channels that subscribers listen on.
    settings:
        Lifecycle policy (watchdog timeout, base domain).
    bus:
        Event bus for audit and metrics hooks; the global bus by default.
    callback_url:
        Where the provider should push progress events.
    """

    def __init__(
        self,
        store: StateStore,
        provider: ComputeProvider,
        hub: ProgressHub,
        settings: LifecycleSettings,
        *,
        bus: EventBus | None = None,
        callback_url: str | None = None,
    ) -> None:
        self._store = store
        self._provider = provider
        self._hub = hub
        self._settings = settings
        self._bus = bus or get_event_bus()
        self._callback_url = callback_url

    # -- Caller actions ------------------------------------------------------

    async def launch(self, org_id: str, app_id: str, *, preview: bool = False) -> OrgAppRecord:
        """Deploy an ADDED or STOPPED OrgApp, optionally as a preview only."""
        return await self._start_attempt(org_id, app_id, LifecycleAction.LAUNCH, preview=preview)

    async def retry(self, org_id: str, app_id: str) -> OrgAppRecord:
        """Start a fresh attempt for a FAILED OrgApp."""
        return await self._start_attempt(org_id, app_id, LifecycleAction.RETRY)

    async def go_live(self, org_id: str, app_id: str) -> OrgAppRecord:
        """Promote a PREVIEW instance to production."""
        return await self._start_attempt(org_id, app_id, LifecycleAction.GO_LIVE)

    async def update(self, org_id: str, app_id: str) -> OrgAppRecord:
        """Re-deploy a RUNNING instance whose deployed version has drifted."""
        return await self._start_attempt(org_id, app_id, LifecycleAction.UPDATE)

    async def stop(self, org_id: str, app_id: str) -> OrgAppRecord:
        """Take a RUNNING or PREVIEW instance down; it can be launched again later."""
        now = _utcnow()
        machine_ref: str | None = None

        def _stop(current: OrgAppRecord) -> OrgAppRecord:
            nonlocal machine_ref
            machine_ref = current.machine_ref
            return state_machine.stop(current, now=now)

        stopped = await self._store.mutate(org_id, app_id, _stop)
        if machine_ref:
            await self._destroy_quietly(machine_ref)
        logger.info("Stopped %s/%s", org_id, app_id)
        await self._bus.emit(EventType.ORGAPP_STOPPED, org_id=org_id, data={"app_id": app_id})
        return stopped

    async def remove(self, org_id: str, app_id: str) -> OrgAppRecord:
        """Delete the OrgApp, release its hostname and destroy its machine.

        Allowed from any status.  A deployment still in flight is abandoned;
        its later provider events no longer match any OrgApp.

        Raises
        ------
        NotFound
            If the OrgApp does not exist.
        """
        removed = await self._store.remove(org_id, app_id)
        if removed is None:
            raise NotFound(f"App {app_id} is not added to organization {org_id}")
        if removed.machine_ref:
            await self._destroy_quietly(removed.machine_ref)
        self._hub.close(org_id, app_id)
        await self._bus.emit(
            EventType.ORGAPP_REMOVED,
            org_id=org_id,
            data={"app_id": app_id, "hostname": removed.hostname, "status": removed.status.value},
        )
        return removed

    # -- Progress ------------------------------------------------------------

    async def progress(self, org_id: str, app_id: str) -> AsyncGenerator[ProgressEvent, None]:
        """Current state of the OrgApp followed by live events until a terminal one.

        Raises ``NotFound`` on the first iteration if the OrgApp does not exist.
        """
        record = await self._store.require(org_id, app_id)
        subscription = self._hub.subscribe(org_id, app_id, state_machine.snapshot_event(record))
        try:
            async for event in subscription:
                yield event
        finally:
            await subscription.aclose()

    async def handle_provider_event(self, event: ProviderEvent) -> EventDisposition:
        """Fold a provider callback into the OrgApp that owns its attempt.

        Events are matched by provider attempt reference.  An event for an
        attempt that has been superseded, or for an OrgApp that is no longer
        deploying, is discarded and reported as ``STALE``.
        """
        record = await self._store.find_by_provider_attempt(event.attempt_id)
        if record is None:
            logger.info("Provider event %s for unknown attempt %s", event.stage.value, event.attempt_id)
            return EventDisposition.UNKNOWN

        attempt_id = record.attempt_id
        progress = ProgressEvent.for_stage(
            event.stage,
            attempt_id=attempt_id,
            message=event.message or None,
            fly_url=event.fly_url,
            error=event.error,
        )
        now = _utcnow()

        def _apply(current: OrgAppRecord) -> OrgAppRecord:
            if current.provider_attempt_ref != event.attempt_id or not state_machine.accepts_event(current, attempt_id):
                raise _StaleEvent
            return state_machine.apply_event(
                current,
                progress,
                now=now,
                instance_id=event.instance_id,
                base_domain=self._settings.base_domain,
            )

        try:
            updated = await self._store.mutate(record.org_id, record.app_id, _apply)
        except _StaleEvent:
            logger.info(
                "Discarding stale %s event for %s/%s attempt %d",
                event.stage.value,
                record.org_id,
                record.app_id,
                attempt_id,
            )
            return EventDisposition.STALE
        except NotFound:
            return EventDisposition.UNKNOWN

        if updated.status in _TERMINAL_EVENT_TYPES:
            progress = state_machine.snapshot_event(updated)
        self._hub.publish(updated.org_id, updated.app_id, progress)

        event_type = _TERMINAL_EVENT_TYPES.get(updated.status)
        if event_type is not None:
            logger.info(
                "Attempt %d for %s/%s resolved as %s",
                attempt_id,
                updated.org_id,
                updated.app_id,
                updated.status.value,
            )
            await self._bus.emit(
                event_type,
                org_id=updated.org_id,
                data={
                    "app_id": updated.app_id,
                    "attempt_id": attempt_id,
                    "deployed_version": updated.deployed_version,
                    "error": updated.last_error,
                },
            )
        return EventDisposition.APPLIED

    async def reconcile_stuck(self, now: datetime | None = None) -> list[OrgAppRecord]:
        """Fail every DEPLOYING OrgApp that has made no progress within the timeout.

        Returns the records that were moved to FAILED.  A record that cannot
        be written this pass is logged and left for the next one; it never
        stops the remaining records from being resolved.
        """
        now = now or _utcnow()
        timeout = self._settings.deploy_timeout_seconds
        cutoff = now - timedelta(seconds=timeout)
        failed: list[OrgAppRecord] = []
        for record in await self._store.list_stuck_deploying(cutoff):
            error = Timeout(f"Deployment timed out: no progress for {timeout // 60} minutes. Please try again.")
            try:
                resolved = await self._fail_attempt(
                    record.org_id,
                    record.app_id,
                    record.attempt_id,
                    error.message,
                    now=now,
                    event_type=EventType.DEPLOY_TIMED_OUT,
                    stale_before=cutoff,
                )
            except LifecycleError as exc:
                logger.warning(
                    "Watchdog could not fail %s/%s attempt %d (%s: %s); retrying next pass",
                    record.org_id,
                    record.app_id,
                    record.attempt_id,
                    exc.kind,
                    exc.message,
                )
                continue
            if resolved is not None:
                failed.append(resolved)
        if failed:
            logger.warning("Watchdog failed %d stuck deployment(s)", len(failed))
        return failed

    # -- Internal helpers ----------------------------------------------------

    async def _start_attempt(
        self,
        org_id: str,
        app_id: str,
        action: LifecycleAction,
        *,
        preview: bool = False,
    ) -> OrgAppRecord:
        org_slug, app_title = await self._names(org_id, app_id)
        now = _utcnow()
        record = await self._store.mutate(
            org_id,
            app_id,
            lambda current: state_machine.begin_attempt(current, action, now=now, preview=preview),
        )
        if record.hostname is None:
            record = await self._assign_default_hostname(record, org_slug, app_title)
        attempt_id = record.attempt_id
        logger.info(
            "Starting %s attempt %d for %s/%s (version %s, mode %s)",
            action.value,
            attempt_id,
            org_id,
            app_id,
            record.attempt_target_version,
            record.attempt_mode.value if record.attempt_mode else "-",
        )
        self._hub.publish(org_id, app_id, ProgressEvent.for_stage(DeployStage.PREPARING, attempt_id=attempt_id))
        await self._bus.emit(
            EventType.DEPLOY_STARTED,
            org_id=org_id,
            data={"app_id": app_id, "attempt_id": attempt_id, "action": action.value},
        )

        try:
            request = DeployRequest(
                app_id=app_id,
                org_slug=org_slug,
                version=record.attempt_target_version or record.latest_version,
                mode=record.attempt_mode or DeployMode.PRODUCTION,
                hostname=record.hostname,
                team_member_ids=sorted(record.access_member_ids),
                callback_url=self._callback_url,
            )
            provider_ref = await self._provider.deploy(request)
        except ProviderError as exc:
            logger.warning("Provider rejected attempt %d for %s/%s: %s", attempt_id, org_id, app_id, exc.message)
            failed = await self._fail_attempt(org_id, app_id, attempt_id, exc.message, now=_utcnow())
            return failed or await self._store.require(org_id, app_id)

        return await self._attach_provider_ref(org_id, app_id, attempt_id, provider_ref)

    async def _attach_provider_ref(self, org_id: str, app_id: str, attempt_id: int, provider_ref: str) -> OrgAppRecord:
        def _attach(current: OrgAppRecord) -> OrgAppRecord | None:
            if not state_machine.accepts_event(current, attempt_id):
                return None
            return current.model_copy(update={"provider_attempt_ref": provider_ref})

        # The provider is already deploying; losing this write would orphan
        # its events, so it gets more CAS rounds than a caller action.
        for _ in range(_ATTACH_ROUNDS):
            try:
                return await self._store.mutate(org_id, app_id, _attach)
            except NotFound:
                logger.warning("OrgApp %s/%s removed while attempt %d was starting", org_id, app_id, attempt_id)
                raise
            except Conflict:
                logger.info("Contention recording provider ref %s for %s/%s", provider_ref, org_id, app_id)
        logger.error(
            "Could not record provider ref %s for %s/%s attempt %d; the watchdog will resolve it",
            provider_ref,
            org_id,
            app_id,
            attempt_id,
        )
        return await self._store.require(org_id, app_id)

    async def _fail_attempt(
        self,
        org_id: str,
        app_id: str,
        attempt_id: int,
        message: str,
        *,
        now: datetime,
        event_type: EventType = EventType.DEPLOY_FAILED,
        stale_before: datetime | None = None,
    ) -> OrgAppRecord | None:
        """Resolve *attempt_id* as FAILED; returns None if it was already resolved."""

        def _fail(current: OrgAppRecord) -> OrgAppRecord:
            if not state_machine.accepts_event(current, attempt_id):
                raise _StaleEvent
            if stale_before is not None and current.last_progress_at and current.last_progress_at >= stale_before:
                raise _StaleEvent
            return state_machine.fail_attempt(current, message, now=now)

        try:
            failed = await self._store.mutate(org_id, app_id, _fail)
        except (_StaleEvent, NotFound):
            return None

        self._hub.publish(
            org_id,
            app_id,
            ProgressEvent.for_stage(DeployStage.FAILED, attempt_id=attempt_id, error=message),
        )
        await self._bus.emit(
            event_type,
            org_id=org_id,
            data={"app_id": app_id, "attempt_id": attempt_id, "error": message},
        )
        return failed

    async def _names(self, org_id: str, app_id: str) -> tuple[str, str]:
        """Organization slug and application title."""
        async with self._store.session() as session:
            org = await OrganizationRepository(session).get(org_id)
            app = await ApplicationRepository(session).get(app_id)
        if org is None:
            raise NotFound(f"Organization {org_id} not found")
        return org.slug, app.title if app is not None else app_id

    async def _assign_default_hostname(self, record: OrgAppRecord, org_slug: str, app_title: str) -> OrgAppRecord:
        """Give a hostname-less OrgApp ``{app-title}-{org-slug}`` if that name is free.

        Skipped without error when the suggestion is invalid or held by
        another OrgApp; the instance then keeps the provider's URL.
        """
        org_id, app_id = record.key
        max_length = self._settings.hostname_max_length
        try:
            hostname = validate_hostname(suggest_hostname(app_title, org_slug, max_length), max_length)
        except InvalidFormat:
            return record
        if not await self._store.reserve_hostname(hostname, org_id, app_id):
            logger.info("Default hostname %s for %s/%s is taken; deploying without one", hostname, org_id, app_id)
            return record

        def _assign(current: OrgAppRecord) -> OrgAppRecord | None:
            if current.hostname is not None or not state_machine.accepts_event(current, record.attempt_id):
                return None
            return current.model_copy(update={"hostname": hostname})

        try:
            updated = await self._store.mutate(org_id, app_id, _assign)
        except LifecycleError:
            await self._store.release_hostname(hostname, org_id, app_id)
            return record
        if updated.hostname != hostname:
            await self._store.release_hostname(hostname, org_id, app_id)
            return updated
        logger.info("Assigned default hostname %s to %s/%s", hostname, org_id, app_id)
        return updated

    async def _destroy_quietly(self, machine_ref: str) -> None:
        try:
            await self._provider.destroy(machine_ref)
        except ProviderError as exc:
            logger.warning("Could not destroy instance %s: %s", machine_ref, exc.message)
