"""OrgApp state transitions.

Every function here is pure: it takes the record the caller read, checks
that the transition is legal, and returns the replacement record.  The
orchestrator persists the result with a compare-and-swap against the
original ``version``, so two callers racing on the same record cannot
both win.

Transition table::

    ADDED, STOPPED  --launch-->   DEPLOYING
    FAILED          --retry-->    DEPLOYING
    PREVIEW         --go_live-->  DEPLOYING
    RUNNING         --update-->   DEPLOYING   (only when drifted)
    RUNNING,PREVIEW --stop-->     STOPPED
    DEPLOYING       --running-->  RUNNING
    DEPLOYING       --preview-->  PREVIEW
    DEPLOYING       --failed-->   FAILED      (provider error or watchdog)
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from deploy_core.errors import AccessRequired, AlreadyInProgress, InvalidTransition
from deploy_core.lifecycle.hostnames import hostname_url
from deploy_core.models.orgapp import DeployMode, OrgAppRecord, OrgAppStatus
from deploy_core.models.progress import STAGE_MESSAGES, DeployStage, ProgressEvent


class LifecycleAction(str, Enum):
    """Caller-initiated actions that start a deployment attempt."""

    LAUNCH = "launch"
    RETRY = "retry"
    GO_LIVE = "go_live"
    UPDATE = "update"


ALLOWED_SOURCES: dict[LifecycleAction, frozenset[OrgAppStatus]] = {
    LifecycleAction.LAUNCH: frozenset({OrgAppStatus.ADDED, OrgAppStatus.STOPPED}),
    LifecycleAction.RETRY: frozenset({OrgAppStatus.FAILED}),
    LifecycleAction.GO_LIVE: frozenset({OrgAppStatus.PREVIEW}),
    LifecycleAction.UPDATE: frozenset({OrgAppStatus.RUNNING}),
}

# Update re-deploys an instance that is already serving; the access gate
# only applies to actions that bring a new instance up.
_ACCESS_GATED: frozenset[LifecycleAction] = frozenset(
    {LifecycleAction.LAUNCH, LifecycleAction.RETRY, LifecycleAction.GO_LIVE}
)


def begin_attempt(
    record: OrgAppRecord,
    action: LifecycleAction,
    *,
    now: datetime,
    preview: bool = False,
) -> OrgAppRecord:
    """Move *record* into DEPLOYING for a new attempt.

    Parameters
    ----------
    record:
        The OrgApp as read from the store.
    action:
        Which caller action is starting the attempt.
    now:
        Timestamp recorded as the attempt's first progress.
    preview:
        Deploy in preview-only mode.  Only meaningful for ``LAUNCH``.

    Returns
    -------
    OrgAppRecord
        The DEPLOYING record with ``attempt_id`` incremented and the
        target version captured.

    Raises
    ------
    AlreadyInProgress
        If the record is already DEPLOYING.
    InvalidTransition
        If *action* is not allowed from the current status, or an update
        was requested for an instance that is not drifted.
    AccessRequired
        If the action brings up a new instance and no member has access.
    """
    if record.status == OrgAppStatus.DEPLOYING:
        raise AlreadyInProgress(f"App {record.app_id} is already being deployed")

    if record.status not in ALLOWED_SOURCES[action]:
        raise InvalidTransition(f"Cannot {action.value.replace('_', ' ')} an app that is {record.status.value}")

    if action == LifecycleAction.UPDATE and not record.needs_update:
        raise InvalidTransition(f"App {record.app_id} is already up to date (version {record.latest_version})")

    if action in _ACCESS_GATED and not record.access_member_ids:
        raise AccessRequired("Choose at least one team member who can use this app before launching")

    if action == LifecycleAction.GO_LIVE:
        mode = DeployMode.GO_LIVE
    elif preview and action == LifecycleAction.LAUNCH:
        mode = DeployMode.PREVIEW
    else:
        mode = DeployMode.PRODUCTION

    return record.model_copy(
        update={
            "status": OrgAppStatus.DEPLOYING,
            "attempt_id": record.attempt_id + 1,
            "attempt_target_version": record.latest_version,
            "attempt_mode": mode,
            "provider_attempt_ref": None,
            "last_error": None,
            "status_message": STAGE_MESSAGES[DeployStage.PREPARING],
            "last_progress_at": now,
        }
    )


def accepts_event(record: OrgAppRecord, attempt_id: int) -> bool:
    """True if an event for *attempt_id* may still change *record*."""
    return record.status == OrgAppStatus.DEPLOYING and record.attempt_id == attempt_id


def apply_event(
    record: OrgAppRecord,
    event: ProgressEvent,
    *,
    now: datetime,
    instance_id: str | None = None,
    base_domain: str | None = None,
) -> OrgAppRecord:
    """Fold one provider milestone into a DEPLOYING record.

    Callers must check :func:`accepts_event` first; this function raises
    ``InvalidTransition`` for a record that is no longer deploying.
    """
    if record.status != OrgAppStatus.DEPLOYING:
        raise InvalidTransition(f"App {record.app_id} is not deploying")

    if event.stage == DeployStage.FAILED:
        return fail_attempt(record, event.error or event.message or STAGE_MESSAGES[DeployStage.FAILED], now=now)

    if event.stage in (DeployStage.RUNNING, DeployStage.PREVIEW):
        preview_only = record.attempt_mode == DeployMode.PREVIEW or event.stage == DeployStage.PREVIEW
        status = OrgAppStatus.PREVIEW if preview_only else OrgAppStatus.RUNNING
        deploy_url = event.fly_url or record.deploy_url
        if status == OrgAppStatus.RUNNING and record.hostname and base_domain:
            deploy_url = hostname_url(record.hostname, base_domain)
        return record.model_copy(
            update={
                "status": status,
                "deployed_version": record.attempt_target_version or record.latest_version,
                "machine_ref": instance_id or record.machine_ref or record.provider_attempt_ref,
                "deploy_url": deploy_url,
                "deployed_at": now,
                "last_progress_at": now,
                "last_error": None,
                "status_message": event.message or STAGE_MESSAGES[event.stage],
            }
        )

    return record.model_copy(
        update={
            "status_message": event.message or STAGE_MESSAGES[event.stage],
            "last_progress_at": now,
        }
    )


def fail_attempt(record: OrgAppRecord, message: str, *, now: datetime) -> OrgAppRecord:
    """Resolve the current attempt as FAILED with *message* recorded."""
    if record.status != OrgAppStatus.DEPLOYING:
        raise InvalidTransition(f"App {record.app_id} is not deploying")
    return record.model_copy(
        update={
            "status": OrgAppStatus.FAILED,
            "last_error": message,
            "status_message": STAGE_MESSAGES[DeployStage.FAILED],
            "last_progress_at": now,
        }
    )


def stop(record: OrgAppRecord, *, now: datetime) -> OrgAppRecord:
    """Take a RUNNING or PREVIEW instance down; the OrgApp can be launched again."""
    if record.status not in (OrgAppStatus.RUNNING, OrgAppStatus.PREVIEW):
        raise InvalidTransition(f"Cannot stop an app that is {record.status.value}")
    return record.model_copy(
        update={
            "status": OrgAppStatus.STOPPED,
            "machine_ref": None,
            "deploy_url": None,
            "status_message": "Stopped",
            "last_progress_at": now,
        }
    )


def snapshot_event(record: OrgAppRecord) -> ProgressEvent:
    """Synthesize the progress event that describes *record* right now."""
    if record.status == OrgAppStatus.RUNNING:
        stage = DeployStage.RUNNING
    elif record.status == OrgAppStatus.PREVIEW:
        stage = DeployStage.PREVIEW
    elif record.status == OrgAppStatus.FAILED:
        stage = DeployStage.FAILED
    elif record.status == OrgAppStatus.DEPLOYING:
        stage = _stage_for_message(record.status_message)
    else:
        stage = DeployStage.PREPARING
    default_message = STAGE_MESSAGES[stage] if record.attempt_id else "Not deployed yet"
    return ProgressEvent(
        stage=stage,
        message=record.status_message or default_message,
        fly_url=record.deploy_url if stage in (DeployStage.RUNNING, DeployStage.PREVIEW) else None,
        error=record.last_error if stage == DeployStage.FAILED else None,
        attempt_id=record.attempt_id,
    )


def _stage_for_message(message: str | None) -> DeployStage:
    for stage, text in STAGE_MESSAGES.items():
        if text == message:
            return stage
    return DeployStage.PREPARING
