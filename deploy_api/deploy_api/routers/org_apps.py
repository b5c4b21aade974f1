"""API router for an organization's apps and their deployment lifecycle.

Every endpoint requires the caller (``X-User-ID``) to be a member of the
organization in the path.  Adding, removing, deploying and reconfiguring
an OrgApp further require the OWNER or ADMIN role.  Lifecycle actions
answer 202 with the OrgApp as stored after the action; progress then
arrives on ``/stream``.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from deploy_core.models.orgapp import OrgAppRecord
from deploy_core.models.progress import ProgressEvent
from fastapi import APIRouter, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from starlette.background import BackgroundTask

from deploy_api.dependencies import (
    AccessServiceDep,
    AdminDep,
    CatalogServiceDep,
    ForkServiceDep,
    MemberDep,
    OrchestratorDep,
    SubdomainServiceDep,
    VersionTrackerDep,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orgs/{org_id}/apps", tags=["org-apps"])


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class AddAppRequest(BaseModel):
    app_id: str = Field(..., min_length=1, max_length=64, description="Catalog application to add.")


class LaunchRequest(BaseModel):
    preview: bool = Field(False, description="Deploy as a preview only; promote later with go-live.")


class AccessRequest(BaseModel):
    member_ids: list[str] = Field(default_factory=list, description="Full replacement set of user ids.")


class SubdomainRequest(BaseModel):
    hostname: str = Field(..., min_length=1, max_length=64, description="Requested subdomain label.")


def _record_to_dict(record: OrgAppRecord) -> dict[str, Any]:
    return record.model_dump(mode="json", exclude={"version"})


def _sse_frame(event: ProgressEvent) -> str:
    return f"data: {json.dumps(event.model_dump(mode='json'))}\n\n"


# Sent after the terminal event.  A stream that closes without it ended
# early: the client should re-fetch the OrgApp rather than assume failure.
_END_FRAME = "event: end\ndata: {}\n\n"


# ---------------------------------------------------------------------------
# OrgApps
# ---------------------------------------------------------------------------


@router.get("")
async def list_org_apps(org_id: str, _user: MemberDep, catalog: CatalogServiceDep) -> list[dict[str, Any]]:
    """List the organization's apps with status and drift."""
    return [_record_to_dict(r) for r in await catalog.list_org_apps(org_id)]


@router.post("", status_code=status.HTTP_201_CREATED)
async def add_app(org_id: str, body: AddAppRequest, _user: AdminDep, catalog: CatalogServiceDep) -> dict[str, Any]:
    """Add a catalog app to the organization; every member gets access."""
    return _record_to_dict(await catalog.add_app_to_org(org_id, body.app_id))


@router.get("/{app_id}")
async def get_org_app(org_id: str, app_id: str, _user: MemberDep, catalog: CatalogServiceDep) -> dict[str, Any]:
    return _record_to_dict(await catalog.get_org_app(org_id, app_id))


@router.delete("/{app_id}")
async def remove_org_app(
    org_id: str, app_id: str, _user: AdminDep, orchestrator: OrchestratorDep
) -> dict[str, Any]:
    """Remove the app: releases its hostname and destroys its instance."""
    removed = await orchestrator.remove(org_id, app_id)
    return {"removed": True, "org_id": removed.org_id, "app_id": removed.app_id}


# ---------------------------------------------------------------------------
# Lifecycle actions
# ---------------------------------------------------------------------------


@router.post("/{app_id}/launch", status_code=status.HTTP_202_ACCEPTED)
async def launch(
    org_id: str,
    app_id: str,
    _user: AdminDep,
    orchestrator: OrchestratorDep,
    body: LaunchRequest | None = None,
) -> dict[str, Any]:
    preview = body.preview if body is not None else False
    return _record_to_dict(await orchestrator.launch(org_id, app_id, preview=preview))


@router.post("/{app_id}/retry", status_code=status.HTTP_202_ACCEPTED)
async def retry(org_id: str, app_id: str, _user: AdminDep, orchestrator: OrchestratorDep) -> dict[str, Any]:
    return _record_to_dict(await orchestrator.retry(org_id, app_id))


@router.post("/{app_id}/go-live", status_code=status.HTTP_202_ACCEPTED)
async def go_live(org_id: str, app_id: str, _user: AdminDep, orchestrator: OrchestratorDep) -> dict[str, Any]:
    return _record_to_dict(await orchestrator.go_live(org_id, app_id))


@router.post("/{app_id}/update", status_code=status.HTTP_202_ACCEPTED)
async def update(org_id: str, app_id: str, _user: AdminDep, orchestrator: OrchestratorDep) -> dict[str, Any]:
    """Re-deploy a running app that is behind the latest published version."""
    return _record_to_dict(await orchestrator.update(org_id, app_id))


@router.post("/{app_id}/stop")
async def stop(org_id: str, app_id: str, _user: AdminDep, orchestrator: OrchestratorDep) -> dict[str, Any]:
    return _record_to_dict(await orchestrator.stop(org_id, app_id))


@router.post("/{app_id}/modify")
async def modify(org_id: str, app_id: str, user_id: MemberDep, forks: ForkServiceDep) -> dict[str, Any]:
    """Return the generated app to edit, forking it first unless the org owns it."""
    result = await forks.modify(org_id, app_id, user_id=user_id)
    return result.model_dump(mode="json")


@router.get("/{app_id}/version")
async def version_status(
    org_id: str, app_id: str, _user: MemberDep, versions: VersionTrackerDep
) -> dict[str, Any]:
    return (await versions.status(org_id, app_id)).model_dump(mode="json")


# ---------------------------------------------------------------------------
# Access and subdomain
# ---------------------------------------------------------------------------


@router.get("/{app_id}/access")
async def get_access(org_id: str, app_id: str, _user: MemberDep, access: AccessServiceDep) -> list[dict[str, Any]]:
    return [m.model_dump(mode="json") for m in await access.get_access(org_id, app_id)]


@router.put("/{app_id}/access")
async def set_access(
    org_id: str, app_id: str, body: AccessRequest, _user: AdminDep, access: AccessServiceDep
) -> dict[str, Any]:
    """Replace who may use the app.  Every id must be a member of the organization."""
    return _record_to_dict(await access.set_access(org_id, app_id, body.member_ids))


@router.get("/{app_id}/subdomain")
async def get_subdomain(
    org_id: str, app_id: str, _user: MemberDep, subdomains: SubdomainServiceDep
) -> dict[str, Any]:
    """Current hostname plus a suggested one and whether it is free."""
    return (await subdomains.suggest(org_id, app_id)).model_dump(mode="json")


@router.put("/{app_id}/subdomain")
async def set_subdomain(
    org_id: str, app_id: str, body: SubdomainRequest, _user: AdminDep, subdomains: SubdomainServiceDep
) -> dict[str, Any]:
    return _record_to_dict(await subdomains.reserve(org_id, app_id, body.hostname))


# ---------------------------------------------------------------------------
# Progress stream
# ---------------------------------------------------------------------------


@router.get("/{app_id}/stream")
async def stream_progress(
    org_id: str, app_id: str, _user: MemberDep, orchestrator: OrchestratorDep
) -> StreamingResponse:
    """Server-sent events: the current state, then live progress until a terminal stage.

    Each event is a ``data: {json}`` frame.  A final ``event: end`` frame
    marks natural termination; a stream that closes without it means the
    outcome is unknown and the client should re-fetch the app.
    Disconnecting never cancels the deployment.
    """
    events = orchestrator.progress(org_id, app_id)
    # Pull the first event before responding so a missing app is a 404, not an empty stream.
    first = await anext(events)

    async def _frames() -> AsyncIterator[str]:
        try:
            yield _sse_frame(first)
            async for event in events:
                yield _sse_frame(event)
            yield _END_FRAME
        finally:
            await events.aclose()

    return StreamingResponse(
        _frames(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        # Closes the subscription when the client leaves before the body starts.
        background=BackgroundTask(events.aclose),
    )
