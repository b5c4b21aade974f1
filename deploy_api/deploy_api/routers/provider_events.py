"""Callback endpoint the compute provider pushes progress events to.

Events are matched to an OrgApp attempt first and to a draft preview
otherwise.  An event nobody recognises gets a 404 so the provider's
delivery retry can bring it back once the attempt reference is stored.
"""

from __future__ import annotations

import hmac
import logging
from typing import Annotated, Any

from fastapi import APIRouter, Header, HTTPException, status
from fastapi.responses import JSONResponse

from deploy_api.dependencies import DraftServiceDep, OrchestratorDep, SettingsDep
from deploy_api.middleware.prometheus import PROVIDER_EVENTS_TOTAL
from deploy_api.services.provider_client import EventDisposition, ProviderEvent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/provider", tags=["provider"])


@router.post("/events", status_code=status.HTTP_202_ACCEPTED, response_model=None)
async def receive_provider_event(
    event: ProviderEvent,
    settings: SettingsDep,
    orchestrator: OrchestratorDep,
    drafts: DraftServiceDep,
    x_provider_token: Annotated[str | None, Header()] = None,
) -> dict[str, Any] | JSONResponse:
    """Apply one provider milestone and report what happened to it."""
    secret = settings.provider_callback_secret.get_secret_value()
    if secret and not hmac.compare_digest((x_provider_token or "").encode(), secret.encode()):
        logger.warning("Rejected provider event for attempt %s: bad callback token", event.attempt_id)
        raise HTTPException(status_code=401, detail="Invalid provider token")

    disposition = await orchestrator.handle_provider_event(event)
    if disposition == EventDisposition.UNKNOWN:
        disposition = await drafts.handle_provider_event(event)

    PROVIDER_EVENTS_TOTAL.labels(disposition=disposition.value).inc()
    body = {"attempt_id": event.attempt_id, "disposition": disposition.value}
    if disposition == EventDisposition.UNKNOWN:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content=body)
    return body
