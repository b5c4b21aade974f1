"""API router for draft previews of unpublished generated apps.

Drafts belong to the calling user, identified by ``X-User-ID``.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, status

from deploy_api.dependencies import DraftServiceDep, UserDep

router = APIRouter(prefix="/drafts", tags=["drafts"])


@router.post("/{generated_app_id}", status_code=status.HTTP_202_ACCEPTED)
async def deploy_draft(generated_app_id: str, user_id: UserDep, drafts: DraftServiceDep) -> dict[str, Any]:
    """Start a throwaway preview.  It is destroyed automatically when it expires."""
    handle = await drafts.deploy_draft(user_id, generated_app_id)
    return handle.model_dump(mode="json")


@router.get("")
async def list_drafts(user_id: UserDep, drafts: DraftServiceDep) -> list[dict[str, Any]]:
    """The caller's drafts with days until expiry computed now."""
    return [h.model_dump(mode="json") for h in await drafts.list_drafts(user_id)]
