"""API router for organizations, members and catalog applications."""

from __future__ import annotations

import logging
from typing import Any

from deploy_core.models.orgapp import MemberRole
from fastapi import APIRouter, status
from pydantic import BaseModel, Field

from deploy_api.dependencies import CatalogServiceDep, MemberDep, UserDep, VersionTrackerDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["catalog"])


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class CreateOrgRequest(BaseModel):
    id: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=256)
    slug: str | None = Field(None, max_length=64, description="Defaults to a slug of the name.")
    owner_email: str | None = None
    owner_name: str | None = None


class AddMemberRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=128)
    role: MemberRole = MemberRole.MEMBER
    email: str | None = None
    name: str | None = None


class CreateApplicationRequest(BaseModel):
    id: str = Field(..., min_length=1, max_length=64)
    title: str = Field(..., min_length=1, max_length=256)
    latest_version: str = Field("1", min_length=1, max_length=64)
    generated_app_id: str | None = Field(None, max_length=64)
    owner_org_id: str | None = Field(None, max_length=64, description="Organization that generated the app.")


class PublishRequest(BaseModel):
    version: str | None = Field(None, max_length=64, description="Explicit version; bumped when omitted.")


# ---------------------------------------------------------------------------
# Organizations
# ---------------------------------------------------------------------------


@router.post("/orgs", status_code=status.HTTP_201_CREATED)
async def create_org(body: CreateOrgRequest, user_id: UserDep, catalog: CatalogServiceDep) -> dict[str, Any]:
    """Create an organization owned by the caller."""
    return await catalog.create_org(
        body.id,
        body.name,
        owner_user_id=user_id,
        slug=body.slug,
        owner_email=body.owner_email,
        owner_name=body.owner_name,
    )


@router.get("/orgs/{org_id}")
async def get_org(org_id: str, _user: MemberDep, catalog: CatalogServiceDep) -> dict[str, Any]:
    return await catalog.get_org(org_id)


@router.get("/orgs/{org_id}/members")
async def list_members(org_id: str, _user: MemberDep, catalog: CatalogServiceDep) -> list[dict[str, Any]]:
    return [m.model_dump(mode="json") for m in await catalog.list_members(org_id)]


@router.post("/orgs/{org_id}/members", status_code=status.HTTP_201_CREATED)
async def add_member(
    org_id: str, body: AddMemberRequest, _user: MemberDep, catalog: CatalogServiceDep
) -> dict[str, Any]:
    member = await catalog.add_member(org_id, body.user_id, role=body.role, email=body.email, name=body.name)
    return member.model_dump(mode="json")


@router.delete("/orgs/{org_id}/members/{user_id}")
async def remove_member(org_id: str, user_id: str, _user: MemberDep, catalog: CatalogServiceDep) -> dict[str, Any]:
    """Remove a member; their access to every app in the organization is revoked."""
    revoked = await catalog.remove_member(org_id, user_id)
    return {"removed": True, "user_id": user_id, "access_revoked": revoked}


@router.get("/orgs/{org_id}/outdated")
async def list_outdated(org_id: str, _user: MemberDep, versions: VersionTrackerDep) -> list[dict[str, Any]]:
    """Apps whose deployed version is behind the latest published one."""
    return [r.model_dump(mode="json", exclude={"version"}) for r in await versions.list_outdated(org_id)]


# ---------------------------------------------------------------------------
# Applications
# ---------------------------------------------------------------------------


@router.post("/applications", status_code=status.HTTP_201_CREATED)
async def create_application(
    body: CreateApplicationRequest, user_id: UserDep, catalog: CatalogServiceDep
) -> dict[str, Any]:
    return await catalog.create_application(
        body.id,
        body.title,
        latest_version=body.latest_version,
        generated_app_id=body.generated_app_id,
        owner_org_id=body.owner_org_id,
        created_by=user_id,
    )


@router.get("/applications/{app_id}")
async def get_application(app_id: str, _user: UserDep, catalog: CatalogServiceDep) -> dict[str, Any]:
    return await catalog.get_application(app_id)


@router.post("/applications/{app_id}/publish")
async def publish_update(
    app_id: str, _user: UserDep, versions: VersionTrackerDep, body: PublishRequest | None = None
) -> dict[str, Any]:
    """Publish a new version; every org running the app sees it as an available update."""
    result = await versions.publish_update(app_id, body.version if body is not None else None)
    return result.model_dump(mode="json")
