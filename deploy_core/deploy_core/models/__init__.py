"""Pydantic domain records shared by the state store and the API services."""

from deploy_core.models.draft import DraftPreviewRecord, DraftStatus, PreviewHandle
from deploy_core.models.orgapp import DeployMode, MemberRecord, MemberRole, OrgAppRecord, OrgAppStatus
from deploy_core.models.progress import STAGE_MESSAGES, DeployStage, ProgressEvent

__all__ = [
    "STAGE_MESSAGES",
    "DeployMode",
    "DeployStage",
    "DraftPreviewRecord",
    "DraftStatus",
    "MemberRecord",
    "MemberRole",
    "OrgAppRecord",
    "OrgAppStatus",
    "PreviewHandle",
    "ProgressEvent",
]
