"""Progress events relayed from the compute provider to subscribers."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class DeployStage(str, Enum):
    """Milestones reported while a deployment attempt runs."""

    PREPARING = "preparing"
    CREATING = "creating"
    BUILDING = "building"
    DEPLOYING = "deploying"
    CONFIGURING = "configuring"
    RUNNING = "running"
    PREVIEW = "preview"
    FAILED = "failed"


STAGE_MESSAGES: dict[DeployStage, str] = {
    DeployStage.PREPARING: "Preparing your app...",
    DeployStage.CREATING: "Setting up infrastructure...",
    DeployStage.BUILDING: "Building your app (this may take a few minutes)...",
    DeployStage.DEPLOYING: "Starting up...",
    DeployStage.CONFIGURING: "Setting up custom domain...",
    DeployStage.RUNNING: "Your app is live!",
    DeployStage.PREVIEW: "Your preview is ready!",
    DeployStage.FAILED: "Something went wrong.",
}

TERMINAL_STAGES: frozenset[DeployStage] = frozenset({DeployStage.RUNNING, DeployStage.PREVIEW, DeployStage.FAILED})


class ProgressEvent(BaseModel):
    """One milestone of a deployment attempt.

    ``attempt_id`` is the control plane's own monotonic attempt counter,
    not the provider's reference, so subscribers can discard events that
    belong to an older attempt.
    """

    stage: DeployStage
    message: str = ""
    fly_url: str | None = None
    error: str | None = None
    attempt_id: int = Field(default=0, ge=0)

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    @classmethod
    def for_stage(
        cls,
        stage: DeployStage,
        *,
        attempt_id: int,
        message: str | None = None,
        fly_url: str | None = None,
        error: str | None = None,
    ) -> ProgressEvent:
        """Build an event, defaulting the message to the stage's standard text."""
        return cls(
            stage=stage,
            message=message or STAGE_MESSAGES[stage],
            fly_url=fly_url,
            error=error,
            attempt_id=attempt_id,
        )
