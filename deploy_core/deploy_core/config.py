"""Lifecycle engine configuration loaded from environment variables."""

from __future__ import annotations

import logging

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class LifecycleSettings(BaseSettings):
    """Policy values for the deployment lifecycle, prefixed with ``LIFECYCLE_``."""

    model_config = SettingsConfigDict(
        env_prefix="LIFECYCLE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # A DEPLOYING OrgApp with no progress for this long is failed by the watchdog.
    deploy_timeout_seconds: int = 600

    # Draft previews are destroyed this many days after they are created.
    draft_ttl_days: int = 7

    # Custom hostnames are served as ``{hostname}.{base_domain}``.
    base_domain: str = "go4it.live"

    hostname_max_length: int = 30

    @field_validator("deploy_timeout_seconds", "draft_ttl_days", "hostname_max_length")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("base_domain")
    @classmethod
    def _strip_domain(cls, value: str) -> str:
        return value.strip().strip(".").lower()


def load_lifecycle_settings() -> LifecycleSettings:
    """Construct settings from the environment / ``.env`` file."""
    settings = LifecycleSettings()
    logger.debug(
        "Lifecycle settings: timeout=%ds draft_ttl=%dd domain=%s",
        settings.deploy_timeout_seconds,
        settings.draft_ttl_days,
        settings.base_domain,
    )
    return settings
