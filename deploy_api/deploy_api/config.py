"""API-layer configuration loaded from environment variables."""

from __future__ import annotations

from enum import Enum

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PlatformEnv(str, Enum):
    DEV = "dev"
    STAGING = "staging"
    PRODUCTION = "production"


class APISettings(BaseSettings):
    """FastAPI application settings.

    All values can be overridden via environment variables prefixed with
    ``DEPLOY_API_`` (e.g. ``DEPLOY_API_PORT=9000``) or a ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_prefix="DEPLOY_API_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False

    # PostgreSQL (asyncpg) in production, sqlite+aiosqlite locally.
    database_url: str = "sqlite+aiosqlite:///.deploy/state.db"

    platform_env: PlatformEnv = PlatformEnv.DEV

    # Compute provider REST API.
    provider_url: str = "http://localhost:8081"
    provider_timeout: float = 30.0
    provider_api_key: SecretStr = SecretStr("")

    # When set, provider callbacks must carry this value in X-Provider-Token.
    provider_callback_secret: SecretStr = SecretStr("")

    # Public base URL the provider calls back on; empty disables callbacks.
    callback_base_url: str = ""

    # Background watchdog / draft-expiry sweep.
    sweep_enabled: bool = True
    sweep_interval_seconds: int = 60

    cors_origins: list[str] = ["http://localhost:3000"]

    # Single-line JSON logs for log aggregators.
    structured_logging: bool = False

    @field_validator("sweep_interval_seconds")
    @classmethod
    def _positive_interval(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("sweep_interval_seconds must be positive")
        return value

    @field_validator("callback_base_url", "provider_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def callback_url(self) -> str | None:
        """Endpoint the provider posts progress events to, if callbacks are enabled."""
        if not self.callback_base_url:
            return None
        return f"{self.callback_base_url}/api/v1/provider/events"


def load_api_settings() -> APISettings:
    """Construct settings from the environment / ``.env`` file."""
    return APISettings()
