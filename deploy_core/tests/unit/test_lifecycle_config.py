"""Tests for LifecycleSettings environment loading."""

from __future__ import annotations

import pytest
from deploy_core.config import LifecycleSettings, load_lifecycle_settings
from pydantic import ValidationError


class TestLifecycleSettings:
    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        for var in ("LIFECYCLE_DEPLOY_TIMEOUT_SECONDS", "LIFECYCLE_DRAFT_TTL_DAYS", "LIFECYCLE_BASE_DOMAIN"):
            monkeypatch.delenv(var, raising=False)
        settings = LifecycleSettings(_env_file=None)  # type: ignore[call-arg]
        assert settings.deploy_timeout_seconds == 600
        assert settings.draft_ttl_days == 7
        assert settings.base_domain == "go4it.live"
        assert settings.hostname_max_length == 30

    def test_env_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LIFECYCLE_DEPLOY_TIMEOUT_SECONDS", "120")
        monkeypatch.setenv("LIFECYCLE_BASE_DOMAIN", " .Example.COM. ")
        settings = load_lifecycle_settings()
        assert settings.deploy_timeout_seconds == 120
        assert settings.base_domain == "example.com"

    def test_rejects_non_positive(self) -> None:
        with pytest.raises(ValidationError):
            LifecycleSettings(draft_ttl_days=0)
