"""Tests for the domain records."""

from __future__ import annotations

import pytest
from deploy_core.errors import InvalidMember, LifecycleError, NotFound
from deploy_core.models.orgapp import OrgAppRecord, OrgAppStatus
from deploy_core.models.progress import STAGE_MESSAGES, DeployStage, ProgressEvent
from pydantic import ValidationError


class TestOrgAppRecord:
    def test_defaults(self) -> None:
        record = OrgAppRecord(org_id="o", app_id="a", latest_version="1")
        assert record.status == OrgAppStatus.ADDED
        assert record.access_member_ids == frozenset()
        assert record.attempt_id == 0
        assert record.needs_update is False

    def test_needs_update_is_serialized(self) -> None:
        record = OrgAppRecord(org_id="o", app_id="a", latest_version="2", deployed_version="1")
        dumped = record.model_dump(mode="json")
        assert dumped["needs_update"] is True
        assert dumped["status"] == "ADDED"

    def test_records_are_immutable(self) -> None:
        record = OrgAppRecord(org_id="o", app_id="a", latest_version="1")
        with pytest.raises(ValidationError):
            record.status = OrgAppStatus.RUNNING  # type: ignore[misc]


class TestProgressEvent:
    def test_for_stage_uses_default_message(self) -> None:
        event = ProgressEvent.for_stage(DeployStage.CREATING, attempt_id=2)
        assert event.message == "Setting up infrastructure..."
        assert not event.is_terminal

    @pytest.mark.parametrize("stage", [DeployStage.RUNNING, DeployStage.PREVIEW, DeployStage.FAILED])
    def test_terminal_stages(self, stage: DeployStage) -> None:
        assert ProgressEvent(stage=stage).is_terminal

    def test_every_stage_has_a_message(self) -> None:
        assert set(STAGE_MESSAGES) == set(DeployStage)


class TestErrors:
    def test_kinds_are_stable(self) -> None:
        assert NotFound("x").kind == "NotFound"
        assert isinstance(NotFound("x"), LifecycleError)

    def test_invalid_member_lists_ids(self) -> None:
        err = InvalidMember("bad members", ["u3", "u1"])
        assert err.invalid_ids == ["u1", "u3"]
        assert err.message == "bad members"
