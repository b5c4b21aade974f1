"""Tests for drift detection and version bumping."""

from __future__ import annotations

import pytest
from deploy_core.lifecycle.versioning import bump_version, needs_update


class TestNeedsUpdate:
    def test_equal_versions_do_not_drift(self) -> None:
        assert needs_update("3", "3") is False

    def test_different_versions_drift(self) -> None:
        assert needs_update("2", "3") is True

    def test_comparison_is_literal(self) -> None:
        # No semantic ordering: "1.0" and "1" are different strings.
        assert needs_update("1.0", "1") is True

    def test_never_deployed_has_nothing_to_update(self) -> None:
        assert needs_update(None, "1") is False


class TestBumpVersion:
    @pytest.mark.parametrize(
        ("current", "expected"),
        [("1", "2"), ("9", "10"), ("1.2.9", "1.2.10"), ("v7", "v8"), ("beta", "beta.1"), ("", "1")],
    )
    def test_bump(self, current: str, expected: str) -> None:
        assert bump_version(current) == expected

    def test_bump_always_drifts(self) -> None:
        assert needs_update("4", bump_version("4"))
