"""Tests for run preconditions.

These tests verify that a run refuses to start, before any mutation,
when it is not elevated, has no database password, or is missing a
collaborator script.
"""

from __future__ import annotations

from pathlib import Path

import pytest
from system_mock import MockSystemContext

from provisioner.config import Config
from provisioner.errors import ErrorKind, PreconditionError
from provisioner.security import check_preconditions


class TestPreconditions:
    """Tests for check_preconditions."""

    def test_all_preconditions_met(self, scripts_dir: Path) -> None:
        """Test that a complete setup passes."""
        config = Config(password="s3cret", scripts_dir=scripts_dir)

        check_preconditions(config, MockSystemContext.fresh())

    def test_missing_password(self, scripts_dir: Path) -> None:
        """Test that an empty password is fatal."""
        config = Config(password="", scripts_dir=scripts_dir)

        with pytest.raises(PreconditionError) as exc_info:
            check_preconditions(config, MockSystemContext.fresh())

        assert "password is required" in str(exc_info.value)
        assert exc_info.value.kind == ErrorKind.PRECONDITION

    def test_not_administrator(self, scripts_dir: Path) -> None:
        """Test that an unelevated process is rejected."""
        config = Config(password="x", scripts_dir=scripts_dir)

        with pytest.raises(PreconditionError) as exc_info:
            check_preconditions(config, MockSystemContext.fresh(administrator=False))

        assert "Administrator privileges are required" in str(exc_info.value)

    def test_admin_check_can_be_disabled(self, scripts_dir: Path) -> None:
        """Test require_admin=False skips the elevation check."""
        config = Config(password="x", scripts_dir=scripts_dir, require_admin=False)

        check_preconditions(config, MockSystemContext.fresh(administrator=False))

    def test_missing_scripts(self, tmp_path: Path) -> None:
        """Test that both missing scripts are reported."""
        config = Config(password="x", scripts_dir=tmp_path)

        with pytest.raises(PreconditionError) as exc_info:
            check_preconditions(config, MockSystemContext.fresh())

        message = str(exc_info.value)
        assert "Install-Features.ps1" in message
        assert "New-StatusPage.ps1" in message

    def test_all_problems_reported(self, tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
        """Test that every failed precondition is logged and reported together."""
        config = Config(password="", scripts_dir=tmp_path)

        with caplog.at_level("CRITICAL"):
            with pytest.raises(PreconditionError) as exc_info:
                check_preconditions(config, MockSystemContext.fresh(administrator=False))

        assert str(exc_info.value).count("\n  - ") == 4
        assert len([r for r in caplog.records if r.levelname == "CRITICAL"]) == 4
