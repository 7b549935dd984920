"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for system_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))


@pytest.fixture
def sleeps() -> list[float]:
    """Records every sleep requested by retry policies and the verifier."""
    return []


@pytest.fixture
def sleep(sleeps: list[float]):
    """No-op sleep that records the requested durations."""
    return sleeps.append


@pytest.fixture
def scripts_dir(tmp_path: Path) -> Path:
    """Directory holding both collaborator scripts."""
    directory = tmp_path / "scripts"
    directory.mkdir()
    (directory / "Install-Features.ps1").write_text("param([string[]]$Features)\n")
    (directory / "New-StatusPage.ps1").write_text("param($WebRoot, $FileName)\n")
    return directory


@pytest.fixture
def spec():
    """The default provisioning spec (WebShells on port 80)."""
    from provisioner.config import Config
    from provisioner.models import ProvisioningSpec

    return ProvisioningSpec.from_config(Config(password="x"))


@pytest.fixture
def resources(spec):
    """Default resources keyed by kind."""
    return {resource.kind: resource for resource in spec.to_resources()}
