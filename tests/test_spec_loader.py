"""Tests for provisioning spec loading."""

from pathlib import Path

import pytest
import yaml

from provisioner.config import Config
from provisioner.models import ResourceKind
from provisioner.spec_loader import MAX_SPEC_FILE_SIZE_BYTES, SpecLoadError, load_spec, resolve_spec

SPEC = {
    "features": ["Web-Server", "Web-Asp-Net45"],
    "appPool": {"name": "ShopPool", "runtimeVersion": "v4.0", "pipelineMode": "Classic"},
    "website": {
        "name": "Shop",
        "physicalPath": r"D:\sites\shop",
        "port": 8080,
        "hostHeader": "shop.local",
        "replaceSite": None,
    },
    "database": {
        "name": "ShopDB",
        "table": {
            "name": "Products",
            "columns": [
                {"name": "Sku", "sqlType": "NVARCHAR(32)", "primaryKey": True},
                {"name": "Price", "sqlType": "DECIMAL(10, 2)", "nullable": False},
            ],
            "seedRows": [["A-1", 9.5], ["B-2", 12]],
        },
    },
    "page": {"filename": "status.html"},
}


def _write(path: Path, data: object) -> Path:
    path.write_text(yaml.safe_dump(data))
    return path


class TestLoadSpec:
    """Tests for load_spec."""

    def test_flat_document(self, tmp_path: Path) -> None:
        """Test loading a spec without a wrapper."""
        spec = load_spec(_write(tmp_path / "spec.yaml", SPEC))

        assert spec.website.name == "Shop"
        assert spec.website.port == 8080
        assert spec.website.replace_site is None
        assert spec.app_pool.pipeline_mode == "Classic"
        assert spec.database.table.seed_rows == [["A-1", 9.5], ["B-2", 12]]

        resources = {r.kind: r for r in spec.to_resources()}
        assert resources[ResourceKind.BINDING].name == "Shop:8080"
        assert resources[ResourceKind.PAGE].name == "Shop/status.html"
        assert resources[ResourceKind.SCHEMA_OBJECT].name == "ShopDB.Products"

    def test_wrapped_document(self, tmp_path: Path) -> None:
        """Test loading a spec inside an apiVersion/kind/spec wrapper."""
        wrapped = {"apiVersion": "provisioner/v1", "kind": "WebStack", "spec": SPEC}

        spec = load_spec(_write(tmp_path / "spec.yaml", wrapped))

        assert spec.database.name == "ShopDB"

    def test_wrapped_document_wrong_kind(self, tmp_path: Path) -> None:
        """Test that an envelope for another kind is rejected."""
        wrapped = {"apiVersion": "provisioner/v1", "kind": "Cluster", "spec": SPEC}

        with pytest.raises(SpecLoadError) as exc_info:
            load_spec(_write(tmp_path / "spec.yaml", wrapped))

        assert "Unsupported kind 'Cluster'" in str(exc_info.value)

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test that a missing file raises."""
        with pytest.raises(SpecLoadError) as exc_info:
            load_spec(tmp_path / "absent.yaml")

        assert "not found" in str(exc_info.value)

    def test_oversized_file(self, tmp_path: Path) -> None:
        """Test that oversized files are rejected before parsing."""
        path = tmp_path / "big.yaml"
        path.write_text("#" * (MAX_SPEC_FILE_SIZE_BYTES + 1))

        with pytest.raises(SpecLoadError) as exc_info:
            load_spec(path)

        assert "exceeds maximum size" in str(exc_info.value)

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        """Test that malformed YAML raises."""
        path = tmp_path / "bad.yaml"
        path.write_text("website: [unclosed")

        with pytest.raises(SpecLoadError) as exc_info:
            load_spec(path)

        assert "Invalid YAML" in str(exc_info.value)

    def test_not_a_mapping(self, tmp_path: Path) -> None:
        """Test that a YAML list is rejected."""
        with pytest.raises(SpecLoadError) as exc_info:
            load_spec(_write(tmp_path / "list.yaml", ["a", "b"]))

        assert "must contain a YAML mapping" in str(exc_info.value)

    def test_validation_errors_listed(self, tmp_path: Path) -> None:
        """Test that validation errors name the offending fields."""
        bad = dict(SPEC, website={"name": "Shop", "physicalPath": r"D:\s", "port": 0})

        with pytest.raises(SpecLoadError) as exc_info:
            load_spec(_write(tmp_path / "spec.yaml", bad))

        assert "website.port" in str(exc_info.value)


class TestResolveSpec:
    """Tests for resolve_spec."""

    def test_defaults_from_config(self) -> None:
        """Test that no spec file yields the configured defaults."""
        spec = resolve_spec(Config(password="x", site_name="Portal", port=8081))

        assert spec.website.name == "Portal"
        assert spec.website.port == 8081

    def test_spec_file_wins(self, tmp_path: Path) -> None:
        """Test that a configured spec file overrides target options."""
        path = _write(tmp_path / "spec.yaml", SPEC)

        spec = resolve_spec(Config(password="x", spec_path=path))

        assert spec.website.name == "Shop"
