"""Tests for the web-root record."""

from pathlib import Path

import pytest

from provisioner.artifacts import (
    MAX_RECORD_SIZE_BYTES,
    WebRootRecordError,
    read_web_root,
    resolve_web_root,
    write_web_root,
)


class TestWebRootRecord:
    """Tests for write_web_root and read_web_root."""

    def test_write_then_read(self, tmp_path: Path) -> None:
        """Test that the written path is read back verbatim."""
        record = tmp_path / "out" / "webroot.txt"

        assert write_web_root(record, r"C:\inetpub\WebShells") is True
        assert read_web_root(record) == r"C:\inetpub\WebShells"

    def test_unchanged_record_not_rewritten(self, tmp_path: Path) -> None:
        """Test that writing the same path twice is a no-op."""
        record = tmp_path / "webroot.txt"
        write_web_root(record, r"C:\site")

        assert write_web_root(record, r"C:\site") is False

    def test_changed_record_replaced(self, tmp_path: Path) -> None:
        """Test that a different path replaces the record."""
        record = tmp_path / "webroot.txt"
        write_web_root(record, r"C:\old")

        assert write_web_root(record, r"C:\new") is True
        assert read_web_root(record) == r"C:\new"
        assert [p.name for p in tmp_path.iterdir()] == ["webroot.txt"]

    def test_empty_record_replaced(self, tmp_path: Path) -> None:
        """Test that an unreadable record is overwritten."""
        record = tmp_path / "webroot.txt"
        record.write_text("")

        assert write_web_root(record, r"C:\site") is True
        assert read_web_root(record) == r"C:\site"

    def test_read_missing(self, tmp_path: Path) -> None:
        """Test that a missing record raises."""
        with pytest.raises(WebRootRecordError) as exc_info:
            read_web_root(tmp_path / "absent.txt")

        assert "not found" in str(exc_info.value)

    def test_read_oversized(self, tmp_path: Path) -> None:
        """Test that an oversized record is rejected."""
        record = tmp_path / "webroot.txt"
        record.write_text("C" * (MAX_RECORD_SIZE_BYTES + 1))

        with pytest.raises(WebRootRecordError) as exc_info:
            read_web_root(record)

        assert "exceeds maximum size" in str(exc_info.value)


class TestResolveWebRoot:
    """Tests for resolve_web_root."""

    def test_normalizes(self) -> None:
        """Test separator and dot-segment normalization."""
        assert resolve_web_root("C:/inetpub/./WebShells/") == r"C:\inetpub\WebShells"
