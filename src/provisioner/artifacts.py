"""Web-root record.

Once the website converges its resolved content directory is written to a
plain-text file. Later, independent processes (page generators, cleanup
tooling) read the path from there instead of querying IIS again.
"""

from __future__ import annotations

import logging
import ntpath
import os
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)

# A path, not a document
MAX_RECORD_SIZE_BYTES = 4096


class WebRootRecordError(Exception):
    """Raised when the web-root record cannot be read or written."""

    pass


def resolve_web_root(physical_path: str) -> str:
    """Expand %VARIABLES% and normalize an IIS physical path."""
    return ntpath.normpath(ntpath.expandvars(physical_path))


def write_web_root(record: Path, web_root: str) -> bool:
    """Write web_root to record atomically.

    Returns:
        True if the file was written, False if it already held web_root.

    Raises:
        WebRootRecordError: If the file cannot be written.
    """
    current: str | None = None
    if record.exists():
        try:
            current = read_web_root(record)
        except WebRootRecordError as e:
            logger.warning(
                "Replacing unreadable web-root record",
                extra={"path": str(record), "error": str(e)},
            )
    if current == web_root:
        logger.debug("Web-root record already current", extra={"path": str(record)})
        return False

    directory = record.parent if str(record.parent) else Path(".")
    try:
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=directory, prefix=f".{record.name}.", suffix=".tmp")
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(web_root + "\n")
        os.replace(tmp_name, record)
    except OSError as e:
        raise WebRootRecordError(f"Failed to write web-root record {record}: {e}") from e

    logger.info("Web-root record written", extra={"path": str(record), "web_root": web_root})
    return True


def read_web_root(record: Path) -> str:
    """Read the web-root path from record.

    Raises:
        WebRootRecordError: If the file is missing, oversized or empty.
    """
    if not record.exists():
        raise WebRootRecordError(f"Web-root record not found: {record}")

    try:
        if record.stat().st_size > MAX_RECORD_SIZE_BYTES:
            raise WebRootRecordError(
                f"Web-root record exceeds maximum size of {MAX_RECORD_SIZE_BYTES} bytes: {record}"
            )
        content = record.read_text(encoding="utf-8").strip()
    except OSError as e:
        raise WebRootRecordError(f"Failed to read web-root record {record}: {e}") from e

    if not content:
        raise WebRootRecordError(f"Web-root record is empty: {record}")
    return content
