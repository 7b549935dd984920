"""Provisioning spec loading.

A spec file may be a plain mapping of the ProvisioningSpec fields, or the
same mapping nested under ``spec`` in an ``apiVersion``/``kind`` envelope:

    apiVersion: provisioner/v1
    kind: WebStack
    spec:
      appPool: {name: ShopPool}
      website: {name: Shop, physicalPath: 'D:\\sites\\shop', port: 8080}
      database: {name: ShopDB, table: {...}}

Without a spec file the target is built from Config alone.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import Config
from .models import ProvisioningSpec

logger = logging.getLogger(__name__)

MAX_SPEC_FILE_SIZE_BYTES = 256 * 1024
SPEC_KIND = "WebStack"


class SpecLoadError(Exception):
    """Raised when spec loading or validation fails."""

    pass


def _read_document(path: Path) -> Any:
    if not path.is_file():
        raise SpecLoadError(f"Spec file not found: {path}")

    try:
        size = path.stat().st_size
        if size > MAX_SPEC_FILE_SIZE_BYTES:
            raise SpecLoadError(
                f"Spec file {path} is {size} bytes, exceeds maximum size of "
                f"{MAX_SPEC_FILE_SIZE_BYTES}"
            )
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Cannot read spec file {path}: {e}") from e

    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e


def _unwrap(document: Any, path: Path) -> dict[str, Any]:
    """Return the spec body, stripping an apiVersion/kind envelope."""
    if not isinstance(document, dict):
        raise SpecLoadError(f"Spec file must contain a YAML mapping: {path}")

    if "apiVersion" not in document:
        return document

    kind = document.get("kind", SPEC_KIND)
    if kind != SPEC_KIND:
        raise SpecLoadError(f"Unsupported kind '{kind}' in {path}, expected '{SPEC_KIND}'")

    body = document.get("spec")
    if not isinstance(body, dict):
        raise SpecLoadError(f"'spec' section of {path} must be a mapping")
    return body


def format_validation_error(error: ValidationError) -> str:
    """One ``  - field.path: message`` line per pydantic error."""
    return "\n".join(
        "  - {}: {}".format(".".join(str(part) for part in item["loc"]), item["msg"])
        for item in error.errors()
    )


def load_spec(spec_path: Path) -> ProvisioningSpec:
    """Load and validate a provisioning spec from YAML.

    Raises:
        SpecLoadError: If the file is missing, too large, not YAML, not a
            mapping, or does not validate.
    """
    body = _unwrap(_read_document(spec_path), spec_path)

    try:
        spec = ProvisioningSpec.model_validate(body)
    except ValidationError as e:
        raise SpecLoadError(
            f"Validation failed for {spec_path}:\n{format_validation_error(e)}"
        ) from e

    logger.info(
        "Loaded provisioning spec",
        extra={"spec_path": str(spec_path), "site": spec.website.name},
    )
    return spec


def resolve_spec(config: Config) -> ProvisioningSpec:
    """Spec from config.spec_path when set, otherwise derived from config."""
    if config.spec_path is not None:
        return load_spec(config.spec_path)
    try:
        return ProvisioningSpec.from_config(config)
    except ValidationError as e:
        raise SpecLoadError(
            f"Configuration does not form a valid spec:\n{format_validation_error(e)}"
        ) from e
