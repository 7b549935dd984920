"""Preconditions checked before any resource is touched.

PRECONDITIONS:
1. The process runs elevated (IIS and feature installation need it)
2. A database password was supplied
3. Both collaborator scripts are present

A failed precondition aborts the run before the first mutation.
"""

from __future__ import annotations

import logging

from .config import Config
from .context import SystemContext
from .errors import PreconditionError

logger = logging.getLogger(__name__)


def check_preconditions(config: Config, context: SystemContext) -> None:
    """Verify every precondition, reporting all failures at once.

    Raises:
        PreconditionError: If any precondition does not hold.
    """
    problems: list[str] = []

    if not config.password:
        problems.append(
            "Database password is required (--password or PROVISIONER_DB_PASSWORD)"
        )

    for script in (config.install_features_script, config.status_page_script):
        if not script.is_file():
            problems.append(f"Collaborator script not found: {script}")

    if config.require_admin and not context.is_administrator():
        problems.append("Administrator privileges are required")

    if problems:
        for problem in problems:
            logger.critical("Precondition failed", extra={"error": problem})
        raise PreconditionError("Preconditions not met:\n  - " + "\n  - ".join(problems))

    logger.info(
        "Preconditions verified",
        extra={"scripts_dir": str(config.scripts_dir), "require_admin": config.require_admin},
    )
