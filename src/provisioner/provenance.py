"""Run provenance.

One RunProvenance is created when a provisioning run starts and logged
once when it ends, whatever the outcome. It records the host and targets,
how far the plan got, how many changes were made, and why the run failed.
"""

from __future__ import annotations

import logging
import os
import socket
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .orchestrator import RunResult

logger = logging.getLogger(__name__)

# Stamped by the release build; unset in a source checkout
PROVISIONER_VERSION = os.environ.get("PROVISIONER_VERSION", "dev")


@dataclass
class RunProvenance:
    """Audit record for one provisioning run."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    provisioner_version: str = PROVISIONER_VERSION
    host: str = ""
    public_address: str = ""

    server: str = ""
    database: str = ""
    site: str = ""
    port: int = 0

    final_state: str = "idle"
    steps_total: int = 0
    steps_completed: int = 0
    mutations: int = 0
    restart_required: bool = False
    failed_step: str | None = None
    error_kind: str | None = None
    error: str | None = None
    mismatches: list[str] = field(default_factory=list)

    duration_seconds: float = 0.0

    def record_result(self, result: RunResult) -> None:
        """Copy the outcome of a finished orchestrator run."""
        self.final_state = result.state.value
        self.steps_completed = sum(1 for outcome in result.outcomes if outcome.result.succeeded)
        self.mutations = result.mutations
        self.restart_required = result.restart_required
        self.failed_step = str(result.failed_step) if result.failed_step else None
        self.error_kind = result.reason.value if result.reason else None
        self.error = result.detail
        if result.report is not None:
            self.mismatches = [str(entry.key) for entry in result.report.mismatches]
        self._stop_clock()

    def record_exception(self, error: BaseException) -> None:
        """Mark the run failed by an error the orchestrator did not classify."""
        self.final_state = "failed"
        self.error_kind = type(error).__name__
        self.error = str(error)
        self._stop_clock()

    def _stop_clock(self) -> None:
        self.duration_seconds = (datetime.now(UTC) - self.timestamp).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


def create_provenance(server: str, database: str, site: str, port: int) -> RunProvenance:
    """Start a provenance record for a run against the given targets."""
    return RunProvenance(
        host=os.environ.get("COMPUTERNAME") or socket.gethostname(),
        server=server,
        database=database,
        site=site,
        port=port,
    )


def log_provenance(provenance: RunProvenance) -> None:
    """Emit the record: ERROR for a failed run, WARNING when a restart is pending."""
    if provenance.final_state != "succeeded":
        level = logging.ERROR
    elif provenance.restart_required:
        level = logging.WARNING
    else:
        level = logging.INFO

    logger.log(
        level,
        "Provisioning provenance",
        extra={
            "provenance": provenance.to_dict(),
            "final_state": provenance.final_state,
            "failed_step": provenance.failed_step,
        },
    )
