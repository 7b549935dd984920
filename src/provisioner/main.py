"""Run entry points for the provisioner.

Exit codes:
    0  every planned resource verified in its desired state
    1  a step exhausted its retries, verification found a mismatch, or an
       unexpected runtime error occurred
    2  configuration or precondition failure (nothing was changed)
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime

import click

from .config import Config
from .context import SystemContext
from .errors import PreconditionError
from .orchestrator import Orchestrator, build_plan
from .probe import ResourceProbe
from .provenance import create_provenance, log_provenance
from .retry import SleepFunc
from .security import check_preconditions
from .spec_loader import SpecLoadError, resolve_spec
from .verifier import ConvergenceVerifier

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_PRECONDITION = 2

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_ATTRS = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    )
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging on stdout."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if isinstance(existing.formatter, JsonFormatter):
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())


def run_provisioning(
    config: Config,
    context: SystemContext,
    *,
    sleep: SleepFunc | None = None,
) -> int:
    """Check preconditions, run the plan, verify, and log provenance.

    Args:
        config: Validated configuration.
        context: Handle to the machine being provisioned.
        sleep: Sleep function for retries and settling (tests pass a no-op).

    Returns:
        Process exit code.
    """
    logger = logging.getLogger(__name__)

    try:
        check_preconditions(config, context)
        spec = resolve_spec(config)
    except (PreconditionError, SpecLoadError) as e:
        click.echo(str(e), err=True)
        return EXIT_PRECONDITION

    plan = build_plan(spec, config.retry, sleep=sleep)
    provenance = create_provenance(
        server=config.server,
        database=spec.database.name,
        site=spec.website.name,
        port=spec.website.port,
    )
    provenance.steps_total = len(plan)
    provenance.public_address = context.public_address()

    logger.info(
        "Starting provisioning",
        extra={
            "server": config.server,
            "database": spec.database.name,
            "site": spec.website.name,
            "port": spec.website.port,
            "steps": len(plan),
        },
    )

    orchestrator = Orchestrator(
        plan,
        context,
        web_root_record=config.web_root_record,
        settle_seconds=config.verify_settle_seconds,
        sleep=sleep,
    )
    try:
        result = orchestrator.run()
    except Exception as e:
        logger.exception("Provisioning run failed unexpectedly", extra={"error": str(e)})
        provenance.record_exception(e)
        log_provenance(provenance)
        click.echo(f"Provisioning failed: {e}", err=True)
        return EXIT_FAILED

    provenance.record_result(result)
    log_provenance(provenance)

    if not result.success:
        click.echo(result.summary(), err=True)
        return EXIT_FAILED

    click.echo(result.summary())
    if result.web_root:
        click.echo(f"Web root: {result.web_root}")
    click.echo(f"Site: http://{provenance.public_address}:{spec.website.port}/")
    if result.restart_required:
        click.echo("A restart is required to complete feature installation.")
    return EXIT_OK


def run_verification(
    config: Config,
    context: SystemContext,
    *,
    sleep: SleepFunc | None = None,
) -> int:
    """Run only the convergence verifier. Never mutates anything."""
    logger = logging.getLogger(__name__)

    try:
        spec = resolve_spec(config)
    except SpecLoadError as e:
        click.echo(str(e), err=True)
        return EXIT_PRECONDITION

    plan = build_plan(spec, config.retry, sleep=sleep)
    verifier = ConvergenceVerifier(ResourceProbe(context), settle_seconds=0, sleep=sleep)
    try:
        report = verifier.verify(plan)
    except Exception as e:
        logger.exception("Verification failed unexpectedly", extra={"error": str(e)})
        click.echo(f"Verification failed: {e}", err=True)
        return EXIT_FAILED

    for entry in report.entries:
        mark = "ok" if entry.matched else "MISMATCH"
        click.echo(f"{mark:>8}  {entry.key}")
    if not report.passed:
        for entry in report.mismatches:
            click.echo(entry.describe(), err=True)
        return EXIT_FAILED
    return EXIT_OK

