"""Provisioner CLI.

Usage:
    provisioner apply --password <pw>     # Converge the host, then verify
    provisioner verify --password <pw>    # Verify only, change nothing
    provisioner web-root                  # Print the recorded web root
"""

from __future__ import annotations

import sys
from pathlib import Path

import click

from .artifacts import WebRootRecordError, read_web_root
from .config import (
    DEFAULT_APP_POOL,
    DEFAULT_DATABASE,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_PHYSICAL_PATH,
    DEFAULT_PORT,
    DEFAULT_RETRY_DELAY_SECONDS,
    DEFAULT_SCRIPTS_DIR,
    DEFAULT_SERVER,
    DEFAULT_SERVICE_DELAY_SECONDS,
    DEFAULT_SITE_NAME,
    DEFAULT_SITE_TO_REMOVE,
    DEFAULT_USERNAME,
    DEFAULT_VERIFY_SETTLE_SECONDS,
    DEFAULT_WEB_ROOT_RECORD,
    LOG_LEVELS,
    Config,
    ConfigurationError,
    RetrySettings,
)
from .main import EXIT_PRECONDITION, run_provisioning, run_verification, setup_logging
from .windows import WindowsSystemContext

VERSION = "0.1.0"


def target_options(func):  # type: ignore[no-untyped-def]
    """Options shared by apply and verify."""
    options = [
        click.option(
            "--server", "-S", envvar="PROVISIONER_SERVER", default=DEFAULT_SERVER,
            show_default=True, help="SQL Server instance",
        ),
        click.option(
            "--database", "-d", envvar="PROVISIONER_DATABASE", default=DEFAULT_DATABASE,
            show_default=True, help="Database name",
        ),
        click.option(
            "--username", "-U", envvar="PROVISIONER_DB_USER", default=DEFAULT_USERNAME,
            show_default=True, help="SQL Server login",
        ),
        click.option(
            "--password", "-P", envvar="PROVISIONER_DB_PASSWORD", default="",
            help="SQL Server password (required)",
        ),
        click.option(
            "--site-name", envvar="PROVISIONER_SITE_NAME", default=DEFAULT_SITE_NAME,
            show_default=True, help="IIS site name",
        ),
        click.option(
            "--app-pool", envvar="PROVISIONER_APP_POOL", default=DEFAULT_APP_POOL,
            show_default=True, help="IIS application pool",
        ),
        click.option(
            "--port", "-p", envvar="PROVISIONER_PORT", type=int, default=DEFAULT_PORT,
            show_default=True, help="Site port",
        ),
        click.option(
            "--physical-path", envvar="PROVISIONER_PHYSICAL_PATH",
            default=DEFAULT_PHYSICAL_PATH, show_default=True, help="Site content directory",
        ),
        click.option(
            "--replace-site", envvar="PROVISIONER_REPLACE_SITE", default=DEFAULT_SITE_TO_REMOVE,
            show_default=True, help="Site removed so the port is free",
        ),
        click.option(
            "--spec", "spec_path", envvar="PROVISIONER_SPEC", type=click.Path(path_type=Path),
            default=None, help="YAML provisioning spec (overrides the target options)",
        ),
        click.option(
            "--scripts-dir", envvar="PROVISIONER_SCRIPTS_DIR", type=click.Path(path_type=Path),
            default=DEFAULT_SCRIPTS_DIR, show_default=True, help="Collaborator scripts",
        ),
        click.option(
            "--web-root-record", envvar="PROVISIONER_WEB_ROOT_RECORD",
            type=click.Path(path_type=Path), default=DEFAULT_WEB_ROOT_RECORD,
            show_default=True, help="Where the resolved web root is recorded",
        ),
        click.option(
            "--max-attempts", envvar="PROVISIONER_MAX_ATTEMPTS", type=int,
            default=DEFAULT_MAX_ATTEMPTS, show_default=True, help="Attempts per operation",
        ),
        click.option(
            "--retry-delay", envvar="PROVISIONER_RETRY_DELAY", type=float,
            default=DEFAULT_RETRY_DELAY_SECONDS, show_default=True,
            help="Seconds between attempts",
        ),
        click.option(
            "--service-retry-delay", envvar="PROVISIONER_SERVICE_RETRY_DELAY", type=float,
            default=DEFAULT_SERVICE_DELAY_SECONDS, show_default=True,
            help="Seconds between service attempts",
        ),
        click.option(
            "--verify-settle", envvar="PROVISIONER_VERIFY_SETTLE", type=float,
            default=DEFAULT_VERIFY_SETTLE_SECONDS, show_default=True,
            help="Seconds to wait before verification",
        ),
        click.option(
            "--require-admin/--no-require-admin", envvar="PROVISIONER_REQUIRE_ADMIN",
            default=True, help="Require administrator privileges",
        ),
        click.option(
            "--log-level", envvar="PROVISIONER_LOG_LEVEL", type=click.Choice(LOG_LEVELS),
            default="INFO", show_default=True,
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def build_config(**options: object) -> Config:
    """Build a validated Config from CLI options.

    Raises:
        click.exceptions.Exit: With the precondition exit code on invalid input.
    """
    try:
        return Config(
            password=str(options["password"] or ""),
            server=str(options["server"]),
            database=str(options["database"]),
            username=str(options["username"]),
            site_name=str(options["site_name"]),
            app_pool=str(options["app_pool"]),
            port=int(options["port"]),  # type: ignore[call-overload]
            physical_path=str(options["physical_path"]),
            default_site_name=str(options["replace_site"] or ""),
            spec_path=options["spec_path"],  # type: ignore[arg-type]
            scripts_dir=options["scripts_dir"],  # type: ignore[arg-type]
            web_root_record=options["web_root_record"],  # type: ignore[arg-type]
            retry=RetrySettings(
                max_attempts=int(options["max_attempts"]),  # type: ignore[call-overload]
                delay_seconds=float(options["retry_delay"]),  # type: ignore[arg-type]
                service_delay_seconds=float(options["service_retry_delay"]),  # type: ignore[arg-type]
            ),
            verify_settle_seconds=float(options["verify_settle"]),  # type: ignore[arg-type]
            require_admin=bool(options["require_admin"]),
            log_level=str(options["log_level"]),
        )
    except ConfigurationError as e:
        click.echo(str(e), err=True)
        raise click.exceptions.Exit(EXIT_PRECONDITION) from e


@click.group()
@click.version_option(version=VERSION, prog_name="provisioner")
def cli() -> None:
    """Provision an IIS website and its SQL Server database idempotently.

    \b
    Quick Start:
        provisioner apply --password <pw>
        provisioner verify --password <pw>
    """
    pass


@cli.command()
@target_options
def apply(**options: object) -> None:
    """Converge every resource, then verify the result independently."""
    config = build_config(**options)
    setup_logging(config.log_level)
    sys.exit(run_provisioning(config, WindowsSystemContext(config)))


@cli.command()
@target_options
def verify(**options: object) -> None:
    """Probe every resource and report mismatches without changing anything."""
    config = build_config(**options)
    setup_logging(config.log_level)
    sys.exit(run_verification(config, WindowsSystemContext(config)))


@cli.command("web-root")
@click.option(
    "--web-root-record", envvar="PROVISIONER_WEB_ROOT_RECORD",
    type=click.Path(path_type=Path), default=DEFAULT_WEB_ROOT_RECORD, show_default=True,
)
def web_root(web_root_record: Path) -> None:
    """Print the web root recorded by the last converged run."""
    try:
        click.echo(read_web_root(web_root_record))
    except WebRootRecordError as e:
        raise click.ClickException(str(e)) from e


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
