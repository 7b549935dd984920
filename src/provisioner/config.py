"""Configuration management with validation.

Every run is configured from command-line options or PROVISIONER_*
environment variables. Validation happens at construction time so that a
bad configuration fails before any resource is touched.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Retry defaults observed for IIS and the service manager settling
DEFAULT_MAX_ATTEMPTS = 3
MIN_MAX_ATTEMPTS = 1
MAX_MAX_ATTEMPTS = 10

DEFAULT_RETRY_DELAY_SECONDS = 2.0
DEFAULT_SERVICE_DELAY_SECONDS = 5.0
MAX_RETRY_DELAY_SECONDS = 60.0

DEFAULT_VERIFY_SETTLE_SECONDS = 2.0

# Target defaults
DEFAULT_SERVER = "localhost"
DEFAULT_DATABASE = "WebShellsDB"
DEFAULT_USERNAME = "sa"
DEFAULT_SITE_NAME = "WebShells"
DEFAULT_APP_POOL = "WebShellsPool"
DEFAULT_PORT = 80
DEFAULT_PHYSICAL_PATH = r"C:\inetpub\WebShells"
DEFAULT_SITE_TO_REMOVE = "Default Web Site"
DEFAULT_SCRIPTS_DIR = "scripts"
DEFAULT_WEB_ROOT_RECORD = "webroot.txt"

MAX_NAME_LENGTH = 128
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@dataclass(frozen=True)
class RetrySettings:
    """Bounded fixed-delay retry configuration.

    service_delay_seconds applies to service start/stop, which settles
    more slowly than the IIS configuration store.
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS
    service_delay_seconds: float = DEFAULT_SERVICE_DELAY_SECONDS


@dataclass(frozen=True)
class Config:
    """Provisioner configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    The password is the only value without a default.
    """

    password: str

    # Database target
    server: str = DEFAULT_SERVER
    database: str = DEFAULT_DATABASE
    username: str = DEFAULT_USERNAME

    # Web tier target
    site_name: str = DEFAULT_SITE_NAME
    app_pool: str = DEFAULT_APP_POOL
    port: int = DEFAULT_PORT
    physical_path: str = DEFAULT_PHYSICAL_PATH
    default_site_name: str = DEFAULT_SITE_TO_REMOVE

    # Files
    scripts_dir: Path = field(default_factory=lambda: Path(DEFAULT_SCRIPTS_DIR))
    web_root_record: Path = field(default_factory=lambda: Path(DEFAULT_WEB_ROOT_RECORD))
    spec_path: Path | None = None

    # Timing
    retry: RetrySettings = field(default_factory=RetrySettings)
    verify_settle_seconds: float = DEFAULT_VERIFY_SETTLE_SECONDS

    # Behavior
    require_admin: bool = True
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        # An empty password is a precondition failure, see security.py
        for label, value in (
            ("server", self.server),
            ("database", self.database),
            ("username", self.username),
            ("site_name", self.site_name),
            ("app_pool", self.app_pool),
            ("physical_path", self.physical_path),
        ):
            if not value:
                errors.append(f"{label} is required")
            elif len(value) > MAX_NAME_LENGTH:
                errors.append(f"{label} exceeds maximum length of {MAX_NAME_LENGTH}")

        if self.database and not self.database.replace("_", "").isalnum():
            errors.append(f"database must be alphanumeric (underscores allowed): {self.database}")

        if not (1 <= self.port <= 65535):
            errors.append(f"port must be between 1 and 65535: {self.port}")

        if self.default_site_name and self.default_site_name == self.site_name:
            errors.append("default_site_name must differ from site_name")

        if not (MIN_MAX_ATTEMPTS <= self.retry.max_attempts <= MAX_MAX_ATTEMPTS):
            errors.append(
                f"max_attempts must be between {MIN_MAX_ATTEMPTS} and {MAX_MAX_ATTEMPTS}"
            )
        for label, delay in (
            ("retry delay", self.retry.delay_seconds),
            ("service retry delay", self.retry.service_delay_seconds),
            ("verify settle", self.verify_settle_seconds),
        ):
            if not (0 <= delay <= MAX_RETRY_DELAY_SECONDS):
                errors.append(f"{label} must be between 0 and {MAX_RETRY_DELAY_SECONDS} seconds")

        if self.log_level.upper() not in LOG_LEVELS:
            errors.append(f"log_level must be one of {LOG_LEVELS}: {self.log_level}")

        if self.spec_path is not None and not self.spec_path.exists():
            errors.append(f"Spec file does not exist: {self.spec_path}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def install_features_script(self) -> Path:
        """Collaborator script that installs missing Windows features."""
        return self.scripts_dir / "Install-Features.ps1"

    @property
    def status_page_script(self) -> Path:
        """Collaborator script that writes the verification page."""
        return self.scripts_dir / "New-StatusPage.ps1"

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            PROVISIONER_DB_PASSWORD: SQL Server password (required at run time)
            PROVISIONER_SERVER: SQL Server instance (default: localhost)
            PROVISIONER_DATABASE: Database name (default: WebShellsDB)
            PROVISIONER_DB_USER: SQL Server login (default: sa)
            PROVISIONER_SITE_NAME: IIS site name (default: WebShells)
            PROVISIONER_APP_POOL: IIS application pool (default: WebShellsPool)
            PROVISIONER_PORT: Site port (default: 80)
            PROVISIONER_PHYSICAL_PATH: Site content directory
            PROVISIONER_SCRIPTS_DIR: Collaborator scripts directory (default: scripts)
            PROVISIONER_WEB_ROOT_RECORD: Web-root record file (default: webroot.txt)
            PROVISIONER_SPEC: Optional YAML provisioning spec
            PROVISIONER_MAX_ATTEMPTS: Attempts per operation (default: 3)
            PROVISIONER_RETRY_DELAY: Seconds between attempts (default: 2)
            PROVISIONER_SERVICE_RETRY_DELAY: Seconds between service attempts (default: 5)
            PROVISIONER_VERIFY_SETTLE: Seconds before verification (default: 2)
            PROVISIONER_REQUIRE_ADMIN: Require elevation (default: true)
            PROVISIONER_LOG_LEVEL: Log level (default: INFO)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        spec_path = os.environ.get("PROVISIONER_SPEC")

        return cls(
            password=os.environ.get("PROVISIONER_DB_PASSWORD", ""),
            server=os.environ.get("PROVISIONER_SERVER", DEFAULT_SERVER),
            database=os.environ.get("PROVISIONER_DATABASE", DEFAULT_DATABASE),
            username=os.environ.get("PROVISIONER_DB_USER", DEFAULT_USERNAME),
            site_name=os.environ.get("PROVISIONER_SITE_NAME", DEFAULT_SITE_NAME),
            app_pool=os.environ.get("PROVISIONER_APP_POOL", DEFAULT_APP_POOL),
            port=get_int("PROVISIONER_PORT", DEFAULT_PORT),
            physical_path=os.environ.get("PROVISIONER_PHYSICAL_PATH", DEFAULT_PHYSICAL_PATH),
            scripts_dir=Path(os.environ.get("PROVISIONER_SCRIPTS_DIR", DEFAULT_SCRIPTS_DIR)),
            web_root_record=Path(
                os.environ.get("PROVISIONER_WEB_ROOT_RECORD", DEFAULT_WEB_ROOT_RECORD)
            ),
            spec_path=Path(spec_path) if spec_path else None,
            retry=RetrySettings(
                max_attempts=get_int("PROVISIONER_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
                delay_seconds=get_float("PROVISIONER_RETRY_DELAY", DEFAULT_RETRY_DELAY_SECONDS),
                service_delay_seconds=get_float(
                    "PROVISIONER_SERVICE_RETRY_DELAY", DEFAULT_SERVICE_DELAY_SECONDS
                ),
            ),
            verify_settle_seconds=get_float(
                "PROVISIONER_VERIFY_SETTLE", DEFAULT_VERIFY_SETTLE_SECONDS
            ),
            require_admin=get_bool("PROVISIONER_REQUIRE_ADMIN", True),
            log_level=os.environ.get("PROVISIONER_LOG_LEVEL", "INFO").upper(),
        )
