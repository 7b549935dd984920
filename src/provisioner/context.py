"""Explicit handle to the machine being provisioned.

Probes and reconcilers never reach for ambient OS state. Everything they
read or change goes through a SystemContext passed in by the caller, so the
orchestration logic runs unchanged against the real machine
(windows.WindowsSystemContext) or a simulated one in tests.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from types import TracebackType

from .models import ColumnSpec, SeedValue

UNAVAILABLE_ADDRESS = "unavailable"


@dataclass(frozen=True)
class BindingInfo:
    """One IIS site binding, e.g. protocol ``http`` on ``*:80:``."""

    site: str
    protocol: str
    binding_information: str

    @property
    def port(self) -> int | None:
        parts = self.binding_information.split(":")
        if len(parts) < 2:
            return None
        try:
            return int(parts[1])
        except ValueError:
            return None

    @property
    def host_header(self) -> str:
        parts = self.binding_information.split(":")
        return parts[2] if len(parts) > 2 else ""


@dataclass(frozen=True)
class SiteInfo:
    name: str
    physical_path: str
    app_pool: str
    started: bool
    bindings: tuple[BindingInfo, ...] = ()

    @property
    def ports(self) -> tuple[int, ...]:
        return tuple(sorted({b.port for b in self.bindings if b.port is not None}))


@dataclass(frozen=True)
class AppPoolInfo:
    name: str
    runtime_version: str
    pipeline_mode: str
    started: bool


@dataclass(frozen=True)
class ServiceInfo:
    name: str
    running: bool


@dataclass(frozen=True)
class ScriptResult:
    """Outcome of a collaborator script.

    success/restart_needed are None when the script printed no structured
    result and only its exit status is known.
    """

    exit_code: int
    success: bool | None = None
    restart_needed: bool | None = None
    output: str = field(default="", compare=False)

    @property
    def succeeded(self) -> bool:
        if self.exit_code != 0:
            return False
        return self.success is not False


class DatabaseSession(ABC):
    """One open connection used for a single logical unit of work."""

    def __enter__(self) -> DatabaseSession:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    @abstractmethod
    def close(self) -> None: ...

    @abstractmethod
    def database_exists(self, name: str) -> bool: ...

    @abstractmethod
    def create_database(self, name: str) -> None: ...

    @abstractmethod
    def table_exists(self, table: str) -> bool: ...

    @abstractmethod
    def table_has_rows(self, table: str) -> bool: ...

    @abstractmethod
    def create_table(self, table: str, columns: Sequence[ColumnSpec]) -> None: ...

    @abstractmethod
    def insert_rows(
        self,
        table: str,
        columns: Sequence[str],
        rows: Sequence[Sequence[SeedValue]],
    ) -> int: ...


class SystemContext(ABC):
    """Operations the provisioner may perform on the target machine.

    Query methods are read-only. A query raises ProbeUnavailable when the
    subsystem behind it cannot be reached. Mutations raise
    TransientOperationError for "still in use" failures and
    BindingConflictError when a port is held elsewhere.
    """

    # Windows features

    @abstractmethod
    def feature_states(self, names: Sequence[str]) -> dict[str, bool]:
        """Map each feature name to its installed flag."""

    @abstractmethod
    def install_features(self, names: Sequence[str]) -> ScriptResult:
        """Install the named features through the collaborator script."""

    # Services

    @abstractmethod
    def get_service(self, name: str) -> ServiceInfo | None: ...

    @abstractmethod
    def start_service(self, name: str) -> None: ...

    @abstractmethod
    def stop_service(self, name: str) -> None: ...

    # Application pools

    @abstractmethod
    def get_app_pool(self, name: str) -> AppPoolInfo | None: ...

    @abstractmethod
    def create_app_pool(self, name: str, runtime_version: str, pipeline_mode: str) -> None: ...

    @abstractmethod
    def start_app_pool(self, name: str) -> None: ...

    @abstractmethod
    def remove_app_pool(self, name: str) -> None: ...

    # Websites and bindings

    @abstractmethod
    def get_site(self, name: str) -> SiteInfo | None: ...

    @abstractmethod
    def list_bindings(self, port: int) -> list[BindingInfo]:
        """All bindings on port, whichever site owns them."""

    @abstractmethod
    def create_site(self, name: str, physical_path: str, app_pool: str, port: int) -> None: ...

    @abstractmethod
    def start_site(self, name: str) -> None: ...

    @abstractmethod
    def stop_site(self, name: str) -> None: ...

    @abstractmethod
    def remove_site(self, name: str) -> None: ...

    @abstractmethod
    def add_binding(self, site: str, protocol: str, port: int, host_header: str = "") -> None: ...

    @abstractmethod
    def remove_binding(self, binding: BindingInfo) -> None: ...

    # Content

    @abstractmethod
    def generate_page(self, physical_path: str, filename: str) -> ScriptResult:
        """Run the page-generation collaborator for the site content root."""

    @abstractmethod
    def file_exists(self, path: str) -> bool: ...

    # Database

    @abstractmethod
    def open_database(self, database: str | None = None) -> DatabaseSession:
        """Open a connection, to the server default database when None."""

    # Environment

    @abstractmethod
    def is_administrator(self) -> bool: ...

    def public_address(self) -> str:
        """Best-effort public address for display. Never raises."""
        return UNAVAILABLE_ADDRESS
