"""SystemContext for a real Windows Server host.

IIS, service and feature operations run as short PowerShell commands
(WebAdministration, ServerManager and Microsoft.PowerShell.Management
modules) whose structured output comes back through ConvertTo-Json.
Collaborator scripts run as separate processes. The database goes through
pymssql (database.py).

Failures are classified at this boundary:
- PowerShell or a required module missing -> ProbeUnavailable
- "in use" / configuration store busy -> TransientOperationError
- a port held by another site when starting a site -> BindingConflictError
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
from collections.abc import Sequence
from pathlib import Path
from typing import Any
from urllib.error import URLError
from urllib.request import Request, urlopen

from .config import Config
from .context import (
    UNAVAILABLE_ADDRESS,
    AppPoolInfo,
    BindingInfo,
    DatabaseSession,
    ScriptResult,
    ServiceInfo,
    SiteInfo,
    SystemContext,
)
from .database import MssqlSession
from .errors import (
    BindingConflictError,
    ProbeUnavailable,
    ProvisioningError,
    TransientOperationError,
)

logger = logging.getLogger(__name__)

POWERSHELL = "powershell.exe"
COMMAND_TIMEOUT_SECONDS = 120
SCRIPT_TIMEOUT_SECONDS = 1800
PUBLIC_ADDRESS_URL = "https://api.ipify.org"
PUBLIC_ADDRESS_TIMEOUT_SECONDS = 5

IIS_PRELUDE = "$ErrorActionPreference = 'Stop'; Import-Module WebAdministration; "
PRELUDE = "$ErrorActionPreference = 'Stop'; "

# Lower-cased stderr fragments
UNAVAILABLE_MARKERS = (
    "is not recognized as the name of a cmdlet",
    "was not loaded because no valid module file was found",
    "the specified module 'webadministration' was not loaded",
)
TRANSIENT_MARKERS = (
    "being used by another process",
    "0x80070020",
    "cannot commit configuration",
    "object is in use",
    "cannot start service",
    "cannot stop service",
    "timed out",
)
CONFLICT_MARKERS = (
    "0x80070020",
    "0x800700b7",
    "cannot create a file when that file already exists",
    "binding already",
)


def ps_quote(value: str | int) -> str:
    """Single-quote a value for PowerShell."""
    return "'" + str(value).replace("'", "''") + "'"


def parse_script_result(exit_code: int, stdout: str) -> ScriptResult:
    """Read the structured result from the last JSON line of stdout, if any."""
    success: bool | None = None
    restart_needed: bool | None = None
    for line in reversed(stdout.strip().splitlines()):
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            break
        if isinstance(data, dict):
            if "Success" in data:
                success = bool(data["Success"])
            if "RestartNeeded" in data:
                restart_needed = str(data["RestartNeeded"]).lower() in ("true", "yes")
        break
    return ScriptResult(
        exit_code=exit_code, success=success, restart_needed=restart_needed, output=stdout
    )


def _as_list(data: Any) -> list[dict[str, Any]]:
    """ConvertTo-Json emits a bare object for one item and an array for many."""
    if data is None:
        return []
    if isinstance(data, list):
        return [item for item in data if isinstance(item, dict)]
    if isinstance(data, dict):
        return [data]
    return []


class WindowsSystemContext(SystemContext):
    """Drive the local Windows host."""

    def __init__(self, config: Config) -> None:
        self._config = config

    # =========================================================================
    # PowerShell plumbing
    # =========================================================================

    def _run(self, command: str, *, starting_site: bool = False) -> str:
        try:
            completed = subprocess.run(
                [POWERSHELL, "-NoProfile", "-NonInteractive", "-Command", command],
                capture_output=True,
                text=True,
                timeout=COMMAND_TIMEOUT_SECONDS,
                check=False,
            )
        except FileNotFoundError as e:
            raise ProbeUnavailable(f"{POWERSHELL} is not available on this host") from e
        except subprocess.TimeoutExpired as e:
            raise TransientOperationError(
                f"PowerShell command timed out after {COMMAND_TIMEOUT_SECONDS}s"
            ) from e

        if completed.returncode != 0:
            raise self._classify(completed.stderr.strip(), starting_site=starting_site)
        return completed.stdout

    def _classify(self, stderr: str, *, starting_site: bool) -> ProvisioningError:
        text = stderr.lower()
        if any(marker in text for marker in UNAVAILABLE_MARKERS):
            return ProbeUnavailable(stderr)
        # Starting a site whose port is taken reports "in use" (0x80070020)
        if starting_site and any(marker in text for marker in CONFLICT_MARKERS):
            return BindingConflictError(stderr)
        if any(marker in text for marker in TRANSIENT_MARKERS):
            return TransientOperationError(stderr)
        return ProvisioningError(stderr)

    def _query(self, command: str) -> Any:
        output = self._run(command).strip()
        if not output:
            return None
        try:
            return json.loads(output)
        except json.JSONDecodeError as e:
            raise ProbeUnavailable(f"Unexpected PowerShell output: {output[:200]}") from e

    def _run_script(self, script: Path, *args: str) -> ScriptResult:
        cmd = [
            POWERSHELL,
            "-NoProfile",
            "-NonInteractive",
            "-ExecutionPolicy",
            "Bypass",
            "-File",
            str(script),
            *args,
        ]
        logger.info("Running collaborator script", extra={"script": str(script)})
        try:
            completed = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=SCRIPT_TIMEOUT_SECONDS,
                check=False,
            )
        except FileNotFoundError as e:
            raise ProbeUnavailable(f"{POWERSHELL} is not available on this host") from e
        except subprocess.TimeoutExpired as e:
            raise TransientOperationError(
                f"{script.name} timed out after {SCRIPT_TIMEOUT_SECONDS}s"
            ) from e

        result = parse_script_result(completed.returncode, completed.stdout)
        if not result.succeeded:
            logger.warning(
                "Collaborator script reported failure",
                extra={
                    "script": str(script),
                    "exit_code": completed.returncode,
                    "stderr": completed.stderr.strip()[-2000:],
                },
            )
        return result

    # =========================================================================
    # Windows features
    # =========================================================================

    def feature_states(self, names: Sequence[str]) -> dict[str, bool]:
        joined = ",".join(ps_quote(name) for name in names)
        data = self._query(
            PRELUDE
            + f"Get-WindowsFeature -Name {joined} | "
            "Select-Object Name, Installed | ConvertTo-Json -Compress"
        )
        states = {name: False for name in names}
        for item in _as_list(data):
            states[str(item.get("Name"))] = bool(item.get("Installed"))
        return states

    def install_features(self, names: Sequence[str]) -> ScriptResult:
        return self._run_script(self._config.install_features_script, "-Features", ",".join(names))

    # =========================================================================
    # Services
    # =========================================================================

    def get_service(self, name: str) -> ServiceInfo | None:
        data = self._query(
            PRELUDE
            + f"$s = Get-Service -Name {ps_quote(name)} -ErrorAction SilentlyContinue; "
            "if ($s) { [pscustomobject]@{ Name = $s.Name; Status = [string]$s.Status } "
            "| ConvertTo-Json -Compress }"
        )
        if not isinstance(data, dict):
            return None
        return ServiceInfo(name=str(data["Name"]), running=data.get("Status") == "Running")

    def start_service(self, name: str) -> None:
        self._run(PRELUDE + f"Start-Service -Name {ps_quote(name)}")

    def stop_service(self, name: str) -> None:
        self._run(PRELUDE + f"Stop-Service -Name {ps_quote(name)} -Force")

    # =========================================================================
    # Application pools
    # =========================================================================

    def get_app_pool(self, name: str) -> AppPoolInfo | None:
        path = ps_quote(f"IIS:\\AppPools\\{name}")
        data = self._query(
            IIS_PRELUDE
            + f"$p = Get-Item {path} -ErrorAction SilentlyContinue; "
            "if ($p) { [pscustomobject]@{ Name = $p.Name; "
            "Runtime = [string]$p.managedRuntimeVersion; "
            "Pipeline = [string]$p.managedPipelineMode; "
            "State = [string]$p.State } | ConvertTo-Json -Compress }"
        )
        if not isinstance(data, dict):
            return None
        return AppPoolInfo(
            name=str(data["Name"]),
            runtime_version=str(data.get("Runtime", "")),
            pipeline_mode=str(data.get("Pipeline", "")),
            started=data.get("State") == "Started",
        )

    def create_app_pool(self, name: str, runtime_version: str, pipeline_mode: str) -> None:
        path = ps_quote(f"IIS:\\AppPools\\{name}")
        self._run(
            IIS_PRELUDE
            + f"New-WebAppPool -Name {ps_quote(name)} | Out-Null; "
            f"Set-ItemProperty {path} -Name managedRuntimeVersion -Value {ps_quote(runtime_version)}; "
            f"Set-ItemProperty {path} -Name managedPipelineMode -Value {ps_quote(pipeline_mode)}"
        )

    def start_app_pool(self, name: str) -> None:
        self._run(IIS_PRELUDE + f"Start-WebAppPool -Name {ps_quote(name)}")

    def remove_app_pool(self, name: str) -> None:
        self._run(IIS_PRELUDE + f"Remove-WebAppPool -Name {ps_quote(name)}")

    # =========================================================================
    # Websites and bindings
    # =========================================================================

    def _sites(self) -> list[SiteInfo]:
        data = self._query(
            IIS_PRELUDE
            + "@(Get-Website | ForEach-Object { [pscustomobject]@{ "
            "Name = $_.Name; PhysicalPath = $_.PhysicalPath; "
            "ApplicationPool = $_.ApplicationPool; State = [string]$_.State; "
            "Bindings = @($_.Bindings.Collection | ForEach-Object { "
            "[pscustomobject]@{ Protocol = $_.protocol; Info = $_.bindingInformation } }) "
            "} }) | ConvertTo-Json -Compress -Depth 4"
        )
        sites = []
        for item in _as_list(data):
            name = str(item.get("Name"))
            bindings = tuple(
                BindingInfo(
                    site=name,
                    protocol=str(binding.get("Protocol", "")),
                    binding_information=str(binding.get("Info", "")),
                )
                for binding in _as_list(item.get("Bindings"))
            )
            sites.append(
                SiteInfo(
                    name=name,
                    physical_path=str(item.get("PhysicalPath", "")),
                    app_pool=str(item.get("ApplicationPool", "")),
                    started=item.get("State") == "Started",
                    bindings=bindings,
                )
            )
        return sites

    def get_site(self, name: str) -> SiteInfo | None:
        for site in self._sites():
            if site.name == name:
                return site
        return None

    def list_bindings(self, port: int) -> list[BindingInfo]:
        return [
            binding for site in self._sites() for binding in site.bindings if binding.port == port
        ]

    def create_site(self, name: str, physical_path: str, app_pool: str, port: int) -> None:
        self._run(
            IIS_PRELUDE
            + f"New-Item -ItemType Directory -Force -Path {ps_quote(physical_path)} | Out-Null; "
            f"New-Website -Name {ps_quote(name)} -PhysicalPath {ps_quote(physical_path)} "
            f"-ApplicationPool {ps_quote(app_pool)} -Port {int(port)} | Out-Null"
        )

    def start_site(self, name: str) -> None:
        self._run(IIS_PRELUDE + f"Start-Website -Name {ps_quote(name)}", starting_site=True)

    def stop_site(self, name: str) -> None:
        self._run(IIS_PRELUDE + f"Stop-Website -Name {ps_quote(name)}")

    def remove_site(self, name: str) -> None:
        self._run(IIS_PRELUDE + f"Remove-Website -Name {ps_quote(name)}")

    def add_binding(self, site: str, protocol: str, port: int, host_header: str = "") -> None:
        self._run(
            IIS_PRELUDE
            + f"New-WebBinding -Name {ps_quote(site)} -Protocol {ps_quote(protocol)} "
            f"-IPAddress '*' -Port {int(port)} -HostHeader {ps_quote(host_header)}"
        )

    def remove_binding(self, binding: BindingInfo) -> None:
        self._run(
            IIS_PRELUDE
            + f"Remove-WebBinding -Name {ps_quote(binding.site)} "
            f"-Protocol {ps_quote(binding.protocol)} "
            f"-BindingInformation {ps_quote(binding.binding_information)}"
        )

    # =========================================================================
    # Content
    # =========================================================================

    def generate_page(self, physical_path: str, filename: str) -> ScriptResult:
        return self._run_script(
            self._config.status_page_script,
            "-WebRoot",
            physical_path,
            "-FileName",
            filename,
            "-Server",
            self._config.server,
            "-Database",
            self._config.database,
        )

    def file_exists(self, path: str) -> bool:
        return Path(os.path.expandvars(path)).is_file()

    # =========================================================================
    # Database
    # =========================================================================

    def open_database(self, database: str | None = None) -> DatabaseSession:
        return MssqlSession(
            server=self._config.server,
            user=self._config.username,
            password=self._config.password,
            database=database,
        )

    # =========================================================================
    # Environment
    # =========================================================================

    def is_administrator(self) -> bool:
        if os.name != "nt":
            return False
        import ctypes

        try:
            return bool(ctypes.windll.shell32.IsUserAnAdmin())  # type: ignore[attr-defined]
        except (AttributeError, OSError):
            return False

    def public_address(self) -> str:
        request = Request(PUBLIC_ADDRESS_URL, headers={"Accept": "text/plain"})
        try:
            with urlopen(request, timeout=PUBLIC_ADDRESS_TIMEOUT_SECONDS) as response:
                address = response.read(64).decode("ascii", errors="replace").strip()
        except (URLError, OSError, ValueError) as e:
            logger.debug("Public address lookup failed", extra={"error": str(e)})
            return UNAVAILABLE_ADDRESS
        return address or UNAVAILABLE_ADDRESS
