"""Read-only inspection of resource state.

ResourceProbe.observe() returns an observed-state record for a resource.
Each record knows whether it satisfies the resource's desired state, which
is what the reconciler's idempotency gate and the convergence verifier both
ask. Probing never mutates anything.
"""

from __future__ import annotations

import logging
import ntpath
from dataclasses import asdict, dataclass
from typing import Any, cast

from .context import SystemContext
from .models import (
    AppPoolDesired,
    BindingDesired,
    DatabaseDesired,
    DesiredState,
    FeatureSetDesired,
    PageDesired,
    Resource,
    ResourceKind,
    SchemaDesired,
    ServiceDesired,
    ServiceState,
    WebsiteDesired,
)

logger = logging.getLogger(__name__)


def normalize_path(path: str) -> str:
    """Compare Windows paths case-insensitively and without trailing separators."""
    return ntpath.normcase(ntpath.normpath(path)).rstrip("\\")


class ObservedState:
    """Base for observed-state records."""

    def matches(self, desired: DesiredState) -> bool:
        raise NotImplementedError("Subclasses must implement matches")

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)  # type: ignore[call-overload]


@dataclass(frozen=True)
class FeatureSetObserved(ObservedState):
    installed: tuple[str, ...]
    missing: tuple[str, ...]

    @property
    def all_installed(self) -> bool:
        return not self.missing

    def matches(self, desired: DesiredState) -> bool:
        return self.all_installed


@dataclass(frozen=True)
class ServiceObserved(ObservedState):
    exists: bool
    running: bool

    def matches(self, desired: DesiredState) -> bool:
        want = cast(ServiceDesired, desired)
        return self.exists and self.running == (want.state == ServiceState.RUNNING)


@dataclass(frozen=True)
class AppPoolObserved(ObservedState):
    exists: bool
    runtime_version: str | None = None
    pipeline_mode: str | None = None
    started: bool = False

    def matches(self, desired: DesiredState) -> bool:
        want = cast(AppPoolDesired, desired)
        return (
            self.exists
            and self.runtime_version == want.runtime_version
            and self.pipeline_mode == want.pipeline_mode
            and self.started == want.started
        )


@dataclass(frozen=True)
class WebsiteObserved(ObservedState):
    exists: bool
    physical_path: str | None = None
    app_pool: str | None = None
    ports: tuple[int, ...] = ()
    started: bool = False

    def matches(self, desired: DesiredState) -> bool:
        want = cast(WebsiteDesired, desired)
        if not self.exists or self.physical_path is None:
            return False
        return (
            normalize_path(self.physical_path) == normalize_path(want.physical_path)
            and self.app_pool == want.app_pool
            and want.port in self.ports
            and self.started == want.started
        )


@dataclass(frozen=True)
class BindingObserved(ObservedState):
    """Every binding on the port, as (site, protocol, host header)."""

    port: int
    owners: tuple[tuple[str, str, str], ...]

    def matches(self, desired: DesiredState) -> bool:
        want = cast(BindingDesired, desired)
        return self.owners == ((want.site, want.protocol, want.host_header),)


@dataclass(frozen=True)
class DatabaseObserved(ObservedState):
    exists: bool

    def matches(self, desired: DesiredState) -> bool:
        want = cast(DatabaseDesired, desired)
        return self.exists == want.exists


@dataclass(frozen=True)
class SchemaObserved(ObservedState):
    database_exists: bool
    table_exists: bool = False
    has_rows: bool = False

    def matches(self, desired: DesiredState) -> bool:
        want = cast(SchemaDesired, desired)
        if not (self.database_exists and self.table_exists):
            return False
        return self.has_rows or not want.seed_rows


@dataclass(frozen=True)
class PageObserved(ObservedState):
    site_exists: bool
    path: str | None = None
    exists: bool = False

    def matches(self, desired: DesiredState) -> bool:
        return self.site_exists and self.exists


class ResourceProbe:
    """Observe resources through a SystemContext.

    Raises ProbeUnavailable (from the context) when the subsystem itself
    cannot be queried. That is never retried.
    """

    def __init__(self, context: SystemContext) -> None:
        self._context = context

    def observe(self, resource: Resource) -> ObservedState:
        """Return the current state of resource."""
        desired = resource.desired
        match resource.kind:
            case ResourceKind.FEATURE_SET:
                return self._observe_features(cast(FeatureSetDesired, desired))
            case ResourceKind.SERVICE:
                return self._observe_service(resource.name)
            case ResourceKind.APP_POOL:
                return self._observe_app_pool(resource.name)
            case ResourceKind.WEBSITE:
                return self._observe_website(resource.name)
            case ResourceKind.BINDING:
                return self._observe_binding(cast(BindingDesired, desired).port)
            case ResourceKind.DATABASE:
                return self._observe_database(resource.name)
            case ResourceKind.SCHEMA_OBJECT:
                return self._observe_schema(cast(SchemaDesired, desired))
            case ResourceKind.PAGE:
                return self._observe_page(cast(PageDesired, desired))
            case _:
                raise ValueError(f"Unsupported resource kind: {resource.kind}")

    def in_desired_state(self, resource: Resource) -> bool:
        """Idempotency gate: True when no mutation is needed."""
        observed = self.observe(resource)
        matched = observed.matches(resource.desired)
        logger.debug(
            "Probed resource",
            extra={
                "kind": resource.kind.value,
                "resource": resource.name,
                "matched": matched,
                "observed": observed.as_dict(),
            },
        )
        return matched

    def _observe_features(self, desired: FeatureSetDesired) -> FeatureSetObserved:
        states = self._context.feature_states(desired.features)
        installed = tuple(name for name in desired.features if states.get(name, False))
        missing = tuple(name for name in desired.features if not states.get(name, False))
        return FeatureSetObserved(installed=installed, missing=missing)

    def _observe_service(self, name: str) -> ServiceObserved:
        info = self._context.get_service(name)
        if info is None:
            return ServiceObserved(exists=False, running=False)
        return ServiceObserved(exists=True, running=info.running)

    def _observe_app_pool(self, name: str) -> AppPoolObserved:
        info = self._context.get_app_pool(name)
        if info is None:
            return AppPoolObserved(exists=False)
        return AppPoolObserved(
            exists=True,
            runtime_version=info.runtime_version,
            pipeline_mode=info.pipeline_mode,
            started=info.started,
        )

    def _observe_website(self, name: str) -> WebsiteObserved:
        site = self._context.get_site(name)
        if site is None:
            return WebsiteObserved(exists=False)
        return WebsiteObserved(
            exists=True,
            physical_path=site.physical_path,
            app_pool=site.app_pool,
            ports=site.ports,
            started=site.started,
        )

    def _observe_binding(self, port: int) -> BindingObserved:
        bindings = self._context.list_bindings(port)
        owners = tuple(sorted((b.site, b.protocol, b.host_header) for b in bindings))
        return BindingObserved(port=port, owners=owners)

    def _observe_database(self, name: str) -> DatabaseObserved:
        with self._context.open_database() as session:
            return DatabaseObserved(exists=session.database_exists(name))

    def _observe_schema(self, desired: SchemaDesired) -> SchemaObserved:
        with self._context.open_database() as session:
            database_exists = session.database_exists(desired.database)
        if not database_exists:
            return SchemaObserved(database_exists=False)

        with self._context.open_database(desired.database) as session:
            table_exists = session.table_exists(desired.table)
            has_rows = table_exists and session.table_has_rows(desired.table)
        return SchemaObserved(database_exists=True, table_exists=table_exists, has_rows=has_rows)

    def _observe_page(self, desired: PageDesired) -> PageObserved:
        site = self._context.get_site(desired.site)
        if site is None:
            return PageObserved(site_exists=False)
        path = ntpath.join(site.physical_path, desired.filename)
        return PageObserved(site_exists=True, path=path, exists=self._context.file_exists(path))
