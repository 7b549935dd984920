"""Resource and plan models.

These models provide:
1. Type-safe YAML parsing of the provisioning spec (pydantic)
2. Immutable desired state per resource kind
3. The plan, attempt and verification records the orchestrator passes around
"""

from __future__ import annotations

import re
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Annotated, Any, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from .errors import ErrorKind

if TYPE_CHECKING:
    from .config import Config
    from .retry import RetryPolicy

# SQL identifiers are interpolated into DDL, so they are restricted up front
VALID_IDENTIFIER_PATTERN = r"^[A-Za-z_][A-Za-z0-9_]{0,127}$"
VALID_SQL_TYPE_PATTERN = r"^[A-Za-z]+( ?\((\d+|max)(, ?\d+)?\))?$"

DEFAULT_FEATURES = (
    "Web-Server",
    "Web-Mgmt-Console",
    "Web-Asp-Net45",
    "Web-Net-Ext45",
    "Web-ISAPI-Ext",
    "Web-ISAPI-Filter",
)
DEFAULT_WEB_SERVICE = "W3SVC"
DEFAULT_PAGE_FILENAME = "index.html"


class ResourceKind(str, Enum):
    """Resource kinds in plan order."""

    FEATURE_SET = "FeatureSet"
    SERVICE = "Service"
    APP_POOL = "AppPool"
    WEBSITE = "Website"
    BINDING = "Binding"
    DATABASE = "Database"
    SCHEMA_OBJECT = "SchemaObject"
    PAGE = "Page"


class ServiceState(str, Enum):
    """Desired run state of an OS service."""

    RUNNING = "Running"
    STOPPED = "Stopped"


# =============================================================================
# Desired State
# =============================================================================
# Frozen so that a desired state, once set by the caller, cannot change
# during a run. Observed state lives in probe.py.


class DesiredState(BaseModel):
    """Base for kind-specific desired state."""

    model_config = {"extra": "ignore", "frozen": True, "populate_by_name": True}


class FeatureSetDesired(DesiredState):
    features: tuple[str, ...] = Field(min_length=1)


class ServiceDesired(DesiredState):
    state: ServiceState = ServiceState.RUNNING


class AppPoolDesired(DesiredState):
    runtime_version: str = Field("v4.0", alias="runtimeVersion")
    pipeline_mode: str = Field("Integrated", alias="pipelineMode")
    started: bool = True

    @field_validator("pipeline_mode")
    @classmethod
    def validate_pipeline_mode(cls, v: str) -> str:
        valid = {"Integrated", "Classic"}
        if v not in valid:
            raise ValueError(f"pipelineMode must be one of {valid}")
        return v


class WebsiteDesired(DesiredState):
    physical_path: Annotated[str, Field(min_length=1, alias="physicalPath")]
    app_pool: Annotated[str, Field(min_length=1, alias="appPool")]
    port: Annotated[int, Field(ge=1, le=65535)]
    started: bool = True


class BindingDesired(DesiredState):
    site: Annotated[str, Field(min_length=1)]
    port: Annotated[int, Field(ge=1, le=65535)]
    protocol: str = "http"
    host_header: str = Field("", alias="hostHeader")

    @property
    def binding_information(self) -> str:
        """IIS binding string, e.g. ``*:80:``."""
        return f"*:{self.port}:{self.host_header}"


class DatabaseDesired(DesiredState):
    exists: bool = True


class ColumnSpec(DesiredState):
    """A single table column."""

    name: str
    sql_type: str = Field(alias="sqlType")
    nullable: bool = True
    primary_key: bool = Field(False, alias="primaryKey")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not re.match(VALID_IDENTIFIER_PATTERN, v):
            raise ValueError(f"column name must match {VALID_IDENTIFIER_PATTERN}")
        return v

    @field_validator("sql_type")
    @classmethod
    def validate_sql_type(cls, v: str) -> str:
        if not re.match(VALID_SQL_TYPE_PATTERN, v):
            raise ValueError(f"sqlType is not a plain SQL type: {v}")
        return v

    def to_ddl(self) -> str:
        parts = [f"[{self.name}]", self.sql_type.upper()]
        parts.append("NULL" if self.nullable and not self.primary_key else "NOT NULL")
        if self.primary_key:
            parts.append("PRIMARY KEY")
        return " ".join(parts)


SeedValue = Union[str, int, float, bool, None]


class SchemaDesired(DesiredState):
    """Table present in the database and holding the seed set."""

    database: Annotated[str, Field(min_length=1)]
    table: str
    columns: tuple[ColumnSpec, ...] = Field(min_length=1)
    seed_rows: tuple[tuple[SeedValue, ...], ...] = Field(default=(), alias="seedRows")

    @field_validator("table")
    @classmethod
    def validate_table(cls, v: str) -> str:
        if not re.match(VALID_IDENTIFIER_PATTERN, v):
            raise ValueError(f"table name must match {VALID_IDENTIFIER_PATTERN}")
        return v

    @model_validator(mode="after")
    def validate_rows(self) -> SchemaDesired:
        width = len(self.columns)
        for index, row in enumerate(self.seed_rows):
            if len(row) != width:
                raise ValueError(
                    f"seed row {index} has {len(row)} values, table has {width} columns"
                )
        return self

    @property
    def column_names(self) -> tuple[str, ...]:
        return tuple(column.name for column in self.columns)


class PageDesired(DesiredState):
    site: Annotated[str, Field(min_length=1)]
    filename: str = DEFAULT_PAGE_FILENAME


# =============================================================================
# Provisioning Spec (YAML)
# =============================================================================


class ServiceConfig(BaseModel):
    model_config = {"extra": "ignore"}

    name: str = DEFAULT_WEB_SERVICE
    state: ServiceState = ServiceState.RUNNING


class AppPoolConfig(BaseModel):
    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1, max_length=64)]
    runtime_version: str = Field("v4.0", alias="runtimeVersion")
    pipeline_mode: str = Field("Integrated", alias="pipelineMode")


class WebsiteConfig(BaseModel):
    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1, max_length=128)]
    physical_path: Annotated[str, Field(min_length=1, alias="physicalPath")]
    port: Annotated[int, Field(ge=1, le=65535)] = 80
    protocol: str = "http"
    host_header: str = Field("", alias="hostHeader")
    replace_site: str | None = Field("Default Web Site", alias="replaceSite")


class TableConfig(BaseModel):
    model_config = {"extra": "ignore"}

    name: str
    columns: list[ColumnSpec] = Field(min_length=1)
    seed_rows: list[list[SeedValue]] = Field(default_factory=list, alias="seedRows")


class DatabaseConfig(BaseModel):
    model_config = {"extra": "ignore"}

    name: str
    table: TableConfig

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not re.match(VALID_IDENTIFIER_PATTERN, v):
            raise ValueError(f"database name must match {VALID_IDENTIFIER_PATTERN}")
        return v


class PageConfig(BaseModel):
    model_config = {"extra": "ignore"}

    filename: str = DEFAULT_PAGE_FILENAME


def default_table() -> TableConfig:
    """Seed table used when no spec file is given."""
    return TableConfig.model_validate(
        {
            "name": "Users",
            "columns": [
                {"name": "Id", "sqlType": "INT", "primaryKey": True},
                {"name": "Username", "sqlType": "NVARCHAR(64)", "nullable": False},
                {"name": "Email", "sqlType": "NVARCHAR(128)"},
            ],
            "seedRows": [
                [1, "admin", "admin@webshells.local"],
                [2, "analyst", "analyst@webshells.local"],
                [3, "guest", None],
            ],
        }
    )


class ProvisioningSpec(BaseModel):
    """Declared target state for one provisioning run."""

    model_config = {"extra": "ignore"}

    features: list[str] = Field(default_factory=lambda: list(DEFAULT_FEATURES), min_length=1)
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    app_pool: AppPoolConfig = Field(alias="appPool")
    website: WebsiteConfig
    database: DatabaseConfig
    page: PageConfig = Field(default_factory=PageConfig)

    @model_validator(mode="after")
    def validate_names(self) -> ProvisioningSpec:
        if self.website.replace_site and self.website.replace_site == self.website.name:
            raise ValueError("website.replaceSite must differ from website.name")
        return self

    @classmethod
    def from_config(cls, config: Config) -> ProvisioningSpec:
        """Build the default spec from command-line/environment configuration."""
        return cls.model_validate(
            {
                "appPool": {"name": config.app_pool},
                "website": {
                    "name": config.site_name,
                    "physicalPath": config.physical_path,
                    "port": config.port,
                    "replaceSite": config.default_site_name or None,
                },
                "database": {"name": config.database, "table": default_table()},
            }
        )

    def to_resources(self) -> list[Resource]:
        """Expand the spec into resources in plan order."""
        site = self.website
        table = self.database.table
        return [
            Resource(
                ResourceKind.FEATURE_SET,
                "web-server",
                FeatureSetDesired(features=tuple(self.features)),
            ),
            Resource(
                ResourceKind.SERVICE,
                self.service.name,
                ServiceDesired(state=self.service.state),
            ),
            Resource(
                ResourceKind.APP_POOL,
                self.app_pool.name,
                AppPoolDesired(
                    runtime_version=self.app_pool.runtime_version,
                    pipeline_mode=self.app_pool.pipeline_mode,
                ),
            ),
            Resource(
                ResourceKind.WEBSITE,
                site.name,
                WebsiteDesired(
                    physical_path=site.physical_path,
                    app_pool=self.app_pool.name,
                    port=site.port,
                ),
                constraints={
                    "replace_site": site.replace_site,
                    "runtime_version": self.app_pool.runtime_version,
                    "pipeline_mode": self.app_pool.pipeline_mode,
                },
            ),
            Resource(
                ResourceKind.BINDING,
                f"{site.name}:{site.port}",
                BindingDesired(
                    site=site.name,
                    port=site.port,
                    protocol=site.protocol,
                    host_header=site.host_header,
                ),
            ),
            Resource(ResourceKind.DATABASE, self.database.name, DatabaseDesired()),
            Resource(
                ResourceKind.SCHEMA_OBJECT,
                f"{self.database.name}.{table.name}",
                SchemaDesired(
                    database=self.database.name,
                    table=table.name,
                    columns=tuple(table.columns),
                    seed_rows=tuple(tuple(row) for row in table.seed_rows),
                ),
            ),
            Resource(
                ResourceKind.PAGE,
                f"{site.name}/{self.page.filename}",
                PageDesired(site=site.name, filename=self.page.filename),
            ),
        ]


# =============================================================================
# Resources, Plans, Results
# =============================================================================


@dataclass(frozen=True)
class ResourceKey:
    """Identity of a resource within a run."""

    kind: ResourceKind
    name: str

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.name}"


@dataclass(frozen=True)
class Resource:
    """A named resource with its declared target state."""

    kind: ResourceKind
    name: str
    desired: DesiredState
    constraints: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(self.kind, self.name)


@dataclass(frozen=True)
class AttemptResult:
    """Outcome of reconciling one step.

    attempts_used never exceeds the policy's max_attempts: for a step made
    of several retried operations it is the count of the operation that
    failed, or the highest count of any operation when the step succeeded.
    total_attempts is the sum over all of them.
    """

    succeeded: bool
    attempts_used: int
    last_error: ErrorKind | None = None
    detail: str | None = None
    total_attempts: int = 0

    @classmethod
    def converged(cls) -> AttemptResult:
        """Result for a resource the idempotency gate found already in place."""
        return cls(succeeded=True, attempts_used=0)


@dataclass(frozen=True)
class ReconciliationStep:
    """One immutable unit of a plan."""

    resource: Resource
    retry_policy: RetryPolicy
    operation: str = "ensure"
    depends_on: frozenset[ResourceKey] = frozenset()

    @property
    def key(self) -> ResourceKey:
        return self.resource.key


class PlanError(ValueError):
    """Raised when a plan violates identity or ordering rules."""

    pass


@dataclass(frozen=True)
class Plan:
    """Ordered, linear sequence of steps.

    The order is hand-written, not sorted: construction only checks that
    identities are unique and that every dependency precedes its dependent.
    """

    steps: tuple[ReconciliationStep, ...]

    def __post_init__(self) -> None:
        seen: set[ResourceKey] = set()
        for index, step in enumerate(self.steps):
            if step.key in seen:
                raise PlanError(f"Duplicate resource in plan: {step.key}")
            missing = step.depends_on - seen
            if missing:
                names = ", ".join(sorted(str(key) for key in missing))
                raise PlanError(f"Step {index} ({step.key}) depends on later or absent: {names}")
            seen.add(step.key)

    def __iter__(self) -> Iterator[ReconciliationStep]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    def __getitem__(self, index: int) -> ReconciliationStep:
        return self.steps[index]

    @property
    def resources(self) -> list[Resource]:
        return [step.resource for step in self.steps]


@dataclass(frozen=True)
class VerificationEntry:
    """Expected versus observed state for one resource."""

    key: ResourceKey
    expected: dict[str, Any]
    observed: dict[str, Any]
    matched: bool

    def describe(self) -> str:
        return f"{self.key}: expected {self.expected}, observed {self.observed}"


@dataclass(frozen=True)
class VerificationReport:
    """Result of the independent convergence pass. Read-only."""

    entries: tuple[VerificationEntry, ...]

    def __getitem__(self, key: ResourceKey) -> VerificationEntry:
        for entry in self.entries:
            if entry.key == key:
                return entry
        raise KeyError(key)

    def __contains__(self, key: object) -> bool:
        return any(entry.key == key for entry in self.entries)

    @property
    def passed(self) -> bool:
        return bool(self.entries) and all(entry.matched for entry in self.entries)

    @property
    def mismatches(self) -> list[VerificationEntry]:
        return [entry for entry in self.entries if not entry.matched]
