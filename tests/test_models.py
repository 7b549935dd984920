"""Tests for resource, spec and plan models."""

import pytest
from pydantic import ValidationError

from provisioner.config import Config, RetrySettings
from provisioner.models import (
    DEFAULT_FEATURES,
    AppPoolDesired,
    BindingDesired,
    ColumnSpec,
    Plan,
    PlanError,
    ProvisioningSpec,
    ReconciliationStep,
    Resource,
    ResourceKey,
    ResourceKind,
    SchemaDesired,
    ServiceDesired,
    VerificationEntry,
    VerificationReport,
    WebsiteDesired,
)
from provisioner.orchestrator import build_plan
from provisioner.retry import RetryPolicy


def _resource(kind: ResourceKind, name: str) -> Resource:
    return Resource(kind, name, ServiceDesired())


def _step(resource: Resource, depends_on: frozenset[ResourceKey] = frozenset()) -> ReconciliationStep:
    return ReconciliationStep(resource=resource, retry_policy=RetryPolicy(), depends_on=depends_on)


class TestDesiredState:
    """Tests for desired-state models."""

    def test_desired_state_is_frozen(self) -> None:
        """Test that desired state cannot be changed after creation."""
        desired = WebsiteDesired(physical_path=r"C:\site", app_pool="Pool", port=80)

        with pytest.raises(ValidationError):
            desired.port = 8080  # type: ignore[misc]

    def test_pipeline_mode_validation(self) -> None:
        """Test that only IIS pipeline modes are accepted."""
        with pytest.raises(ValidationError):
            AppPoolDesired(pipeline_mode="Hybrid")

    def test_binding_information(self) -> None:
        """Test the IIS binding string."""
        assert BindingDesired(site="S", port=8080).binding_information == "*:8080:"
        assert (
            BindingDesired(site="S", port=80, host_header="shop.local").binding_information
            == "*:80:shop.local"
        )

    def test_column_ddl(self) -> None:
        """Test column definitions rendered as DDL."""
        assert ColumnSpec(name="Id", sql_type="INT", primary_key=True).to_ddl() == (
            "[Id] INT NOT NULL PRIMARY KEY"
        )
        assert ColumnSpec(name="Email", sql_type="nvarchar(128)").to_ddl() == (
            "[Email] NVARCHAR(128) NULL"
        )

    @pytest.mark.parametrize("name", ["1abc", "Users; DROP TABLE x", "a-b", ""])
    def test_column_name_validation(self, name: str) -> None:
        """Test that column names must be plain identifiers."""
        with pytest.raises(ValidationError):
            ColumnSpec(name=name, sql_type="INT")

    def test_sql_type_validation(self) -> None:
        """Test that injected SQL in a column type is rejected."""
        with pytest.raises(ValidationError):
            ColumnSpec(name="Id", sql_type="INT); DROP TABLE Users; --")

    def test_seed_row_width(self) -> None:
        """Test that seed rows must match the column count."""
        with pytest.raises(ValidationError) as exc_info:
            SchemaDesired(
                database="Db",
                table="T",
                columns=(ColumnSpec(name="A", sql_type="INT"),),
                seed_rows=((1, 2),),
            )

        assert "seed row 0 has 2 values" in str(exc_info.value)


class TestProvisioningSpec:
    """Tests for ProvisioningSpec."""

    def test_from_config(self) -> None:
        """Test the default spec derived from configuration."""
        spec = ProvisioningSpec.from_config(Config(password="x"))

        assert spec.features == list(DEFAULT_FEATURES)
        assert spec.service.name == "W3SVC"
        assert spec.app_pool.name == "WebShellsPool"
        assert spec.website.name == "WebShells"
        assert spec.website.replace_site == "Default Web Site"
        assert spec.database.name == "WebShellsDB"
        assert spec.database.table.name == "Users"
        assert len(spec.database.table.seed_rows) == 3

    def test_resources_in_plan_order(self) -> None:
        """Test that resources expand in the fixed dependency order."""
        resources = ProvisioningSpec.from_config(Config(password="x")).to_resources()

        assert [r.kind for r in resources] == [
            ResourceKind.FEATURE_SET,
            ResourceKind.SERVICE,
            ResourceKind.APP_POOL,
            ResourceKind.WEBSITE,
            ResourceKind.BINDING,
            ResourceKind.DATABASE,
            ResourceKind.SCHEMA_OBJECT,
            ResourceKind.PAGE,
        ]
        assert [r.name for r in resources] == [
            "web-server",
            "W3SVC",
            "WebShellsPool",
            "WebShells",
            "WebShells:80",
            "WebShellsDB",
            "WebShellsDB.Users",
            "WebShells/index.html",
        ]

    def test_website_constraints(self) -> None:
        """Test that the website carries what it needs to clear collisions."""
        resources = ProvisioningSpec.from_config(Config(password="x")).to_resources()
        website = resources[3]

        assert website.constraints["replace_site"] == "Default Web Site"
        assert website.constraints["runtime_version"] == "v4.0"
        assert website.constraints["pipeline_mode"] == "Integrated"

    def test_replace_site_must_differ(self) -> None:
        """Test that a spec cannot remove the site it creates."""
        with pytest.raises(ValidationError):
            ProvisioningSpec.model_validate(
                {
                    "appPool": {"name": "P"},
                    "website": {"name": "S", "physicalPath": r"C:\s", "replaceSite": "S"},
                    "database": {
                        "name": "Db",
                        "table": {"name": "T", "columns": [{"name": "A", "sqlType": "INT"}]},
                    },
                }
            )

    def test_database_name_validation(self) -> None:
        """Test that database names are identifiers."""
        with pytest.raises(ValidationError):
            ProvisioningSpec.model_validate(
                {
                    "appPool": {"name": "P"},
                    "website": {"name": "S", "physicalPath": r"C:\s"},
                    "database": {
                        "name": "Db]; DROP DATABASE master; --",
                        "table": {"name": "T", "columns": [{"name": "A", "sqlType": "INT"}]},
                    },
                }
            )


class TestPlan:
    """Tests for Plan construction rules."""

    def test_duplicate_resource_rejected(self) -> None:
        """Test that a resource may appear only once."""
        a = _resource(ResourceKind.SERVICE, "W3SVC")

        with pytest.raises(PlanError) as exc_info:
            Plan(steps=(_step(a), _step(a)))

        assert "Duplicate resource" in str(exc_info.value)

    def test_dependency_must_precede(self) -> None:
        """Test that a step cannot depend on a later step."""
        a = _resource(ResourceKind.SERVICE, "A")
        b = _resource(ResourceKind.SERVICE, "B")

        with pytest.raises(PlanError) as exc_info:
            Plan(steps=(_step(a, frozenset({b.key})), _step(b)))

        assert "depends on later or absent" in str(exc_info.value)

    def test_valid_plan(self) -> None:
        """Test iteration, length and indexing."""
        a = _resource(ResourceKind.SERVICE, "A")
        b = _resource(ResourceKind.SERVICE, "B")
        plan = Plan(steps=(_step(a), _step(b, frozenset({a.key}))))

        assert len(plan) == 2
        assert plan[1].key == b.key
        assert [step.key for step in plan] == [a.key, b.key]
        assert plan.resources == [a, b]

    def test_build_plan_is_linear(self) -> None:
        """Test that every built step depends on its predecessor only."""
        spec = ProvisioningSpec.from_config(Config(password="x"))
        plan = build_plan(spec, RetrySettings(max_attempts=4, delay_seconds=1.0, service_delay_seconds=9.0))

        assert plan[0].depends_on == frozenset()
        for previous, step in zip(plan.steps, plan.steps[1:]):
            assert step.depends_on == frozenset({previous.key})

        assert plan[1].retry_policy.delay_seconds == 9.0
        assert plan[2].retry_policy.delay_seconds == 1.0
        assert all(step.retry_policy.max_attempts == 4 for step in plan)

    def test_resource_key_str(self) -> None:
        """Test the display form of a resource key."""
        assert str(ResourceKey(ResourceKind.WEBSITE, "WebShells")) == "Website/WebShells"


class TestVerificationReport:
    """Tests for VerificationReport."""

    def _entry(self, name: str, matched: bool) -> VerificationEntry:
        return VerificationEntry(
            key=ResourceKey(ResourceKind.SERVICE, name),
            expected={"state": "Running"},
            observed={"exists": True, "running": matched},
            matched=matched,
        )

    def test_passed(self) -> None:
        """Test that a report passes only when every entry matched."""
        assert VerificationReport((self._entry("A", True),)).passed
        assert not VerificationReport((self._entry("A", True), self._entry("B", False))).passed

    def test_empty_report_does_not_pass(self) -> None:
        """Test that verifying nothing is not success."""
        assert not VerificationReport(()).passed

    def test_lookup(self) -> None:
        """Test indexing a report by resource key."""
        report = VerificationReport((self._entry("A", True), self._entry("B", False)))
        key = ResourceKey(ResourceKind.SERVICE, "B")

        assert key in report
        assert report[key].matched is False
        assert [entry.key for entry in report.mismatches] == [key]
        with pytest.raises(KeyError):
            report[ResourceKey(ResourceKind.SERVICE, "C")]
