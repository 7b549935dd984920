"""Per-resource reconciliation.

This module implements the converge-one-resource pattern:
1. Probe the resource (idempotency gate)
2. Return immediately if it already matches its desired state
3. Otherwise issue the minimal mutations, each wrapped in RetryPolicy
4. Re-probe under RetryPolicy until the desired state is observed

Every mutation inside a retried operation is itself probe-gated, so that a
retry after a "failed" call that actually took effect does not repeat it.

WEBSITE COLLISIONS:
Creating a site can collide with a default site on the same port, a stale
site of the same name from an earlier failed run, and stale port bindings
left by either. The website policy clears all three, in a fixed order,
before creating the site. A binding conflict on start gets one targeted
repair pass, and the start is repeated within the same attempt. Only a
conflict that survives the repair uses up the remaining attempts.
"""

from __future__ import annotations

import logging
import ntpath
from collections.abc import Callable
from typing import Any, cast

from .context import BindingInfo, SystemContext
from .errors import BindingConflictError, NotConvergedError, TransientOperationError
from .models import (
    AppPoolDesired,
    AttemptResult,
    BindingDesired,
    PageDesired,
    Resource,
    ResourceKind,
    SchemaDesired,
    ServiceDesired,
    ServiceState,
    WebsiteDesired,
)
from .probe import FeatureSetObserved, ObservedState, ResourceProbe
from .retry import RetryPolicy

logger = logging.getLogger(__name__)


class _StepAborted(Exception):
    """Internal signal: a sub-operation exhausted its retries."""

    def __init__(self, result: AttemptResult) -> None:
        super().__init__(result.detail)
        self.result = result


class _StepRun:
    """Accumulates attempts across the sub-operations of one ensure()."""

    def __init__(self, resource: Resource, policy: RetryPolicy) -> None:
        self.resource = resource
        self.policy = policy
        self.peak = 0
        self.total = 0

    def do(self, description: str, operation: Callable[[], Any]) -> None:
        result = self.policy.execute(operation, f"{self.resource.key}: {description}")
        self.peak = max(self.peak, result.attempts_used)
        self.total += result.attempts_used
        if not result.succeeded:
            raise _StepAborted(
                AttemptResult(
                    succeeded=False,
                    attempts_used=result.attempts_used,
                    last_error=result.last_error,
                    detail=result.detail,
                    total_attempts=self.total,
                )
            )

    def done(self) -> AttemptResult:
        return AttemptResult(succeeded=True, attempts_used=self.peak, total_attempts=self.total)


class ResourceReconciler:
    """Converge single resources through a SystemContext.

    The reconciler counts every mutating call it issues (mutation_count),
    so that a run against an already-converged machine can be shown to have
    changed nothing.
    """

    def __init__(
        self,
        context: SystemContext,
        probe: ResourceProbe | None = None,
        default_policy: RetryPolicy | None = None,
    ) -> None:
        self._context = context
        self._probe = probe or ResourceProbe(context)
        self._default_policy = default_policy or RetryPolicy()
        self.mutation_count = 0
        self.restart_required = False

    @property
    def probe(self) -> ResourceProbe:
        return self._probe

    def ensure(self, resource: Resource, policy: RetryPolicy | None = None) -> AttemptResult:
        """Bring resource to its desired state.

        Args:
            resource: Resource to converge.
            policy: Retry policy for each mutation (default policy when None).

        Returns:
            AttemptResult; succeeded with attempts_used=0 when the resource
            already matched and nothing was changed. The gate probe is
            retried under the same policy; if it never answers, the result
            carries the probe's error kind (PROBE_UNAVAILABLE at once when
            the subsystem is missing).
        """
        policy = policy or self._default_policy
        observations: list[ObservedState] = []

        def observe() -> None:
            observations.append(self._probe.observe(resource))

        gate = policy.execute(observe, f"{resource.key}: probe")
        if not gate.succeeded:
            return gate

        observed = observations[-1]
        if observed.matches(resource.desired):
            logger.info(
                "Resource already in desired state",
                extra={"kind": resource.kind.value, "resource": resource.name},
            )
            return AttemptResult.converged()

        logger.info(
            "Reconciling resource",
            extra={
                "kind": resource.kind.value,
                "resource": resource.name,
                "observed": observed.as_dict(),
            },
        )

        handlers: dict[ResourceKind, Callable[[Resource, ObservedState, _StepRun], None]] = {
            ResourceKind.FEATURE_SET: self._ensure_feature_set,
            ResourceKind.SERVICE: self._ensure_service,
            ResourceKind.APP_POOL: self._ensure_app_pool_resource,
            ResourceKind.WEBSITE: self._ensure_website,
            ResourceKind.BINDING: self._ensure_binding,
            ResourceKind.DATABASE: self._ensure_database,
            ResourceKind.SCHEMA_OBJECT: self._ensure_schema,
            ResourceKind.PAGE: self._ensure_page,
        }
        run = _StepRun(resource, policy)
        run.total = gate.attempts_used
        try:
            handlers[resource.kind](resource, observed, run)
        except _StepAborted as e:
            return e.result
        return run.done()

    # =========================================================================
    # Helpers
    # =========================================================================

    def _apply(self, description: str, func: Callable[..., Any], *args: Any) -> Any:
        """Issue one mutating call."""
        self.mutation_count += 1
        logger.info("Applying change", extra={"change": description})
        return func(*args)

    def _require(self, resource: Resource) -> None:
        """Re-probe and raise NotConvergedError unless the resource matches."""
        if not self._probe.in_desired_state(resource):
            raise NotConvergedError(f"{resource.key} not yet in desired state")

    def _gated(
        self,
        already_done: Callable[[], bool],
        description: str,
        func: Callable[..., Any],
        *args: Any,
    ) -> Callable[[], Any]:
        """Build a retryable operation that probes before it mutates."""

        def operation() -> Any:
            if already_done():
                return True
            return self._apply(description, func, *args)

        return operation

    def _site_started(self, name: str) -> bool:
        site = self._context.get_site(name)
        return site is not None and site.started

    def _binding_gone(self, binding: BindingInfo) -> bool:
        port = binding.port
        if port is None:
            return True
        return binding not in self._context.list_bindings(port)

    # =========================================================================
    # Feature set
    # =========================================================================

    def _ensure_feature_set(self, resource: Resource, observed: ObservedState, run: _StepRun) -> None:
        missing = cast(FeatureSetObserved, observed).missing
        ctx = self._context

        def install() -> bool:
            states = ctx.feature_states(missing)
            still_missing = [name for name in missing if not states.get(name, False)]
            if not still_missing:
                return True
            result = self._apply(f"install features {still_missing}", ctx.install_features, still_missing)
            if result.restart_needed:
                self.restart_required = True
                logger.warning(
                    "Feature installation requires a restart",
                    extra={"features": still_missing},
                )
            return result.succeeded

        run.do(f"install {len(missing)} missing feature(s)", install)
        run.do("confirm features installed", lambda: self._require(resource))

    # =========================================================================
    # Service
    # =========================================================================

    def _ensure_service(self, resource: Resource, observed: ObservedState, run: _StepRun) -> None:
        desired = cast(ServiceDesired, resource.desired)
        ctx = self._context
        want_running = desired.state == ServiceState.RUNNING

        def converge() -> None:
            info = ctx.get_service(resource.name)
            if info is None:
                raise TransientOperationError(f"Service {resource.name} is not registered")
            if info.running != want_running:
                if want_running:
                    self._apply(f"start service {resource.name}", ctx.start_service, resource.name)
                else:
                    self._apply(f"stop service {resource.name}", ctx.stop_service, resource.name)
            self._require(resource)

        run.do(f"set service {desired.state.value.lower()}", converge)

    # =========================================================================
    # Application pool
    # =========================================================================

    def _ensure_app_pool_resource(
        self, resource: Resource, observed: ObservedState, run: _StepRun
    ) -> None:
        self._ensure_app_pool(resource.name, cast(AppPoolDesired, resource.desired), run)
        run.do("confirm app pool", lambda: self._require(resource))

    def _ensure_app_pool(self, name: str, desired: AppPoolDesired, run: _StepRun) -> None:
        ctx = self._context
        existing = ctx.get_app_pool(name)
        if existing is not None and (
            existing.runtime_version != desired.runtime_version
            or existing.pipeline_mode != desired.pipeline_mode
        ):
            run.do(
                f"remove stale app pool {name}",
                self._gated(
                    lambda: ctx.get_app_pool(name) is None,
                    f"remove app pool {name}",
                    ctx.remove_app_pool,
                    name,
                ),
            )

        run.do(
            f"create app pool {name}",
            self._gated(
                lambda: ctx.get_app_pool(name) is not None,
                f"create app pool {name}",
                ctx.create_app_pool,
                name,
                desired.runtime_version,
                desired.pipeline_mode,
            ),
        )

        if desired.started:

            def start() -> None:
                pool = ctx.get_app_pool(name)
                if pool is not None and pool.started:
                    return
                self._apply(f"start app pool {name}", ctx.start_app_pool, name)
                pool = ctx.get_app_pool(name)
                if pool is None or not pool.started:
                    raise TransientOperationError(f"App pool {name} has not started yet")

            run.do(f"start app pool {name}", start)

    # =========================================================================
    # Website
    # =========================================================================

    def _ensure_website(self, resource: Resource, observed: ObservedState, run: _StepRun) -> None:
        desired = cast(WebsiteDesired, resource.desired)
        ctx = self._context
        name = resource.name
        port = desired.port

        # 1. Default site
        replace_site = resource.constraints.get("replace_site")
        if replace_site and replace_site != name and ctx.get_site(replace_site) is not None:
            self._remove_site(replace_site, run)

        # 2. Every binding on the target port, whoever owns it
        for binding in ctx.list_bindings(port):
            run.do(
                f"remove binding {binding.binding_information} from {binding.site}",
                self._gated(
                    lambda b=binding: self._binding_gone(b),
                    f"remove binding {binding.binding_information} from {binding.site}",
                    ctx.remove_binding,
                    binding,
                ),
            )

        # 3. Stale site with the target name
        if ctx.get_site(name) is not None:
            self._remove_site(name, run)

        # 4. Application pool
        pool_desired = AppPoolDesired(
            runtime_version=resource.constraints.get("runtime_version", "v4.0"),
            pipeline_mode=resource.constraints.get("pipeline_mode", "Integrated"),
        )
        self._ensure_app_pool(desired.app_pool, pool_desired, run)

        # 5. Create
        run.do(
            f"create site {name}",
            self._gated(
                lambda: ctx.get_site(name) is not None,
                f"create site {name} on port {port}",
                ctx.create_site,
                name,
                desired.physical_path,
                desired.app_pool,
                port,
            ),
        )

        # 6. Start, with one binding repair on conflict
        if desired.started:
            binding = BindingDesired(site=name, port=port)
            repaired = False

            def start() -> None:
                nonlocal repaired
                if self._site_started(name):
                    return
                try:
                    self._apply(f"start site {name}", ctx.start_site, name)
                except BindingConflictError:
                    if repaired:
                        raise
                    repaired = True
                    self._repair_binding(binding)
                    if not self._site_started(name):
                        self._apply(f"start site {name} after repair", ctx.start_site, name)

            run.do(f"start site {name}", start)

        # 7. Independent confirmation
        run.do(f"confirm site {name}", lambda: self._require(resource))

    def _remove_site(self, name: str, run: _StepRun) -> None:
        """Stop a site, drop its bindings, then remove it."""
        ctx = self._context
        site = ctx.get_site(name)
        if site is None:
            return

        run.do(
            f"stop site {name}",
            self._gated(lambda: not self._site_started(name), f"stop site {name}", ctx.stop_site, name),
        )
        for binding in site.bindings:
            run.do(
                f"remove binding {binding.binding_information} from {name}",
                self._gated(
                    lambda b=binding: self._site_gone_or_unbound(name, b),
                    f"remove binding {binding.binding_information} from {name}",
                    ctx.remove_binding,
                    binding,
                ),
            )
        run.do(
            f"remove site {name}",
            self._gated(
                lambda: ctx.get_site(name) is None, f"remove site {name}", ctx.remove_site, name
            ),
        )

    def _site_gone_or_unbound(self, name: str, binding: BindingInfo) -> bool:
        site = self._context.get_site(name)
        return site is None or binding not in site.bindings

    def _repair_binding(self, desired: BindingDesired) -> None:
        """Clear every binding on the port and re-add the expected one."""
        ctx = self._context
        logger.warning(
            "Binding conflict, repairing port bindings",
            extra={"site": desired.site, "port": desired.port},
        )
        for binding in ctx.list_bindings(desired.port):
            self._apply(
                f"remove binding {binding.binding_information} from {binding.site}",
                ctx.remove_binding,
                binding,
            )
        self._apply(
            f"add binding {desired.binding_information} to {desired.site}",
            ctx.add_binding,
            desired.site,
            desired.protocol,
            desired.port,
            desired.host_header,
        )

    # =========================================================================
    # Binding
    # =========================================================================

    def _ensure_binding(self, resource: Resource, observed: ObservedState, run: _StepRun) -> None:
        desired = cast(BindingDesired, resource.desired)
        ctx = self._context
        expected = (desired.site, desired.protocol, desired.host_header)

        for binding in ctx.list_bindings(desired.port):
            if (binding.site, binding.protocol, binding.host_header) == expected:
                continue
            run.do(
                f"remove foreign binding {binding.binding_information} from {binding.site}",
                self._gated(
                    lambda b=binding: self._binding_gone(b),
                    f"remove binding {binding.binding_information} from {binding.site}",
                    ctx.remove_binding,
                    binding,
                ),
            )

        def present() -> bool:
            return any(
                (b.site, b.protocol, b.host_header) == expected
                for b in ctx.list_bindings(desired.port)
            )

        run.do(
            f"add binding {desired.binding_information}",
            self._gated(
                present,
                f"add binding {desired.binding_information} to {desired.site}",
                ctx.add_binding,
                desired.site,
                desired.protocol,
                desired.port,
                desired.host_header,
            ),
        )
        run.do("confirm binding", lambda: self._require(resource))

    # =========================================================================
    # Database and schema
    # =========================================================================
    # Each unit of work opens its own connection and closes it before the
    # next one starts.

    def _create_database(self, name: str) -> None:
        with self._context.open_database() as session:
            if session.database_exists(name):
                return
            self._apply(f"create database {name}", session.create_database, name)

    def _ensure_database(self, resource: Resource, observed: ObservedState, run: _StepRun) -> None:
        run.do(f"create database {resource.name}", lambda: self._create_database(resource.name))
        run.do("confirm database", lambda: self._require(resource))

    def _ensure_schema(self, resource: Resource, observed: ObservedState, run: _StepRun) -> None:
        desired = cast(SchemaDesired, resource.desired)
        ctx = self._context

        def create_table() -> None:
            with ctx.open_database(desired.database) as session:
                if session.table_exists(desired.table):
                    return
                self._apply(
                    f"create table {desired.table}",
                    session.create_table,
                    desired.table,
                    desired.columns,
                )

        def seed() -> None:
            with ctx.open_database(desired.database) as session:
                if session.table_has_rows(desired.table):
                    return
                inserted = self._apply(
                    f"insert {len(desired.seed_rows)} seed row(s) into {desired.table}",
                    session.insert_rows,
                    desired.table,
                    desired.column_names,
                    desired.seed_rows,
                )
            if inserted != len(desired.seed_rows):
                raise NotConvergedError(
                    f"Inserted {inserted} of {len(desired.seed_rows)} seed rows into {desired.table}"
                )

        run.do(f"create database {desired.database}", lambda: self._create_database(desired.database))
        run.do(f"create table {desired.table}", create_table)
        if desired.seed_rows:
            run.do(f"seed table {desired.table}", seed)
        run.do("confirm schema", lambda: self._require(resource))

    # =========================================================================
    # Verification page
    # =========================================================================

    def _ensure_page(self, resource: Resource, observed: ObservedState, run: _StepRun) -> None:
        desired = cast(PageDesired, resource.desired)
        ctx = self._context

        def generate() -> bool:
            site = ctx.get_site(desired.site)
            if site is None:
                raise NotConvergedError(f"Site {desired.site} does not exist")
            if ctx.file_exists(ntpath.join(site.physical_path, desired.filename)):
                return True
            result = self._apply(
                f"generate page {desired.filename}",
                ctx.generate_page,
                site.physical_path,
                desired.filename,
            )
            return result.succeeded

        run.do(f"generate page {desired.filename}", generate)
        run.do("confirm page", lambda: self._require(resource))
