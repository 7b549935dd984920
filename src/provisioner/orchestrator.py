"""Provisioning run orchestration.

The orchestrator drives a fixed, hand-ordered plan:

    feature set -> service -> app pool -> website -> binding
        -> database -> schema -> verification page

State machine:
    Idle -> Running(i) -> Verifying -> Succeeded
                     \\-> Failed(i, reason)

Running(i) advances to Running(i+1) only when step i converged. The first
step that exhausts its retries ends the run; no later step executes. There
is no rollback: whatever earlier steps created stays in place for the next
run's idempotency gates to find.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .artifacts import WebRootRecordError, resolve_web_root, write_web_root
from .config import RetrySettings
from .context import SystemContext
from .errors import ErrorKind, ProvisioningError
from .models import (
    AttemptResult,
    Plan,
    ProvisioningSpec,
    ReconciliationStep,
    Resource,
    ResourceKey,
    ResourceKind,
    VerificationReport,
)
from .probe import ResourceProbe
from .reconciler import ResourceReconciler
from .retry import RetryPolicy, SleepFunc
from .verifier import ConvergenceVerifier

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    """Orchestrator states."""

    IDLE = "idle"
    RUNNING = "running"
    VERIFYING = "verifying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class StepOutcome:
    """AttemptResult of one executed step."""

    index: int
    key: ResourceKey
    result: AttemptResult


@dataclass
class RunResult:
    """Result of a provisioning run."""

    state: RunState = RunState.IDLE
    outcomes: list[StepOutcome] = field(default_factory=list)
    failed_index: int | None = None
    failed_step: ResourceKey | None = None
    reason: ErrorKind | None = None
    detail: str | None = None
    report: VerificationReport | None = None
    web_root: str | None = None
    mutations: int = 0
    restart_required: bool = False

    @property
    def success(self) -> bool:
        return self.state == RunState.SUCCEEDED

    def summary(self) -> str:
        """One human-readable line (plus mismatch lines) for the error channel."""
        if self.success:
            return f"Provisioning succeeded: {len(self.outcomes)} step(s), {self.mutations} change(s)"
        if self.reason == ErrorKind.VERIFICATION_MISMATCH and self.report is not None:
            lines = ["Provisioning failed: verification mismatch"]
            lines.extend(f"  {entry.describe()}" for entry in self.report.mismatches)
            return "\n".join(lines)
        where = f"step {self.failed_index} ({self.failed_step})" if self.failed_step else "run"
        reason = self.reason.value if self.reason else "unknown"
        return f"Provisioning failed at {where}: {reason}: {self.detail}"


def build_plan(
    spec: ProvisioningSpec,
    settings: RetrySettings,
    sleep: SleepFunc | None = None,
) -> Plan:
    """Build the linear plan for spec.

    Each step depends on the one before it. Service steps use the slower
    service retry delay.
    """
    steps: list[ReconciliationStep] = []
    previous: Resource | None = None
    for resource in spec.to_resources():
        policy = RetryPolicy.from_settings(
            settings, service=resource.kind == ResourceKind.SERVICE, sleep=sleep
        )
        depends_on = frozenset({previous.key}) if previous is not None else frozenset()
        steps.append(ReconciliationStep(resource=resource, retry_policy=policy, depends_on=depends_on))
        previous = resource
    return Plan(steps=tuple(steps))


class Orchestrator:
    """Run a plan once against a SystemContext.

    A single instance executes a single run; steps are never re-entered.
    """

    def __init__(
        self,
        plan: Plan,
        context: SystemContext,
        *,
        web_root_record: Path | None = None,
        settle_seconds: float = 0.0,
        sleep: SleepFunc | None = None,
        reconciler: ResourceReconciler | None = None,
        verifier: ConvergenceVerifier | None = None,
    ) -> None:
        self._plan = plan
        self._context = context
        self._web_root_record = web_root_record
        probe = ResourceProbe(context)
        self._reconciler = reconciler or ResourceReconciler(context, probe)
        self._verifier = verifier or ConvergenceVerifier(
            probe, settle_seconds=settle_seconds, sleep=sleep
        )
        self._state = RunState.IDLE
        self._index: int | None = None

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def current_index(self) -> int | None:
        return self._index

    def run(self) -> RunResult:
        """Execute every step in order, then verify.

        Returns:
            RunResult in SUCCEEDED or FAILED state.

        Raises:
            RuntimeError: If this orchestrator already ran.
        """
        if self._state != RunState.IDLE:
            raise RuntimeError(f"Orchestrator already ran (state: {self._state.value})")

        result = RunResult()
        logger.info("Starting provisioning run", extra={"steps": len(self._plan)})

        for index, step in enumerate(self._plan):
            self._state = RunState.RUNNING
            self._index = index
            logger.info(
                "Running step",
                extra={
                    "index": index,
                    "kind": step.resource.kind.value,
                    "resource": step.resource.name,
                },
            )

            try:
                attempt = self._reconciler.ensure(step.resource, step.retry_policy)
            except ProvisioningError as e:
                attempt = AttemptResult(
                    succeeded=False,
                    attempts_used=0,
                    last_error=e.kind,
                    detail=str(e),
                )

            result.outcomes.append(StepOutcome(index=index, key=step.key, result=attempt))
            if not attempt.succeeded:
                return self._fail(result, index, step, attempt.last_error, attempt.detail)

            if step.resource.kind == ResourceKind.WEBSITE:
                try:
                    result.web_root = self._record_web_root(step.resource)
                except WebRootRecordError as e:
                    return self._fail(result, index, step, ErrorKind.OPERATION_FAILED, str(e))
                except ProvisioningError as e:
                    return self._fail(result, index, step, e.kind, str(e))

        self._state = RunState.VERIFYING
        self._index = None
        try:
            report = self._verifier.verify(self._plan)
        except ProvisioningError as e:
            return self._fail(result, None, None, e.kind, str(e))

        result.report = report
        if not report.passed:
            detail = "; ".join(entry.describe() for entry in report.mismatches)
            return self._fail(result, None, None, ErrorKind.VERIFICATION_MISMATCH, detail)

        self._state = RunState.SUCCEEDED
        self._finish(result)
        logger.info(
            "Provisioning converged",
            extra={"steps": len(result.outcomes), "mutations": result.mutations},
        )
        return result

    def _fail(
        self,
        result: RunResult,
        index: int | None,
        step: ReconciliationStep | None,
        reason: ErrorKind | None,
        detail: str | None,
    ) -> RunResult:
        self._state = RunState.FAILED
        result.failed_index = index
        result.failed_step = step.key if step is not None else None
        result.reason = reason or ErrorKind.OPERATION_FAILED
        result.detail = detail
        self._finish(result)
        logger.error(
            "Provisioning failed",
            extra={
                "index": index,
                "step": str(result.failed_step) if result.failed_step else None,
                "reason": result.reason.value,
                "error": detail,
            },
        )
        return result

    def _finish(self, result: RunResult) -> None:
        result.state = self._state
        result.mutations = self._reconciler.mutation_count
        result.restart_required = self._reconciler.restart_required

    def _record_web_root(self, website: Resource) -> str | None:
        """Persist the converged site's resolved content directory."""
        site = self._context.get_site(website.name)
        if site is None:
            raise WebRootRecordError(f"Site {website.name} vanished after converging")
        web_root = resolve_web_root(site.physical_path)
        if self._web_root_record is not None:
            write_web_root(self._web_root_record, web_root)
        return web_root
