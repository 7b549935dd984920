"""Independent convergence verification.

A reconciliation step may report success from an immediate post-action
check while a slower subsystem (the service manager, the IIS configuration
store) has not settled. The verifier waits a configurable settle period,
then re-probes every planned resource from scratch. It never looks at the
AttemptResults of the run that came before it.
"""

from __future__ import annotations

import logging
import time

from .models import Plan, VerificationEntry, VerificationReport
from .probe import ResourceProbe
from .retry import SleepFunc

logger = logging.getLogger(__name__)


class ConvergenceVerifier:
    """Build a VerificationReport from fresh probes."""

    def __init__(
        self,
        probe: ResourceProbe,
        settle_seconds: float = 0.0,
        sleep: SleepFunc | None = None,
    ) -> None:
        self._probe = probe
        self._settle_seconds = settle_seconds
        self._sleep = sleep or time.sleep

    def verify(self, plan: Plan) -> VerificationReport:
        """Re-observe every resource in plan and compare to desired state.

        Raises:
            ProbeUnavailable: If a subsystem cannot be queried.
        """
        if self._settle_seconds > 0:
            self._sleep(self._settle_seconds)

        entries: list[VerificationEntry] = []
        for resource in plan.resources:
            observed = self._probe.observe(resource)
            entry = VerificationEntry(
                key=resource.key,
                expected=resource.desired.model_dump(mode="json"),
                observed=observed.as_dict(),
                matched=observed.matches(resource.desired),
            )
            if not entry.matched:
                logger.warning(
                    "Verification mismatch",
                    extra={
                        "kind": resource.kind.value,
                        "resource": resource.name,
                        "expected": entry.expected,
                        "observed": entry.observed,
                    },
                )
            entries.append(entry)

        report = VerificationReport(entries=tuple(entries))
        logger.info(
            "Verification complete",
            extra={
                "resources": len(report.entries),
                "mismatches": len(report.mismatches),
                "passed": report.passed,
            },
        )
        return report
