"""Bounded fixed-delay retry.

Service starts and IIS configuration changes complete asynchronously, so a
single immediate failure is not conclusive. The policy re-attempts an
operation a fixed number of times with a fixed pause in between. There is
no jitter and no exponential backoff: attempt counts are small and the only
contention is with the local machine.
"""

from __future__ import annotations

import logging
import subprocess
import time
from collections.abc import Callable
from typing import Any

from .config import RetrySettings
from .errors import ErrorKind, ProbeUnavailable, ProvisioningError
from .models import AttemptResult

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], None]

# Failures that mean "try again later" rather than "the program is wrong"
RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    ProvisioningError,
    OSError,
    subprocess.SubprocessError,
)


class RetryPolicy:
    """Run an operation up to max_attempts times.

    The policy never raises past its own boundary for retryable errors;
    callers inspect the returned AttemptResult. ProbeUnavailable ends the
    loop at once because no amount of waiting brings a missing subsystem
    back.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        delay_seconds: float = 2.0,
        sleep: SleepFunc | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if delay_seconds < 0:
            raise ValueError("delay_seconds cannot be negative")
        self.max_attempts = max_attempts
        self.delay_seconds = delay_seconds
        self._sleep = sleep or time.sleep

    @classmethod
    def from_settings(
        cls, settings: RetrySettings, *, service: bool = False, sleep: SleepFunc | None = None
    ) -> RetryPolicy:
        delay = settings.service_delay_seconds if service else settings.delay_seconds
        return cls(max_attempts=settings.max_attempts, delay_seconds=delay, sleep=sleep)

    def __repr__(self) -> str:
        return f"RetryPolicy(max_attempts={self.max_attempts}, delay_seconds={self.delay_seconds})"

    def execute(self, operation: Callable[[], Any], description: str = "operation") -> AttemptResult:
        """Execute operation with bounded retries.

        An attempt fails when the operation raises a retryable error or
        returns False. Any other return value is success.

        Args:
            operation: Zero-argument callable to run.
            description: Human-readable label for logs.

        Returns:
            AttemptResult describing the outcome.
        """
        last_error: ErrorKind | None = None
        detail: str | None = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                outcome = operation()
            except ProbeUnavailable as e:
                logger.error(
                    "Subsystem unavailable, not retrying",
                    extra={"operation": description, "attempt": attempt, "error": str(e)},
                )
                return AttemptResult(
                    succeeded=False,
                    attempts_used=attempt,
                    last_error=ErrorKind.PROBE_UNAVAILABLE,
                    detail=str(e),
                    total_attempts=attempt,
                )
            except RETRYABLE_ERRORS as e:
                last_error = e.kind if isinstance(e, ProvisioningError) else ErrorKind.OPERATION_FAILED
                detail = str(e)
            else:
                if outcome is not False:
                    if attempt > 1:
                        logger.info(
                            "Operation succeeded after retry",
                            extra={"operation": description, "attempt": attempt},
                        )
                    return AttemptResult(succeeded=True, attempts_used=attempt, total_attempts=attempt)
                last_error = ErrorKind.OPERATION_FAILED
                detail = f"{description} reported failure"

            if attempt < self.max_attempts:
                logger.warning(
                    "Operation failed, retrying",
                    extra={
                        "operation": description,
                        "attempt": attempt,
                        "max_attempts": self.max_attempts,
                        "wait_seconds": self.delay_seconds,
                        "error_kind": last_error.value,
                        "error": detail,
                    },
                )
                self._sleep(self.delay_seconds)

        logger.error(
            "Operation failed after all attempts",
            extra={
                "operation": description,
                "max_attempts": self.max_attempts,
                "error_kind": last_error.value if last_error else None,
                "error": detail,
            },
        )
        return AttemptResult(
            succeeded=False,
            attempts_used=self.max_attempts,
            last_error=last_error,
            detail=detail,
            total_attempts=self.max_attempts,
        )
