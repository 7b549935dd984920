"""Error taxonomy for provisioning runs.

Every failure the orchestrator can meet maps to one ErrorKind. Exceptions
carry their kind so that the retry loop, the orchestrator and the run
summary can classify them without matching on message text.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Classification of a failed attempt or run."""

    PRECONDITION = "precondition"
    TRANSIENT = "transient"
    CONFLICT = "conflict"
    PROBE_UNAVAILABLE = "probe_unavailable"
    OPERATION_FAILED = "operation_failed"
    NOT_CONVERGED = "not_converged"
    VERIFICATION_MISMATCH = "verification_mismatch"


class ProvisioningError(Exception):
    """Base class for all provisioning failures."""

    kind: ErrorKind = ErrorKind.OPERATION_FAILED


class PreconditionError(ProvisioningError):
    """Raised before any mutation when the run cannot start.

    Examples: not running elevated, database password absent,
    collaborator script missing.
    """

    kind = ErrorKind.PRECONDITION


class TransientOperationError(ProvisioningError):
    """The subsystem has not finished a prior asynchronous change.

    Raised for "object in use", "configuration store busy" and
    "service not yet started" class failures. Always retried.
    """

    kind = ErrorKind.TRANSIENT


class BindingConflictError(ProvisioningError):
    """A port or binding is already held by another object."""

    kind = ErrorKind.CONFLICT

    def __init__(self, message: str, port: int | None = None) -> None:
        super().__init__(message)
        self.port = port


class ProbeUnavailable(ProvisioningError):
    """The subsystem backing a probe cannot be queried at all.

    Fatal: retrying cannot help when the probe mechanism is absent.
    """

    kind = ErrorKind.PROBE_UNAVAILABLE


class NotConvergedError(ProvisioningError):
    """A mutation returned but the follow-up probe still disagrees."""

    kind = ErrorKind.NOT_CONVERGED
