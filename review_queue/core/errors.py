"""Error taxonomy for review runs."""

from __future__ import annotations

from review_queue.core.models import ErrorKind


class ReviewQueueError(Exception):
    """Base class for all review queue errors."""

    kind: ErrorKind = ErrorKind.AGENT_EXIT

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigurationError(ReviewQueueError):
    """Invalid run configuration, detected before anything is spawned."""

    kind = ErrorKind.CONFIGURATION


class ProcessSpawnError(ReviewQueueError):
    """The OS failed to launch the agent process."""

    kind = ErrorKind.PROCESS_SPAWN


class AgentExitError(ReviewQueueError):
    """Agent exited nonzero, timed out, or produced no usable output."""

    kind = ErrorKind.AGENT_EXIT

    def __init__(self, message: str, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class RunCancelledError(ReviewQueueError):
    """Cooperative termination of a run."""

    kind = ErrorKind.CANCELLED

    def __init__(self, message: str = "Cancelled") -> None:
        super().__init__(message)


class PersistenceError(ReviewQueueError):
    """History could not be written or read."""

    kind = ErrorKind.PERSISTENCE


class PhaseError(ReviewQueueError):
    """Aggregation or fix invocation failed."""

    def __init__(self, phase: str, cause: ReviewQueueError) -> None:
        super().__init__(f"{phase} failed: {cause.message}")
        self.phase = phase
        self.cause = cause
        self.kind = cause.kind


def error_from_kind(kind: ErrorKind, message: str, exit_code: int | None = None) -> ReviewQueueError:
    """Build the exception matching an error kind."""
    if kind == ErrorKind.CONFIGURATION:
        return ConfigurationError(message)
    if kind == ErrorKind.PROCESS_SPAWN:
        return ProcessSpawnError(message)
    if kind == ErrorKind.AGENT_EXIT:
        return AgentExitError(message, exit_code=exit_code)
    if kind == ErrorKind.CANCELLED:
        return RunCancelledError(message)
    if kind == ErrorKind.PERSISTENCE:
        return PersistenceError(message)
    raise ValueError(f"Unhandled error kind: {kind}")


class RunInProgressError(ReviewQueueError):
    """A run was requested while another one is still active."""

    kind = ErrorKind.CONFIGURATION
