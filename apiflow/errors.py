"""Exception hierarchy for apiflow.

Every error carries a ``code`` that ends up in persisted error strings so
that retry decisions can be made from the stored message alone.
"""

from __future__ import annotations

from typing import Optional

from .constants import PERMANENT_ERRORS


class ApiflowError(Exception):
    """Base class for all engine errors."""

    code: str = "INTERNAL_ERROR"
    retryable: bool = False

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ValidationError(ApiflowError):
    """Bad step, job or configuration shape. Never retried."""

    code = "VALIDATION_ERROR"


class ConfigurationError(ValidationError):
    """Unsupported engine configuration."""


class InvalidTransitionError(ValidationError):
    """A state transition that the execution state machine does not allow."""

    def __init__(self, execution_id: str, current: str, target: str) -> None:
        super().__init__(
            f"Cannot move execution {execution_id} from {current} to {target}"
        )
        self.execution_id = execution_id
        self.current = current
        self.target = target


class NotFoundError(ApiflowError):
    """Unknown execution, connection, secret or job."""

    code = "NOT_FOUND"


class ExecutionNotFoundError(NotFoundError):
    def __init__(self, execution_id: str) -> None:
        super().__init__(f"Execution not found: {execution_id}")
        self.execution_id = execution_id


class JobNotFoundError(NotFoundError):
    def __init__(self, queue_name: str, job_id: str) -> None:
        super().__init__(f"Job {job_id} not found in queue {queue_name}")
        self.queue_name = queue_name
        self.job_id = job_id


class PermanentError(ApiflowError):
    """Failure that will not go away by retrying (auth, missing resources)."""

    code = "UNAUTHORIZED"


class TransientError(ApiflowError):
    """Network, timeout or unknown failure; retried per policy."""

    code = "TRANSIENT_ERROR"
    retryable = True


class ConcurrentModificationError(TransientError):
    """The execution row changed between read and write."""

    code = "CONCURRENT_MODIFICATION"


class CancellationError(ApiflowError):
    """User initiated stop (pause or cancel)."""

    code = "USER_CANCELLED"


class QueueNotInitializedError(ApiflowError):
    code = "QUEUE_NOT_INITIALIZED"

    def __init__(self) -> None:
        super().__init__("Queue service not initialized")


class DuplicateJobError(ApiflowError):
    """The store refused a job because its key is already taken."""

    code = "DUPLICATE_JOB"


def is_permanent_error(message: Optional[str]) -> bool:
    """Return ``True`` when ``message`` mentions a permanent error marker."""
    if not message:
        return False
    upper = message.upper()
    return any(marker in upper for marker in PERMANENT_ERRORS)
