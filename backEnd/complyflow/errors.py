"""Exception taxonomy shared by every ComplyFlow component.

Adapter failures are converted into audit rows by the orchestrator and never
escape it. Authorization and not-found errors always reach the caller.
"""

from datetime import datetime
from enum import Enum
from typing import Optional, Sequence


class ErrorCategory(str, Enum):
    """Category recorded alongside a failed tier attempt or rejected item."""

    CONFIGURATION = "configuration"
    TRANSIENT = "transient"
    VALIDATION = "validation"
    DATA = "data"
    CONFLICT = "conflict"
    AUTHORIZATION = "authorization"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"


class ComplyError(Exception):
    """Base exception for ComplyFlow errors."""

    category: ErrorCategory = ErrorCategory.DATA
    retryable: bool = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(ComplyError):
    """Raised when an adapter or service cannot run with the current settings."""

    category = ErrorCategory.CONFIGURATION


class TransientError(ComplyError):
    """Network or upstream failure that may succeed on a later attempt."""

    category = ErrorCategory.TRANSIENT
    retryable = True

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PollTimeoutError(TransientError):
    """Raised when a polled job does not finish within its attempt ceiling."""

    def __init__(self, message: str, attempts: int):
        super().__init__(message)
        self.attempts = attempts


class ValidationFailure(ComplyError):
    """Extracted fields are present but break one or more business rules."""

    category = ErrorCategory.VALIDATION

    def __init__(self, message: str, rule_ids: Sequence[str] = ()):
        super().__init__(message)
        self.rule_ids = list(rule_ids)


class DataError(ComplyError):
    """A single submitted item is malformed."""

    category = ErrorCategory.DATA

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class ConflictError(ComplyError):
    """Concurrent modification or exclusive operation already in progress."""

    category = ErrorCategory.CONFLICT

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class TrainingInProgressError(ConflictError):
    """Another training run is active for the organization."""

    def __init__(self, org_id: str, training_run_id: str):
        super().__init__(
            f"Training run {training_run_id} already in progress for org {org_id}",
            retryable=True,
        )
        self.org_id = org_id
        self.training_run_id = training_run_id


class StaleRunError(ConflictError):
    """An extraction run changed status underneath the caller."""

    def __init__(self, run_id: str, expected: str, actual: str):
        super().__init__(
            f"Run {run_id} expected status {expected} but found {actual}",
            retryable=False,
        )
        self.run_id = run_id
        self.expected = expected
        self.actual = actual


class AuthorizationError(ComplyError):
    """The caller's organization does not own the target record."""

    category = ErrorCategory.AUTHORIZATION


class NotFoundError(ComplyError):
    """The target record does not exist."""

    category = ErrorCategory.NOT_FOUND


class RateLimitExceeded(ComplyError):
    """Raised when a caller exceeds the fixed-window request limit."""

    category = ErrorCategory.RATE_LIMITED
    retryable = True

    def __init__(self, key: str, retry_after_seconds: float, reset_at: datetime):
        super().__init__(
            f"Rate limit exceeded for {key}; retry in {retry_after_seconds:.0f}s"
        )
        self.key = key
        self.retry_after_seconds = retry_after_seconds
        self.reset_at = reset_at
