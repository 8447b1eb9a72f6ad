"""
Error taxonomy for story-jobs.

This module provides:
- ErrorKind: the user-facing failure classification stored on job records
- A hierarchical exception system with retryable vs non-retryable semantics
- Structured context for debugging and logging
- Server failure-code classification
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Failure classification persisted on a JobRecord.

    Retryable kinds offer a retry affordance; the rest offer dismiss only.
    """

    ALREADY_ACTIVE = "already_active"
    SUBMISSION_FAILED = "submission_failed"
    CONTENT_POLICY_VIOLATION = "content_policy_violation"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    TIMEOUT = "timeout"
    TRANSPORT_ERROR = "transport_error"
    GENERATION_FAILED = "generation_failed"

    @property
    def retryable(self) -> bool:
        return self in _RETRYABLE_KINDS


_RETRYABLE_KINDS = {
    ErrorKind.SUBMISSION_FAILED,
    ErrorKind.TIMEOUT,
    ErrorKind.TRANSPORT_ERROR,
    ErrorKind.GENERATION_FAILED,
}

# Server error codes that mean "change your input", never "try again".
CONTENT_POLICY_CODES = frozenset(
    {
        "content_safety",
        "content_policy_violation",
        "inappropriate_prompt",
        "inappropriate_content",
        "moderation_failed",
        "image_safety_rejected",
        "image_rejected",
    }
)

TIMEOUT_CODES = frozenset({"timeout", "generation_timeout"})


def classify_failure(error_code: str | None) -> ErrorKind:
    """Map a server-reported failure code to an ErrorKind."""
    code = (error_code or "").strip().lower()
    if code in CONTENT_POLICY_CODES:
        return ErrorKind.CONTENT_POLICY_VIOLATION
    if code in TIMEOUT_CODES:
        return ErrorKind.TIMEOUT
    return ErrorKind.GENERATION_FAILED


@dataclass
class ErrorContext:
    """Which job and operation an error belongs to."""

    job_id: str | None = None
    owner_id: str | None = None
    operation: str | None = None
    attempt: int = 1
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "owner_id": self.owner_id,
            "operation": self.operation,
            "attempt": self.attempt,
            **self.extra,
        }


class StoryJobError(Exception):
    """
    Base exception for all story-jobs errors.

    Attributes:
        kind: Failure classification, when the error maps to one
        message: What went wrong, for humans
        retryable: True when the poller may keep trying
        context: Job id, operation and other correlation
        cause: Underlying exception, if any
    """

    kind: ErrorKind | None = None
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind
        if retryable is not None:
            self.retryable = retryable
        self.context = context or ErrorContext()
        self.cause = cause

    def __str__(self) -> str:
        label = self.kind.value if self.kind else self.__class__.__name__
        parts = [f"[{label}] {self.message}"]
        if self.context.job_id:
            parts.append(f"(job_id={self.context.job_id})")
        return " ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        """Plain-data form, as expanded by log_error."""
        return {
            "error_type": self.__class__.__name__,
            "kind": self.kind.value if self.kind else None,
            "message": self.message,
            "retryable": self.retryable,
            "context": self.context.to_dict(),
            "cause": str(self.cause) if self.cause else None,
        }


# =============================================================================
# Admission errors (raised locally, before or during submit)
# =============================================================================


class AlreadyActiveError(StoryJobError):
    """The owner already has a non-terminal job. Wait for it or dismiss it."""

    kind = ErrorKind.ALREADY_ACTIVE
    retryable = False

    def __init__(
        self,
        message: str = "A story job is already in progress",
        *,
        active_job_id: str | None = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.active_job_id = active_job_id


class InsufficientFundsError(StoryJobError):
    """The coin balance cannot cover the reservation."""

    kind = ErrorKind.INSUFFICIENT_FUNDS
    retryable = False

    def __init__(
        self,
        message: str = "Insufficient coin balance",
        *,
        required: int | None = None,
        available: int | None = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.required = required
        self.available = available


class SubmissionFailedError(StoryJobError):
    """createJob did not succeed; the reservation has been released."""

    kind = ErrorKind.SUBMISSION_FAILED
    retryable = True

    def __init__(self, message: str = "Job submission failed", *, record: Any = None, **kwargs):
        super().__init__(message, **kwargs)
        self.record = record


# =============================================================================
# Lifecycle errors
# =============================================================================


class JobNotFoundError(StoryJobError):
    """No local record exists for the given job id."""


class JobStateError(StoryJobError):
    """The operation is not valid for the record's current status."""


class NotRetryableError(JobStateError):
    """retry() called on a record whose failure cannot be retried as-is."""


class ReservationError(StoryJobError):
    """A reservation token is unknown or was already resolved."""


class ConfigError(StoryJobError):
    """Invalid or incomplete configuration."""


# =============================================================================
# Gateway errors
# =============================================================================


class GatewayError(StoryJobError):
    """Base class for errors from the job API."""

    http_status: int | None = None

    def __init__(
        self,
        message: str,
        *,
        http_status: int | None = None,
        payload: dict[str, Any] | None = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        if http_status is not None:
            self.http_status = http_status
        self.payload = payload


class TransportError(GatewayError):
    """Timeout, connection failure or 5xx. Retried inside the Poller.

    ``payload`` holds any JSON body that came back with the failure so
    an explicit server classification can still be honoured.
    """

    kind = ErrorKind.TRANSPORT_ERROR
    retryable = True


class RemoteJobNotFoundError(GatewayError):
    """The server has no record of the job."""

    http_status = 404
    retryable = False


class ServerConflictError(GatewayError):
    """The server already holds an active job for this principal."""

    http_status = 409
    retryable = False

    def __init__(
        self,
        message: str = "Server reports an active job for this user",
        *,
        active_job_id: str | None = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.active_job_id = active_job_id


__all__ = [
    "ErrorKind",
    "ErrorContext",
    "CONTENT_POLICY_CODES",
    "TIMEOUT_CODES",
    "classify_failure",
    "StoryJobError",
    "AlreadyActiveError",
    "InsufficientFundsError",
    "SubmissionFailedError",
    "JobNotFoundError",
    "JobStateError",
    "NotRetryableError",
    "ReservationError",
    "ConfigError",
    "GatewayError",
    "TransportError",
    "RemoteJobNotFoundError",
    "ServerConflictError",
]
