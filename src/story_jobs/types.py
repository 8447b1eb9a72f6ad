"""
Job types for story generation tracking.

This module defines the JobStatus enum, the JobRecord dataclass and the
wire types exchanged with the job API and the coin ledger.
"""

from __future__ import annotations

import dataclasses
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import ErrorKind

PROVISIONAL_PREFIX = "local_"


class JobStatus(str, Enum):
    """Job lifecycle states.

    State transitions:
    - PENDING -> SUBMITTED (createJob acknowledged)
    - PENDING -> FAILED (submission failed and kept visible)
    - SUBMITTED -> PROCESSING (server started work)
    - SUBMITTED/PROCESSING -> COMPLETED (result fetched, coins committed)
    - SUBMITTED/PROCESSING -> FAILED (server failure, timeout, lost job)
    """
    PENDING = "pending"
    SUBMITTED = "submitted"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {JobStatus.COMPLETED, JobStatus.FAILED}

    @property
    def is_active(self) -> bool:
        return not self.is_terminal


ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.SUBMITTED, JobStatus.PROCESSING})

VALID_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.SUBMITTED, JobStatus.FAILED},
    JobStatus.SUBMITTED: {JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED},
    # Terminal states have no valid transitions
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


class RemoteStatus(str, Enum):
    """Status values reported by GET /jobs/{jobId}."""
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @classmethod
    def parse(cls, value: str) -> RemoteStatus:
        normalized = (value or "").strip().lower()
        if normalized == "pending":
            return cls.QUEUED
        if normalized == "error":
            return cls.FAILED
        return cls(normalized)


@dataclass(frozen=True)
class ReservationToken:
    """A live hold on an owner's coin balance."""
    token_id: str
    owner_id: str
    amount: int
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "token_id": self.token_id,
            "owner_id": self.owner_id,
            "amount": self.amount,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReservationToken:
        return cls(
            token_id=data["token_id"],
            owner_id=data["owner_id"],
            amount=int(data["amount"]),
            created_at=data.get("created_at", time.time()),
        )


@dataclass
class StoryRequest:
    """A story generation request as submitted by the user.

    ``cost`` is the coin price computed by the caller; ``payload`` is the
    request body sent to the job API.
    """
    title: str
    cost: int
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"title": self.title, "cost": self.cost, "payload": dict(self.payload)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StoryRequest:
        return cls(
            title=data.get("title", ""),
            cost=int(data.get("cost", 0)),
            payload=dict(data.get("payload", {})),
        )


@dataclass
class JobStatusSnapshot:
    """Parsed response of a job status poll."""
    status: RemoteStatus
    progress: float = 0.0
    job_id: str | None = None
    result_ref: str | None = None
    error_code: str | None = None
    error_detail: str | None = None
    user_message: str | None = None
    billable: bool = False
    title: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> JobStatusSnapshot:
        """Parse the API's camelCase body.

        Raises:
            ValueError: If the status is missing or unknown
        """
        raw_progress = data.get("progress") or 0.0
        return cls(
            status=RemoteStatus.parse(data.get("status", "")),
            progress=min(1.0, max(0.0, float(raw_progress))),
            job_id=data.get("jobId"),
            result_ref=data.get("resultRef"),
            error_code=data.get("errorCode"),
            error_detail=data.get("errorDetail"),
            user_message=data.get("userMessage"),
            billable=bool(data.get("billable", False)),
            title=data.get("title"),
        )


@dataclass
class Artifact:
    """Result payload of a completed job."""
    job_id: str
    ref: str
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, job_id: str, data: dict[str, Any]) -> Artifact:
        ref = data.get("resultRef") or data.get("storyId") or data.get("id") or job_id
        return cls(job_id=job_id, ref=str(ref), payload=dict(data))


def provisional_job_id() -> str:
    """Local id used for a record until the server assigns one."""
    return f"{PROVISIONAL_PREFIX}{uuid.uuid4().hex}"


@dataclass
class JobRecord:
    """Persistent record of one story job.

    Contains all state needed to track, resume, settle and retry a job.
    Records are treated as values: every mutation returns a new record.
    """
    # Identity
    job_id: str = field(default_factory=provisional_job_id)
    idempotency_key: str = ""
    owner_id: str = ""
    title: str = ""

    # Status
    status: JobStatus = JobStatus.PENDING
    progress: float = 0.0
    acknowledged: bool = False

    # Timestamps
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    last_polled_at: float | None = None
    completed_at: float | None = None
    estimated_completion_at: float | None = None

    # Consecutive transport failures since the last good poll
    retry_count: int = 0

    # Money
    reservation: ReservationToken | None = None
    coins_refunded: bool | None = None

    # Outcome
    error_kind: ErrorKind | None = None
    error_detail: str | None = None
    user_message: str | None = None
    result_ref: str | None = None

    # Retry lineage
    request: dict[str, Any] | None = None
    attempt: int = 1
    retried_from: str | None = None

    should_notify: bool = False

    schema_version: int = 1

    @property
    def is_provisional(self) -> bool:
        return not self.acknowledged and self.job_id.startswith(PROVISIONAL_PREFIX)

    @property
    def is_retryable(self) -> bool:
        return (
            self.status == JobStatus.FAILED
            and self.error_kind is not None
            and self.error_kind.retryable
            and self.request is not None
        )

    def can_transition_to(self, new_status: JobStatus) -> bool:
        return new_status in VALID_TRANSITIONS.get(self.status, set())

    def replace(self, **updates: Any) -> JobRecord:
        """Copy with updates applied. Terminal records cannot be changed."""
        if self.status.is_terminal:
            raise ValueError(f"Job {self.job_id} is terminal ({self.status.value})")
        updates.setdefault("updated_at", time.time())
        return dataclasses.replace(self, **updates)

    def transition_to(self, new_status: JobStatus, **updates: Any) -> JobRecord:
        """Create a new JobRecord with updated status.

        Raises:
            ValueError: If the transition is invalid
        """
        if not self.can_transition_to(new_status):
            raise ValueError(
                f"Invalid transition: {self.status.value} -> {new_status.value}"
            )
        now = updates.pop("now", None)
        if now is None:
            now = time.time()
        updates["status"] = new_status
        updates["updated_at"] = now
        if new_status.is_terminal:
            updates.setdefault("completed_at", now)
            updates.setdefault("estimated_completion_at", None)
        return dataclasses.replace(self, **updates)

    def with_progress(self, progress: float, now: float) -> JobRecord:
        """Record a poll result. Progress never moves backwards."""
        progress = max(self.progress, min(1.0, max(0.0, progress)))
        estimated = self.estimated_completion_at
        if 0.0 < progress < 1.0:
            elapsed = max(0.0, now - self.created_at)
            estimated = now + (elapsed / progress - elapsed)
        return self.replace(
            progress=progress,
            last_polled_at=now,
            retry_count=0,
            estimated_completion_at=estimated,
            updated_at=now,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "job_id": self.job_id,
            "idempotency_key": self.idempotency_key,
            "owner_id": self.owner_id,
            "title": self.title,
            "status": self.status.value,
            "progress": self.progress,
            "acknowledged": self.acknowledged,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "last_polled_at": self.last_polled_at,
            "completed_at": self.completed_at,
            "estimated_completion_at": self.estimated_completion_at,
            "retry_count": self.retry_count,
            "reservation": self.reservation.to_dict() if self.reservation else None,
            "coins_refunded": self.coins_refunded,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error_detail": self.error_detail,
            "user_message": self.user_message,
            "result_ref": self.result_ref,
            "request": dict(self.request) if self.request is not None else None,
            "attempt": self.attempt,
            "retried_from": self.retried_from,
            "should_notify": self.should_notify,
            "schema_version": self.schema_version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> JobRecord:
        """Deserialize from dictionary."""
        return cls(
            job_id=data["job_id"],
            idempotency_key=data.get("idempotency_key", ""),
            owner_id=data.get("owner_id", ""),
            title=data.get("title", ""),
            status=JobStatus(data.get("status", "pending")),
            progress=float(data.get("progress", 0.0)),
            acknowledged=bool(data.get("acknowledged", False)),
            created_at=data.get("created_at", time.time()),
            updated_at=data.get("updated_at", time.time()),
            last_polled_at=data.get("last_polled_at"),
            completed_at=data.get("completed_at"),
            estimated_completion_at=data.get("estimated_completion_at"),
            retry_count=int(data.get("retry_count", 0)),
            reservation=ReservationToken.from_dict(data["reservation"]) if data.get("reservation") else None,
            coins_refunded=data.get("coins_refunded"),
            error_kind=ErrorKind(data["error_kind"]) if data.get("error_kind") else None,
            error_detail=data.get("error_detail"),
            user_message=data.get("user_message"),
            result_ref=data.get("result_ref"),
            request=dict(data["request"]) if data.get("request") is not None else None,
            attempt=int(data.get("attempt", 1)),
            retried_from=data.get("retried_from"),
            should_notify=bool(data.get("should_notify", False)),
            schema_version=data.get("schema_version", 1),
        )


__all__ = [
    "JobStatus",
    "ACTIVE_STATUSES",
    "VALID_TRANSITIONS",
    "RemoteStatus",
    "ReservationToken",
    "StoryRequest",
    "JobStatusSnapshot",
    "Artifact",
    "JobRecord",
    "PROVISIONAL_PREFIX",
    "provisional_job_id",
]
