"""
Top-level package for story-jobs.

Client-side tracking of long-running story generation jobs: idempotent
submission, durable job records, resilient status polling and coin
reservation settlement.
"""

from .cancellation import CancellationToken
from .config import Settings, configure, get_settings, load_env
from .container import Container, create_gateway, create_job_manager, create_store
from .errors import (
    AlreadyActiveError,
    ErrorKind,
    GatewayError,
    InsufficientFundsError,
    JobNotFoundError,
    JobStateError,
    NotRetryableError,
    StoryJobError,
    SubmissionFailedError,
    TransportError,
)
from .events import EventChannel, InMemoryEventChannel, JobEvent
from .gateway import ApiGateway, HttpApiGateway
from .ledger import CoinLedger, InMemoryCoinLedger
from .logging import configure_logging, get_logger
from .manager import JobManager
from .poller import BackoffPolicy, BackoffSchedule, Poller
from .store import FileJobStore, InMemoryJobStore, JobStore
from .types import JobRecord, JobStatus, ReservationToken, StoryRequest

__version__ = "0.1.0"

__all__ = [
    "JobManager",
    "JobRecord",
    "JobStatus",
    "StoryRequest",
    "ReservationToken",
    # Collaborators
    "JobStore",
    "InMemoryJobStore",
    "FileJobStore",
    "ApiGateway",
    "HttpApiGateway",
    "CoinLedger",
    "InMemoryCoinLedger",
    "EventChannel",
    "InMemoryEventChannel",
    "JobEvent",
    # Polling
    "Poller",
    "BackoffPolicy",
    "BackoffSchedule",
    "CancellationToken",
    # Errors
    "ErrorKind",
    "StoryJobError",
    "AlreadyActiveError",
    "InsufficientFundsError",
    "SubmissionFailedError",
    "NotRetryableError",
    "JobNotFoundError",
    "JobStateError",
    "GatewayError",
    "TransportError",
    # Config & wiring
    "Settings",
    "get_settings",
    "configure",
    "load_env",
    "Container",
    "create_store",
    "create_gateway",
    "create_job_manager",
    "configure_logging",
    "get_logger",
]
