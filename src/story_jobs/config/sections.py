"""
Configuration sections.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from ..poller import BackoffPolicy
from .base import LogFormat, LogLevel, StoreBackendType


@dataclass
class PollingConfig:
    """Backoff and ceilings for job status polling."""

    base_interval: float = 2.0
    multiplier: float = 1.5
    max_interval: float = 20.0
    jitter: float = 0.2

    # A job fails with Timeout when either ceiling is hit
    max_transport_failures: int = 8
    hard_timeout: float = 600.0

    def __post_init__(self):
        # backoff fields are checked by BackoffPolicy
        self.backoff_policy()
        if self.max_transport_failures < 1:
            raise ValueError("max_transport_failures must be >= 1")
        if self.hard_timeout <= 0:
            raise ValueError("hard_timeout must be > 0")

    def backoff_policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            base=self.base_interval,
            multiplier=self.multiplier,
            cap=self.max_interval,
            jitter=self.jitter,
        )


@dataclass
class StoreConfig:
    """Where job records are persisted."""

    backend: StoreBackendType = "memory"

    # FileJobStore
    path: Path | None = None

    # RedisJobStore
    redis_url: str | None = None
    key_prefix: str = "story_jobs"

    def __post_init__(self):
        valid_backends = ("memory", "fs", "redis")
        if self.backend not in valid_backends:
            raise ValueError(f"Invalid store backend: {self.backend}. Must be one of {valid_backends}")
        if self.path and isinstance(self.path, str):
            self.path = Path(self.path)


@dataclass
class GatewayConfig:
    """Job API connection settings."""

    base_url: str | None = None
    timeout: float = 30.0
    auth_token: str | None = None
    user_agent: str = "story-jobs"

    def __post_init__(self):
        if self.timeout <= 0:
            raise ValueError("timeout must be > 0")


@dataclass
class JobsConfig:
    """JobManager behaviour."""

    # Leave a visible Failed{SubmissionFailed} record when createJob fails
    keep_failed_submissions: bool = False


@dataclass
class LoggingConfig:
    """Configuration for logging."""

    level: LogLevel = "INFO"
    format: LogFormat = "text"

    def __post_init__(self):
        """Validate configuration after initialization."""
        valid_levels = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
        if self.level not in valid_levels:
            raise ValueError(f"Invalid log level: {self.level}. Must be one of {valid_levels}")
        valid_formats = ("text", "json")
        if self.format not in valid_formats:
            raise ValueError(f"Invalid log format: {self.format}. Must be one of {valid_formats}")


__all__ = ["PollingConfig", "StoreConfig", "GatewayConfig", "JobsConfig", "LoggingConfig"]
