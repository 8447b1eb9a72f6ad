"""
Per-job status polling.

One Poller runs per active job. It issues ``get_job_status`` calls one at
a time (never two in flight for the same job), waits between them on an
exponential backoff schedule, and hands every response to a PollTarget
(the JobManager) which applies it to the store under its own lock.

Backoff:
- first poll is immediate
- nominal delay starts at ``base``, grows by ``multiplier`` per poll,
  capped at ``cap``
- each actual delay is the nominal delay with +/- ``jitter`` applied,
  clamped to ``cap``
- the nominal delay resets to ``base`` whenever progress increases
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Protocol

from .cancellation import CancellationToken, SleepFn
from .errors import GatewayError, RemoteJobNotFoundError
from .gateway import ApiGateway
from .logging import get_logger
from .types import Artifact, JobStatusSnapshot, RemoteStatus

logger = get_logger("story_jobs.poller")


@dataclass(frozen=True)
class BackoffPolicy:
    base: float = 2.0
    multiplier: float = 1.5
    cap: float = 20.0
    jitter: float = 0.2

    def __post_init__(self) -> None:
        if self.base <= 0:
            raise ValueError("base must be > 0")
        if self.multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")
        if self.cap < self.base:
            raise ValueError("cap must be >= base")
        if not 0.0 <= self.jitter < 1.0:
            raise ValueError("jitter must be in [0, 1)")


class BackoffSchedule:
    """Delay generator for one Poller."""

    def __init__(self, policy: BackoffPolicy | None = None, rng: random.Random | None = None):
        self.policy = policy or BackoffPolicy()
        self._rng = rng or random.Random()
        self._nominal = self.policy.base

    @property
    def nominal(self) -> float:
        """The un-jittered delay the next call will be based on."""
        return self._nominal

    def reset(self) -> None:
        self._nominal = self.policy.base

    def next_delay(self, progressed: bool = False) -> float:
        if progressed:
            self.reset()
        nominal = self._nominal
        self._nominal = min(self.policy.cap, nominal * self.policy.multiplier)
        jitter = self.policy.jitter
        if jitter:
            nominal *= self._rng.uniform(1.0 - jitter, 1.0 + jitter)
        return min(self.policy.cap, nominal)


@dataclass(frozen=True)
class PollOutcome:
    """What the target did with a poll result."""
    done: bool
    progressed: bool = False


CONTINUE = PollOutcome(done=False)
STOP = PollOutcome(done=True)


class PollTarget(Protocol):
    """State-application callbacks consumed by a Poller.

    Each callback re-reads the record; a record that was removed or has
    already reached a terminal state yields ``done=True``.
    """

    async def expire_if_overdue(self, job_id: str) -> PollOutcome: ...

    async def apply_status(self, job_id: str, snapshot: JobStatusSnapshot) -> PollOutcome: ...

    async def complete(
        self, job_id: str, snapshot: JobStatusSnapshot, artifact: Artifact
    ) -> PollOutcome: ...

    async def fail(self, job_id: str, snapshot: JobStatusSnapshot) -> PollOutcome: ...

    async def record_transport_failure(self, job_id: str, error: GatewayError) -> PollOutcome: ...

    async def mark_lost(self, job_id: str, error: RemoteJobNotFoundError) -> PollOutcome: ...


def classified_failure(error: GatewayError) -> JobStatusSnapshot | None:
    """Server failure carried in an error body, if there is one.

    An explicit classification wins over the ambiguous transport state.
    """
    payload = error.payload
    if not payload:
        return None
    status = str(payload.get("status") or "").strip().lower()
    if not payload.get("errorCode") and status not in ("failed", "error"):
        return None
    try:
        return JobStatusSnapshot.from_dict({**payload, "status": "failed"})
    except (ValueError, TypeError):
        return None


class Poller:
    """Polling loop for a single job."""

    def __init__(
        self,
        job_id: str,
        target: PollTarget,
        gateway: ApiGateway,
        *,
        schedule: BackoffSchedule | None = None,
        token: CancellationToken | None = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.job_id = job_id
        self.target = target
        self.gateway = gateway
        self.schedule = schedule or BackoffSchedule()
        self.token = token or CancellationToken()
        self._sleep = sleep
        self.polls = 0
        self.failed_cycles = 0

    async def run(self) -> None:
        with logger.trace_context(job_id=self.job_id, operation="poll"):
            logger.debug("Poller started")
            while not self.token.is_cancelled:
                try:
                    outcome = await self.poll_once()
                except Exception as exc:
                    if self.token.is_cancelled:
                        break
                    # store or ledger trouble; the next cycle re-reads the record
                    self.failed_cycles += 1
                    logger.log_error(
                        exc,
                        "Poll cycle failed; retrying after backoff",
                        level=logging.WARNING,
                        failed_cycles=self.failed_cycles,
                    )
                    outcome = CONTINUE
                if outcome.done or self.token.is_cancelled:
                    break
                delay = self.schedule.next_delay(outcome.progressed)
                if await self.token.sleep(delay, self._sleep):
                    break
            logger.debug(
                "Poller stopped",
                polls=self.polls,
                cancelled=self.token.is_cancelled,
                reason=self.token.reason,
            )

    async def poll_once(self) -> PollOutcome:
        """One status fetch and its application."""
        outcome = await self.target.expire_if_overdue(self.job_id)
        if outcome.done:
            return outcome

        self.polls += 1
        try:
            snapshot = await self.gateway.get_job_status(self.job_id)
        except RemoteJobNotFoundError as exc:
            if self.token.is_cancelled:
                return STOP
            return await self.target.mark_lost(self.job_id, exc)
        except GatewayError as exc:
            if self.token.is_cancelled:
                return STOP
            snapshot = classified_failure(exc)
            if snapshot is None:
                return await self.target.record_transport_failure(self.job_id, exc)

        if self.token.is_cancelled:
            return STOP

        if snapshot.status == RemoteStatus.FAILED:
            return await self.target.fail(self.job_id, snapshot)

        if snapshot.status == RemoteStatus.COMPLETED:
            try:
                artifact = await self.gateway.fetch_result(self.job_id)
            except GatewayError as exc:
                if self.token.is_cancelled:
                    return STOP
                return await self.target.record_transport_failure(self.job_id, exc)
            if self.token.is_cancelled:
                return STOP
            return await self.target.complete(self.job_id, snapshot, artifact)

        return await self.target.apply_status(self.job_id, snapshot)


__all__ = [
    "BackoffPolicy",
    "BackoffSchedule",
    "PollOutcome",
    "PollTarget",
    "Poller",
    "classified_failure",
]
