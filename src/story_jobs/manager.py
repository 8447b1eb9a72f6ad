"""
Job manager for the story job lifecycle.

This module provides the JobManager that orchestrates submission,
resumption, retry and dismissal of story jobs, owns the job store,
spawns one Poller per active job and publishes a JobEvent for every
applied state change.

Serialization:
- every store read-modify-write and every ledger resolution happens
  under a single manager lock
- network calls (createJob, status polls, lookups) run outside it
- the ledger call for a terminal transition happens before the terminal
  record is written; if it raises, the record is left untouched and the
  next poll cycle tries again
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .cancellation import CancellationToken, SleepFn
from .config import JobsConfig, PollingConfig
from .errors import (
    AlreadyActiveError,
    ErrorContext,
    ErrorKind,
    GatewayError,
    JobNotFoundError,
    JobStateError,
    NotRetryableError,
    RemoteJobNotFoundError,
    ReservationError,
    ServerConflictError,
    SubmissionFailedError,
    classify_failure,
)
from .events import EventChannel, InMemoryEventChannel, JobEvent
from .gateway import ApiGateway
from .idempotency import generate_idempotency_key
from .ledger import CoinLedger
from .logging import get_logger, timed
from .poller import (
    CONTINUE,
    STOP,
    BackoffSchedule,
    PollOutcome,
    Poller,
)
from .store import JobFilter, JobStore
from .types import (
    Artifact,
    JobRecord,
    JobStatus,
    JobStatusSnapshot,
    RemoteStatus,
    StoryRequest,
)

logger = get_logger("story_jobs.manager")


@dataclass
class PollerHandle:
    """A running Poller task and its cancellation token."""
    task: asyncio.Task
    token: CancellationToken


class JobManager:
    """Manages the story job lifecycle.

    The JobManager is responsible for:
    - Admission (single active job per owner) and coin reservation
    - Submission with an idempotency key and provisional-id re-keying
    - One Poller per active job, tracked by job id
    - Settling reservations exactly once on terminal transitions
    - Event emission for every applied state change
    """

    def __init__(
        self,
        store: JobStore,
        gateway: ApiGateway,
        ledger: CoinLedger,
        events: EventChannel | None = None,
        *,
        polling: PollingConfig | None = None,
        jobs: JobsConfig | None = None,
        clock: Callable[[], float] = time.time,
        sleep: SleepFn = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self._store = store
        self._gateway = gateway
        self._ledger = ledger
        self.events = events if events is not None else InMemoryEventChannel()
        self.polling = polling or PollingConfig()
        self.jobs = jobs or JobsConfig()
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._lock = asyncio.Lock()
        self._pollers: dict[str, PollerHandle] = {}
        # Provisional ids whose createJob call is still in flight
        self._submitting: set[str] = set()

    @property
    def store(self) -> JobStore:
        return self._store

    # =========================================================================
    # Queries
    # =========================================================================

    async def get(self, job_id: str) -> JobRecord | None:
        return await self._store.get(job_id)

    async def list_jobs(self, owner_id: str | None = None) -> list[JobRecord]:
        return await self._store.list(JobFilter(owner_id=owner_id))

    async def active_job(self, owner_id: str) -> JobRecord | None:
        return await self._store.active_for_owner(owner_id)

    def is_polling(self, job_id: str) -> bool:
        handle = self._pollers.get(job_id)
        return handle is not None and not handle.task.done()

    @property
    def polling_job_ids(self) -> set[str]:
        return {job_id for job_id in self._pollers if self.is_polling(job_id)}

    # =========================================================================
    # Submission
    # =========================================================================

    async def submit(
        self,
        request: StoryRequest,
        owner_id: str,
        *,
        should_notify: bool = False,
    ) -> JobRecord:
        """Submit a new story job.

        Returns:
            The Submitted record, keyed by the server job id

        Raises:
            AlreadyActiveError: The owner already has an active job, locally
                or (409) on the server
            InsufficientFundsError: The coin reservation was refused
            SubmissionFailedError: createJob failed; the reservation was released
        """
        return await self._submit(request, owner_id, should_notify=should_notify)

    async def _submit(
        self,
        request: StoryRequest,
        owner_id: str,
        *,
        should_notify: bool = False,
        attempt: int = 1,
        retried_from: str | None = None,
    ) -> JobRecord:
        with logger.trace_context(owner_id=owner_id, operation="submit"):
            record = await self._admit(
                request,
                owner_id,
                should_notify=should_notify,
                attempt=attempt,
                retried_from=retried_from,
            )
            self._submitting.add(record.job_id)
            try:
                try:
                    with timed() as timer:
                        server_job_id = await self._gateway.create_job(
                            request.payload, record.idempotency_key
                        )
                except asyncio.CancelledError:
                    logger.info("Submission cancelled locally", job_id=record.job_id)
                    await asyncio.shield(self._abandon_submission(record))
                    raise
                except ServerConflictError as exc:
                    await self._abandon_submission(record)
                    imported = await self._import_server_job(owner_id, exc.active_job_id, request.title)
                    raise AlreadyActiveError(
                        "The server already has a story job in progress",
                        active_job_id=imported.job_id if imported else exc.active_job_id,
                        context=ErrorContext(owner_id=owner_id, operation="submit"),
                        cause=exc,
                    ) from exc
                except GatewayError as exc:
                    failed = await self._fail_submission(record, exc)
                    raise SubmissionFailedError(
                        f"Job submission failed: {exc.message}",
                        record=failed,
                        context=ErrorContext(job_id=record.job_id, owner_id=owner_id, operation="submit"),
                        cause=exc,
                    ) from exc
            finally:
                self._submitting.discard(record.job_id)

            logger.debug(
                "createJob acknowledged",
                job_id=server_job_id,
                provisional_id=record.job_id,
                latency_ms=round(timer.elapsed_ms, 1),
            )
            submitted = await self._acknowledge(record, server_job_id)
            self._spawn_poller(submitted)
            return submitted

    async def _admit(
        self,
        request: StoryRequest,
        owner_id: str,
        *,
        should_notify: bool,
        attempt: int,
        retried_from: str | None,
    ) -> JobRecord:
        """Active-job check, reservation and Pending write as one step."""
        async with self._lock:
            active = await self._store.active_for_owner(owner_id)
            if active is not None:
                logger.info("Submission rejected: job already active", active_job_id=active.job_id)
                raise AlreadyActiveError(
                    active_job_id=active.job_id,
                    context=ErrorContext(owner_id=owner_id, operation="submit"),
                )

            reservation = await self._ledger.reserve(owner_id, request.cost)
            now = self._clock()
            record = JobRecord(
                idempotency_key=generate_idempotency_key(request),
                owner_id=owner_id,
                title=request.title,
                reservation=reservation,
                request=request.to_dict(),
                attempt=attempt,
                retried_from=retried_from,
                should_notify=should_notify,
                created_at=now,
                updated_at=now,
            )
            try:
                await self._store.put(record)
            except Exception:
                await self._ledger.release(reservation)
                raise
            logger.log_transition(
                record.job_id,
                None,
                record.status.value,
                idempotency_key=record.idempotency_key,
                reservation=reservation.token_id,
                amount=reservation.amount,
            )
            return record

    async def _acknowledge(self, record: JobRecord, server_job_id: str) -> JobRecord:
        async with self._lock:
            current = await self._store.get(record.job_id) or record
            submitted = current.transition_to(
                JobStatus.SUBMITTED,
                job_id=server_job_id,
                acknowledged=True,
                now=self._clock(),
            )
            await self._store.replace(record.job_id, submitted)
            logger.log_transition(
                submitted.job_id,
                current.status.value,
                submitted.status.value,
                provisional_id=record.job_id,
            )
            await self._emit(submitted, current.status)
            return submitted

    async def _abandon_submission(self, record: JobRecord) -> None:
        """Release the hold and drop the provisional record."""
        async with self._lock:
            current = await self._store.get(record.job_id)
            if current is None or current.status.is_terminal:
                return
            if current.reservation is not None:
                await self._ledger.release(current.reservation)
                logger.info("Reservation released", job_id=current.job_id, reason="abandoned")
            await self._store.delete(current.job_id)

    async def _fail_submission(self, record: JobRecord, error: GatewayError) -> JobRecord | None:
        logger.log_error(error, "createJob failed", level=logging.WARNING, job_id=record.job_id)
        if not self.jobs.keep_failed_submissions:
            await self._abandon_submission(record)
            return None
        async with self._lock:
            current = await self._store.get(record.job_id)
            if current is None or current.status.is_terminal:
                return current
            return await self._settle(
                current,
                JobStatus.FAILED,
                commit=False,
                error_kind=ErrorKind.SUBMISSION_FAILED,
                error_detail=error.message,
            )

    async def _import_server_job(
        self,
        owner_id: str,
        job_id: str | None,
        title: str,
    ) -> JobRecord | None:
        """Adopt a job the server reports as active for this owner."""
        if not job_id:
            return None
        try:
            snapshot = await self._gateway.get_job_status(job_id)
        except GatewayError as exc:
            logger.log_error(exc, "Could not fetch server job", level=logging.WARNING, job_id=job_id)
            snapshot = None

        async with self._lock:
            existing = await self._store.get(job_id)
            if existing is not None:
                return existing
            active = await self._store.active_for_owner(owner_id)
            if active is not None:
                return active

            now = self._clock()
            status = JobStatus.SUBMITTED
            if snapshot is not None and snapshot.status == RemoteStatus.PROCESSING:
                status = JobStatus.PROCESSING
            record = JobRecord(
                job_id=job_id,
                owner_id=owner_id,
                title=(snapshot.title if snapshot and snapshot.title else title),
                status=status,
                progress=snapshot.progress if snapshot else 0.0,
                acknowledged=True,
                created_at=now,
                updated_at=now,
                last_polled_at=now if snapshot else None,
            )
            await self._store.put(record)
            logger.log_transition(record.job_id, None, record.status.value, imported=True)
            await self._emit(record, None)

        self._spawn_poller(record)
        return record

    # =========================================================================
    # Resume
    # =========================================================================

    async def resume_all(self) -> list[JobRecord]:
        """Resume polling for every active record in the store.

        Unacknowledged records get exactly one reconciliation lookup.
        Safe to call repeatedly: a job that already has a running Poller
        is left alone.

        Returns:
            The records being polled after the call
        """
        await self._store.open()
        resumed: list[JobRecord] = []
        with logger.trace_context(operation="resume_all"):
            for record in await self._store.list_active():
                if record.job_id in self._submitting:
                    continue
                if self.is_polling(record.job_id):
                    resumed.append(record)
                    continue

                if not record.acknowledged:
                    record = await self._reconcile(record)
                    if record is None or record.status.is_terminal:
                        continue
                else:
                    # Current state for consumers after a restart
                    await self._emit(record, record.status)

                self._spawn_poller(record)
                resumed.append(record)

            logger.info("Resumed active jobs", count=len(resumed))
        return resumed

    async def _reconcile(self, record: JobRecord) -> JobRecord | None:
        """Resolve a record whose createJob acknowledgement never arrived."""
        try:
            snapshot = await self._gateway.lookup_job(record.idempotency_key)
        except GatewayError as exc:
            elapsed = self._clock() - record.created_at
            if elapsed < self.polling.hard_timeout:
                logger.log_error(
                    exc,
                    "Reconciliation lookup failed; leaving record for next resume",
                    level=logging.WARNING,
                    job_id=record.job_id,
                )
                return None
            logger.log_error(
                exc,
                "Reconciliation lookup failed past the hard ceiling",
                level=logging.WARNING,
                job_id=record.job_id,
                elapsed=round(elapsed),
            )
            snapshot = None
            detail = f"Submission unconfirmed after {elapsed:.0f}s: {exc.message}"
        else:
            detail = "Submission was never acknowledged by the server"

        async with self._lock:
            current = await self._store.get(record.job_id)
            if current is None or current.status.is_terminal or current.acknowledged:
                return current

            if snapshot is None or not snapshot.job_id:
                logger.info("Failing unacknowledged submission", job_id=current.job_id, detail=detail)
                outcome = await self._settle_or_continue(
                    current,
                    JobStatus.FAILED,
                    commit=False,
                    error_kind=ErrorKind.SUBMISSION_FAILED,
                    error_detail=detail,
                )
                if not outcome.done:
                    return None
                return await self._store.get(current.job_id)

            submitted = current.transition_to(
                JobStatus.SUBMITTED,
                job_id=snapshot.job_id,
                acknowledged=True,
                now=self._clock(),
            )
            await self._store.replace(current.job_id, submitted)
            logger.log_transition(
                submitted.job_id,
                current.status.value,
                submitted.status.value,
                provisional_id=current.job_id,
                reconciled=True,
            )
            await self._emit(submitted, current.status)
            return submitted

    # =========================================================================
    # Retry / dismiss
    # =========================================================================

    async def retry(self, job_id: str) -> JobRecord:
        """Resubmit a retryable Failed job as a new record.

        The new submission reuses the original request with a fresh
        idempotency key. The failed record is removed only once the new
        submission has been acknowledged.

        Raises:
            JobNotFoundError: No record for ``job_id``
            NotRetryableError: The record is not Failed, or its failure kind
                is not retryable
        """
        record = await self._store.get(job_id)
        if record is None:
            raise JobNotFoundError(
                f"Job {job_id} not found",
                context=ErrorContext(job_id=job_id, operation="retry"),
            )
        if not record.is_retryable:
            if record.status != JobStatus.FAILED:
                reason = f"status is {record.status.value}"
            elif record.request is None:
                reason = "the original request is not available"
            else:
                kind = record.error_kind.value if record.error_kind else "unknown"
                reason = f"failure kind {kind} is not retryable"
            raise NotRetryableError(
                f"Job {job_id} cannot be retried: {reason}",
                context=ErrorContext(job_id=job_id, owner_id=record.owner_id, operation="retry"),
            )

        new_record = await self._submit(
            StoryRequest.from_dict(record.request or {}),
            record.owner_id,
            should_notify=record.should_notify,
            attempt=record.attempt + 1,
            retried_from=record.job_id,
        )

        async with self._lock:
            old = await self._store.get(job_id)
            if old is not None and old.status.is_terminal:
                await self._store.delete(job_id)
        logger.info("Job retried", job_id=new_record.job_id, retried_from=job_id, attempt=new_record.attempt)
        return new_record

    async def dismiss(self, job_id: str) -> None:
        """Remove a terminal record after the user has acknowledged it.

        Raises:
            JobNotFoundError: No record for ``job_id``
            JobStateError: The record is still active
        """
        async with self._lock:
            record = await self._store.get(job_id)
            if record is None:
                raise JobNotFoundError(
                    f"Job {job_id} not found",
                    context=ErrorContext(job_id=job_id, operation="dismiss"),
                )
            if not record.status.is_terminal:
                raise JobStateError(
                    f"Job {job_id} is {record.status.value}; only finished jobs can be dismissed",
                    context=ErrorContext(job_id=job_id, owner_id=record.owner_id, operation="dismiss"),
                )
            await self._store.delete(job_id)

        handle = self._pollers.pop(job_id, None)
        if handle is not None:
            handle.token.cancel("dismissed")
        logger.info("Job dismissed", job_id=job_id, status=record.status.value)

    # =========================================================================
    # Teardown
    # =========================================================================

    async def shutdown(self) -> None:
        """Stop every Poller. In-flight calls finish and their results are dropped."""
        handles = list(self._pollers.values())
        for handle in handles:
            handle.token.cancel("shutdown")
        if handles:
            await asyncio.gather(*(h.task for h in handles), return_exceptions=True)
        self._pollers.clear()
        logger.info("Job manager shut down", pollers=len(handles))

    async def join(self, job_id: str | None = None) -> None:
        """Wait for one Poller, or every running Poller, to finish."""
        if job_id is not None:
            handles = [self._pollers[job_id]] if job_id in self._pollers else []
        else:
            handles = list(self._pollers.values())
        if handles:
            await asyncio.gather(*(h.task for h in handles), return_exceptions=True)

    # =========================================================================
    # Poller management
    # =========================================================================

    def _spawn_poller(self, record: JobRecord) -> None:
        if self.is_polling(record.job_id):
            return
        token = CancellationToken()
        poller = Poller(
            record.job_id,
            self,
            self._gateway,
            schedule=BackoffSchedule(self.polling.backoff_policy(), rng=self._rng),
            token=token,
            sleep=self._sleep,
        )
        task = asyncio.create_task(poller.run(), name=f"poller:{record.job_id}")
        handle = PollerHandle(task=task, token=token)
        self._pollers[record.job_id] = handle
        task.add_done_callback(lambda t, job_id=record.job_id: self._on_poller_done(job_id, t))

    def _on_poller_done(self, job_id: str, task: asyncio.Task) -> None:
        handle = self._pollers.get(job_id)
        if handle is not None and handle.task is task:
            del self._pollers[job_id]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.log_error(exc, "Poller crashed", job_id=job_id)

    # =========================================================================
    # PollTarget callbacks (each runs under the manager lock)
    # =========================================================================

    async def _live_record(self, job_id: str) -> JobRecord | None:
        record = await self._store.get(job_id)
        if record is None or record.status.is_terminal:
            return None
        return record

    async def expire_if_overdue(self, job_id: str) -> PollOutcome:
        async with self._lock:
            record = await self._live_record(job_id)
            if record is None:
                return STOP
            elapsed = self._clock() - record.created_at
            if elapsed < self.polling.hard_timeout:
                return CONTINUE
            return await self._settle_or_continue(
                record,
                JobStatus.FAILED,
                commit=False,
                error_kind=ErrorKind.TIMEOUT,
                error_detail=f"No result after {elapsed:.0f}s",
            )

    async def apply_status(self, job_id: str, snapshot: JobStatusSnapshot) -> PollOutcome:
        async with self._lock:
            record = await self._live_record(job_id)
            if record is None:
                return STOP
            now = self._clock()
            updated = record.with_progress(snapshot.progress, now)
            if snapshot.status == RemoteStatus.PROCESSING and updated.status == JobStatus.SUBMITTED:
                updated = updated.transition_to(JobStatus.PROCESSING, now=now)
            await self._store.put(updated)
            progressed = updated.progress > record.progress
            if updated.status != record.status:
                logger.log_transition(
                    job_id, record.status.value, updated.status.value, progress=updated.progress
                )
            else:
                logger.debug("Progress", job_id=job_id, progress=updated.progress, progressed=progressed)
            await self._emit(updated, record.status)
            return PollOutcome(done=False, progressed=progressed)

    async def complete(
        self,
        job_id: str,
        snapshot: JobStatusSnapshot,
        artifact: Artifact,
    ) -> PollOutcome:
        async with self._lock:
            record = await self._live_record(job_id)
            if record is None:
                return STOP
            return await self._settle_or_continue(
                record,
                JobStatus.COMPLETED,
                commit=True,
                progress=1.0,
                result_ref=artifact.ref,
                last_polled_at=self._clock(),
                retry_count=0,
            )

    async def fail(self, job_id: str, snapshot: JobStatusSnapshot) -> PollOutcome:
        async with self._lock:
            record = await self._live_record(job_id)
            if record is None:
                return STOP
            kind = classify_failure(snapshot.error_code)
            return await self._settle_or_continue(
                record,
                JobStatus.FAILED,
                commit=snapshot.billable,
                error_kind=kind,
                error_detail=snapshot.error_detail or snapshot.error_code,
                user_message=snapshot.user_message,
                last_polled_at=self._clock(),
            )

    async def record_transport_failure(self, job_id: str, error: GatewayError) -> PollOutcome:
        async with self._lock:
            record = await self._live_record(job_id)
            if record is None:
                return STOP
            failures = record.retry_count + 1
            if failures >= self.polling.max_transport_failures:
                logger.log_error(
                    error,
                    "Transport failure ceiling reached",
                    level=logging.WARNING,
                    job_id=job_id,
                    failures=failures,
                )
                return await self._settle_or_continue(
                    record,
                    JobStatus.FAILED,
                    commit=False,
                    error_kind=ErrorKind.TIMEOUT,
                    error_detail=f"{failures} consecutive transport failures: {error.message}",
                    retry_count=failures,
                )
            await self._store.put(record.replace(retry_count=failures, updated_at=self._clock()))
            logger.warning(
                "Transport failure",
                job_id=job_id,
                failures=failures,
                error=str(error),
            )
            return CONTINUE

    async def mark_lost(self, job_id: str, error: RemoteJobNotFoundError) -> PollOutcome:
        async with self._lock:
            record = await self._live_record(job_id)
            if record is None:
                return STOP
            logger.warning("Server has no record of job", job_id=job_id)
            return await self._settle_or_continue(
                record,
                JobStatus.FAILED,
                commit=False,
                error_kind=ErrorKind.SUBMISSION_FAILED,
                error_detail=error.message,
            )

    # =========================================================================
    # Settlement and events
    # =========================================================================

    async def _settle_or_continue(
        self,
        record: JobRecord,
        new_status: JobStatus,
        *,
        commit: bool,
        **updates: Any,
    ) -> PollOutcome:
        try:
            await self._settle(record, new_status, commit=commit, **updates)
        except Exception as exc:
            logger.log_error(
                exc,
                "Settlement failed; record left unchanged",
                job_id=record.job_id,
                target_status=new_status.value,
            )
            return CONTINUE
        return STOP

    async def _settle(
        self,
        record: JobRecord,
        new_status: JobStatus,
        *,
        commit: bool,
        **updates: Any,
    ) -> JobRecord:
        """Resolve the reservation, then write the terminal record. Caller holds the lock."""
        reservation = record.reservation
        if reservation is not None:
            try:
                if commit:
                    await self._ledger.commit(reservation)
                else:
                    await self._ledger.release(reservation)
            except ReservationError as exc:
                # coins_refunded stays unset: the earlier resolution is unknown here
                logger.log_error(exc, "Reservation already resolved", level=logging.WARNING, job_id=record.job_id)
            else:
                logger.info(
                    "Reservation committed" if commit else "Reservation released",
                    job_id=record.job_id,
                    reservation=reservation.token_id,
                    amount=reservation.amount,
                )
                updates["coins_refunded"] = not commit
        updates["reservation"] = None

        final = record.transition_to(new_status, now=self._clock(), **updates)
        await self._store.put(final)
        logger.log_transition(
            final.job_id,
            record.status.value,
            final.status.value,
            error_kind=final.error_kind.value if final.error_kind else None,
            result_ref=final.result_ref,
        )
        await self._emit(final, record.status)
        return final

    async def _emit(self, record: JobRecord, old_status: JobStatus | None) -> None:
        await self.events.publish(JobEvent.from_record(record, old_status))


__all__ = ["JobManager", "PollerHandle"]
