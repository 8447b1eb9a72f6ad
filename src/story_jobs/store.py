"""
Job store implementations.

This module provides the JobStore interface and implementations for
persisting job records:

- ``InMemoryJobStore``: tests and single-process use
- ``FileJobStore``: one JSON document per job plus an owner index file,
  written with temp-file + atomic replace so a crash never leaves a
  half-written record

Both keep a secondary index ``owner_id -> job_id`` covering active
(non-terminal) records only; it backs the single-active-job check.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote, unquote

import aiofiles
import aiofiles.os

from .logging import get_logger
from .serialization import dumps_record, fast_json_loads
from .types import ACTIVE_STATUSES, JobRecord, JobStatus

logger = get_logger("story_jobs.store")


@dataclass
class JobFilter:
    """Filter criteria for listing jobs."""
    owner_id: str | None = None
    status: JobStatus | set[JobStatus] | frozenset[JobStatus] | None = None
    idempotency_key: str | None = None

    def matches(self, job: JobRecord) -> bool:
        if self.owner_id and job.owner_id != self.owner_id:
            return False
        if self.idempotency_key and job.idempotency_key != self.idempotency_key:
            return False
        if self.status:
            if isinstance(self.status, (set, frozenset)):
                if job.status not in self.status:
                    return False
            elif job.status != self.status:
                return False
        return True


ACTIVE_FILTER = JobFilter(status=ACTIVE_STATUSES)


class JobStore(ABC):
    """Abstract interface for job persistence.

    Every write is atomic per record. Callers serialize read-modify-write
    sequences themselves (the JobManager holds a lock around them).
    """

    async def open(self) -> None:
        """Load or connect. Safe to call more than once."""
        return

    async def close(self) -> None:
        return

    @abstractmethod
    async def get(self, job_id: str) -> JobRecord | None:
        """Get a job by ID."""
        ...

    @abstractmethod
    async def put(self, job: JobRecord) -> JobRecord:
        """Insert or overwrite a record and maintain the owner index.

        Raises:
            ValueError: If the record is active and its owner already has
                a different active record
        """
        ...

    @abstractmethod
    async def replace(self, old_job_id: str, job: JobRecord) -> JobRecord:
        """Atomically re-key ``old_job_id`` to ``job.job_id``."""
        ...

    @abstractmethod
    async def delete(self, job_id: str) -> bool:
        """Delete a job by ID. Returns True if deleted."""
        ...

    @abstractmethod
    async def list(self, filter: JobFilter | None = None) -> list[JobRecord]:
        """List jobs matching the filter, oldest first."""
        ...

    @abstractmethod
    async def active_for_owner(self, owner_id: str) -> JobRecord | None:
        """The owner's active record, if any."""
        ...

    async def get_by_idempotency_key(self, idempotency_key: str) -> JobRecord | None:
        """Find the record for a submission attempt."""
        matches = await self.list(JobFilter(idempotency_key=idempotency_key))
        return matches[0] if matches else None

    async def list_active(self) -> list[JobRecord]:
        return await self.list(ACTIVE_FILTER)


def _check_owner_slot(index: dict[str, str], job: JobRecord, replacing: str | None = None) -> None:
    if job.status not in ACTIVE_STATUSES:
        return
    current = index.get(job.owner_id)
    if current is not None and current not in (job.job_id, replacing):
        raise ValueError(
            f"Owner {job.owner_id} already has active job {current}; cannot store {job.job_id}"
        )


def _update_owner_index(index: dict[str, str], job: JobRecord) -> None:
    if job.status in ACTIVE_STATUSES:
        index[job.owner_id] = job.job_id
    elif index.get(job.owner_id) == job.job_id:
        del index[job.owner_id]


def _drop_from_owner_index(index: dict[str, str], job: JobRecord) -> None:
    if index.get(job.owner_id) == job.job_id:
        del index[job.owner_id]


def _sorted(jobs: list[JobRecord]) -> list[JobRecord]:
    return sorted(jobs, key=lambda j: (j.created_at, j.job_id))


class InMemoryJobStore(JobStore):
    """In-memory job store implementation.

    Suitable for testing and single-process deployments.
    """

    def __init__(self):
        self._jobs: dict[str, JobRecord] = {}
        self._owner_index: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get(self, job_id: str) -> JobRecord | None:
        async with self._lock:
            return self._jobs.get(job_id)

    async def put(self, job: JobRecord) -> JobRecord:
        async with self._lock:
            _check_owner_slot(self._owner_index, job)
            self._jobs[job.job_id] = job
            _update_owner_index(self._owner_index, job)
            return job

    async def replace(self, old_job_id: str, job: JobRecord) -> JobRecord:
        async with self._lock:
            _check_owner_slot(self._owner_index, job, replacing=old_job_id)
            old = self._jobs.pop(old_job_id, None)
            if old is not None:
                _drop_from_owner_index(self._owner_index, old)
            self._jobs[job.job_id] = job
            _update_owner_index(self._owner_index, job)
            return job

    async def delete(self, job_id: str) -> bool:
        async with self._lock:
            job = self._jobs.pop(job_id, None)
            if job is not None:
                _drop_from_owner_index(self._owner_index, job)
            return job is not None

    async def list(self, filter: JobFilter | None = None) -> list[JobRecord]:
        async with self._lock:
            jobs = list(self._jobs.values())
        if filter:
            jobs = [j for j in jobs if filter.matches(j)]
        return _sorted(jobs)

    async def active_for_owner(self, owner_id: str) -> JobRecord | None:
        async with self._lock:
            job_id = self._owner_index.get(owner_id)
            return self._jobs.get(job_id) if job_id else None


class FileJobStore(JobStore):
    """Durable store: ``<dir>/jobs/<job_id>.json`` plus ``<dir>/owners.json``.

    All records are cached in memory after ``open()``; the disk is only
    read at open time. The owner index file is derived data and is
    rebuilt from the records on every open.
    """

    INDEX_FILE = "owners.json"

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)
        self.jobs_dir = self.directory / "jobs"
        self._jobs: dict[str, JobRecord] = {}
        self._owner_index: dict[str, str] = {}
        self._lock = asyncio.Lock()
        self._opened = False

    # ------------------------------------------------------------------
    # Paths and atomic I/O
    # ------------------------------------------------------------------

    def _path_for(self, job_id: str) -> Path:
        return self.jobs_dir / f"{quote(job_id, safe='')}.json"

    @staticmethod
    def _job_id_from_path(path: Path) -> str:
        return unquote(path.stem)

    async def _write_atomic(self, path: Path, payload: bytes) -> None:
        tmp_path = path.with_name(f".{path.name}.tmp")
        async with aiofiles.open(tmp_path, "wb") as f:
            await f.write(payload)
            await f.flush()
        await aiofiles.os.replace(tmp_path, path)

    async def _remove(self, path: Path) -> None:
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            pass

    async def _write_record(self, job: JobRecord) -> None:
        await self._write_atomic(self._path_for(job.job_id), dumps_record(job.to_dict()))

    async def _write_index(self) -> None:
        await self._write_atomic(
            self.directory / self.INDEX_FILE,
            dumps_record(dict(self._owner_index)),
        )

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def open(self) -> None:
        async with self._lock:
            if self._opened:
                return
            await aiofiles.os.makedirs(self.jobs_dir, exist_ok=True)
            names = sorted(n for n in await aiofiles.os.listdir(self.jobs_dir) if n.endswith(".json"))
            loaded: dict[str, JobRecord] = {}
            for path in (self.jobs_dir / name for name in names):
                try:
                    async with aiofiles.open(path, "rb") as f:
                        job = JobRecord.from_dict(fast_json_loads(await f.read()))
                except (ValueError, KeyError, TypeError) as exc:
                    logger.warning(
                        "Skipping unreadable job record",
                        path=str(path),
                        error=str(exc),
                    )
                    continue
                loaded[job.job_id] = job

            await self._discard_orphaned_provisionals(loaded)
            self._jobs = loaded
            self._owner_index = self._rebuild_index(loaded)
            await self._write_index()
            self._opened = True
            logger.info(
                "Job store opened",
                directory=str(self.directory),
                records=len(self._jobs),
                active=len(self._owner_index),
            )

    async def _discard_orphaned_provisionals(self, loaded: dict[str, JobRecord]) -> None:
        # A crash between writing the acknowledged record and removing the
        # provisional one leaves both on disk.
        acknowledged_keys = {
            j.idempotency_key for j in loaded.values() if j.acknowledged and j.idempotency_key
        }
        for job_id, job in list(loaded.items()):
            if job.is_provisional and job.idempotency_key in acknowledged_keys:
                logger.info("Removing superseded provisional record", job_id=job_id)
                del loaded[job_id]
                await self._remove(self._path_for(job_id))

    @staticmethod
    def _rebuild_index(jobs: dict[str, JobRecord]) -> dict[str, str]:
        index: dict[str, str] = {}
        for job in _sorted(list(jobs.values())):
            if job.status not in ACTIVE_STATUSES:
                continue
            if job.owner_id in index:
                logger.warning(
                    "Multiple active records for owner; keeping the oldest",
                    owner_id=job.owner_id,
                    kept=index[job.owner_id],
                    ignored=job.job_id,
                )
                continue
            index[job.owner_id] = job.job_id
        return index

    async def _ensure_open(self) -> None:
        if not self._opened:
            await self.open()

    # ------------------------------------------------------------------
    # JobStore API
    # ------------------------------------------------------------------

    async def get(self, job_id: str) -> JobRecord | None:
        await self._ensure_open()
        async with self._lock:
            return self._jobs.get(job_id)

    async def put(self, job: JobRecord) -> JobRecord:
        await self._ensure_open()
        async with self._lock:
            _check_owner_slot(self._owner_index, job)
            await self._write_record(job)
            self._jobs[job.job_id] = job
            before = dict(self._owner_index)
            _update_owner_index(self._owner_index, job)
            if before != self._owner_index:
                await self._write_index()
            return job

    async def replace(self, old_job_id: str, job: JobRecord) -> JobRecord:
        await self._ensure_open()
        async with self._lock:
            _check_owner_slot(self._owner_index, job, replacing=old_job_id)
            # New record first: a crash after this point is repaired on open.
            await self._write_record(job)
            old = self._jobs.pop(old_job_id, None)
            if old is not None:
                _drop_from_owner_index(self._owner_index, old)
            self._jobs[job.job_id] = job
            _update_owner_index(self._owner_index, job)
            await self._write_index()
            if old_job_id != job.job_id:
                await self._remove(self._path_for(old_job_id))
            return job

    async def delete(self, job_id: str) -> bool:
        await self._ensure_open()
        async with self._lock:
            job = self._jobs.pop(job_id, None)
            if job is None:
                return False
            await self._remove(self._path_for(job_id))
            before = dict(self._owner_index)
            _drop_from_owner_index(self._owner_index, job)
            if before != self._owner_index:
                await self._write_index()
            return True

    async def list(self, filter: JobFilter | None = None) -> list[JobRecord]:
        await self._ensure_open()
        async with self._lock:
            jobs = list(self._jobs.values())
        if filter:
            jobs = [j for j in jobs if filter.matches(j)]
        return _sorted(jobs)

    async def active_for_owner(self, owner_id: str) -> JobRecord | None:
        await self._ensure_open()
        async with self._lock:
            job_id = self._owner_index.get(owner_id)
            return self._jobs.get(job_id) if job_id else None


__all__ = [
    "JobStore",
    "JobFilter",
    "ACTIVE_FILTER",
    "InMemoryJobStore",
    "FileJobStore",
]
