"""
Redis-backed job store.

Layout
------
    {prefix}:jobs    hash  job_id   -> record JSON
    {prefix}:owners  hash  owner_id -> active job_id

Every mutation touching both hashes is sent as one MULTI/EXEC pipeline,
so readers never observe a record without its index entry (or the
reverse). Unlike a cache, nothing here carries a TTL: records live until
the JobManager deletes them.

Cross-process writers are not coordinated; one JobManager owns a prefix.
"""

from __future__ import annotations

import asyncio
from typing import Any

import redis.asyncio as redis

from ..logging import get_logger
from ..serialization import fast_json_dumps, fast_json_loads
from ..store import JobFilter, JobStore, _sorted
from ..types import ACTIVE_STATUSES, JobRecord

logger = get_logger("story_jobs.storage.redis")


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


class RedisJobStore(JobStore):
    """Job store on two Redis hashes.

    Example:
        ```python
        store = RedisJobStore.from_url("redis://localhost:6379/0")
        await store.open()
        ```
    """

    def __init__(
        self,
        client: Any,  # redis.Redis
        key_prefix: str = "story_jobs",
    ):
        self._client = client
        self._prefix = key_prefix
        self._lock = asyncio.Lock()

    @classmethod
    def from_url(cls, url: str, key_prefix: str = "story_jobs") -> RedisJobStore:
        return cls(redis.from_url(url), key_prefix=key_prefix)

    @property
    def jobs_key(self) -> str:
        return f"{self._prefix}:jobs"

    @property
    def owners_key(self) -> str:
        return f"{self._prefix}:owners"

    async def open(self) -> None:
        await self._client.ping()
        logger.info("Redis job store connected", prefix=self._prefix)

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load(self, job_id: str) -> JobRecord | None:
        data = await self._client.hget(self.jobs_key, job_id)
        if data is None:
            return None
        return JobRecord.from_dict(fast_json_loads(data))

    async def _owner_slot(self, owner_id: str) -> str | None:
        value = await self._client.hget(self.owners_key, owner_id)
        return _text(value) if value is not None else None

    async def _check_owner_slot(self, job: JobRecord, replacing: str | None = None) -> None:
        if job.status not in ACTIVE_STATUSES:
            return
        current = await self._owner_slot(job.owner_id)
        if current is not None and current not in (job.job_id, replacing):
            raise ValueError(
                f"Owner {job.owner_id} already has active job {current}; cannot store {job.job_id}"
            )

    def _queue_index(self, pipe: Any, job: JobRecord, current: str | None) -> None:
        if job.status in ACTIVE_STATUSES:
            pipe.hset(self.owners_key, job.owner_id, job.job_id)
        elif current == job.job_id:
            pipe.hdel(self.owners_key, job.owner_id)

    # ------------------------------------------------------------------
    # JobStore API
    # ------------------------------------------------------------------

    async def get(self, job_id: str) -> JobRecord | None:
        return await self._load(job_id)

    async def put(self, job: JobRecord) -> JobRecord:
        async with self._lock:
            await self._check_owner_slot(job)
            current = await self._owner_slot(job.owner_id)
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.hset(self.jobs_key, job.job_id, fast_json_dumps(job.to_dict()))
                self._queue_index(pipe, job, current)
                await pipe.execute()
            return job

    async def replace(self, old_job_id: str, job: JobRecord) -> JobRecord:
        async with self._lock:
            await self._check_owner_slot(job, replacing=old_job_id)
            old = await self._load(old_job_id)
            current = await self._owner_slot(job.owner_id)
            async with self._client.pipeline(transaction=True) as pipe:
                if old_job_id != job.job_id:
                    pipe.hdel(self.jobs_key, old_job_id)
                if old is not None and current == old_job_id and job.status not in ACTIVE_STATUSES:
                    pipe.hdel(self.owners_key, old.owner_id)
                    current = None
                pipe.hset(self.jobs_key, job.job_id, fast_json_dumps(job.to_dict()))
                self._queue_index(pipe, job, current)
                await pipe.execute()
            return job

    async def delete(self, job_id: str) -> bool:
        async with self._lock:
            job = await self._load(job_id)
            if job is None:
                return False
            current = await self._owner_slot(job.owner_id)
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.hdel(self.jobs_key, job_id)
                if current == job_id:
                    pipe.hdel(self.owners_key, job.owner_id)
                await pipe.execute()
            return True

    async def list(self, filter: JobFilter | None = None) -> list[JobRecord]:
        raw = await self._client.hgetall(self.jobs_key)
        jobs = [JobRecord.from_dict(fast_json_loads(data)) for data in raw.values()]
        if filter:
            jobs = [j for j in jobs if filter.matches(j)]
        return _sorted(jobs)

    async def active_for_owner(self, owner_id: str) -> JobRecord | None:
        job_id = await self._owner_slot(owner_id)
        if job_id is None:
            return None
        return await self._load(job_id)


__all__ = ["RedisJobStore"]
