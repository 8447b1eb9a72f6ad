"""
Shared test fixtures and fakes for story-jobs tests.

This module provides:
- A scripted fake job API gateway
- A controllable clock and a recording sleep that advances it
- Factories for snapshots, requests and managers
"""

from __future__ import annotations

import asyncio
import random
from typing import Any

import pytest

from story_jobs.config import JobsConfig, PollingConfig
from story_jobs.errors import GatewayError
from story_jobs.events import InMemoryEventChannel
from story_jobs.gateway import ApiGateway
from story_jobs.ledger import InMemoryCoinLedger
from story_jobs.manager import JobManager
from story_jobs.store import InMemoryJobStore, JobStore
from story_jobs.types import Artifact, JobStatusSnapshot, RemoteStatus, StoryRequest

OWNER = "user-1"

# =============================================================================
# Factories
# =============================================================================


def make_snapshot(
    status: str = "processing",
    progress: float = 0.0,
    job_id: str | None = None,
    **kwargs: Any,
) -> JobStatusSnapshot:
    """Create a JobStatusSnapshot."""
    return JobStatusSnapshot(
        status=RemoteStatus.parse(status),
        progress=progress,
        job_id=job_id,
        **kwargs,
    )


def make_request(title: str = "The Brave Little Kettle", cost: int = 10) -> StoryRequest:
    """Create a StoryRequest."""
    return StoryRequest(
        title=title,
        cost=cost,
        payload={"prompt": f"A story about {title.lower()}", "pages": 8},
    )


# =============================================================================
# Clock and sleep
# =============================================================================


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Sleep replacement: records each delay and advances the fake clock."""

    def __init__(self, clock: FakeClock | None = None):
        self.clock = clock
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.clock is not None:
            self.clock.advance(delay)
        await asyncio.sleep(0)


# =============================================================================
# Fake gateway
# =============================================================================


class FakeGateway(ApiGateway):
    """Scripted job API.

    ``statuses[job_id]`` is a list of snapshots or exceptions returned in
    order; the last entry repeats once the script is exhausted.
    """

    def __init__(self):
        self.created: list[tuple[dict[str, Any], str]] = []
        self.create_results: list[str | Exception] = []
        self.create_gate: asyncio.Event | None = None
        self.statuses: dict[str, list[JobStatusSnapshot | Exception]] = {}
        self.status_gate: asyncio.Event | None = None
        self.status_calls: list[str] = []
        self.results: dict[str, Artifact | Exception] = {}
        self.result_calls: list[str] = []
        self.lookups: dict[str, JobStatusSnapshot | None | Exception] = {}
        self.lookup_calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False
        self._counter = 0

    async def create_job(self, request: dict[str, Any], idempotency_key: str) -> str:
        self.created.append((request, idempotency_key))
        if self.create_gate is not None:
            await self.create_gate.wait()
        if self.create_results:
            result = self.create_results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        self._counter += 1
        return f"job_{self._counter}"

    async def get_job_status(self, job_id: str) -> JobStatusSnapshot:
        self.status_calls.append(job_id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.status_gate is not None:
                await self.status_gate.wait()
            await asyncio.sleep(0)
            script = self.statuses.get(job_id)
            if not script:
                raise GatewayError(f"No scripted status for {job_id}", http_status=400)
            result = script.pop(0) if len(script) > 1 else script[0]
        finally:
            self.in_flight -= 1
        if isinstance(result, Exception):
            raise result
        return result

    async def fetch_result(self, job_id: str) -> Artifact:
        self.result_calls.append(job_id)
        result = self.results.get(job_id)
        if isinstance(result, Exception):
            raise result
        return result or Artifact(job_id=job_id, ref=f"story_{job_id}")

    async def lookup_job(self, idempotency_key: str) -> JobStatusSnapshot | None:
        self.lookup_calls.append(idempotency_key)
        result = self.lookups.get(idempotency_key)
        if isinstance(result, Exception):
            raise result
        return result

    async def close(self) -> None:
        self.closed = True


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeper(clock) -> RecordingSleep:
    return RecordingSleep(clock)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def ledger() -> InMemoryCoinLedger:
    return InMemoryCoinLedger({OWNER: 100})


@pytest.fixture
def store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def events() -> InMemoryEventChannel:
    return InMemoryEventChannel()


@pytest.fixture
def make_manager(store, gateway, ledger, events, clock, sleeper):
    """Build a JobManager over the shared fakes."""

    def factory(
        *,
        polling: PollingConfig | None = None,
        jobs: JobsConfig | None = None,
        job_store: JobStore | None = None,
        coin_ledger: InMemoryCoinLedger | None = None,
    ) -> JobManager:
        return JobManager(
            job_store or store,
            gateway,
            coin_ledger or ledger,
            events,
            polling=polling or PollingConfig(jitter=0.0),
            jobs=jobs,
            clock=clock,
            sleep=sleeper,
            rng=random.Random(7),
        )

    return factory


@pytest.fixture
def manager(make_manager) -> JobManager:
    return make_manager()
