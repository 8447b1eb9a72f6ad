"""
Tests for job types: status transitions, record mutation and wire parsing.
"""

import pytest

from story_jobs.errors import ErrorKind
from story_jobs.types import (
    PROVISIONAL_PREFIX,
    Artifact,
    JobRecord,
    JobStatus,
    JobStatusSnapshot,
    RemoteStatus,
    ReservationToken,
    StoryRequest,
)


class TestJobStatus:
    """Test JobStatus enum."""

    def test_terminal_states(self):
        assert JobStatus.COMPLETED.is_terminal
        assert JobStatus.FAILED.is_terminal
        assert not JobStatus.PENDING.is_terminal
        assert not JobStatus.SUBMITTED.is_terminal
        assert JobStatus.PROCESSING.is_active


class TestJobRecordTransitions:
    """Test state machine validation."""

    def test_pending_to_submitted(self):
        record = JobRecord(owner_id="u")
        submitted = record.transition_to(JobStatus.SUBMITTED, job_id="job_1", acknowledged=True, now=10.0)

        assert submitted.status == JobStatus.SUBMITTED
        assert submitted.job_id == "job_1"
        assert submitted.updated_at == 10.0
        assert record.status == JobStatus.PENDING  # original untouched

    def test_pending_cannot_complete(self):
        record = JobRecord(owner_id="u")
        with pytest.raises(ValueError, match="Invalid transition"):
            record.transition_to(JobStatus.COMPLETED)

    def test_terminal_sets_completed_at_and_clears_estimate(self):
        record = JobRecord(owner_id="u", status=JobStatus.PROCESSING, estimated_completion_at=99.0)
        done = record.transition_to(JobStatus.COMPLETED, now=50.0)

        assert done.completed_at == 50.0
        assert done.estimated_completion_at is None

    def test_terminal_records_are_immutable(self):
        record = JobRecord(owner_id="u", status=JobStatus.FAILED)

        with pytest.raises(ValueError):
            record.replace(progress=0.5)
        with pytest.raises(ValueError):
            record.transition_to(JobStatus.PROCESSING)

    def test_zero_timestamp_is_respected(self):
        record = JobRecord(owner_id="u")
        submitted = record.transition_to(JobStatus.SUBMITTED, now=0.0)
        assert submitted.updated_at == 0.0


class TestJobRecordProgress:
    """Test progress bookkeeping."""

    def test_progress_is_non_decreasing(self):
        record = JobRecord(owner_id="u", status=JobStatus.PROCESSING, created_at=0.0)
        record = record.with_progress(0.6, now=30.0)
        record = record.with_progress(0.2, now=40.0)

        assert record.progress == 0.6
        assert record.last_polled_at == 40.0

    def test_progress_resets_transport_counter(self):
        record = JobRecord(owner_id="u", status=JobStatus.PROCESSING, retry_count=3)
        assert record.with_progress(0.1, now=1.0).retry_count == 0

    def test_estimated_completion(self):
        record = JobRecord(owner_id="u", status=JobStatus.PROCESSING, created_at=100.0)
        updated = record.with_progress(0.25, now=130.0)

        # 30s for a quarter of the work -> 90s remaining
        assert updated.estimated_completion_at == pytest.approx(220.0)

    def test_progress_is_clamped(self):
        record = JobRecord(owner_id="u", status=JobStatus.PROCESSING)
        assert record.with_progress(1.7, now=1.0).progress == 1.0


class TestJobRecordFlags:
    """Test derived properties."""

    def test_provisional_until_acknowledged(self):
        record = JobRecord(owner_id="u")
        assert record.job_id.startswith(PROVISIONAL_PREFIX)
        assert record.is_provisional

        acked = record.transition_to(JobStatus.SUBMITTED, job_id="job_1", acknowledged=True)
        assert not acked.is_provisional

    def test_retryable_requires_kind_and_request(self):
        base = dict(owner_id="u", status=JobStatus.FAILED, request={"title": "t", "cost": 1})

        assert JobRecord(error_kind=ErrorKind.TIMEOUT, **base).is_retryable
        assert not JobRecord(error_kind=ErrorKind.CONTENT_POLICY_VIOLATION, **base).is_retryable
        assert not JobRecord(
            owner_id="u", status=JobStatus.FAILED, error_kind=ErrorKind.TIMEOUT
        ).is_retryable


class TestJobRecordSerialization:
    """Test to_dict/from_dict."""

    def test_full_record_survives_serialization(self):
        record = JobRecord(
            job_id="job_1",
            idempotency_key="abc.def",
            owner_id="u",
            title="Story",
            status=JobStatus.FAILED,
            progress=0.7,
            acknowledged=True,
            reservation=None,
            coins_refunded=True,
            error_kind=ErrorKind.TIMEOUT,
            error_detail="8 consecutive transport failures",
            request={"title": "Story", "cost": 5, "payload": {"pages": 3}},
            attempt=2,
            retried_from="job_0",
            should_notify=True,
        )
        assert JobRecord.from_dict(record.to_dict()) == record

    def test_reservation_round_trips(self):
        token = ReservationToken(token_id="rsv_1", owner_id="u", amount=10, created_at=5.0)
        record = JobRecord(owner_id="u", reservation=token)

        restored = JobRecord.from_dict(record.to_dict())
        assert restored.reservation == token


class TestWireTypes:
    """Test parsing of API payloads."""

    def test_remote_status_aliases(self):
        assert RemoteStatus.parse("PENDING") == RemoteStatus.QUEUED
        assert RemoteStatus.parse("error") == RemoteStatus.FAILED
        assert RemoteStatus.parse(" processing ") == RemoteStatus.PROCESSING

    def test_unknown_remote_status(self):
        with pytest.raises(ValueError):
            RemoteStatus.parse("exploded")

    def test_snapshot_from_camel_case(self):
        snapshot = JobStatusSnapshot.from_dict(
            {
                "jobId": "job_1",
                "status": "failed",
                "progress": 0.3,
                "errorCode": "content_safety",
                "errorDetail": "flagged",
                "userMessage": "Try again",
                "billable": True,
            }
        )
        assert snapshot.status == RemoteStatus.FAILED
        assert snapshot.job_id == "job_1"
        assert snapshot.error_code == "content_safety"
        assert snapshot.user_message == "Try again"
        assert snapshot.billable

    def test_snapshot_progress_is_clamped(self):
        assert JobStatusSnapshot.from_dict({"status": "processing", "progress": 4}).progress == 1.0
        assert JobStatusSnapshot.from_dict({"status": "queued", "progress": None}).progress == 0.0

    def test_artifact_ref_fallbacks(self):
        assert Artifact.from_dict("job_1", {"resultRef": "r1", "storyId": "s1"}).ref == "r1"
        assert Artifact.from_dict("job_1", {"storyId": "s1"}).ref == "s1"
        assert Artifact.from_dict("job_1", {}).ref == "job_1"

    def test_story_request_round_trip(self):
        request = StoryRequest(title="T", cost=3, payload={"a": 1})
        assert StoryRequest.from_dict(request.to_dict()) == request
