"""
Tests for structured logging.
"""

import asyncio
import io
import json
import logging

import pytest

from story_jobs.errors import ErrorContext, TransportError
from story_jobs.logging import (
    ROOT_LOGGER_NAME,
    LogContext,
    configure_logging,
    get_logger,
    timed,
)


@pytest.fixture
def stream():
    buffer = io.StringIO()
    configure_logging(level="DEBUG", json_output=True, stream=buffer)
    yield buffer
    root = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(root.handlers):
        root.removeHandler(handler)


def _lines(buffer: io.StringIO) -> list[dict]:
    return [json.loads(line) for line in buffer.getvalue().splitlines() if line]


class TestLogContext:
    """Test context dataclass."""

    def test_to_dict_skips_empty_fields(self):
        context = LogContext(job_id="job_1", extra={"attempt": 2})
        assert context.to_dict() == {"job_id": "job_1", "attempt": 2}

    def test_with_update(self):
        context = LogContext(trace_id="t1", job_id="job_1")
        updated = context.with_update(operation="poll")

        assert updated.trace_id == "t1"
        assert updated.job_id == "job_1"
        assert updated.operation == "poll"


class TestStructuredLogger:
    """Test JSON output and trace correlation."""

    def test_json_fields(self, stream):
        logger = get_logger("story_jobs.tests")
        logger.info("Job submitted", job_id="job_1", cost=10)

        (line,) = _lines(stream)
        assert line["message"] == "Job submitted"
        assert line["level"] == "INFO"
        assert line["logger"] == "story_jobs.tests"
        assert line["cost"] == 10

    def test_trace_context(self, stream):
        logger = get_logger("story_jobs.tests")
        with logger.trace_context(job_id="job_1", operation="poll") as trace_id:
            logger.debug("Polling")
        logger.debug("Outside")

        inside, outside = _lines(stream)
        assert inside["trace_id"] == trace_id
        assert inside["job_id"] == "job_1"
        assert inside["operation"] == "poll"
        assert "job_id" not in outside

    @pytest.mark.asyncio
    async def test_context_is_isolated_per_task(self, stream):
        logger = get_logger("story_jobs.tests")

        async def poll(job_id):
            with logger.trace_context(job_id=job_id):
                await asyncio.sleep(0)
                logger.info("tick")

        await asyncio.gather(poll("job_a"), poll("job_b"))

        assert sorted(line["job_id"] for line in _lines(stream)) == ["job_a", "job_b"]

    def test_log_transition(self, stream):
        get_logger("story_jobs.tests").log_transition("job_1", "processing", "completed", progress=1.0)

        (line,) = _lines(stream)
        assert line["event_type"] == "transition"
        assert line["old_status"] == "processing"
        assert line["new_status"] == "completed"

    def test_log_error_expands_story_job_errors(self, stream):
        error = TransportError("HTTP 503", context=ErrorContext(job_id="job_1", operation="poll"))
        get_logger("story_jobs.tests").log_error(error, "Poll failed", level=logging.WARNING)

        (line,) = _lines(stream)
        assert line["level"] == "WARNING"
        assert line["error_type"] == "TransportError"
        assert line["error_kind"] == "transport_error"
        assert line["retryable"] is True
        assert line["error_context"]["job_id"] == "job_1"

    def test_level_filtering(self):
        buffer = io.StringIO()
        configure_logging(level="WARNING", json_output=True, stream=buffer)
        try:
            logger = get_logger("story_jobs.tests")
            logger.info("hidden")
            logger.warning("shown")
            assert [line["message"] for line in _lines(buffer)] == ["shown"]
        finally:
            root = logging.getLogger(ROOT_LOGGER_NAME)
            for handler in list(root.handlers):
                root.removeHandler(handler)

    def test_text_output(self):
        buffer = io.StringIO()
        configure_logging(level="INFO", json_output=False, stream=buffer)
        try:
            get_logger("story_jobs.tests").info("Job submitted", job_id="job_1")
            output = buffer.getvalue()
            assert "Job submitted" in output
            assert "job_id=job_1" in output
        finally:
            root = logging.getLogger(ROOT_LOGGER_NAME)
            for handler in list(root.handlers):
                root.removeHandler(handler)
            configure_logging(level="INFO", json_output=True, stream=io.StringIO())
            for handler in list(root.handlers):
                root.removeHandler(handler)


class TestTimer:
    def test_timed(self):
        with timed() as timer:
            pass
        assert timer.end_time is not None
        assert timer.elapsed_ms >= 0
