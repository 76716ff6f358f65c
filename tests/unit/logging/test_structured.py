"""Tests for structured logging module."""

import asyncio

import pytest
from structlog.testing import capture_logs

from cmconnector.core.exceptions import QueryError, ValidationError
from cmconnector.core.utils import MASK
from cmconnector.logging.structured import LogContext, StructuredLogger, mask_secrets_processor


@pytest.fixture(autouse=True)
def clean_context():
    """Start every test with an empty task context."""
    LogContext().clear()
    yield
    LogContext().clear()


class TestLogContext:
    """Test cases for LogContext class."""

    def test_set_and_get_context_value(self):
        """Test setting and getting context values."""
        context = LogContext()

        context.set("system_id", "cm-prod")

        assert context.get("system_id") == "cm-prod"
        assert context.get("nonexistent", "default") == "default"

    def test_update_and_clear(self):
        """Test updating and clearing context."""
        context = LogContext()

        context.update({"a": 1, "b": 2})
        assert context.get_all() == {"a": 1, "b": 2}

        context.clear()
        assert context.get_all() == {}

    @pytest.mark.asyncio
    async def test_task_isolation(self):
        """Test that context set in one task does not leak into another."""
        context = LogContext()
        results = {}

        async def task(task_id):
            context.set("task_id", task_id)
            await asyncio.sleep(0.01)
            results[task_id] = context.get("task_id")

        await asyncio.gather(task(1), task(2), task(3))

        assert results == {1: 1, 2: 2, 3: 3}
        assert context.get("task_id") is None


class TestStructuredLogger:
    """Test cases for StructuredLogger class."""

    def test_event_contains_logger_name_and_kwargs(self):
        """Test emitted events carry the logger name and fields."""
        logger = StructuredLogger("cmconnector.test")

        with capture_logs() as logs:
            logger.info("Pool opened", max_size=4)

        assert logs[0]["event"] == "Pool opened"
        assert logs[0]["log_level"] == "info"
        assert logs[0]["logger_name"] == "cmconnector.test"
        assert logs[0]["max_size"] == 4
        assert "correlation_id" in logs[0]

    def test_secrets_masked(self):
        """Test password and token fields never reach the log pipeline."""
        logger = StructuredLogger("cmconnector.test").bind(api_key="abc123")

        with capture_logs() as logs:
            logger.warning("Login", username="svc", password="hunter2", headers={"Authorization": "Bearer x"})

        event = logs[0]
        assert event["username"] == "svc"
        assert event["password"] == MASK
        assert event["api_key"] == MASK
        assert event["headers"]["Authorization"] == MASK

    def test_bind_returns_new_logger(self):
        """Test bind does not modify the parent logger."""
        logger = StructuredLogger("cmconnector.test")
        bound = logger.bind(system_id="cm-prod")

        assert bound.get_context()["system_id"] == "cm-prod"
        assert "system_id" not in logger.get_context()

    def test_context_manager(self):
        """Test temporary context is removed after the block."""
        logger = StructuredLogger("cmconnector.test")

        with capture_logs() as logs:
            with logger.context(operation="detect_version"):
                logger.info("inside")
            logger.info("outside")

        assert logs[0]["operation"] == "detect_version"
        assert "operation" not in logs[1]

    def test_correlation_id_stable_within_context(self):
        """Test the correlation id is reused and can be overridden."""
        logger = StructuredLogger("cmconnector.test")

        with capture_logs() as logs:
            logger.info("one")
            logger.info("two")

        assert logs[0]["correlation_id"] == logs[1]["correlation_id"]

        logger.set_correlation_id("req-42")
        assert logger.get_correlation_id() == "req-42"

    def test_correlation_disabled(self):
        """Test correlation ids can be disabled."""
        logger = StructuredLogger("cmconnector.test", enable_correlation=False)

        with capture_logs() as logs:
            logger.info("event")

        assert "correlation_id" not in logs[0]
        assert logger.get_correlation_id() is None

    def test_set_level(self):
        """Test level changes and invalid levels."""
        logger = StructuredLogger("cmconnector.test.level")

        logger.set_level("debug")
        assert logger.get_level() == "DEBUG"

        with pytest.raises(ValidationError):
            logger.set_level("LOUD")

    def test_operation_logging(self):
        """Test operation start, success and failure events."""
        logger = StructuredLogger("cmconnector.test")

        with capture_logs() as logs:
            operation = logger.log_operation_start("extract_users", offset=0)
            logger.log_operation_success(operation, produced=5)
            logger.log_operation_failure(operation, QueryError("missing table", code="QUERY_EXECUTION_FAILED"))

        assert logs[0]["event"] == "Operation started"
        assert logs[0]["operation"] == "extract_users"
        assert logs[1]["produced"] == 5
        assert logs[1]["duration_ms"] >= 0
        assert logs[2]["log_level"] == "error"
        assert logs[2]["error_type"] == "QueryError"
        assert logs[2]["error_code"] == "QUERY_EXECUTION_FAILED"


def test_mask_secrets_processor():
    """Test the structlog processor masks secret keys."""
    event = mask_secrets_processor(None, "info", {"event": "x", "secret": "s", "nested": {"pwd": "p"}})

    assert event == {"event": "x", "secret": MASK, "nested": {"pwd": MASK}}
