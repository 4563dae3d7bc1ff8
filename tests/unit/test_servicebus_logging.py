"""
Unit Tests for Service Bus Structured Logging

Tests for correlation tracking, structured logging, and log output format.

Author: LocalBus Team
Date: 2026-03-18
"""

import json
import logging
import sys

import pytest

from localbus.servicebus.logging_utils import (
    CorrelationContext,
    StructuredFormatter,
    StructuredLogger,
    track_operation_time,
)
from localbus.servicebus.models import QueueProperties, ServiceBusMessage


def make_record(msg="Test message", level=logging.INFO, exc_info=None):
    return logging.LogRecord(
        name="test_logger",
        level=level,
        pathname="",
        lineno=0,
        msg=msg,
        args=(),
        exc_info=exc_info
    )


class TestCorrelationContext:
    """Tests for correlation context management."""

    def test_get_correlation_id_generates_new(self):
        """Test that get_correlation_id generates new ID if none set."""
        CorrelationContext.clear_correlation_id()
        corr_id = CorrelationContext.get_correlation_id()

        assert len(corr_id) == 36
        assert CorrelationContext.get_correlation_id() == corr_id

    def test_set_and_get_correlation_id(self):
        """Test setting and getting correlation ID."""
        CorrelationContext.set_correlation_id("test-correlation-123")

        assert CorrelationContext.get_correlation_id() == "test-correlation-123"

    def test_clear_correlation_id(self):
        """Test clearing correlation ID."""
        CorrelationContext.set_correlation_id("test-id")
        CorrelationContext.clear_correlation_id()

        assert CorrelationContext.get_correlation_id() != "test-id"


class TestStructuredFormatter:
    """Tests for JSON structured formatter."""

    def test_format_basic_record(self):
        """Test formatting basic log record."""
        log_data = json.loads(StructuredFormatter().format(make_record()))

        assert log_data['level'] == 'INFO'
        assert log_data['message'] == 'Test message'
        assert log_data['logger'] == 'test_logger'
        assert 'timestamp' in log_data
        assert 'correlation_id' in log_data

    def test_format_with_extra_fields(self):
        """Test formatting with extra context fields."""
        record = make_record("Operation completed")
        record.operation = "queue_created"
        record.entity_name = "orders"
        record.duration_ms = 15.5

        log_data = json.loads(StructuredFormatter().format(record))

        assert log_data['operation'] == 'queue_created'
        assert log_data['entity_name'] == 'orders'
        assert log_data['duration_ms'] == 15.5

    def test_format_with_exception(self):
        """Test formatting with exception info."""
        try:
            raise ValueError("Test error")
        except ValueError:
            record = make_record("Error occurred", logging.ERROR, sys.exc_info())

        log_data = json.loads(StructuredFormatter().format(record))

        assert log_data['exception']['type'] == 'ValueError'
        assert log_data['exception']['message'] == 'Test error'
        assert 'Traceback' in log_data['exception']['traceback']


class TestStructuredLogger:
    """Tests for the broker event helpers."""

    def test_none_fields_dropped(self, caplog):
        """Test None-valued fields are not attached to the record."""
        logger = StructuredLogger("localbus.test")

        with caplog.at_level(logging.INFO, logger="localbus.test"):
            logger.info("hello", entity_name="orders", session_id=None)

        record = caplog.records[0]
        assert record.entity_name == "orders"
        assert not hasattr(record, "session_id")

    def test_log_operation(self, caplog):
        """Test entity management events."""
        logger = StructuredLogger("localbus.test")

        with caplog.at_level(logging.INFO, logger="localbus.test"):
            logger.log_operation("queue_created", "queue", "orders")

        record = caplog.records[0]
        assert record.message == "queue_created: queue/orders"
        assert record.operation == "queue_created"

    def test_message_operations_are_debug(self, caplog):
        """Test per-message events are logged at DEBUG."""
        logger = StructuredLogger("localbus.test")

        with caplog.at_level(logging.INFO, logger="localbus.test"):
            logger.log_message_operation("message_sent", "orders", "m-1")
        assert caplog.records == []

        with caplog.at_level(logging.DEBUG, logger="localbus.test"):
            logger.log_message_operation("message_sent", "orders", "m-1", sequence_number=1)
        assert caplog.records[0].sequence_number == 1

    def test_log_dead_letter(self, caplog):
        """Test dead-letter events carry the reason."""
        logger = StructuredLogger("localbus.test")

        with caplog.at_level(logging.INFO, logger="localbus.test"):
            logger.log_dead_letter("orders", "m-1", "MaxDeliveryCountExceeded")

        assert caplog.records[0].dead_letter_reason == "MaxDeliveryCountExceeded"

    def test_log_error(self, caplog):
        """Test error events."""
        logger = StructuredLogger("localbus.test")

        with caplog.at_level(logging.ERROR, logger="localbus.test"):
            logger.log_error("filter_evaluation", "FilterEvaluationError", "Division by zero")

        record = caplog.records[0]
        assert record.levelno == logging.ERROR
        assert record.error_type == "FilterEvaluationError"


class TestTrackOperationTime:
    """Tests for the timing decorator."""

    @pytest.mark.asyncio
    async def test_success_logged_with_duration(self, caplog):
        """Test a completed operation logs its duration."""
        logger = StructuredLogger("localbus.test")

        @track_operation_time(logger, "send")
        async def operation():
            return 42

        with caplog.at_level(logging.DEBUG, logger="localbus.test"):
            assert await operation() == 42

        assert caplog.records[0].operation == "send"
        assert caplog.records[0].duration_ms >= 0

    @pytest.mark.asyncio
    async def test_failure_logged_and_reraised(self, caplog):
        """Test a failing operation logs a warning and re-raises."""
        logger = StructuredLogger("localbus.test")

        @track_operation_time(logger, "receive")
        async def operation():
            raise RuntimeError("boom")

        with caplog.at_level(logging.WARNING, logger="localbus.test"):
            with pytest.raises(RuntimeError):
                await operation()

        assert caplog.records[0].error_type == "RuntimeError"


class TestBackendLogging:
    """Tests for events the namespace logs."""

    @pytest.mark.asyncio
    async def test_queue_created_logged(self, backend, caplog):
        """Test queue creation is logged at INFO."""
        with caplog.at_level(logging.INFO, logger="localbus.servicebus.backend"):
            await backend.create_queue("orders", QueueProperties())

        assert any(getattr(r, "operation", None) == "queue_created" for r in caplog.records)

    @pytest.mark.asyncio
    async def test_dead_letter_logged(self, backend, caplog):
        """Test dead-lettering is logged with its reason."""
        await backend.create_queue("orders")
        await backend.send("orders", ServiceBusMessage("x"))
        message = (await backend.receive("orders"))[0]

        with caplog.at_level(logging.INFO, logger="localbus.servicebus.backend"):
            await backend.dead_letter("orders", message.lock_token, reason="Poison")

        reasons = [getattr(r, "dead_letter_reason", None) for r in caplog.records]
        assert "Poison" in reasons
