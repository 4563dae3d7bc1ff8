"""
Tests for Service Bus Metrics

Tests for Prometheus metrics collection per namespace and the metrics the
in-memory broker records as messages move through it.

Author: LocalBus Team
Date: 2026-03-19
"""

import pytest

from localbus.servicebus.backend import ServiceBusBackend
from localbus.servicebus.exceptions import EntityNotFoundError
from localbus.servicebus.metrics import ServiceBusMetrics
from localbus.servicebus.models import QueueProperties, ServiceBusMessage


QUEUE = {'entity_type': 'queue', 'entity_name': 'test-queue'}


class TestServiceBusMetrics:
    """Test cases for Prometheus metrics collection."""

    @pytest.fixture
    def metrics(self):
        """Create metrics instance with its own registry."""
        return ServiceBusMetrics()

    def test_track_message_sent(self, metrics):
        """Test tracking sent messages."""
        metrics.track_message_sent('queue', 'test-queue', 1024)
        metrics.track_message_sent('queue', 'test-queue', 2048)

        assert metrics.get_sample_value('servicebus_messages_sent_total', QUEUE) == 2.0
        assert metrics.get_sample_value('servicebus_message_size_bytes_sum', QUEUE) == 3072.0

    def test_track_dead_lettered(self, metrics):
        """Test dead-letter counter is labelled by reason."""
        metrics.track_message_deadlettered('queue', 'test-queue', 'MaxDeliveryCountExceeded')

        labels = dict(QUEUE, reason='MaxDeliveryCountExceeded')
        assert metrics.get_sample_value('servicebus_messages_deadlettered_total', labels) == 1.0

    def test_track_error(self, metrics):
        """Test tracking errors."""
        metrics.track_error('send', 'QueueNotFoundError')

        labels = {'operation': 'send', 'error_type': 'QueueNotFoundError'}
        assert metrics.get_sample_value('servicebus_errors_total', labels) == 1.0

    def test_update_depth(self, metrics):
        """Test depth gauges."""
        metrics.update_depth('queue', 'test-queue', active=5, locked=2)

        assert metrics.get_sample_value('servicebus_active_messages', QUEUE) == 5.0
        assert metrics.get_sample_value('servicebus_active_locks', QUEUE) == 2.0

    def test_unknown_sample_is_none(self, metrics):
        """Test reading a sample that was never recorded."""
        assert metrics.get_sample_value('servicebus_messages_sent_total', QUEUE) is None

    def test_registries_are_independent(self):
        """Test two namespaces do not share samples."""
        first, second = ServiceBusMetrics(), ServiceBusMetrics()

        first.track_message_sent('queue', 'test-queue', 10)

        assert second.get_sample_value('servicebus_messages_sent_total', QUEUE) is None

    def test_generate_metrics(self, metrics):
        """Test Prometheus text exposition output."""
        metrics.track_message_sent('queue', 'test-queue', 10)

        output = metrics.generate_metrics()

        assert isinstance(output, bytes)
        assert b'servicebus_messages_sent_total' in output
        assert metrics.get_content_type().startswith('text/plain')


class TestBackendMetrics:
    """Metrics recorded by broker operations."""

    @pytest.fixture
    async def backend(self):
        """Create backend with one queue."""
        backend = ServiceBusBackend()
        await backend.create_queue("test-queue", QueueProperties(max_delivery_count=1))
        yield backend

    @pytest.mark.asyncio
    async def test_send_receive_complete(self, backend):
        """Test the message lifecycle counters and gauges."""
        metrics = backend.metrics
        await backend.send("test-queue", [ServiceBusMessage("a"), ServiceBusMessage("b")])
        assert metrics.get_sample_value('servicebus_active_messages', QUEUE) == 2.0

        received = await backend.receive("test-queue", max_count=2)
        assert metrics.get_sample_value('servicebus_active_locks', QUEUE) == 2.0

        for message in received:
            await backend.complete("test-queue", message.lock_token)

        assert metrics.get_sample_value('servicebus_messages_sent_total', QUEUE) == 2.0
        assert metrics.get_sample_value('servicebus_messages_received_total', QUEUE) == 2.0
        assert metrics.get_sample_value('servicebus_messages_completed_total', QUEUE) == 2.0
        assert metrics.get_sample_value('servicebus_active_messages', QUEUE) == 0.0
        assert metrics.get_sample_value('servicebus_active_locks', QUEUE) == 0.0

    @pytest.mark.asyncio
    async def test_abandon_past_max_delivery(self, backend):
        """Test abandon and dead-letter counters."""
        await backend.send("test-queue", ServiceBusMessage("poison"))
        message = (await backend.receive("test-queue"))[0]

        await backend.abandon("test-queue", message.lock_token)

        metrics = backend.metrics
        assert metrics.get_sample_value('servicebus_messages_abandoned_total', QUEUE) == 1.0
        assert metrics.get_sample_value(
            'servicebus_messages_deadlettered_total',
            dict(QUEUE, reason='MaxDeliveryCountExceeded'),
        ) == 1.0

    @pytest.mark.asyncio
    async def test_errors_counted(self, backend):
        """Test failed operations are counted by error type."""
        with pytest.raises(EntityNotFoundError):
            await backend.send("missing", ServiceBusMessage("x"))

        assert backend.metrics.get_sample_value(
            'servicebus_errors_total', {'operation': 'send', 'error_type': 'EntityNotFoundError'}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_entity_count(self, backend):
        """Test the entity gauge."""
        await backend.create_queue("second")

        assert backend.metrics.get_sample_value('servicebus_entity_count', {'entity_type': 'queue'}) == 2.0
