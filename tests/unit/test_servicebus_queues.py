"""
Unit Tests for Service Bus Queues

Tests for queue management and the message lifecycle on a queue: send,
peek-lock and receive-and-delete, settlement, lock expiry, delivery counting,
time-to-live, scheduling, deferral, duplicate detection and quotas.

Author: LocalBus Team
Date: 2026-03-16
"""

from datetime import timedelta

import pytest

from localbus.servicebus.backend import ServiceBusBackend
from localbus.servicebus.exceptions import (
    DeadLetterReason,
    EntityNotFoundError,
    InvalidEntityNameError,
    InvalidOperationError,
    MessageLockLostError,
    MessageNotFoundError,
    MessagingEntityDisabledError,
    QueueAlreadyExistsError,
    QueueNotFoundError,
    QuotaExceededError,
)
from localbus.servicebus.models import (
    EntityStatus,
    MessageState,
    QueueProperties,
    ReceiveMode,
    ServiceBusMessage,
    ServiceBusSubQueue,
)


@pytest.fixture
async def backend_with_queue(backend):
    """Create a backend with a test queue."""
    await backend.create_queue("test-queue")
    return backend


class TestQueueManagement:
    """Tests for queue CRUD operations."""

    @pytest.mark.asyncio
    async def test_create_queue_defaults(self, backend):
        """Test creating a queue with default properties."""
        description = await backend.create_queue("orders")

        assert description.name == "orders"
        assert description.properties.lock_duration == 60
        assert description.properties.max_delivery_count == 10
        assert description.properties.requires_session is False
        assert description.created_at == backend.now()

    @pytest.mark.asyncio
    async def test_create_queue_duplicate(self, backend_with_queue):
        """Test that creating an existing queue fails."""
        with pytest.raises(QueueAlreadyExistsError):
            await backend_with_queue.create_queue("test-queue")

    @pytest.mark.asyncio
    async def test_create_queue_named_like_topic(self, backend):
        """Test that queues and topics share one namespace of names."""
        await backend.create_topic("events")

        with pytest.raises(InvalidOperationError):
            await backend.create_queue("events")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["", "-leading", "trailing-", "a//b", "orders/$DeadLetterQueue"])
    async def test_create_queue_invalid_name(self, backend, name):
        """Test rejection of invalid queue names."""
        with pytest.raises(InvalidEntityNameError):
            await backend.create_queue(name)

    @pytest.mark.asyncio
    async def test_queue_quota(self):
        """Test the maximum queue count."""
        backend = ServiceBusBackend(max_queues=1)
        await backend.create_queue("first")

        with pytest.raises(QuotaExceededError):
            await backend.create_queue("second")

    @pytest.mark.asyncio
    async def test_list_queues_sorted(self, backend):
        """Test listing queues returns them sorted by name."""
        for name in ["zeta", "alpha", "mid"]:
            await backend.create_queue(name)

        queues = await backend.list_queues()

        assert [q.name for q in queues] == ["alpha", "mid", "zeta"]

    @pytest.mark.asyncio
    async def test_update_queue(self, backend_with_queue):
        """Test replacing queue properties."""
        updated = await backend_with_queue.update_queue(
            "test-queue",
            QueueProperties(lock_duration=30, max_delivery_count=3),
        )

        assert updated.properties.lock_duration == 30
        assert updated.properties.max_delivery_count == 3

    @pytest.mark.asyncio
    async def test_update_queue_cannot_toggle_sessions(self, backend_with_queue):
        """Test that requires_session is fixed at creation."""
        with pytest.raises(InvalidOperationError):
            await backend_with_queue.update_queue("test-queue", QueueProperties(requires_session=True))

    @pytest.mark.asyncio
    async def test_delete_queue(self, backend_with_queue):
        """Test deleting a queue."""
        await backend_with_queue.delete_queue("test-queue")

        with pytest.raises(QueueNotFoundError):
            await backend_with_queue.get_queue("test-queue")

    @pytest.mark.asyncio
    async def test_delete_missing_queue(self, backend):
        """Test deleting a queue that does not exist."""
        with pytest.raises(QueueNotFoundError):
            await backend.delete_queue("missing")

    @pytest.mark.asyncio
    async def test_forward_to_self_rejected(self, backend):
        """Test that a queue cannot auto-forward to itself."""
        with pytest.raises(InvalidOperationError):
            await backend.create_queue("loop", QueueProperties(forward_to="loop"))


class TestSendAndReceive:
    """Tests for sending and receiving."""

    @pytest.mark.asyncio
    async def test_send_assigns_sequence_numbers(self, backend_with_queue):
        """Test that sequence numbers increase per entity."""
        first = await backend_with_queue.send("test-queue", ServiceBusMessage("one"))
        rest = await backend_with_queue.send(
            "test-queue",
            [ServiceBusMessage("two"), ServiceBusMessage("three")],
        )

        assert first == [1]
        assert rest == [2, 3]

    @pytest.mark.asyncio
    async def test_send_to_missing_entity(self, backend):
        """Test sending to an entity that does not exist."""
        with pytest.raises(EntityNotFoundError):
            await backend.send("missing", ServiceBusMessage("x"))

    @pytest.mark.asyncio
    async def test_send_to_disabled_queue(self, backend):
        """Test that a send-disabled queue rejects sends."""
        await backend.create_queue("paused", QueueProperties(status=EntityStatus.SEND_DISABLED))

        with pytest.raises(MessagingEntityDisabledError):
            await backend.send("paused", ServiceBusMessage("x"))

    @pytest.mark.asyncio
    async def test_peek_lock_receive(self, backend_with_queue, clock):
        """Test receiving in PeekLock mode locks the message."""
        await backend_with_queue.send("test-queue", ServiceBusMessage("hello", subject="greeting"))

        messages = await backend_with_queue.receive("test-queue")

        assert len(messages) == 1
        message = messages[0]
        assert str(message) == "hello"
        assert message.subject == "greeting"
        assert message.delivery_count == 1
        assert message.lock_token is not None
        assert message.locked_until_utc == clock.now + timedelta(seconds=60)
        assert message.enqueued_time_utc == clock.now

    @pytest.mark.asyncio
    async def test_locked_message_not_redelivered(self, backend_with_queue):
        """Test that a locked message is invisible to other receivers."""
        await backend_with_queue.send("test-queue", ServiceBusMessage("only"))
        await backend_with_queue.receive("test-queue")

        assert await backend_with_queue.receive("test-queue") == []

    @pytest.mark.asyncio
    async def test_receive_in_sequence_order(self, backend_with_queue):
        """Test FIFO delivery and max_count."""
        await backend_with_queue.send("test-queue", [ServiceBusMessage(f"m{i}") for i in range(5)])

        first = await backend_with_queue.receive("test-queue", max_count=3)
        second = await backend_with_queue.receive("test-queue", max_count=3)

        assert [str(m) for m in first] == ["m0", "m1", "m2"]
        assert [str(m) for m in second] == ["m3", "m4"]

    @pytest.mark.asyncio
    async def test_receive_and_delete(self, backend_with_queue):
        """Test ReceiveAndDelete removes the message immediately."""
        await backend_with_queue.send("test-queue", ServiceBusMessage("gone"))

        messages = await backend_with_queue.receive("test-queue", mode=ReceiveMode.RECEIVE_AND_DELETE)
        runtime = await backend_with_queue.get_queue_runtime_properties("test-queue")

        assert messages[0].lock_token is None
        assert runtime.total_message_count == 0

    @pytest.mark.asyncio
    async def test_receive_invalid_count(self, backend_with_queue):
        """Test that max_count must be positive."""
        with pytest.raises(InvalidOperationError):
            await backend_with_queue.receive("test-queue", max_count=0)

    @pytest.mark.asyncio
    async def test_peek_does_not_lock(self, backend_with_queue):
        """Test peeking leaves messages available."""
        await backend_with_queue.send("test-queue", [ServiceBusMessage("a"), ServiceBusMessage("b")])

        peeked = await backend_with_queue.peek("test-queue", max_count=10)
        received = await backend_with_queue.receive("test-queue", max_count=10)

        assert [m.sequence_number for m in peeked] == [1, 2]
        assert all(m.lock_token is None for m in peeked)
        assert len(received) == 2

    @pytest.mark.asyncio
    async def test_peek_from_sequence_number(self, backend_with_queue):
        """Test peeking from a given sequence number."""
        await backend_with_queue.send("test-queue", [ServiceBusMessage(str(i)) for i in range(4)])

        peeked = await backend_with_queue.peek("test-queue", max_count=10, from_sequence_number=3)

        assert [m.sequence_number for m in peeked] == [3, 4]


class TestSettlement:
    """Tests for complete, abandon, defer and dead-letter."""

    @pytest.mark.asyncio
    async def test_complete(self, backend_with_queue):
        """Test completing removes the message."""
        await backend_with_queue.send("test-queue", ServiceBusMessage("done"))
        message = (await backend_with_queue.receive("test-queue"))[0]

        await backend_with_queue.complete("test-queue", message.lock_token)

        runtime = await backend_with_queue.get_queue_runtime_properties("test-queue")
        assert runtime.total_message_count == 0

    @pytest.mark.asyncio
    async def test_complete_unknown_token(self, backend_with_queue):
        """Test completing with an unknown lock token."""
        with pytest.raises(MessageLockLostError):
            await backend_with_queue.complete("test-queue", "not-a-token")

    @pytest.mark.asyncio
    async def test_abandon_redelivers(self, backend_with_queue):
        """Test abandoning makes the message available with a higher delivery count."""
        await backend_with_queue.send("test-queue", ServiceBusMessage("retry"))
        message = (await backend_with_queue.receive("test-queue"))[0]

        await backend_with_queue.abandon(
            "test-queue",
            message.lock_token,
            properties_to_modify={"attempt": 1},
        )
        redelivered = (await backend_with_queue.receive("test-queue"))[0]

        assert redelivered.sequence_number == message.sequence_number
        assert redelivered.delivery_count == 2
        assert redelivered.application_properties["attempt"] == 1

    @pytest.mark.asyncio
    async def test_max_delivery_count_dead_letters(self, backend):
        """Test that exhausting deliveries moves the message to the dead-letter queue."""
        await backend.create_queue("fragile", QueueProperties(max_delivery_count=2))
        await backend.send("fragile", ServiceBusMessage("poison"))

        for _ in range(2):
            message = (await backend.receive("fragile"))[0]
            await backend.abandon("fragile", message.lock_token)

        assert await backend.receive("fragile") == []
        dead = await backend.receive("fragile", sub_queue=ServiceBusSubQueue.DEAD_LETTER)
        assert len(dead) == 1
        assert dead[0].dead_letter_reason == DeadLetterReason.MAX_DELIVERY_COUNT_EXCEEDED
        assert dead[0].delivery_count == 3

    @pytest.mark.asyncio
    async def test_explicit_dead_letter(self, backend_with_queue):
        """Test dead-lettering with a reason and description."""
        await backend_with_queue.send("test-queue", ServiceBusMessage("bad"))
        message = (await backend_with_queue.receive("test-queue"))[0]

        await backend_with_queue.dead_letter(
            "test-queue",
            message.lock_token,
            reason="MalformedPayload",
            error_description="Body is not JSON",
        )

        dead = (await backend_with_queue.receive(
            "test-queue", sub_queue=ServiceBusSubQueue.DEAD_LETTER
        ))[0]
        assert dead.dead_letter_reason == "MalformedPayload"
        assert dead.dead_letter_error_description == "Body is not JSON"
        assert dead.application_properties["DeadLetterReason"] == "MalformedPayload"
        assert dead.application_properties["DeadLetterErrorDescription"] == "Body is not JSON"

        await backend_with_queue.complete(
            "test-queue", dead.lock_token, sub_queue=ServiceBusSubQueue.DEAD_LETTER
        )
        runtime = await backend_with_queue.get_queue_runtime_properties("test-queue")
        assert runtime.dead_letter_message_count == 0

    @pytest.mark.asyncio
    async def test_dead_letter_from_dead_letter_queue(self, backend_with_queue):
        """Test that dead-lettered messages cannot be dead-lettered again."""
        await backend_with_queue.send("test-queue", ServiceBusMessage("bad"))
        message = (await backend_with_queue.receive("test-queue"))[0]
        await backend_with_queue.dead_letter("test-queue", message.lock_token, reason="First")
        dead = (await backend_with_queue.receive(
            "test-queue", sub_queue=ServiceBusSubQueue.DEAD_LETTER
        ))[0]

        with pytest.raises(InvalidOperationError):
            await backend_with_queue.dead_letter(
                "test-queue", dead.lock_token, reason="Again", sub_queue=ServiceBusSubQueue.DEAD_LETTER
            )

    @pytest.mark.asyncio
    async def test_defer_and_receive_deferred(self, backend_with_queue):
        """Test deferred messages are only returned by sequence number."""
        await backend_with_queue.send("test-queue", ServiceBusMessage("later"))
        message = (await backend_with_queue.receive("test-queue"))[0]

        await backend_with_queue.defer("test-queue", message.lock_token)

        assert await backend_with_queue.receive("test-queue") == []
        peeked = await backend_with_queue.peek("test-queue")
        assert peeked[0].state == MessageState.DEFERRED

        deferred = await backend_with_queue.receive_deferred("test-queue", [message.sequence_number])
        assert str(deferred[0]) == "later"
        await backend_with_queue.complete("test-queue", deferred[0].lock_token)

    @pytest.mark.asyncio
    async def test_receive_deferred_unknown(self, backend_with_queue):
        """Test receiving a sequence number that is not deferred."""
        await backend_with_queue.send("test-queue", ServiceBusMessage("active"))

        with pytest.raises(MessageNotFoundError):
            await backend_with_queue.receive_deferred("test-queue", [1])


class TestLocks:
    """Tests for lock expiry and renewal."""

    @pytest.mark.asyncio
    async def test_lock_expiry_redelivers(self, backend_with_queue, clock):
        """Test an expired lock returns the message to the queue."""
        await backend_with_queue.send("test-queue", ServiceBusMessage("slow"))
        message = (await backend_with_queue.receive("test-queue"))[0]

        clock.advance(61)
        redelivered = (await backend_with_queue.receive("test-queue"))[0]

        assert redelivered.delivery_count == 2
        assert redelivered.lock_token != message.lock_token
        with pytest.raises(MessageLockLostError):
            await backend_with_queue.complete("test-queue", message.lock_token)

    @pytest.mark.asyncio
    async def test_settle_after_expiry(self, backend_with_queue, clock):
        """Test settling after the lock expired raises lock lost."""
        await backend_with_queue.send("test-queue", ServiceBusMessage("slow"))
        message = (await backend_with_queue.receive("test-queue"))[0]

        clock.advance(60)

        with pytest.raises(MessageLockLostError):
            await backend_with_queue.complete("test-queue", message.lock_token)

    @pytest.mark.asyncio
    async def test_renew_lock(self, backend_with_queue, clock):
        """Test renewing extends the lock by the lock duration."""
        await backend_with_queue.send("test-queue", ServiceBusMessage("long job"))
        message = (await backend_with_queue.receive("test-queue"))[0]

        clock.advance(50)
        locked_until = await backend_with_queue.renew_lock("test-queue", message.lock_token)
        clock.advance(50)

        assert locked_until == message.locked_until_utc + timedelta(seconds=50)
        await backend_with_queue.complete("test-queue", message.lock_token)


class TestTimeToLive:
    """Tests for message expiration."""

    @pytest.mark.asyncio
    async def test_expired_message_discarded(self, backend, clock):
        """Test expired messages disappear without dead-lettering by default."""
        await backend.create_queue("short", QueueProperties(default_message_time_to_live=10))
        await backend.send("short", ServiceBusMessage("stale"))

        clock.advance(11)

        assert await backend.receive("short") == []
        runtime = await backend.get_queue_runtime_properties("short")
        assert runtime.total_message_count == 0

    @pytest.mark.asyncio
    async def test_expired_message_dead_lettered(self, backend, clock):
        """Test expiration dead-letters when enabled."""
        await backend.create_queue(
            "short",
            QueueProperties(default_message_time_to_live=10, dead_lettering_on_message_expiration=True),
        )
        await backend.send("short", ServiceBusMessage("stale"))

        clock.advance(11)

        assert await backend.receive("short") == []
        dead = await backend.receive("short", sub_queue=ServiceBusSubQueue.DEAD_LETTER)
        assert dead[0].dead_letter_reason == DeadLetterReason.TTL_EXPIRED

    @pytest.mark.asyncio
    async def test_message_ttl_capped_by_queue(self, backend, clock):
        """Test the shorter of message and queue TTL applies."""
        await backend.create_queue("short", QueueProperties(default_message_time_to_live=10))
        await backend.send("short", [
            ServiceBusMessage("brief", time_to_live=timedelta(seconds=5)),
            ServiceBusMessage("long", time_to_live=3600),
        ])

        peeked = await backend.peek("short", max_count=2)

        assert peeked[0].expires_at_utc == clock.now + timedelta(seconds=5)
        assert peeked[1].expires_at_utc == clock.now + timedelta(seconds=10)

    @pytest.mark.asyncio
    async def test_locked_message_does_not_expire(self, backend, clock):
        """Test that a locked message survives until it is settled or unlocked."""
        await backend.create_queue("short", QueueProperties(default_message_time_to_live=10, lock_duration=30))
        await backend.send("short", ServiceBusMessage("working"))
        message = (await backend.receive("short"))[0]

        clock.advance(20)

        assert await backend.receive("short") == []
        await backend.complete("short", message.lock_token)


class TestScheduledMessages:
    """Tests for scheduled enqueue."""

    @pytest.mark.asyncio
    async def test_scheduled_message_held_until_due(self, backend_with_queue, clock):
        """Test a scheduled message appears at its scheduled time."""
        due = clock.now + timedelta(seconds=30)
        sequence_numbers = await backend_with_queue.schedule("test-queue", ServiceBusMessage("reminder"), due)

        assert await backend_with_queue.receive("test-queue") == []
        peeked = await backend_with_queue.peek("test-queue")
        assert peeked[0].state == MessageState.SCHEDULED
        runtime = await backend_with_queue.get_queue_runtime_properties("test-queue")
        assert runtime.scheduled_message_count == 1

        clock.advance(30)
        messages = await backend_with_queue.receive("test-queue")

        assert messages[0].sequence_number == sequence_numbers[0]
        assert messages[0].enqueued_time_utc == due

    @pytest.mark.asyncio
    async def test_scheduled_enqueue_time_on_send(self, backend_with_queue, clock):
        """Test send honours scheduled_enqueue_time_utc."""
        message = ServiceBusMessage("later", scheduled_enqueue_time_utc=clock.now + timedelta(minutes=5))
        await backend_with_queue.send("test-queue", message)

        assert await backend_with_queue.receive("test-queue") == []
        clock.advance(300)
        assert len(await backend_with_queue.receive("test-queue")) == 1

    @pytest.mark.asyncio
    async def test_naive_scheduled_enqueue_time_on_send(self, backend_with_queue, clock):
        """Test a naive scheduled time on send is treated as UTC."""
        naive = (clock.now + timedelta(minutes=5)).replace(tzinfo=None)
        message = ServiceBusMessage("later", scheduled_enqueue_time_utc=naive)
        assert message.scheduled_enqueue_time_utc == clock.now + timedelta(minutes=5)

        await backend_with_queue.send("test-queue", message)

        assert await backend_with_queue.receive("test-queue") == []
        clock.advance(300)
        messages = await backend_with_queue.receive("test-queue")
        assert messages[0].enqueued_time_utc == clock.now

    @pytest.mark.asyncio
    async def test_cancel_scheduled(self, backend_with_queue, clock):
        """Test cancelling a scheduled message."""
        seqs = await backend_with_queue.schedule(
            "test-queue",
            [ServiceBusMessage("keep"), ServiceBusMessage("drop")],
            clock.now + timedelta(seconds=10),
        )

        await backend_with_queue.cancel_scheduled("test-queue", [seqs[1]])
        clock.advance(10)

        messages = await backend_with_queue.receive("test-queue", max_count=10)
        assert [str(m) for m in messages] == ["keep"]

    @pytest.mark.asyncio
    async def test_cancel_unknown_scheduled(self, backend_with_queue):
        """Test cancelling a sequence number that is not scheduled."""
        with pytest.raises(MessageNotFoundError):
            await backend_with_queue.cancel_scheduled("test-queue", [99])


class TestDuplicateDetection:
    """Tests for duplicate detection."""

    @pytest.mark.asyncio
    async def test_duplicate_dropped(self, backend):
        """Test a repeated message id inside the window is dropped silently."""
        await backend.create_queue("dedup", QueueProperties(requires_duplicate_detection=True))

        first = await backend.send("dedup", ServiceBusMessage("a", message_id="order-1"))
        second = await backend.send("dedup", ServiceBusMessage("a again", message_id="order-1"))

        assert first == [1]
        assert second == []
        assert backend.metrics.get_sample_value(
            "servicebus_duplicates_dropped_total",
            {"entity_type": "queue", "entity_name": "dedup"},
        ) == 1.0

    @pytest.mark.asyncio
    async def test_duplicate_accepted_after_window(self, backend, clock):
        """Test the same id is accepted once the window has passed."""
        await backend.create_queue(
            "dedup",
            QueueProperties(requires_duplicate_detection=True, duplicate_detection_history_time_window=60),
        )
        await backend.send("dedup", ServiceBusMessage("a", message_id="order-1"))

        clock.advance(61)

        assert await backend.send("dedup", ServiceBusMessage("a", message_id="order-1")) == [2]

    @pytest.mark.asyncio
    async def test_duplicates_allowed_without_detection(self, backend_with_queue):
        """Test that without detection every message is accepted."""
        seqs = await backend_with_queue.send("test-queue", [
            ServiceBusMessage("a", message_id="same"),
            ServiceBusMessage("b", message_id="same"),
        ])

        assert seqs == [1, 2]


class TestSizeQuota:
    """Tests for entity size limits."""

    @pytest.mark.asyncio
    async def test_queue_size_quota(self, backend):
        """Test that a full queue rejects further sends."""
        await backend.create_queue("tiny", QueueProperties(max_size_in_megabytes=1))
        chunk = "x" * (200 * 1024)
        for _ in range(5):
            await backend.send("tiny", ServiceBusMessage(chunk))

        with pytest.raises(QuotaExceededError):
            await backend.send("tiny", ServiceBusMessage(chunk))


class TestRuntimeProperties:
    """Tests for queue runtime properties."""

    @pytest.mark.asyncio
    async def test_counts(self, backend_with_queue, clock):
        """Test runtime counts across sub-queues."""
        await backend_with_queue.send("test-queue", [ServiceBusMessage(str(i)) for i in range(3)])
        await backend_with_queue.schedule("test-queue", ServiceBusMessage("s"), clock.now + timedelta(hours=1))
        message = (await backend_with_queue.receive("test-queue"))[0]
        await backend_with_queue.dead_letter("test-queue", message.lock_token, reason="Test")

        runtime = await backend_with_queue.get_queue_runtime_properties("test-queue")

        assert runtime.active_message_count == 2
        assert runtime.scheduled_message_count == 1
        assert runtime.dead_letter_message_count == 1
        assert runtime.total_message_count == 4
        assert runtime.size_in_bytes > 0
        assert runtime.to_dict()["ActiveMessageCount"] == 2
