"""
Unit Tests for Service Bus Sessions

Tests for session locking, in-session ordering, session state and
session lock expiry on queues and subscriptions.

Author: LocalBus Team
Date: 2026-03-17
"""

from datetime import timedelta

import pytest

from localbus.servicebus.backend import subscription_path
from localbus.servicebus.exceptions import (
    InvalidOperationError,
    NoSessionAvailableError,
    SessionCannotBeLockedError,
    SessionLockLostError,
    SessionRequiredError,
)
from localbus.servicebus.models import (
    QueueProperties,
    ServiceBusMessage,
    SubscriptionProperties,
)


@pytest.fixture
async def session_queue(backend):
    """Create a session-enabled queue with two sessions of messages."""
    await backend.create_queue("orders", QueueProperties(requires_session=True, lock_duration=30))
    await backend.send("orders", [
        ServiceBusMessage("a1", session_id="A"),
        ServiceBusMessage("b1", session_id="B"),
        ServiceBusMessage("a2", session_id="A"),
        ServiceBusMessage("b2", session_id="B"),
    ])
    return backend


class TestAcceptSession:
    """Tests for acquiring session locks."""

    @pytest.mark.asyncio
    async def test_accept_next_session(self, session_queue, clock):
        """Test the session with the oldest message is chosen."""
        lock = await session_queue.accept_session("orders")

        assert lock.session_id == "A"
        assert lock.locked_until_utc == clock.now + timedelta(seconds=30)

    @pytest.mark.asyncio
    async def test_accept_skips_locked_sessions(self, session_queue):
        """Test a second accept picks the next unlocked session."""
        await session_queue.accept_session("orders")

        lock = await session_queue.accept_session("orders")

        assert lock.session_id == "B"

    @pytest.mark.asyncio
    async def test_no_session_available(self, session_queue):
        """Test accepting when every session is locked."""
        await session_queue.accept_session("orders", "A")
        await session_queue.accept_session("orders", "B")

        with pytest.raises(NoSessionAvailableError):
            await session_queue.accept_session("orders")

    @pytest.mark.asyncio
    async def test_named_session_already_locked(self, session_queue):
        """Test accepting a named session another receiver holds."""
        await session_queue.accept_session("orders", "A")

        with pytest.raises(SessionCannotBeLockedError):
            await session_queue.accept_session("orders", "A")

    @pytest.mark.asyncio
    async def test_named_session_without_messages(self, session_queue):
        """Test a named session can be locked before it has messages."""
        lock = await session_queue.accept_session("orders", "C")

        assert lock.session_id == "C"
        assert await session_queue.receive("orders", session_lock_token=lock.lock_token) == []

    @pytest.mark.asyncio
    async def test_accept_on_plain_queue(self, backend):
        """Test sessions cannot be accepted on a queue without sessions."""
        await backend.create_queue("plain")

        with pytest.raises(InvalidOperationError):
            await backend.accept_session("plain")

    @pytest.mark.asyncio
    async def test_expired_lock_can_be_taken_over(self, session_queue, clock):
        """Test an expired session lock is available to another receiver."""
        first = await session_queue.accept_session("orders", "A")
        clock.advance(31)

        second = await session_queue.accept_session("orders", "A")

        assert second.lock_token != first.lock_token


class TestSessionReceive:
    """Tests for receiving inside a session."""

    @pytest.mark.asyncio
    async def test_send_requires_session_id(self, session_queue):
        """Test sending to a session queue without a session id."""
        with pytest.raises(SessionRequiredError):
            await session_queue.send("orders", ServiceBusMessage("orphan"))

    @pytest.mark.asyncio
    async def test_receive_requires_session_lock(self, session_queue):
        """Test receiving from a session queue without a session."""
        with pytest.raises(SessionRequiredError):
            await session_queue.receive("orders")

    @pytest.mark.asyncio
    async def test_receive_only_own_session_in_order(self, session_queue):
        """Test a session receiver sees only its session, in order."""
        lock = await session_queue.accept_session("orders", "B")

        messages = await session_queue.receive("orders", max_count=10, session_lock_token=lock.lock_token)

        assert [str(m) for m in messages] == ["b1", "b2"]
        assert all(m.session_id == "B" for m in messages)

    @pytest.mark.asyncio
    async def test_message_lock_follows_session_lock(self, session_queue):
        """Test session messages are locked until the session lock ends."""
        lock = await session_queue.accept_session("orders", "A")

        message = (await session_queue.receive("orders", session_lock_token=lock.lock_token))[0]

        assert message.locked_until_utc == lock.locked_until_utc

    @pytest.mark.asyncio
    async def test_complete_in_session(self, session_queue):
        """Test completing session messages."""
        lock = await session_queue.accept_session("orders", "A")
        messages = await session_queue.receive("orders", max_count=10, session_lock_token=lock.lock_token)

        for message in messages:
            await session_queue.complete("orders", message.lock_token)

        runtime = await session_queue.get_queue_runtime_properties("orders")
        assert runtime.active_message_count == 2

    @pytest.mark.asyncio
    async def test_renew_message_lock_rejected(self, session_queue):
        """Test session message locks are renewed through the session."""
        lock = await session_queue.accept_session("orders", "A")
        message = (await session_queue.receive("orders", session_lock_token=lock.lock_token))[0]

        with pytest.raises(InvalidOperationError):
            await session_queue.renew_lock("orders", message.lock_token)

    @pytest.mark.asyncio
    async def test_renew_session_lock(self, session_queue, clock):
        """Test renewing a session extends its messages' locks."""
        lock = await session_queue.accept_session("orders", "A")
        message = (await session_queue.receive("orders", session_lock_token=lock.lock_token))[0]

        clock.advance(20)
        locked_until = await session_queue.renew_session_lock("orders", lock.lock_token)
        clock.advance(20)

        assert locked_until == clock.now + timedelta(seconds=10)
        await session_queue.complete("orders", message.lock_token)

    @pytest.mark.asyncio
    async def test_session_lock_expiry(self, session_queue, clock):
        """Test settling after the session lock expired."""
        lock = await session_queue.accept_session("orders", "A")
        message = (await session_queue.receive("orders", session_lock_token=lock.lock_token))[0]

        clock.advance(31)

        with pytest.raises(SessionLockLostError):
            await session_queue.complete("orders", message.lock_token)
        with pytest.raises(SessionLockLostError):
            await session_queue.receive("orders", session_lock_token=lock.lock_token)

    @pytest.mark.asyncio
    async def test_release_session_unlocks_messages(self, session_queue):
        """Test releasing a session makes its locked messages available again."""
        lock = await session_queue.accept_session("orders", "A")
        await session_queue.receive("orders", session_lock_token=lock.lock_token)

        await session_queue.release_session("orders", lock.lock_token)

        again = await session_queue.accept_session("orders", "A")
        messages = await session_queue.receive("orders", session_lock_token=again.lock_token)
        assert str(messages[0]) == "a1"
        assert messages[0].delivery_count == 2

    @pytest.mark.asyncio
    async def test_peek_browses_all_sessions(self, session_queue):
        """Test peeking without a session lock sees every session."""
        messages = await session_queue.peek("orders", max_count=10)

        assert [m.session_id for m in messages] == ["A", "B", "A", "B"]

    @pytest.mark.asyncio
    async def test_deferred_in_session(self, session_queue):
        """Test deferred messages are received within their session."""
        lock = await session_queue.accept_session("orders", "A")
        message = (await session_queue.receive("orders", session_lock_token=lock.lock_token))[0]
        await session_queue.defer("orders", message.lock_token)

        deferred = await session_queue.receive_deferred(
            "orders", [message.sequence_number], session_lock_token=lock.lock_token
        )

        assert str(deferred[0]) == "a1"


class TestSessionState:
    """Tests for session state."""

    @pytest.mark.asyncio
    async def test_state_starts_empty(self, session_queue):
        """Test a new session has no state."""
        lock = await session_queue.accept_session("orders", "A")

        assert await session_queue.get_session_state("orders", lock.lock_token) is None

    @pytest.mark.asyncio
    async def test_set_and_get_state(self, session_queue):
        """Test state strings are stored as bytes."""
        lock = await session_queue.accept_session("orders", "A")

        await session_queue.set_session_state("orders", lock.lock_token, "step-2")

        assert await session_queue.get_session_state("orders", lock.lock_token) == b"step-2"

    @pytest.mark.asyncio
    async def test_state_survives_release(self, session_queue):
        """Test state is kept when the session is released and re-accepted."""
        lock = await session_queue.accept_session("orders", "A")
        await session_queue.set_session_state("orders", lock.lock_token, b"\x01\x02")
        await session_queue.release_session("orders", lock.lock_token)

        again = await session_queue.accept_session("orders", "A")

        assert await session_queue.get_session_state("orders", again.lock_token) == b"\x01\x02"

    @pytest.mark.asyncio
    async def test_state_with_unknown_token(self, session_queue):
        """Test reading state without a valid session lock."""
        with pytest.raises(SessionLockLostError):
            await session_queue.get_session_state("orders", "not-a-token")


class TestSessionSubscriptions:
    """Tests for session-enabled subscriptions."""

    @pytest.mark.asyncio
    async def test_session_subscription(self, backend):
        """Test session ordering through a topic subscription."""
        await backend.create_topic("events")
        await backend.create_subscription("events", "ordered", SubscriptionProperties(requires_session=True))
        path = subscription_path("events", "ordered")

        await backend.send("events", [
            ServiceBusMessage("x1", session_id="X"),
            ServiceBusMessage("y1", session_id="Y"),
            ServiceBusMessage("x2", session_id="X"),
        ])

        lock = await backend.accept_session(path)
        messages = await backend.receive(path, max_count=10, session_lock_token=lock.lock_token)

        assert lock.session_id == "X"
        assert [str(m) for m in messages] == ["x1", "x2"]
