"""
Service Bus receiver.

Receives from a queue, a subscription, or either one's dead-letter
sub-queues, in PeekLock or ReceiveAndDelete mode. Requires the ``Listen``
claim.

Author: LocalBus Team
Date: 2026-03-10
"""

import asyncio
from datetime import datetime
from typing import AsyncIterator, Dict, Iterable, List, Optional, Set, Union

from localbus.auth.rules import AccessRights

from .connection import BaseHandler, ServiceBusConnection
from .constants import DEFAULT_RECEIVE_POLL_INTERVAL
from .exceptions import InvalidOperationError, MessageAlreadySettledError
from .logging_utils import StructuredLogger
from .models import ReceiveMode, ServiceBusReceivedMessage, ServiceBusSubQueue
from .resilience import retry_async
from .session import ServiceBusSession, ServiceBusSessionFilter


logger = StructuredLogger('localbus.servicebus.receiver')


class ServiceBusReceiver(BaseHandler):
    """
    Receiver bound to one entity path.

    ``max_wait_time`` (seconds) bounds how long ``receive_messages`` and
    ``async for`` wait for a first message; ``None`` means do not wait.
    """

    def __init__(
        self,
        connection: ServiceBusConnection,
        entity_path: str,
        sub_queue: Optional[Union[ServiceBusSubQueue, str]] = None,
        receive_mode: Union[ReceiveMode, str] = ReceiveMode.PEEK_LOCK,
        max_wait_time: Optional[float] = None,
        session_id: Optional[Union[str, ServiceBusSessionFilter]] = None,
        poll_interval: float = DEFAULT_RECEIVE_POLL_INTERVAL,
    ):
        super().__init__(connection, entity_path)
        self.sub_queue = ServiceBusSubQueue(sub_queue) if sub_queue is not None else None
        self.receive_mode = ReceiveMode(receive_mode)
        self.max_wait_time = max_wait_time
        self._poll_interval = poll_interval
        self._settled: Set[str] = set()

        if session_id is not None and self.sub_queue is not None:
            raise ValueError("Dead-letter sub-queues are not session-aware; omit session_id")
        self._session = ServiceBusSession(self, session_id) if session_id is not None else None

    @property
    def session(self) -> Optional[ServiceBusSession]:
        """The locked session for session receivers, otherwise None."""
        return self._session

    @property
    def _session_lock_token(self) -> Optional[str]:
        return self._session.lock_token if self._session else None

    async def _open(self) -> None:
        if self._session is None or self._session.accepted:
            return
        lock = await retry_async(
            self._backend.accept_session,
            self.entity_path,
            self._session.requested_session_id,
            policy=self.retry_policy,
        )
        self._session._bind(lock)
        logger.info(
            f"Session accepted: {self.entity_path} session={lock.session_id}",
            entity_name=self.entity_path,
            session_id=lock.session_id,
        )

    async def __aenter__(self) -> 'ServiceBusReceiver':
        self._check_open("open")
        self._connection.authorize(AccessRights.LISTEN, self.entity_path)
        await self._open()
        return self

    async def close(self) -> None:
        if self._closed:
            return
        if self._session is not None and self._session.accepted:
            await self._backend.release_session(self.entity_path, self._session.lock_token)
            self._session._release()
        await super().close()

    # ========== Receiving ==========

    async def receive_messages(
        self,
        max_message_count: int = 1,
        max_wait_time: Optional[float] = None,
    ) -> List[ServiceBusReceivedMessage]:
        """
        Receive up to ``max_message_count`` messages.

        Polls until at least one message is available or the wait time
        elapses; returns an empty list on timeout.
        """
        self._check_open("receive_messages")
        if max_message_count < 1:
            raise ValueError("max_message_count must be at least 1")
        self._connection.authorize(AccessRights.LISTEN, self.entity_path)
        await self._open()

        wait = self.max_wait_time if max_wait_time is None else max_wait_time
        loop = asyncio.get_running_loop()
        deadline = loop.time() + (wait or 0)

        while True:
            messages = await retry_async(
                self._backend.receive,
                self.entity_path,
                max_message_count,
                self.receive_mode,
                self.sub_queue,
                self._session_lock_token,
                policy=self.retry_policy,
            )
            remaining = deadline - loop.time()
            if messages or remaining <= 0:
                return messages
            await asyncio.sleep(min(self._poll_interval, remaining))

    def __aiter__(self) -> AsyncIterator[ServiceBusReceivedMessage]:
        return self._iter_messages()

    async def _iter_messages(self) -> AsyncIterator[ServiceBusReceivedMessage]:
        # Stops once a receive waits max_wait_time without a message
        while not self._closed:
            messages = await self.receive_messages(max_message_count=1)
            if not messages:
                return
            yield messages[0]

    async def receive_deferred_messages(
        self,
        sequence_numbers: Union[int, Iterable[int]],
    ) -> List[ServiceBusReceivedMessage]:
        self._check_open("receive_deferred_messages")
        self._connection.authorize(AccessRights.LISTEN, self.entity_path)
        await self._open()
        if isinstance(sequence_numbers, int):
            sequence_numbers = [sequence_numbers]
        return await retry_async(
            self._backend.receive_deferred,
            self.entity_path,
            list(sequence_numbers),
            self.receive_mode,
            self.sub_queue,
            self._session_lock_token,
            policy=self.retry_policy,
        )

    async def peek_messages(
        self,
        max_message_count: int = 1,
        sequence_number: int = 0,
    ) -> List[ServiceBusReceivedMessage]:
        """Browse without locking, starting at ``sequence_number``."""
        self._check_open("peek_messages")
        self._connection.authorize(AccessRights.LISTEN, self.entity_path)
        await self._open()
        return await retry_async(
            self._backend.peek,
            self.entity_path,
            max_message_count,
            sequence_number,
            self.sub_queue,
            self._session_lock_token,
            policy=self.retry_policy,
        )

    # ========== Settlement ==========

    async def complete_message(self, message: ServiceBusReceivedMessage) -> None:
        await self._settle("complete_message", message, self._backend.complete)

    async def abandon_message(
        self,
        message: ServiceBusReceivedMessage,
        properties_to_modify: Optional[Dict[str, object]] = None,
    ) -> None:
        await self._settle(
            "abandon_message",
            message,
            self._backend.abandon,
            properties_to_modify=properties_to_modify,
        )

    async def defer_message(self, message: ServiceBusReceivedMessage) -> None:
        await self._settle("defer_message", message, self._backend.defer)

    async def dead_letter_message(
        self,
        message: ServiceBusReceivedMessage,
        reason: Optional[str] = None,
        error_description: Optional[str] = None,
    ) -> None:
        await self._settle(
            "dead_letter_message",
            message,
            self._backend.dead_letter,
            reason=reason,
            error_description=error_description,
        )

    async def renew_message_lock(self, message: ServiceBusReceivedMessage) -> datetime:
        """Extend the lock; returns and records the new ``locked_until_utc``."""
        self._check_settleable("renew_message_lock", message)
        self._connection.authorize(AccessRights.LISTEN, self.entity_path)
        locked_until = await retry_async(
            self._backend.renew_lock,
            self.entity_path,
            message.lock_token,
            sub_queue=self.sub_queue,
            policy=self.retry_policy,
        )
        message.locked_until_utc = locked_until
        return locked_until

    def _is_settled(self, message: ServiceBusReceivedMessage) -> bool:
        return message.lock_token is not None and message.lock_token in self._settled

    def _check_settleable(self, operation: str, message: ServiceBusReceivedMessage) -> None:
        self._check_open(operation)
        if self.receive_mode == ReceiveMode.RECEIVE_AND_DELETE:
            raise InvalidOperationError(
                operation,
                "Messages received in ReceiveAndDelete mode are already settled",
            )
        if message.lock_token is None:
            raise InvalidOperationError(operation, "The message was not received with a lock")
        if message.lock_token in self._settled:
            raise MessageAlreadySettledError(message.message_id)

    async def _settle(self, operation: str, message: ServiceBusReceivedMessage, settle, **kwargs) -> None:
        self._check_settleable(operation, message)
        self._connection.authorize(AccessRights.LISTEN, self.entity_path)
        await retry_async(
            settle,
            self.entity_path,
            message.lock_token,
            sub_queue=self.sub_queue,
            policy=self.retry_policy,
            operation_name=operation,
            **kwargs
        )
        self._settled.add(message.lock_token)
