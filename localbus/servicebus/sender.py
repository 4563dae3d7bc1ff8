"""
Service Bus sender and message batches.

Author: LocalBus Team
Date: 2026-03-09
"""

from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Union

from localbus.auth.rules import AccessRights

from .constants import MAX_MESSAGE_SIZE
from .connection import BaseHandler, ServiceBusConnection
from .exceptions import MessageSizeExceededError
from .logging_utils import StructuredLogger
from .models import ServiceBusMessage
from .resilience import OperationType, with_retry, with_timeout
from .validation import MessageValidator


logger = StructuredLogger('localbus.servicebus.sender')


class ServiceBusMessageBatch:
    """
    Messages sent together in one call.

    ``add_message`` raises once the batch would exceed ``max_size_in_bytes``.
    """

    def __init__(self, max_size_in_bytes: Optional[int] = None):
        self.max_size_in_bytes = max_size_in_bytes or MAX_MESSAGE_SIZE
        self._messages: List[ServiceBusMessage] = []
        self._size = 0

    @property
    def size_in_bytes(self) -> int:
        return self._size

    @property
    def messages(self) -> List[ServiceBusMessage]:
        return list(self._messages)

    def add_message(self, message: ServiceBusMessage) -> None:
        """
        Raises:
            MessageSizeExceededError: The message does not fit
        """
        size = MessageValidator.message_size(message)
        if self._size + size > self.max_size_in_bytes:
            raise MessageSizeExceededError(self._size + size, self.max_size_in_bytes)
        self._messages.append(message)
        self._size += size

    def __len__(self) -> int:
        return len(self._messages)

    def __repr__(self) -> str:
        return (
            f"ServiceBusMessageBatch(max_size_in_bytes={self.max_size_in_bytes}, "
            f"message_count={len(self._messages)})"
        )


SendPayload = Union[ServiceBusMessage, Sequence[ServiceBusMessage], ServiceBusMessageBatch]


class ServiceBusSender(BaseHandler):
    """Sends to one queue or topic. Requires the ``Send`` claim."""

    def __init__(self, connection: ServiceBusConnection, entity_name: str, entity_type: str = "queue"):
        super().__init__(connection, entity_name)
        self.entity_type = entity_type

    @property
    def queue_name(self) -> Optional[str]:
        return self.entity_path if self.entity_type == "queue" else None

    @property
    def topic_name(self) -> Optional[str]:
        return self.entity_path if self.entity_type == "topic" else None

    @with_retry()
    @with_timeout(OperationType.SEND)
    async def send_messages(self, message: SendPayload) -> List[int]:
        """
        Send a message, a list of messages, or a batch.

        Returns:
            Sequence numbers of the accepted messages (duplicates dropped by
            duplicate detection are absent)
        """
        self._check_open("send_messages")
        self._connection.authorize(AccessRights.SEND, self.entity_path)

        if isinstance(message, ServiceBusMessageBatch):
            messages = message.messages
        elif isinstance(message, ServiceBusMessage):
            messages = [message]
        else:
            messages = list(message)
        if not messages:
            return []

        sequence_numbers = await self._backend.send(self.entity_path, messages)
        logger.debug(
            f"Sent {len(messages)} message(s) to {self.entity_path}",
            entity_name=self.entity_path,
            message_count=len(messages),
        )
        return sequence_numbers

    @with_retry()
    async def schedule_messages(
        self,
        messages: Union[ServiceBusMessage, Sequence[ServiceBusMessage]],
        schedule_time_utc: datetime,
    ) -> List[int]:
        """Schedule messages; returns sequence numbers for cancellation."""
        self._check_open("schedule_messages")
        self._connection.authorize(AccessRights.SEND, self.entity_path)
        return await self._backend.schedule(self.entity_path, messages, schedule_time_utc)

    @with_retry()
    async def cancel_scheduled_messages(self, sequence_numbers: Union[int, Iterable[int]]) -> None:
        self._check_open("cancel_scheduled_messages")
        self._connection.authorize(AccessRights.SEND, self.entity_path)
        if isinstance(sequence_numbers, int):
            sequence_numbers = [sequence_numbers]
        await self._backend.cancel_scheduled(self.entity_path, sequence_numbers)

    async def create_message_batch(self, max_size_in_bytes: Optional[int] = None) -> ServiceBusMessageBatch:
        self._check_open("create_message_batch")
        if max_size_in_bytes is not None and max_size_in_bytes > MAX_MESSAGE_SIZE:
            raise ValueError(f"max_size_in_bytes cannot exceed {MAX_MESSAGE_SIZE}")
        return ServiceBusMessageBatch(max_size_in_bytes)
