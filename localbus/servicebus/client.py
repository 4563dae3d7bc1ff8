"""
Service Bus Client

Entry point mirroring the vendor SDK's async client: build it from a
namespace and credential or from a connection string, then open senders,
receivers and processors for named entities.

Author: LocalBus Team
Date: 2026-03-11
"""

from typing import Any, Callable, List, Optional, Union

from localbus.auth.connection_string import parse_connection_string

from .backend import ServiceBusBackend, subscription_path
from .connection import BaseHandler, ServiceBusConnection, credential_from_connection_string
from .logging_utils import StructuredLogger
from .models import ReceiveMode, ServiceBusSubQueue
from .processor import ErrorHandler, MessageHandler, ServiceBusProcessor
from .receiver import ServiceBusReceiver
from .resilience import RetryPolicy
from .sender import ServiceBusSender
from .session import ServiceBusSessionFilter


logger = StructuredLogger('localbus.servicebus.client')


class ServiceBusClient:
    """
    Client for one namespace.

    Without an explicit ``backend`` the namespace is looked up (and created
    on first use) in the process-wide registry by its fully qualified name,
    so every client built from the same connection string shares state.

    Args:
        fully_qualified_namespace: e.g. ``localbus.servicebus.windows.net``
        credential: ``ServiceBusSharedKeyCredential``; any other object is
            treated as a trusted development identity
        retry_total / retry_backoff_factor / retry_backoff_max: Retry policy
            for transient errors
    """

    def __init__(
        self,
        fully_qualified_namespace: str,
        credential: object = None,
        backend: Optional[ServiceBusBackend] = None,
        retry_total: int = 3,
        retry_backoff_factor: float = 0.8,
        retry_backoff_max: float = 120.0,
        entity_path: Optional[str] = None,
    ):
        policy = RetryPolicy(
            total=retry_total,
            backoff_factor=retry_backoff_factor,
            backoff_max=retry_backoff_max,
        )
        self._connection = ServiceBusConnection(
            fully_qualified_namespace,
            credential,
            backend=backend,
            retry_policy=policy,
        )
        self._entity_path = entity_path
        self._handlers: List[BaseHandler] = []
        self._processors: List[ServiceBusProcessor] = []
        self._closed = False

    @classmethod
    def from_connection_string(cls, conn_str: str, **kwargs: Any) -> 'ServiceBusClient':
        """
        Build a client from ``Endpoint=sb://...;SharedAccessKeyName=...;SharedAccessKey=...``.

        Raises:
            ValueError: The connection string is malformed
        """
        props = parse_connection_string(conn_str)
        kwargs.setdefault('entity_path', props.entity_path)
        return cls(
            props.fully_qualified_namespace,
            credential_from_connection_string(props),
            **kwargs
        )

    @property
    def fully_qualified_namespace(self) -> str:
        return self._connection.fully_qualified_namespace

    @property
    def backend(self) -> ServiceBusBackend:
        return self._connection.backend

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._connection.retry_policy

    async def __aenter__(self) -> 'ServiceBusClient':
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Stop processors and close every sender and receiver this client opened."""
        for processor in self._processors:
            await processor.stop()
        for handler in self._handlers:
            await handler.close()
        self._processors.clear()
        self._handlers.clear()
        self._closed = True

    def _register(self, handler: BaseHandler) -> BaseHandler:
        # Closed handlers hold nothing to release
        self._handlers = [h for h in self._handlers if not h.closed]
        self._handlers.append(handler)
        return handler

    def _check_entity(self, name: str) -> None:
        if self._entity_path and self._entity_path != name:
            raise ValueError(
                f"The connection string is scoped to '{self._entity_path}', not '{name}'"
            )

    # ========== Senders ==========

    def get_queue_sender(self, queue_name: str) -> ServiceBusSender:
        self._check_entity(queue_name)
        return self._register(ServiceBusSender(self._connection, queue_name, "queue"))

    def get_topic_sender(self, topic_name: str) -> ServiceBusSender:
        self._check_entity(topic_name)
        return self._register(ServiceBusSender(self._connection, topic_name, "topic"))

    # ========== Receivers ==========

    def get_queue_receiver(
        self,
        queue_name: str,
        sub_queue: Optional[Union[ServiceBusSubQueue, str]] = None,
        receive_mode: Union[ReceiveMode, str] = ReceiveMode.PEEK_LOCK,
        max_wait_time: Optional[float] = None,
        session_id: Optional[Union[str, ServiceBusSessionFilter]] = None,
    ) -> ServiceBusReceiver:
        self._check_entity(queue_name)
        receiver = ServiceBusReceiver(
            self._connection,
            queue_name,
            sub_queue=sub_queue,
            receive_mode=receive_mode,
            max_wait_time=max_wait_time,
            session_id=session_id,
        )
        return self._register(receiver)

    def get_subscription_receiver(
        self,
        topic_name: str,
        subscription_name: str,
        sub_queue: Optional[Union[ServiceBusSubQueue, str]] = None,
        receive_mode: Union[ReceiveMode, str] = ReceiveMode.PEEK_LOCK,
        max_wait_time: Optional[float] = None,
        session_id: Optional[Union[str, ServiceBusSessionFilter]] = None,
    ) -> ServiceBusReceiver:
        self._check_entity(topic_name)
        receiver = ServiceBusReceiver(
            self._connection,
            subscription_path(topic_name, subscription_name),
            sub_queue=sub_queue,
            receive_mode=receive_mode,
            max_wait_time=max_wait_time,
            session_id=session_id,
        )
        return self._register(receiver)

    # ========== Processors ==========

    def get_queue_processor(
        self,
        queue_name: str,
        on_message: MessageHandler,
        on_error: Optional[ErrorHandler] = None,
        max_concurrent_calls: int = 1,
        auto_complete: bool = True,
        **receiver_kwargs: Any
    ) -> ServiceBusProcessor:
        return self._processor(
            lambda: self.get_queue_receiver(queue_name, **receiver_kwargs),
            on_message,
            on_error,
            max_concurrent_calls,
            auto_complete,
        )

    def get_subscription_processor(
        self,
        topic_name: str,
        subscription_name: str,
        on_message: MessageHandler,
        on_error: Optional[ErrorHandler] = None,
        max_concurrent_calls: int = 1,
        auto_complete: bool = True,
        **receiver_kwargs: Any
    ) -> ServiceBusProcessor:
        return self._processor(
            lambda: self.get_subscription_receiver(topic_name, subscription_name, **receiver_kwargs),
            on_message,
            on_error,
            max_concurrent_calls,
            auto_complete,
        )

    def _processor(
        self,
        factory: Callable[[], ServiceBusReceiver],
        on_message: MessageHandler,
        on_error: Optional[ErrorHandler],
        max_concurrent_calls: int,
        auto_complete: bool,
    ) -> ServiceBusProcessor:
        processor = ServiceBusProcessor(
            factory,
            on_message,
            on_error=on_error,
            max_concurrent_calls=max_concurrent_calls,
            auto_complete=auto_complete,
        )
        self._processors.append(processor)
        return processor
