"""
Service Bus Administration Client

Entity management (queues, topics, subscriptions, rules) and runtime
properties. Every call requires the ``Manage`` claim.

Author: LocalBus Team
Date: 2026-03-11
"""

from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel

from localbus.auth.connection_string import parse_connection_string
from localbus.auth.rules import AccessRights

from .backend import ServiceBusBackend
from .connection import ServiceBusConnection, credential_from_connection_string
from .exceptions import InvalidOperationError
from .logging_utils import StructuredLogger
from .models import (
    QueueDescription,
    QueueProperties,
    QueueRuntimeProperties,
    RuleFilter,
    RuleProperties,
    SqlRuleAction,
    SubscriptionDescription,
    SubscriptionProperties,
    SubscriptionRuntimeProperties,
    TopicDescription,
    TopicProperties,
    TopicRuntimeProperties,
)
from .resilience import OperationType, RetryPolicy, retry_async, with_timeout


logger = StructuredLogger('localbus.servicebus.management')

P = TypeVar('P', bound=BaseModel)


def _build_properties(model: Type[P], base: Optional[P], overrides: Dict[str, Any]) -> P:
    """Apply keyword overrides on top of ``base`` (or the defaults), validated."""
    data = base.model_dump() if base is not None else {}
    data.update(overrides)
    return model(**data)


class ServiceBusAdministrationClient:
    """
    Administration client for one namespace.

    Properties can be passed as a model (``properties=QueueProperties(...)``)
    or as keyword arguments named after the model fields
    (``lock_duration=30, requires_session=True``).
    """

    def __init__(
        self,
        fully_qualified_namespace: str,
        credential: object = None,
        backend: Optional[ServiceBusBackend] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self._connection = ServiceBusConnection(
            fully_qualified_namespace,
            credential,
            backend=backend,
            retry_policy=retry_policy,
        )
        self._backend = self._connection.backend
        self._closed = False

    @classmethod
    def from_connection_string(cls, conn_str: str, **kwargs: Any) -> 'ServiceBusAdministrationClient':
        props = parse_connection_string(conn_str)
        return cls(props.fully_qualified_namespace, credential_from_connection_string(props), **kwargs)

    @property
    def fully_qualified_namespace(self) -> str:
        return self._connection.fully_qualified_namespace

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        """Mark the client closed; later calls raise InvalidOperationError."""
        self._closed = True

    async def __aenter__(self) -> 'ServiceBusAdministrationClient':
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @with_timeout(OperationType.ADMIN)
    async def _invoke(self, func, *args: Any, **kwargs: Any) -> Any:
        if self._closed:
            raise InvalidOperationError(func.__name__, "The administration client is closed")
        self._connection.authorize(AccessRights.MANAGE)
        return await retry_async(func, *args, policy=self._connection.retry_policy, **kwargs)

    # ========== Queues ==========

    async def create_queue(
        self,
        queue_name: str,
        properties: Optional[QueueProperties] = None,
        **kwargs: Any
    ) -> QueueDescription:
        properties = _build_properties(QueueProperties, properties, kwargs)
        return await self._invoke(self._backend.create_queue, queue_name, properties)

    async def get_queue(self, queue_name: str) -> QueueDescription:
        return await self._invoke(self._backend.get_queue, queue_name)

    async def update_queue(
        self,
        queue_name: str,
        properties: Optional[QueueProperties] = None,
        **kwargs: Any
    ) -> QueueDescription:
        """Update selected properties; unspecified ones keep their current value."""
        if properties is None:
            current = await self.get_queue(queue_name)
            properties = current.properties
        properties = _build_properties(QueueProperties, properties, kwargs)
        return await self._invoke(self._backend.update_queue, queue_name, properties)

    async def delete_queue(self, queue_name: str) -> None:
        await self._invoke(self._backend.delete_queue, queue_name)

    async def list_queues(self) -> List[QueueDescription]:
        return await self._invoke(self._backend.list_queues)

    async def get_queue_runtime_properties(self, queue_name: str) -> QueueRuntimeProperties:
        return await self._invoke(self._backend.get_queue_runtime_properties, queue_name)

    # ========== Topics ==========

    async def create_topic(
        self,
        topic_name: str,
        properties: Optional[TopicProperties] = None,
        **kwargs: Any
    ) -> TopicDescription:
        properties = _build_properties(TopicProperties, properties, kwargs)
        return await self._invoke(self._backend.create_topic, topic_name, properties)

    async def get_topic(self, topic_name: str) -> TopicDescription:
        return await self._invoke(self._backend.get_topic, topic_name)

    async def update_topic(
        self,
        topic_name: str,
        properties: Optional[TopicProperties] = None,
        **kwargs: Any
    ) -> TopicDescription:
        if properties is None:
            current = await self.get_topic(topic_name)
            properties = current.properties
        properties = _build_properties(TopicProperties, properties, kwargs)
        return await self._invoke(self._backend.update_topic, topic_name, properties)

    async def delete_topic(self, topic_name: str) -> None:
        await self._invoke(self._backend.delete_topic, topic_name)

    async def list_topics(self) -> List[TopicDescription]:
        return await self._invoke(self._backend.list_topics)

    async def get_topic_runtime_properties(self, topic_name: str) -> TopicRuntimeProperties:
        return await self._invoke(self._backend.get_topic_runtime_properties, topic_name)

    # ========== Subscriptions ==========

    async def create_subscription(
        self,
        topic_name: str,
        subscription_name: str,
        properties: Optional[SubscriptionProperties] = None,
        default_rule: Optional[RuleProperties] = None,
        **kwargs: Any
    ) -> SubscriptionDescription:
        properties = _build_properties(SubscriptionProperties, properties, kwargs)
        return await self._invoke(
            self._backend.create_subscription,
            topic_name,
            subscription_name,
            properties,
            default_rule,
        )

    async def get_subscription(self, topic_name: str, subscription_name: str) -> SubscriptionDescription:
        return await self._invoke(self._backend.get_subscription, topic_name, subscription_name)

    async def update_subscription(
        self,
        topic_name: str,
        subscription_name: str,
        properties: Optional[SubscriptionProperties] = None,
        **kwargs: Any
    ) -> SubscriptionDescription:
        if properties is None:
            current = await self.get_subscription(topic_name, subscription_name)
            properties = current.properties
        properties = _build_properties(SubscriptionProperties, properties, kwargs)
        return await self._invoke(
            self._backend.update_subscription,
            topic_name,
            subscription_name,
            properties,
        )

    async def delete_subscription(self, topic_name: str, subscription_name: str) -> None:
        await self._invoke(self._backend.delete_subscription, topic_name, subscription_name)

    async def list_subscriptions(self, topic_name: str) -> List[SubscriptionDescription]:
        return await self._invoke(self._backend.list_subscriptions, topic_name)

    async def get_subscription_runtime_properties(
        self,
        topic_name: str,
        subscription_name: str,
    ) -> SubscriptionRuntimeProperties:
        return await self._invoke(
            self._backend.get_subscription_runtime_properties,
            topic_name,
            subscription_name,
        )

    # ========== Rules ==========

    async def create_rule(
        self,
        topic_name: str,
        subscription_name: str,
        rule_name: str,
        filter: Optional[RuleFilter] = None,
        action: Optional[SqlRuleAction] = None,
    ) -> RuleProperties:
        return await self._invoke(
            self._backend.create_rule,
            topic_name,
            subscription_name,
            rule_name,
            filter,
            action,
        )

    async def get_rule(self, topic_name: str, subscription_name: str, rule_name: str) -> RuleProperties:
        return await self._invoke(self._backend.get_rule, topic_name, subscription_name, rule_name)

    async def update_rule(self, topic_name: str, subscription_name: str, rule: RuleProperties) -> RuleProperties:
        return await self._invoke(self._backend.update_rule, topic_name, subscription_name, rule)

    async def delete_rule(self, topic_name: str, subscription_name: str, rule_name: str) -> None:
        await self._invoke(self._backend.delete_rule, topic_name, subscription_name, rule_name)

    async def list_rules(self, topic_name: str, subscription_name: str) -> List[RuleProperties]:
        return await self._invoke(self._backend.list_rules, topic_name, subscription_name)
