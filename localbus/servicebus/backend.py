"""
Service Bus Backend.

In-memory namespace holding queues, topics, subscriptions, rules and
messages with broker-compatible behaviour: peek-lock and receive-and-delete,
lock expiry and delivery counting, time-to-live, scheduled and deferred
messages, duplicate detection, sessions, dead-letter and transfer
dead-letter sub-queues, and auto-forwarding.

Every mutation happens under one ``asyncio.Lock`` per namespace. Time comes
from an injectable clock so tests can move it forward.

Author: LocalBus Team
Date: 2026-03-08
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from localbus.auth.connection_string import fully_qualified_namespace_for
from localbus.auth.rules import AuthorizationRuleSet

from .constants import (
    DEAD_LETTER_DESCRIPTION_HEADER,
    DEAD_LETTER_QUEUE_SUFFIX,
    DEAD_LETTER_REASON_HEADER,
    DEFAULT_NAMESPACE,
    DEFAULT_RULE_NAME,
    MAX_FORWARDING_HOPS,
    MAX_QUEUES,
    MAX_RULES_PER_SUBSCRIPTION,
    MAX_SUBSCRIPTIONS_PER_TOPIC,
    MAX_TOPICS,
    NAMESPACE_SUFFIX,
    TRANSFER_DEAD_LETTER_QUEUE_SUFFIX,
)
from .exceptions import (
    DeadLetterReason,
    EntityNotFoundError,
    FilterError,
    InvalidOperationError,
    MessageLockLostError,
    MessageNotFoundError,
    MessagingEntityDisabledError,
    NoSessionAvailableError,
    QueueAlreadyExistsError,
    QueueNotFoundError,
    QuotaExceededError,
    RuleAlreadyExistsError,
    RuleNotFoundError,
    ServiceBusConnectionError,
    SessionCannotBeLockedError,
    SessionLockLostError,
    SessionRequiredError,
    SubscriptionAlreadyExistsError,
    SubscriptionNotFoundError,
    TopicAlreadyExistsError,
    TopicNotFoundError,
)
from .filters import apply_rule_action, evaluate_rule_filter, validate_rule
from .logging_utils import StructuredLogger, track_operation_time
from .metrics import ServiceBusMetrics
from .models import (
    EntityStatus,
    MessageState,
    QueueDescription,
    QueueProperties,
    QueueRuntimeProperties,
    ReceiveMode,
    RuleFilter,
    RuleProperties,
    ServiceBusMessage,
    ServiceBusReceivedMessage,
    ServiceBusSubQueue,
    SqlRuleAction,
    SubscriptionDescription,
    SubscriptionProperties,
    SubscriptionRuntimeProperties,
    TopicDescription,
    TopicProperties,
    TopicRuntimeProperties,
    TrueRuleFilter,
)
from .validation import EntityNameValidator, MessageValidator, SessionIdValidator


Clock = Callable[[], datetime]

SUBSCRIPTIONS_SEGMENT = "Subscriptions"

_OUTGOING_FIELDS = frozenset(ServiceBusMessage.model_fields)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def subscription_path(topic_name: str, subscription_name: str) -> str:
    """Entity path of a subscription: ``<topic>/Subscriptions/<subscription>``."""
    return f"{topic_name}/{SUBSCRIPTIONS_SEGMENT}/{subscription_name}"


def parse_entity_path(entity_path: str) -> Tuple[str, Optional[str]]:
    """
    Split an entity path into (queue_or_topic, subscription).

    ``orders`` -> ("orders", None);
    ``events/Subscriptions/audit`` -> ("events", "audit").
    """
    parts = entity_path.split('/')
    for index in range(1, len(parts) - 1):
        if parts[index].lower() == SUBSCRIPTIONS_SEGMENT.lower():
            return '/'.join(parts[:index]), '/'.join(parts[index + 1:])
    return entity_path, None


@dataclass
class SessionLock:
    """Lock held on a session by one receiver."""
    session_id: str
    lock_token: str
    locked_until_utc: datetime


@dataclass
class _SubQueue:
    """Messages of one (sub-)queue keyed by sequence number, plus lock index."""
    messages: Dict[int, ServiceBusReceivedMessage] = field(default_factory=dict)
    locks: Dict[str, int] = field(default_factory=dict)

    def add(self, message: ServiceBusReceivedMessage) -> None:
        self.messages[message.sequence_number] = message

    def remove(self, sequence_number: int) -> ServiceBusReceivedMessage:
        message = self.messages.pop(sequence_number)
        if message.lock_token:
            self.locks.pop(message.lock_token, None)
        return message

    def ordered(self) -> List[ServiceBusReceivedMessage]:
        return [self.messages[seq] for seq in sorted(self.messages)]

    def clear_lock(self, message: ServiceBusReceivedMessage) -> None:
        if message.lock_token:
            self.locks.pop(message.lock_token, None)
        message.lock_token = None
        message.locked_until_utc = None

    def __len__(self) -> int:
        return len(self.messages)


@dataclass
class _SessionState:
    session_id: str
    state: Optional[bytes] = None
    lock_token: Optional[str] = None
    locked_until: Optional[datetime] = None

    def is_locked(self, now: datetime) -> bool:
        return self.lock_token is not None and self.locked_until is not None and self.locked_until > now


@dataclass
class _MessageStore:
    """A queue or a subscription: the entities messages are received from."""
    entity_type: str
    description: Union[QueueDescription, SubscriptionDescription]
    main: _SubQueue = field(default_factory=_SubQueue)
    dead_letter: _SubQueue = field(default_factory=_SubQueue)
    transfer_dead_letter: _SubQueue = field(default_factory=_SubQueue)
    scheduled: Dict[int, ServiceBusReceivedMessage] = field(default_factory=dict)
    sessions: Dict[str, _SessionState] = field(default_factory=dict)
    sequence: int = 0
    duplicates: Dict[str, datetime] = field(default_factory=dict)

    @property
    def properties(self) -> Union[QueueProperties, SubscriptionProperties]:
        return self.description.properties

    @property
    def path(self) -> str:
        if isinstance(self.description, SubscriptionDescription):
            return self.description.path
        return self.description.name

    @property
    def topic_name(self) -> Optional[str]:
        if isinstance(self.description, SubscriptionDescription):
            return self.description.topic_name
        return None

    def sub_queue(self, kind: Optional[ServiceBusSubQueue]) -> _SubQueue:
        if kind is None:
            return self.main
        if ServiceBusSubQueue(kind) == ServiceBusSubQueue.DEAD_LETTER:
            return self.dead_letter
        return self.transfer_dead_letter

    def sub_queue_path(self, kind: Optional[ServiceBusSubQueue]) -> str:
        if kind is None:
            return self.path
        if ServiceBusSubQueue(kind) == ServiceBusSubQueue.DEAD_LETTER:
            return self.path + DEAD_LETTER_QUEUE_SUFFIX
        return self.path + TRANSFER_DEAD_LETTER_QUEUE_SUFFIX


@dataclass
class _TopicState:
    description: TopicDescription
    subscriptions: Dict[str, _MessageStore] = field(default_factory=dict)
    scheduled: Dict[int, ServiceBusReceivedMessage] = field(default_factory=dict)
    sequence: int = 0
    duplicates: Dict[str, datetime] = field(default_factory=dict)


class ServiceBusBackend:
    """
    In-memory Service Bus namespace.

    Entities are addressed by name: a queue name, a topic name, or a
    subscription path (``<topic>/Subscriptions/<name>``). Receive-side
    operations accept an optional ``sub_queue`` to address the dead-letter
    or transfer dead-letter sub-queue.

    Attributes:
        namespace: Short namespace name
        authorization: Shared access rules checked by clients
        metrics: Prometheus metrics for this namespace
    """

    def __init__(
        self,
        namespace: str = DEFAULT_NAMESPACE,
        clock: Optional[Clock] = None,
        authorization: Optional[AuthorizationRuleSet] = None,
        metrics: Optional[ServiceBusMetrics] = None,
        max_queues: int = MAX_QUEUES,
        max_topics: int = MAX_TOPICS,
    ):
        self.namespace = namespace
        self.authorization = authorization or AuthorizationRuleSet()
        self.metrics = metrics or ServiceBusMetrics()

        self._clock: Clock = clock or _utcnow
        self._queues: Dict[str, _MessageStore] = {}
        self._topics: Dict[str, _TopicState] = {}
        self._lock = asyncio.Lock()
        self._max_queues = max_queues
        self._max_topics = max_topics

        self._logger = StructuredLogger('localbus.servicebus.backend')

    @property
    def fully_qualified_namespace(self) -> str:
        return fully_qualified_namespace_for(self.namespace)

    def now(self) -> datetime:
        """Current time on the namespace clock."""
        return self._clock()

    def _now(self) -> datetime:
        return self._clock()

    # ========== Queue Management ==========

    async def create_queue(
        self,
        name: str,
        properties: Optional[QueueProperties] = None,
    ) -> QueueDescription:
        """
        Create a new queue.

        Raises:
            QueueAlreadyExistsError: Queue already exists
            QuotaExceededError: Maximum queue count exceeded
            InvalidEntityNameError: Queue name is invalid
            InvalidOperationError: Queue forwards to itself
        """
        EntityNameValidator.validate_queue_name(name)
        properties = properties or QueueProperties()
        self._check_forwarding_targets(name, properties)

        async with self._lock:
            if name in self._queues:
                raise QueueAlreadyExistsError(name)
            if name in self._topics:
                raise InvalidOperationError("create_queue", f"A topic named '{name}' already exists")
            if len(self._queues) >= self._max_queues:
                raise QuotaExceededError("queue_count", len(self._queues), self._max_queues)

            now = self._now()
            description = QueueDescription(
                name=name,
                properties=properties.model_copy(deep=True),
                created_at=now,
                updated_at=now,
                accessed_at=now,
            )
            self._queues[name] = _MessageStore(entity_type="queue", description=description)
            self.metrics.update_entity_count("queue", len(self._queues))

            self._logger.log_operation(
                operation="queue_created",
                entity_type="queue",
                entity_name=name,
                lock_duration=properties.lock_duration,
                max_delivery_count=properties.max_delivery_count,
                requires_session=properties.requires_session,
            )
            return description.model_copy(deep=True)

    async def get_queue(self, name: str) -> QueueDescription:
        async with self._lock:
            return self._get_queue_store(name).description.model_copy(deep=True)

    async def list_queues(self) -> List[QueueDescription]:
        """All queues sorted by name."""
        async with self._lock:
            return [
                self._queues[name].description.model_copy(deep=True)
                for name in sorted(self._queues)
            ]

    async def update_queue(self, name: str, properties: QueueProperties) -> QueueDescription:
        """
        Replace a queue's properties.

        Raises:
            QueueNotFoundError: If the queue does not exist
            InvalidOperationError: If ``requires_session`` would change
        """
        self._check_forwarding_targets(name, properties)
        async with self._lock:
            store = self._get_queue_store(name)
            if properties.requires_session != store.properties.requires_session:
                raise InvalidOperationError("update_queue", "requires_session cannot be changed")
            store.description.properties = properties.model_copy(deep=True)
            store.description.updated_at = self._now()
            self._logger.log_operation(operation="queue_updated", entity_type="queue", entity_name=name)
            return store.description.model_copy(deep=True)

    async def delete_queue(self, name: str) -> None:
        async with self._lock:
            self._get_queue_store(name)
            del self._queues[name]
            self.authorization.remove_entity(name)
            self.metrics.update_entity_count("queue", len(self._queues))
            self._logger.log_operation(operation="queue_deleted", entity_type="queue", entity_name=name)

    # ========== Topic Management ==========

    async def create_topic(
        self,
        name: str,
        properties: Optional[TopicProperties] = None,
    ) -> TopicDescription:
        """
        Create a new topic.

        Raises:
            TopicAlreadyExistsError: Topic already exists
            QuotaExceededError: Maximum topic count exceeded
            InvalidEntityNameError: Topic name is invalid
        """
        EntityNameValidator.validate_topic_name(name)
        properties = properties or TopicProperties()

        async with self._lock:
            if name in self._topics:
                raise TopicAlreadyExistsError(name)
            if name in self._queues:
                raise InvalidOperationError("create_topic", f"A queue named '{name}' already exists")
            if len(self._topics) >= self._max_topics:
                raise QuotaExceededError("topic_count", len(self._topics), self._max_topics)

            now = self._now()
            description = TopicDescription(
                name=name,
                properties=properties.model_copy(deep=True),
                created_at=now,
                updated_at=now,
                accessed_at=now,
            )
            self._topics[name] = _TopicState(description=description)
            self.metrics.update_entity_count("topic", len(self._topics))
            self._logger.log_operation(operation="topic_created", entity_type="topic", entity_name=name)
            return description.model_copy(deep=True)

    async def get_topic(self, name: str) -> TopicDescription:
        async with self._lock:
            return self._get_topic(name).description.model_copy(deep=True)

    async def list_topics(self) -> List[TopicDescription]:
        async with self._lock:
            return [
                self._topics[name].description.model_copy(deep=True)
                for name in sorted(self._topics)
            ]

    async def update_topic(self, name: str, properties: TopicProperties) -> TopicDescription:
        async with self._lock:
            topic = self._get_topic(name)
            topic.description.properties = properties.model_copy(deep=True)
            topic.description.updated_at = self._now()
            self._logger.log_operation(operation="topic_updated", entity_type="topic", entity_name=name)
            return topic.description.model_copy(deep=True)

    async def delete_topic(self, name: str) -> None:
        """Delete a topic together with its subscriptions."""
        async with self._lock:
            topic = self._get_topic(name)
            subscription_count = len(topic.subscriptions)
            del self._topics[name]
            self.authorization.remove_entity(name)
            self.metrics.update_entity_count("topic", len(self._topics))
            self._logger.log_operation(
                operation="topic_deleted",
                entity_type="topic",
                entity_name=name,
                subscription_count=subscription_count,
            )

    # ========== Subscription Management ==========

    async def create_subscription(
        self,
        topic_name: str,
        subscription_name: str,
        properties: Optional[SubscriptionProperties] = None,
        default_rule: Optional[RuleProperties] = None,
    ) -> SubscriptionDescription:
        """
        Create a subscription on a topic.

        The subscription starts with a single rule: ``default_rule`` when
        given, otherwise ``$Default`` with a filter that matches everything.

        Raises:
            TopicNotFoundError: If the topic does not exist
            SubscriptionAlreadyExistsError: If the subscription exists
            QuotaExceededError: Maximum subscriptions per topic exceeded
            FilterSyntaxError: If the default rule's SQL does not parse
        """
        EntityNameValidator.validate_subscription_name(subscription_name)
        properties = properties or SubscriptionProperties()
        self._check_forwarding_targets(subscription_path(topic_name, subscription_name), properties)

        rule = default_rule or RuleProperties(name=DEFAULT_RULE_NAME, filter=TrueRuleFilter())
        EntityNameValidator.validate_rule_name(rule.name)
        validate_rule(rule.filter, rule.action)

        async with self._lock:
            topic = self._get_topic(topic_name)
            if subscription_name in topic.subscriptions:
                raise SubscriptionAlreadyExistsError(topic_name, subscription_name)
            if len(topic.subscriptions) >= MAX_SUBSCRIPTIONS_PER_TOPIC:
                raise QuotaExceededError(
                    "subscription_count",
                    len(topic.subscriptions),
                    MAX_SUBSCRIPTIONS_PER_TOPIC,
                    topic_name,
                )

            now = self._now()
            description = SubscriptionDescription(
                topic_name=topic_name,
                subscription_name=subscription_name,
                properties=properties.model_copy(deep=True),
                rules=[rule.model_copy(update={"created_at": now}, deep=True)],
                created_at=now,
                updated_at=now,
                accessed_at=now,
            )
            topic.subscriptions[subscription_name] = _MessageStore(
                entity_type="subscription",
                description=description,
            )
            self.metrics.update_entity_count(
                "subscription",
                sum(len(t.subscriptions) for t in self._topics.values()),
            )
            self._logger.log_operation(
                operation="subscription_created",
                entity_type="subscription",
                entity_name=description.path,
                default_rule=rule.name,
            )
            return description.model_copy(deep=True)

    async def get_subscription(self, topic_name: str, subscription_name: str) -> SubscriptionDescription:
        async with self._lock:
            return self._get_subscription_store(topic_name, subscription_name).description.model_copy(deep=True)

    async def list_subscriptions(self, topic_name: str) -> List[SubscriptionDescription]:
        async with self._lock:
            topic = self._get_topic(topic_name)
            return [
                topic.subscriptions[name].description.model_copy(deep=True)
                for name in sorted(topic.subscriptions)
            ]

    async def update_subscription(
        self,
        topic_name: str,
        subscription_name: str,
        properties: SubscriptionProperties,
    ) -> SubscriptionDescription:
        self._check_forwarding_targets(subscription_path(topic_name, subscription_name), properties)
        async with self._lock:
            store = self._get_subscription_store(topic_name, subscription_name)
            if properties.requires_session != store.properties.requires_session:
                raise InvalidOperationError("update_subscription", "requires_session cannot be changed")
            store.description.properties = properties.model_copy(deep=True)
            store.description.updated_at = self._now()
            self._logger.log_operation(
                operation="subscription_updated",
                entity_type="subscription",
                entity_name=store.path,
            )
            return store.description.model_copy(deep=True)

    async def delete_subscription(self, topic_name: str, subscription_name: str) -> None:
        async with self._lock:
            topic = self._get_topic(topic_name)
            if subscription_name not in topic.subscriptions:
                raise SubscriptionNotFoundError(topic_name, subscription_name)
            del topic.subscriptions[subscription_name]
            self.metrics.update_entity_count(
                "subscription",
                sum(len(t.subscriptions) for t in self._topics.values()),
            )
            self._logger.log_operation(
                operation="subscription_deleted",
                entity_type="subscription",
                entity_name=subscription_path(topic_name, subscription_name),
            )

    # ========== Rule Management ==========

    async def create_rule(
        self,
        topic_name: str,
        subscription_name: str,
        rule_name: str,
        rule_filter: Optional[RuleFilter] = None,
        action: Optional[SqlRuleAction] = None,
    ) -> RuleProperties:
        """
        Add a rule to a subscription.

        Raises:
            SubscriptionNotFoundError: If the subscription does not exist
            RuleAlreadyExistsError: If a rule with that name exists
            QuotaExceededError: Maximum rules per subscription exceeded
            FilterSyntaxError: If the filter or action SQL does not parse
        """
        EntityNameValidator.validate_rule_name(rule_name)
        rule_filter = rule_filter or TrueRuleFilter()
        validate_rule(rule_filter, action)

        async with self._lock:
            store = self._get_subscription_store(topic_name, subscription_name)
            rules = store.description.rules
            if any(rule.name == rule_name for rule in rules):
                raise RuleAlreadyExistsError(rule_name, subscription_name)
            if len(rules) >= MAX_RULES_PER_SUBSCRIPTION:
                raise QuotaExceededError(
                    "rule_count", len(rules), MAX_RULES_PER_SUBSCRIPTION, store.path
                )

            rule = RuleProperties(name=rule_name, filter=rule_filter, action=action, created_at=self._now())
            rules.append(rule)
            store.description.updated_at = self._now()
            self._logger.log_operation(
                operation="rule_created",
                entity_type="rule",
                entity_name=f"{store.path}/Rules/{rule_name}",
                filter_type=rule_filter.filter_type,
            )
            return rule.model_copy(deep=True)

    async def get_rule(self, topic_name: str, subscription_name: str, rule_name: str) -> RuleProperties:
        async with self._lock:
            store = self._get_subscription_store(topic_name, subscription_name)
            return self._find_rule(store, rule_name).model_copy(deep=True)

    async def list_rules(self, topic_name: str, subscription_name: str) -> List[RuleProperties]:
        """Rules in evaluation order."""
        async with self._lock:
            store = self._get_subscription_store(topic_name, subscription_name)
            return [rule.model_copy(deep=True) for rule in store.description.rules]

    async def update_rule(
        self,
        topic_name: str,
        subscription_name: str,
        rule: RuleProperties,
    ) -> RuleProperties:
        """Replace the filter and action of an existing rule."""
        validate_rule(rule.filter, rule.action)
        async with self._lock:
            store = self._get_subscription_store(topic_name, subscription_name)
            existing = self._find_rule(store, rule.name)
            index = store.description.rules.index(existing)
            updated = rule.model_copy(update={"created_at": existing.created_at}, deep=True)
            store.description.rules[index] = updated
            store.description.updated_at = self._now()
            self._logger.log_operation(
                operation="rule_updated",
                entity_type="rule",
                entity_name=f"{store.path}/Rules/{rule.name}",
            )
            return updated.model_copy(deep=True)

    async def delete_rule(self, topic_name: str, subscription_name: str, rule_name: str) -> None:
        """
        Remove a rule. A subscription left without rules receives nothing.

        Raises:
            RuleNotFoundError: If the rule does not exist
        """
        async with self._lock:
            store = self._get_subscription_store(topic_name, subscription_name)
            rule = self._find_rule(store, rule_name)
            store.description.rules.remove(rule)
            store.description.updated_at = self._now()
            self._logger.log_operation(
                operation="rule_deleted",
                entity_type="rule",
                entity_name=f"{store.path}/Rules/{rule_name}",
            )

    # ========== Runtime Properties ==========

    async def get_queue_runtime_properties(self, name: str) -> QueueRuntimeProperties:
        async with self._lock:
            store = self._get_queue_store(name)
            self._maintain(store, self._now())
            return QueueRuntimeProperties(name=name, **self._counts(store))

    async def get_subscription_runtime_properties(
        self,
        topic_name: str,
        subscription_name: str,
    ) -> SubscriptionRuntimeProperties:
        async with self._lock:
            store = self._get_subscription_store(topic_name, subscription_name)
            self._maintain(store, self._now())
            return SubscriptionRuntimeProperties(
                name=subscription_name,
                topic_name=topic_name,
                **self._counts(store),
            )

    async def get_topic_runtime_properties(self, name: str) -> TopicRuntimeProperties:
        async with self._lock:
            topic = self._get_topic(name)
            now = self._now()
            self._promote_topic_scheduled(topic, now)
            return TopicRuntimeProperties(
                name=name,
                subscription_count=len(topic.subscriptions),
                scheduled_message_count=len(topic.scheduled),
                size_in_bytes=self._topic_size(topic),
            )

    async def reset(self) -> None:
        """Remove every entity and message; authorization rules are kept."""
        async with self._lock:
            self._queues.clear()
            self._topics.clear()
            for entity_type in ("queue", "topic", "subscription"):
                self.metrics.update_entity_count(entity_type, 0)
            self._logger.info("Namespace reset", namespace=self.namespace)

    # ========== Sending ==========

    @track_operation_time(StructuredLogger('localbus.servicebus.backend'), "send")
    async def send(
        self,
        entity_name: str,
        messages: Union[ServiceBusMessage, Sequence[ServiceBusMessage]],
    ) -> List[int]:
        """
        Send messages to a queue or topic.

        Messages whose ``scheduled_enqueue_time_utc`` lies in the future are
        held until due. With duplicate detection on, a message whose
        ``message_id`` was already accepted inside the detection window is
        dropped without error.

        Returns:
            Sequence numbers assigned to the accepted messages

        Raises:
            EntityNotFoundError: No queue or topic with that name
            MessagingEntityDisabledError: Entity does not accept sends
            SessionRequiredError: Session entity and a message lacks ``session_id``
            MessageSizeExceededError: A message exceeds the size limit
            QuotaExceededError: Entity would exceed its maximum size
        """
        batch = self._validated_batch(messages)
        try:
            async with self._lock:
                return self._send_locked(entity_name, batch, self._now())
        except Exception as e:
            self.metrics.track_error("send", type(e).__name__)
            raise

    async def schedule(
        self,
        entity_name: str,
        messages: Union[ServiceBusMessage, Sequence[ServiceBusMessage]],
        schedule_time_utc: datetime,
    ) -> List[int]:
        """
        Schedule messages for later delivery.

        Returns:
            Sequence numbers usable with :meth:`cancel_scheduled`
        """
        if schedule_time_utc.tzinfo is None:
            schedule_time_utc = schedule_time_utc.replace(tzinfo=timezone.utc)

        batch = []
        for message in self._validated_batch(messages):
            scheduled = message.model_copy(deep=True)
            scheduled.scheduled_enqueue_time_utc = schedule_time_utc
            batch.append(scheduled)

        async with self._lock:
            return self._send_locked(entity_name, batch, self._now())

    async def cancel_scheduled(self, entity_name: str, sequence_numbers: Iterable[int]) -> None:
        """
        Cancel scheduled messages.

        Raises:
            MessageNotFoundError: A sequence number is not a pending scheduled message
        """
        sequence_numbers = list(sequence_numbers)
        async with self._lock:
            if entity_name in self._queues:
                pending = self._queues[entity_name].scheduled
            elif entity_name in self._topics:
                pending = self._topics[entity_name].scheduled
            else:
                raise EntityNotFoundError("entity", entity_name)

            missing = [seq for seq in sequence_numbers if seq not in pending]
            if missing:
                raise MessageNotFoundError(missing[0], entity_name)
            for seq in sequence_numbers:
                message = pending.pop(seq)
                self._logger.log_message_operation(
                    operation="scheduled_message_cancelled",
                    entity_name=entity_name,
                    message_id=message.message_id,
                    sequence_number=seq,
                )

    def _validated_batch(
        self,
        messages: Union[ServiceBusMessage, Sequence[ServiceBusMessage]],
    ) -> List[ServiceBusMessage]:
        if isinstance(messages, ServiceBusMessage):
            messages = [messages]
        batch = list(messages)
        for message in batch:
            MessageValidator.validate_message_size(message)
            MessageValidator.validate_application_properties(message.application_properties)
            SessionIdValidator.validate(message.session_id)
        return batch

    def _send_locked(self, entity_name: str, batch: List[ServiceBusMessage], now: datetime) -> List[int]:
        if entity_name in self._queues:
            store = self._queues[entity_name]
            self._check_status(store.path, store.properties.status, "send")
            if store.properties.requires_session and any(m.session_id is None for m in batch):
                raise SessionRequiredError(store.path)
            self._check_size_quota(
                store.path,
                self._store_size(store),
                sum(MessageValidator.message_size(m) for m in batch),
                store.properties.max_size_in_megabytes,
            )
            store.description.accessed_at = now

            sequence_numbers = []
            for message in batch:
                seq = self._accept_into_queue(store, self._to_broker_message(message), now)
                if seq is not None:
                    sequence_numbers.append(seq)
            return sequence_numbers

        if entity_name in self._topics:
            topic = self._topics[entity_name]
            self._check_status(entity_name, topic.description.properties.status, "send")
            if any(m.session_id is None for m in batch) and any(
                sub.properties.requires_session for sub in topic.subscriptions.values()
            ):
                raise SessionRequiredError(entity_name)
            self._check_size_quota(
                entity_name,
                self._topic_size(topic),
                sum(MessageValidator.message_size(m) for m in batch),
                topic.description.properties.max_size_in_megabytes,
            )
            topic.description.accessed_at = now

            sequence_numbers = []
            for message in batch:
                seq = self._publish_to_topic(topic, self._to_broker_message(message), now)
                if seq is not None:
                    sequence_numbers.append(seq)
            return sequence_numbers

        raise EntityNotFoundError("entity", entity_name)

    @staticmethod
    def _to_broker_message(message: ServiceBusMessage) -> ServiceBusReceivedMessage:
        data = message.model_dump(include=_OUTGOING_FIELDS)
        return ServiceBusReceivedMessage(**data)

    # ========== Routing ==========

    def _accept_into_queue(
        self,
        store: _MessageStore,
        message: ServiceBusReceivedMessage,
        now: datetime,
    ) -> Optional[int]:
        """Stamp broker properties and hold or enqueue; None when dropped as duplicate."""
        properties = store.properties
        if properties.requires_duplicate_detection and self._is_duplicate(
            store.duplicates,
            properties.duplicate_detection_history_time_window,
            message.message_id,
            now,
        ):
            self._drop_duplicate(store.entity_type, store.path, message)
            return None

        store.sequence += 1
        message.sequence_number = store.sequence
        self._stamp_times(message, properties.default_message_time_to_live, now)
        size = MessageValidator.message_size(message)
        self.metrics.track_message_sent(store.entity_type, store.path, size)

        if message.scheduled_enqueue_time_utc and message.scheduled_enqueue_time_utc > now:
            message.state = MessageState.SCHEDULED
            store.scheduled[message.sequence_number] = message
            self._logger.log_message_operation(
                operation="message_scheduled",
                entity_name=store.path,
                message_id=message.message_id,
                sequence_number=message.sequence_number,
                scheduled_enqueue_time_utc=message.scheduled_enqueue_time_utc.isoformat(),
            )
            return message.sequence_number

        self._logger.log_message_operation(
            operation="message_sent",
            entity_name=store.path,
            message_id=message.message_id,
            sequence_number=message.sequence_number,
            message_size=size,
            session_id=message.session_id,
        )
        self._enqueue(store, message, now)
        return message.sequence_number

    def _publish_to_topic(
        self,
        topic: _TopicState,
        message: ServiceBusReceivedMessage,
        now: datetime,
    ) -> Optional[int]:
        properties = topic.description.properties
        name = topic.description.name
        if properties.requires_duplicate_detection and self._is_duplicate(
            topic.duplicates,
            properties.duplicate_detection_history_time_window,
            message.message_id,
            now,
        ):
            self._drop_duplicate("topic", name, message)
            return None

        topic.sequence += 1
        message.sequence_number = topic.sequence
        self._stamp_times(message, properties.default_message_time_to_live, now)
        self.metrics.track_message_sent("topic", name, MessageValidator.message_size(message))

        if message.scheduled_enqueue_time_utc and message.scheduled_enqueue_time_utc > now:
            message.state = MessageState.SCHEDULED
            topic.scheduled[message.sequence_number] = message
            return message.sequence_number

        self._fan_out(topic, message, now)
        return message.sequence_number

    def _fan_out(self, topic: _TopicState, message: ServiceBusReceivedMessage, now: datetime) -> None:
        """
        Deliver one copy to every subscription with at least one matching rule.

        Filters are evaluated against the published message; the actions of
        every matching rule are then applied, in rule order, to that
        subscription's copy.
        """
        delivered = 0
        for name in sorted(topic.subscriptions):
            store = topic.subscriptions[name]
            if store.properties.status == EntityStatus.DISABLED:
                continue

            started = time.perf_counter()
            try:
                matched = []
                for rule in store.description.rules:
                    result = evaluate_rule_filter(rule.filter, message)
                    self._logger.log_filter_evaluation(
                        rule_name=rule.name,
                        filter_result=result,
                        message_id=message.message_id,
                        subscription_name=store.path,
                    )
                    if result:
                        matched.append(rule)
                if not matched:
                    continue

                copy = self._copy_for_subscription(store, message, now)
                for rule in matched:
                    if rule.action is not None:
                        apply_rule_action(rule.action, copy)
            except FilterError as e:
                self._handle_filter_failure(store, message, e, now)
                continue
            finally:
                self.metrics.track_filter_evaluation(time.perf_counter() - started)

            self._enqueue(store, copy, now)
            delivered += 1

        self._logger.log_message_operation(
            operation="message_published",
            entity_name=topic.description.name,
            message_id=message.message_id,
            sequence_number=message.sequence_number,
            subscriptions_matched=delivered,
        )

    def _handle_filter_failure(
        self,
        store: _MessageStore,
        message: ServiceBusReceivedMessage,
        error: FilterError,
        now: datetime,
    ) -> None:
        self._logger.log_error(
            operation="filter_evaluation",
            error_type=type(error).__name__,
            error_message=str(error),
            entity_name=store.path,
            message_id=message.message_id,
        )
        if store.properties.dead_lettering_on_filter_evaluation_exceptions:
            copy = self._copy_for_subscription(store, message, now)
            self._dead_letter(
                store,
                copy,
                DeadLetterReason.FILTER_EVALUATION_EXCEPTION,
                str(error),
                now,
            )

    def _copy_for_subscription(
        self,
        store: _MessageStore,
        message: ServiceBusReceivedMessage,
        now: datetime,
    ) -> ServiceBusReceivedMessage:
        copy = message.model_copy(deep=True)
        subscription_ttl = timedelta(seconds=store.properties.default_message_time_to_live)
        subscription_expiry = copy.enqueued_time_utc + subscription_ttl
        if copy.expires_at_utc is None or subscription_expiry < copy.expires_at_utc:
            copy.expires_at_utc = subscription_expiry
        return copy

    def _enqueue(self, store: _MessageStore, message: ServiceBusReceivedMessage, now: datetime) -> None:
        """Make a message available on ``store`` or pass it along ``forward_to``."""
        if store.properties.forward_to:
            self._forward(store, message, store.properties.forward_to, now)
            return
        message.state = MessageState.ACTIVE
        message.lock_token = None
        message.locked_until_utc = None
        store.main.add(message)
        self._update_depth(store)

    def _forward(
        self,
        source: _MessageStore,
        message: ServiceBusReceivedMessage,
        target_name: str,
        now: datetime,
    ) -> None:
        """
        Auto-forward a message to a queue or topic.

        More than MAX_FORWARDING_HOPS hops, or a missing target, lands the
        message in the source's transfer dead-letter sub-queue.
        """
        hops = message.forwarding_hops + 1
        if hops > MAX_FORWARDING_HOPS:
            self._transfer_dead_letter(
                source,
                message,
                DeadLetterReason.MAX_TRANSFER_HOP_COUNT_EXCEEDED,
                f"Message exceeded {MAX_FORWARDING_HOPS} forwarding hops",
            )
            return

        if target_name not in self._queues and target_name not in self._topics:
            self._transfer_dead_letter(
                source,
                message,
                DeadLetterReason.FORWARD_TO_ENTITY_NOT_FOUND,
                f"Forwarding target '{target_name}' does not exist",
            )
            return

        if message.session_id is None and self._requires_session(target_name):
            self._transfer_dead_letter(
                source,
                message,
                DeadLetterReason.SESSION_ID_REQUIRED,
                f"Forwarding target '{target_name}' requires a session id",
            )
            return

        forwarded = message.model_copy(deep=True)
        forwarded.forwarding_hops = hops
        forwarded.delivery_count = 0
        forwarded.lock_token = None
        forwarded.locked_until_utc = None
        forwarded.state = MessageState.ACTIVE
        forwarded.scheduled_enqueue_time_utc = None

        self._logger.log_message_operation(
            operation="message_forwarded",
            entity_name=source.path,
            message_id=message.message_id,
            forward_to=target_name,
            hops=hops,
        )

        if target_name in self._queues:
            self._accept_into_queue(self._queues[target_name], forwarded, now)
        else:
            self._publish_to_topic(self._topics[target_name], forwarded, now)

    def _requires_session(self, entity_name: str) -> bool:
        if entity_name in self._queues:
            return self._queues[entity_name].properties.requires_session
        return any(
            sub.properties.requires_session for sub in self._topics[entity_name].subscriptions.values()
        )

    def _dead_letter(
        self,
        store: _MessageStore,
        message: ServiceBusReceivedMessage,
        reason: str,
        description: Optional[str],
        now: datetime,
    ) -> None:
        """Move a detached message to the dead-letter sub-queue (or its forward target)."""
        message.lock_token = None
        message.locked_until_utc = None
        message.state = MessageState.ACTIVE
        message.dead_letter_reason = reason
        message.dead_letter_error_description = description
        properties = dict(message.application_properties)
        properties[DEAD_LETTER_REASON_HEADER] = reason
        if description:
            properties[DEAD_LETTER_DESCRIPTION_HEADER] = description
        message.application_properties = properties

        self.metrics.track_message_deadlettered(store.entity_type, store.path, reason)
        self._logger.log_dead_letter(
            entity_name=store.path,
            message_id=message.message_id,
            reason=reason,
            sequence_number=message.sequence_number,
            delivery_count=message.delivery_count,
        )

        target = store.properties.forward_dead_lettered_messages_to
        if target:
            message.dead_letter_source = store.path
            self._forward(store, message, target, now)
            return
        store.dead_letter.add(message)
        self._update_depth(store)

    def _transfer_dead_letter(
        self,
        store: _MessageStore,
        message: ServiceBusReceivedMessage,
        reason: str,
        description: str,
    ) -> None:
        message.lock_token = None
        message.locked_until_utc = None
        message.state = MessageState.ACTIVE
        message.dead_letter_reason = reason
        message.dead_letter_error_description = description
        properties = dict(message.application_properties)
        properties[DEAD_LETTER_REASON_HEADER] = reason
        properties[DEAD_LETTER_DESCRIPTION_HEADER] = description
        message.application_properties = properties

        store.transfer_dead_letter.add(message)
        self.metrics.track_message_deadlettered(store.entity_type, store.path, reason)
        self._logger.log_dead_letter(
            entity_name=store.sub_queue_path(ServiceBusSubQueue.TRANSFER_DEAD_LETTER),
            message_id=message.message_id,
            reason=reason,
        )

    # ========== Receiving ==========

    @track_operation_time(StructuredLogger('localbus.servicebus.backend'), "receive")
    async def receive(
        self,
        entity_path: str,
        max_count: int = 1,
        mode: ReceiveMode = ReceiveMode.PEEK_LOCK,
        sub_queue: Optional[ServiceBusSubQueue] = None,
        session_lock_token: Optional[str] = None,
    ) -> List[ServiceBusReceivedMessage]:
        """
        Receive up to ``max_count`` available messages in sequence order.

        PeekLock locks each message and increments its delivery count;
        ReceiveAndDelete removes it. Returns an empty list when nothing is
        available.

        Raises:
            EntityNotFoundError: Unknown queue or subscription
            MessagingEntityDisabledError: Entity does not allow receives
            SessionRequiredError: Session entity without a session lock
            SessionLockLostError: The session lock expired or was released
        """
        if max_count < 1:
            raise InvalidOperationError("receive", "max_count must be at least 1")

        try:
            async with self._lock:
                now = self._now()
                store = self._resolve_store(entity_path)
                self._check_receive_status(store)
                self._maintain(store, now)

                queue = store.sub_queue(sub_queue)
                session = self._receive_session(store, sub_queue, session_lock_token, now)
                store.description.accessed_at = now

                received = []
                for message in queue.ordered():
                    if len(received) >= max_count:
                        break
                    if message.state != MessageState.ACTIVE or message.lock_token is not None:
                        continue
                    if session is not None and message.session_id != session.session_id:
                        continue
                    received.append(self._hand_out(store, queue, message, mode, session, now, sub_queue))

                if received:
                    self.metrics.track_message_received(store.entity_type, store.path, len(received))
                    self._update_depth(store)
                return received
        except Exception as e:
            self.metrics.track_error("receive", type(e).__name__)
            raise

    async def receive_deferred(
        self,
        entity_path: str,
        sequence_numbers: Iterable[int],
        mode: ReceiveMode = ReceiveMode.PEEK_LOCK,
        sub_queue: Optional[ServiceBusSubQueue] = None,
        session_lock_token: Optional[str] = None,
    ) -> List[ServiceBusReceivedMessage]:
        """
        Receive deferred messages by sequence number.

        Raises:
            MessageNotFoundError: A number does not name a deferred message
                (in this session, for session receivers)
        """
        sequence_numbers = list(sequence_numbers)
        async with self._lock:
            now = self._now()
            store = self._resolve_store(entity_path)
            self._check_receive_status(store)
            self._maintain(store, now)

            queue = store.sub_queue(sub_queue)
            session = self._receive_session(store, sub_queue, session_lock_token, now)

            targets = []
            for seq in sequence_numbers:
                message = queue.messages.get(seq)
                if (
                    message is None
                    or message.state != MessageState.DEFERRED
                    or message.lock_token is not None
                    or (session is not None and message.session_id != session.session_id)
                ):
                    raise MessageNotFoundError(seq, store.sub_queue_path(sub_queue))
                targets.append(message)

            received = [
                self._hand_out(store, queue, message, mode, session, now, sub_queue)
                for message in targets
            ]
            if received:
                self.metrics.track_message_received(store.entity_type, store.path, len(received))
                self._update_depth(store)
            return received

    async def peek(
        self,
        entity_path: str,
        max_count: int = 1,
        from_sequence_number: int = 0,
        sub_queue: Optional[ServiceBusSubQueue] = None,
        session_lock_token: Optional[str] = None,
    ) -> List[ServiceBusReceivedMessage]:
        """
        Browse messages without locking them.

        Active (locked or not), deferred and scheduled messages are returned
        in sequence order starting at ``from_sequence_number``. On a session
        entity without ``session_lock_token`` every session is browsed.
        """
        async with self._lock:
            now = self._now()
            store = self._resolve_store(entity_path)
            self._maintain(store, now)
            session = None
            if session_lock_token is not None:
                session = self._receive_session(store, sub_queue, session_lock_token, now)

            candidates = list(store.sub_queue(sub_queue).messages.values())
            if sub_queue is None:
                candidates.extend(store.scheduled.values())
            candidates.sort(key=lambda m: m.sequence_number)

            peeked = []
            for message in candidates:
                if len(peeked) >= max_count:
                    break
                if message.sequence_number < from_sequence_number:
                    continue
                if session is not None and message.session_id != session.session_id:
                    continue
                peeked.append(message.model_copy(deep=True))
            return peeked

    def _hand_out(
        self,
        store: _MessageStore,
        queue: _SubQueue,
        message: ServiceBusReceivedMessage,
        mode: ReceiveMode,
        session: Optional[_SessionState],
        now: datetime,
        sub_queue: Optional[ServiceBusSubQueue],
    ) -> ServiceBusReceivedMessage:
        message.delivery_count += 1

        if ReceiveMode(mode) == ReceiveMode.RECEIVE_AND_DELETE:
            queue.remove(message.sequence_number)
            operation = "message_received_and_deleted"
        else:
            token = str(uuid.uuid4())
            message.lock_token = token
            if session is not None:
                message.locked_until_utc = session.locked_until
            else:
                message.locked_until_utc = now + timedelta(seconds=store.properties.lock_duration)
            queue.locks[token] = message.sequence_number
            operation = "message_received"

        self._logger.log_message_operation(
            operation=operation,
            entity_name=store.sub_queue_path(sub_queue),
            message_id=message.message_id,
            sequence_number=message.sequence_number,
            delivery_count=message.delivery_count,
            session_id=message.session_id,
        )
        return message.model_copy(deep=True)

    # ========== Settlement ==========

    async def complete(
        self,
        entity_path: str,
        lock_token: str,
        sub_queue: Optional[ServiceBusSubQueue] = None,
    ) -> None:
        """
        Remove a locked message.

        Raises:
            MessageLockLostError: The lock expired or the token is unknown
            SessionLockLostError: The owning session's lock expired
        """
        async with self._lock:
            now = self._now()
            store, queue, message = self._locked_message(entity_path, lock_token, sub_queue, now)
            queue.remove(message.sequence_number)
            self.metrics.track_message_completed(store.entity_type, store.path)
            self._update_depth(store)
            self._logger.log_message_operation(
                operation="message_completed",
                entity_name=store.sub_queue_path(sub_queue),
                message_id=message.message_id,
                sequence_number=message.sequence_number,
            )

    async def abandon(
        self,
        entity_path: str,
        lock_token: str,
        properties_to_modify: Optional[Dict[str, object]] = None,
        sub_queue: Optional[ServiceBusSubQueue] = None,
    ) -> None:
        """
        Release a lock so the message can be redelivered.

        On the main queue a message that has reached ``max_delivery_count``
        is dead-lettered with ``MaxDeliveryCountExceeded`` instead.
        """
        if properties_to_modify:
            MessageValidator.validate_application_properties(properties_to_modify)

        async with self._lock:
            now = self._now()
            store, queue, message = self._locked_message(entity_path, lock_token, sub_queue, now)
            if properties_to_modify:
                properties = dict(message.application_properties)
                properties.update(properties_to_modify)
                message.application_properties = properties

            self.metrics.track_message_abandoned(store.entity_type, store.path)
            self._logger.log_message_operation(
                operation="message_abandoned",
                entity_name=store.sub_queue_path(sub_queue),
                message_id=message.message_id,
                sequence_number=message.sequence_number,
                delivery_count=message.delivery_count,
            )
            self._release_lock(store, queue, message, now)
            self._update_depth(store)

    async def defer(
        self,
        entity_path: str,
        lock_token: str,
        sub_queue: Optional[ServiceBusSubQueue] = None,
    ) -> None:
        """Set a locked message aside; only :meth:`receive_deferred` returns it."""
        async with self._lock:
            now = self._now()
            store, queue, message = self._locked_message(entity_path, lock_token, sub_queue, now)
            queue.clear_lock(message)
            message.state = MessageState.DEFERRED
            self.metrics.track_message_deferred(store.entity_type, store.path)
            self._update_depth(store)
            self._logger.log_message_operation(
                operation="message_deferred",
                entity_name=store.sub_queue_path(sub_queue),
                message_id=message.message_id,
                sequence_number=message.sequence_number,
            )

    async def dead_letter(
        self,
        entity_path: str,
        lock_token: str,
        reason: Optional[str] = None,
        error_description: Optional[str] = None,
        sub_queue: Optional[ServiceBusSubQueue] = None,
    ) -> None:
        """
        Move a locked message to the dead-letter sub-queue.

        Raises:
            InvalidOperationError: The message is already in a dead-letter sub-queue
        """
        if sub_queue is not None:
            raise InvalidOperationError(
                "dead_letter",
                "Messages in a dead-letter sub-queue cannot be dead-lettered again",
            )
        async with self._lock:
            now = self._now()
            store, queue, message = self._locked_message(entity_path, lock_token, sub_queue, now)
            queue.remove(message.sequence_number)
            self._dead_letter(store, message, reason or "", error_description, now)
            self._update_depth(store)

    async def renew_lock(
        self,
        entity_path: str,
        lock_token: str,
        sub_queue: Optional[ServiceBusSubQueue] = None,
    ) -> datetime:
        """
        Extend a message lock by the entity's lock duration.

        Raises:
            InvalidOperationError: Session messages are renewed through their session
        """
        async with self._lock:
            now = self._now()
            store, queue, message = self._locked_message(entity_path, lock_token, sub_queue, now)
            if self._is_session_message(store, message, sub_queue):
                raise InvalidOperationError(
                    "renew_lock",
                    "Locks on session messages are renewed with the session lock",
                )
            message.locked_until_utc = now + timedelta(seconds=store.properties.lock_duration)
            self._logger.log_message_operation(
                operation="message_lock_renewed",
                entity_name=store.sub_queue_path(sub_queue),
                message_id=message.message_id,
                locked_until_utc=message.locked_until_utc.isoformat(),
            )
            return message.locked_until_utc

    def _locked_message(
        self,
        entity_path: str,
        lock_token: str,
        sub_queue: Optional[ServiceBusSubQueue],
        now: datetime,
    ) -> Tuple[_MessageStore, _SubQueue, ServiceBusReceivedMessage]:
        """Resolve a live lock token or raise the matching lock-lost error."""
        store = self._resolve_store(entity_path)
        self._check_receive_status(store)
        queue = store.sub_queue(sub_queue)

        seq = queue.locks.get(lock_token) if lock_token else None
        if seq is None or seq not in queue.messages:
            raise MessageLockLostError(store.sub_queue_path(sub_queue), lock_token)
        message = queue.messages[seq]

        if self._is_session_message(store, message, sub_queue):
            session = store.sessions.get(message.session_id)
            if session is None or not session.is_locked(now):
                if session is not None:
                    self._release_session(store, session, now)
                raise SessionLockLostError(message.session_id, store.path)
        elif message.locked_until_utc is None or message.locked_until_utc <= now:
            self._release_lock(store, queue, message, now)
            raise MessageLockLostError(store.sub_queue_path(sub_queue), lock_token)

        return store, queue, message

    def _release_lock(
        self,
        store: _MessageStore,
        queue: _SubQueue,
        message: ServiceBusReceivedMessage,
        now: datetime,
    ) -> None:
        """Unlock a message; dead-letter it when its deliveries are used up."""
        queue.clear_lock(message)
        if queue is store.main and message.delivery_count >= store.properties.max_delivery_count:
            queue.remove(message.sequence_number)
            self._dead_letter(
                store,
                message,
                DeadLetterReason.MAX_DELIVERY_COUNT_EXCEEDED,
                f"Message could not be consumed after {message.delivery_count} delivery attempts",
                now,
            )

    @staticmethod
    def _is_session_message(
        store: _MessageStore,
        message: ServiceBusReceivedMessage,
        sub_queue: Optional[ServiceBusSubQueue],
    ) -> bool:
        return sub_queue is None and store.properties.requires_session and message.session_id is not None

    # ========== Sessions ==========

    async def accept_session(self, entity_path: str, session_id: Optional[str] = None) -> SessionLock:
        """
        Lock a session for exclusive receipt.

        With ``session_id`` the named session is locked (even if it has no
        messages yet). Without it, the session owning the oldest available
        message is chosen.

        Raises:
            InvalidOperationError: The entity is not session-enabled
            SessionCannotBeLockedError: The named session is locked by another receiver
            NoSessionAvailableError: No unlocked session has available messages
        """
        SessionIdValidator.validate(session_id)
        async with self._lock:
            now = self._now()
            store = self._resolve_store(entity_path)
            self._check_receive_status(store)
            if not store.properties.requires_session:
                raise InvalidOperationError("accept_session", f"'{store.path}' is not session-enabled")
            self._maintain(store, now)

            if session_id is None:
                session_id = self._next_available_session(store, now)
                if session_id is None:
                    raise NoSessionAvailableError(store.path)

            session = store.sessions.setdefault(session_id, _SessionState(session_id=session_id))
            if session.is_locked(now):
                raise SessionCannotBeLockedError(session_id, store.path)

            session.lock_token = str(uuid.uuid4())
            session.locked_until = now + timedelta(seconds=store.properties.lock_duration)
            self._logger.log_session_operation(
                operation="session_accepted",
                entity_name=store.path,
                session_id=session_id,
            )
            return SessionLock(session_id, session.lock_token, session.locked_until)

    async def renew_session_lock(self, entity_path: str, session_lock_token: str) -> datetime:
        async with self._lock:
            now = self._now()
            store = self._resolve_store(entity_path)
            session = self._session_for_token(store, session_lock_token, now)
            session.locked_until = now + timedelta(seconds=store.properties.lock_duration)
            for message in store.main.messages.values():
                if message.session_id == session.session_id and message.lock_token is not None:
                    message.locked_until_utc = session.locked_until
            self._logger.log_session_operation(
                operation="session_lock_renewed",
                entity_name=store.path,
                session_id=session.session_id,
            )
            return session.locked_until

    async def get_session_state(self, entity_path: str, session_lock_token: str) -> Optional[bytes]:
        async with self._lock:
            store = self._resolve_store(entity_path)
            return self._session_for_token(store, session_lock_token, self._now()).state

    async def set_session_state(
        self,
        entity_path: str,
        session_lock_token: str,
        state: Union[str, bytes, None],
    ) -> None:
        if isinstance(state, str):
            state = state.encode('utf-8')
        async with self._lock:
            store = self._resolve_store(entity_path)
            session = self._session_for_token(store, session_lock_token, self._now())
            session.state = state
            self._logger.log_session_operation(
                operation="session_state_set",
                entity_name=store.path,
                session_id=session.session_id,
            )

    async def release_session(self, entity_path: str, session_lock_token: str) -> None:
        """Release a session lock; its locked messages become available again."""
        async with self._lock:
            store = self._resolve_store(entity_path)
            for session in store.sessions.values():
                if session.lock_token == session_lock_token:
                    self._release_session(store, session, self._now())
                    self._logger.log_session_operation(
                        operation="session_released",
                        entity_name=store.path,
                        session_id=session.session_id,
                    )
                    return

    def _session_for_token(self, store: _MessageStore, token: Optional[str], now: datetime) -> _SessionState:
        for session in store.sessions.values():
            if token is not None and session.lock_token == token:
                if not session.is_locked(now):
                    self._release_session(store, session, now)
                    raise SessionLockLostError(session.session_id, store.path)
                return session
        raise SessionLockLostError("<unknown>", store.path)

    def _receive_session(
        self,
        store: _MessageStore,
        sub_queue: Optional[ServiceBusSubQueue],
        session_lock_token: Optional[str],
        now: datetime,
    ) -> Optional[_SessionState]:
        if sub_queue is not None or not store.properties.requires_session:
            if session_lock_token is not None:
                raise InvalidOperationError("receive", f"'{store.sub_queue_path(sub_queue)}' has no sessions")
            return None
        if session_lock_token is None:
            raise SessionRequiredError(store.path)
        return self._session_for_token(store, session_lock_token, now)

    def _release_session(self, store: _MessageStore, session: _SessionState, now: datetime) -> None:
        session.lock_token = None
        session.locked_until = None
        for message in store.main.ordered():
            if message.session_id == session.session_id and message.lock_token is not None:
                self._release_lock(store, store.main, message, now)
        self._update_depth(store)

    def _next_available_session(self, store: _MessageStore, now: datetime) -> Optional[str]:
        for message in store.main.ordered():
            if message.state != MessageState.ACTIVE or message.lock_token is not None:
                continue
            if message.session_id is None:
                continue
            session = store.sessions.get(message.session_id)
            if session is None or not session.is_locked(now):
                return message.session_id
        return None

    # ========== Housekeeping ==========

    def _maintain(self, store: _MessageStore, now: datetime) -> None:
        """Promote due scheduled messages, reclaim expired locks, expire old messages."""
        if store.topic_name is not None and store.topic_name in self._topics:
            self._promote_topic_scheduled(self._topics[store.topic_name], now)

        for seq in sorted(store.scheduled):
            message = store.scheduled[seq]
            if message.scheduled_enqueue_time_utc <= now:
                del store.scheduled[seq]
                self._activate_scheduled(message, store.properties.default_message_time_to_live)
                self._enqueue(store, message, now)

        for session in list(store.sessions.values()):
            if session.lock_token is not None and not session.is_locked(now):
                self._logger.log_session_operation(
                    operation="session_lock_expired",
                    entity_name=store.path,
                    session_id=session.session_id,
                )
                self._release_session(store, session, now)

        for queue in (store.main, store.dead_letter, store.transfer_dead_letter):
            for message in queue.ordered():
                if (
                    message.lock_token is not None
                    and message.locked_until_utc is not None
                    and message.locked_until_utc <= now
                ):
                    self._logger.log_message_operation(
                        operation="message_lock_expired",
                        entity_name=store.path,
                        message_id=message.message_id,
                        delivery_count=message.delivery_count,
                    )
                    self._release_lock(store, queue, message, now)

        # Dead-letter sub-queues never expire
        for message in store.main.ordered():
            if message.lock_token is not None or message.expires_at_utc is None:
                continue
            if message.expires_at_utc <= now:
                store.main.remove(message.sequence_number)
                if store.properties.dead_lettering_on_message_expiration:
                    self._dead_letter(
                        store,
                        message,
                        DeadLetterReason.TTL_EXPIRED,
                        "Message time to live expired",
                        now,
                    )
                else:
                    self._logger.log_message_operation(
                        operation="message_expired",
                        entity_name=store.path,
                        message_id=message.message_id,
                        sequence_number=message.sequence_number,
                    )
        self._update_depth(store)

    def _promote_topic_scheduled(self, topic: _TopicState, now: datetime) -> None:
        for seq in sorted(topic.scheduled):
            message = topic.scheduled[seq]
            if message.scheduled_enqueue_time_utc <= now:
                del topic.scheduled[seq]
                self._activate_scheduled(message, topic.description.properties.default_message_time_to_live)
                self._fan_out(topic, message, now)

    def _activate_scheduled(self, message: ServiceBusReceivedMessage, default_ttl: int) -> None:
        """A scheduled message counts as enqueued at its scheduled time."""
        message.state = MessageState.ACTIVE
        self._stamp_times(message, default_ttl, message.scheduled_enqueue_time_utc)

    @staticmethod
    def _stamp_times(message: ServiceBusReceivedMessage, default_ttl: int, enqueued: datetime) -> None:
        ttl = min(message.time_to_live or default_ttl, default_ttl)
        message.enqueued_time_utc = enqueued
        message.expires_at_utc = enqueued + timedelta(seconds=ttl)

    def _is_duplicate(
        self,
        history: Dict[str, datetime],
        window_seconds: int,
        message_id: str,
        now: datetime,
    ) -> bool:
        cutoff = now - timedelta(seconds=window_seconds)
        for seen_id in [key for key, seen in history.items() if seen <= cutoff]:
            del history[seen_id]
        if message_id in history:
            return True
        history[message_id] = now
        return False

    def _drop_duplicate(self, entity_type: str, entity_name: str, message: ServiceBusReceivedMessage) -> None:
        self.metrics.track_duplicate_dropped(entity_type, entity_name)
        self._logger.log_message_operation(
            operation="duplicate_dropped",
            entity_name=entity_name,
            message_id=message.message_id,
        )

    # ========== Lookups and Checks ==========

    def _get_queue_store(self, name: str) -> _MessageStore:
        store = self._queues.get(name)
        if store is None:
            raise QueueNotFoundError(name)
        return store

    def _get_topic(self, name: str) -> _TopicState:
        topic = self._topics.get(name)
        if topic is None:
            raise TopicNotFoundError(name)
        return topic

    def _get_subscription_store(self, topic_name: str, subscription_name: str) -> _MessageStore:
        topic = self._get_topic(topic_name)
        store = topic.subscriptions.get(subscription_name)
        if store is None:
            raise SubscriptionNotFoundError(topic_name, subscription_name)
        return store

    def _resolve_store(self, entity_path: str) -> _MessageStore:
        entity_name, subscription_name = parse_entity_path(entity_path)
        if subscription_name is None:
            return self._get_queue_store(entity_name)
        return self._get_subscription_store(entity_name, subscription_name)

    @staticmethod
    def _find_rule(store: _MessageStore, rule_name: str) -> RuleProperties:
        for rule in store.description.rules:
            if rule.name == rule_name:
                return rule
        raise RuleNotFoundError(rule_name, store.description.subscription_name)

    @staticmethod
    def _check_status(entity_name: str, status: EntityStatus, operation: str) -> None:
        blocked = {
            "send": (EntityStatus.DISABLED, EntityStatus.SEND_DISABLED),
            "receive": (EntityStatus.DISABLED, EntityStatus.RECEIVE_DISABLED),
        }[operation]
        if status in blocked:
            raise MessagingEntityDisabledError(entity_name, EntityStatus(status).value, operation)

    def _check_receive_status(self, store: _MessageStore) -> None:
        self._check_status(store.path, store.properties.status, "receive")
        if store.topic_name is not None:
            topic = self._topics[store.topic_name]
            if topic.description.properties.status == EntityStatus.DISABLED:
                raise MessagingEntityDisabledError(store.topic_name, EntityStatus.DISABLED.value, "receive")

    @staticmethod
    def _check_forwarding_targets(
        entity_name: str,
        properties: Union[QueueProperties, SubscriptionProperties],
    ) -> None:
        for target in (properties.forward_to, properties.forward_dead_lettered_messages_to):
            if target is not None and target == entity_name:
                raise InvalidOperationError("auto_forward", f"'{entity_name}' cannot forward to itself")

    @staticmethod
    def _check_size_quota(entity_name: str, current: int, incoming: int, max_megabytes: int) -> None:
        max_bytes = max_megabytes * 1024 * 1024
        if current + incoming > max_bytes:
            raise QuotaExceededError("entity_size_bytes", current + incoming, max_bytes, entity_name)

    # ========== Accounting ==========

    @staticmethod
    def _store_size(store: _MessageStore) -> int:
        messages = list(store.main.messages.values()) + list(store.scheduled.values()) \
            + list(store.dead_letter.messages.values()) + list(store.transfer_dead_letter.messages.values())
        return sum(MessageValidator.message_size(m) for m in messages)

    def _topic_size(self, topic: _TopicState) -> int:
        scheduled = sum(MessageValidator.message_size(m) for m in topic.scheduled.values())
        return scheduled + sum(self._store_size(store) for store in topic.subscriptions.values())

    def _counts(self, store: _MessageStore) -> Dict[str, int]:
        active = sum(1 for m in store.main.messages.values() if m.state == MessageState.ACTIVE)
        total = len(store.main) + len(store.scheduled) + len(store.dead_letter) + len(store.transfer_dead_letter)
        return {
            "total_message_count": total,
            "active_message_count": active,
            "dead_letter_message_count": len(store.dead_letter),
            "transfer_dead_letter_message_count": len(store.transfer_dead_letter),
            "scheduled_message_count": len(store.scheduled),
            "size_in_bytes": self._store_size(store),
        }

    def _update_depth(self, store: _MessageStore) -> None:
        active = sum(1 for m in store.main.messages.values() if m.state == MessageState.ACTIVE)
        self.metrics.update_depth(store.entity_type, store.path, active, len(store.main.locks))


# ========== Namespace Registry ==========

_registry: Dict[str, ServiceBusBackend] = {}


def register_backend(backend: ServiceBusBackend) -> ServiceBusBackend:
    """Make a namespace reachable by its fully qualified name."""
    _registry[backend.fully_qualified_namespace.lower()] = backend
    return backend


def get_backend(fully_qualified_namespace: str, create: bool = True) -> ServiceBusBackend:
    """
    Resolve a namespace by host name, creating it on first use.

    Raises:
        ServiceBusConnectionError: Unknown namespace and ``create`` is False
    """
    key = fully_qualified_namespace.lower()
    backend = _registry.get(key)
    if backend is None:
        if not create:
            raise ServiceBusConnectionError(f"Namespace '{fully_qualified_namespace}' is not reachable")
        namespace = key[:-len(NAMESPACE_SUFFIX)] if key.endswith(NAMESPACE_SUFFIX) else key
        backend = ServiceBusBackend(namespace=namespace)
        _registry[key] = backend
    return backend


def unregister_backend(fully_qualified_namespace: str) -> None:
    _registry.pop(fully_qualified_namespace.lower(), None)


def clear_registry() -> None:
    _registry.clear()
