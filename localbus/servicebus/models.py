"""
Service Bus Models

Pydantic models for entities, rules, and messages held by the in-memory namespace.

Author: LocalBus Team
Date: 2026-03-02
"""

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .constants import (
    DEFAULT_DUPLICATE_DETECTION_WINDOW,
    DEFAULT_LOCK_DURATION,
    DEFAULT_MAX_DELIVERY_COUNT,
    DEFAULT_MESSAGE_TTL,
    DEFAULT_RULE_NAME,
    MAX_DUPLICATE_DETECTION_WINDOW,
    MAX_MESSAGE_TTL,
    MIN_DUPLICATE_DETECTION_WINDOW,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_seconds(value: Any) -> Any:
    """Accept timedelta durations the way the vendor SDK does."""
    if isinstance(value, timedelta):
        return int(value.total_seconds())
    return value


class EntityStatus(str, Enum):
    """Entity availability states."""
    ACTIVE = "Active"
    DISABLED = "Disabled"
    SEND_DISABLED = "SendDisabled"
    RECEIVE_DISABLED = "ReceiveDisabled"


class ReceiveMode(str, Enum):
    """Message receive modes."""
    PEEK_LOCK = "PeekLock"
    RECEIVE_AND_DELETE = "ReceiveAndDelete"


class ServiceBusSubQueue(str, Enum):
    """Sub-queues attached to every queue and subscription."""
    DEAD_LETTER = "deadletter"
    TRANSFER_DEAD_LETTER = "transferdeadletter"


class MessageState(str, Enum):
    """Broker-side message states."""
    ACTIVE = "Active"
    DEFERRED = "Deferred"
    SCHEDULED = "Scheduled"


# ========== Entity Properties ==========

class _DurationFieldsMixin(BaseModel):
    """Shared handling for properties expressed as durations."""

    @field_validator(
        'lock_duration',
        'default_message_time_to_live',
        'duplicate_detection_history_time_window',
        mode='before',
        check_fields=False,
    )
    @classmethod
    def coerce_durations(cls, v: Any) -> Any:
        return _coerce_seconds(v)

    @field_validator('default_message_time_to_live', check_fields=False)
    @classmethod
    def validate_ttl(cls, v: int) -> int:
        """Validate TTL is positive and at most ~10 years."""
        if v <= 0:
            raise ValueError("default_message_time_to_live must be positive")
        if v > MAX_MESSAGE_TTL:
            raise ValueError(f"default_message_time_to_live cannot exceed {MAX_MESSAGE_TTL} seconds")
        return v


class QueueProperties(_DurationFieldsMixin):
    """Queue properties model for Service Bus queues."""
    model_config = ConfigDict(extra='forbid')

    max_size_in_megabytes: int = Field(default=1024, ge=1, le=81920)
    default_message_time_to_live: int = Field(default=DEFAULT_MESSAGE_TTL)
    lock_duration: int = Field(default=DEFAULT_LOCK_DURATION, ge=5, le=300)
    requires_session: bool = False
    requires_duplicate_detection: bool = False
    duplicate_detection_history_time_window: int = Field(
        default=DEFAULT_DUPLICATE_DETECTION_WINDOW,
        ge=MIN_DUPLICATE_DETECTION_WINDOW,
        le=MAX_DUPLICATE_DETECTION_WINDOW,
    )
    dead_lettering_on_message_expiration: bool = False
    max_delivery_count: int = Field(default=DEFAULT_MAX_DELIVERY_COUNT, ge=1, le=2000)
    forward_to: Optional[str] = None
    forward_dead_lettered_messages_to: Optional[str] = None
    status: EntityStatus = EntityStatus.ACTIVE


class TopicProperties(_DurationFieldsMixin):
    """Properties for a Service Bus topic."""
    model_config = ConfigDict(extra='forbid')

    max_size_in_megabytes: int = Field(default=1024, ge=1, le=81920)
    default_message_time_to_live: int = Field(default=DEFAULT_MESSAGE_TTL)
    requires_duplicate_detection: bool = False
    duplicate_detection_history_time_window: int = Field(
        default=DEFAULT_DUPLICATE_DETECTION_WINDOW,
        ge=MIN_DUPLICATE_DETECTION_WINDOW,
        le=MAX_DUPLICATE_DETECTION_WINDOW,
    )
    status: EntityStatus = EntityStatus.ACTIVE


class SubscriptionProperties(_DurationFieldsMixin):
    """Properties for a Service Bus subscription."""
    model_config = ConfigDict(extra='forbid')

    lock_duration: int = Field(default=DEFAULT_LOCK_DURATION, ge=5, le=300)
    requires_session: bool = False
    default_message_time_to_live: int = Field(default=DEFAULT_MESSAGE_TTL)
    dead_lettering_on_message_expiration: bool = False
    dead_lettering_on_filter_evaluation_exceptions: bool = True
    max_delivery_count: int = Field(default=DEFAULT_MAX_DELIVERY_COUNT, ge=1, le=2000)
    forward_to: Optional[str] = None
    forward_dead_lettered_messages_to: Optional[str] = None
    status: EntityStatus = EntityStatus.ACTIVE


# ========== Rules ==========

class TrueRuleFilter(BaseModel):
    """Filter that matches every message."""
    model_config = ConfigDict(extra='forbid')

    filter_type: Literal["TrueFilter"] = "TrueFilter"


class FalseRuleFilter(BaseModel):
    """Filter that matches no message."""
    model_config = ConfigDict(extra='forbid')

    filter_type: Literal["FalseFilter"] = "FalseFilter"


class SqlRuleFilter(BaseModel):
    """Boolean SQL-92 subset expression over promoted message properties."""
    model_config = ConfigDict(extra='forbid')

    filter_type: Literal["SqlFilter"] = "SqlFilter"
    sql_expression: str
    parameters: Dict[str, Any] = Field(default_factory=dict)

    def __init__(self, sql_expression: Optional[str] = None, **data: Any):
        if sql_expression is not None:
            data["sql_expression"] = sql_expression
        super().__init__(**data)


class CorrelationRuleFilter(BaseModel):
    """Equality-only filter; every field that is set must match."""
    model_config = ConfigDict(extra='forbid')

    filter_type: Literal["CorrelationFilter"] = "CorrelationFilter"
    correlation_id: Optional[str] = None
    message_id: Optional[str] = None
    to: Optional[str] = None
    reply_to: Optional[str] = None
    subject: Optional[str] = None
    session_id: Optional[str] = None
    reply_to_session_id: Optional[str] = None
    content_type: Optional[str] = None
    properties: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode='after')
    def require_a_condition(self) -> 'CorrelationRuleFilter':
        if not self.properties and all(
            getattr(self, name) is None for name in CORRELATION_SYSTEM_FIELDS
        ):
            raise ValueError("CorrelationRuleFilter requires at least one property")
        return self


CORRELATION_SYSTEM_FIELDS = (
    "correlation_id",
    "message_id",
    "to",
    "reply_to",
    "subject",
    "session_id",
    "reply_to_session_id",
    "content_type",
)

RuleFilter = Union[TrueRuleFilter, FalseRuleFilter, SqlRuleFilter, CorrelationRuleFilter]


class SqlRuleAction(BaseModel):
    """SET/REMOVE statements applied to a subscription's copy of a message."""
    model_config = ConfigDict(extra='forbid')

    sql_expression: str
    parameters: Dict[str, Any] = Field(default_factory=dict)

    def __init__(self, sql_expression: Optional[str] = None, **data: Any):
        if sql_expression is not None:
            data["sql_expression"] = sql_expression
        super().__init__(**data)


class RuleProperties(BaseModel):
    """Rule containing a filter and optional action for a subscription."""
    model_config = ConfigDict(extra='forbid')

    name: str = DEFAULT_RULE_NAME
    filter: RuleFilter = Field(default_factory=TrueRuleFilter, discriminator='filter_type')
    action: Optional[SqlRuleAction] = None
    created_at: datetime = Field(default_factory=_utcnow)


# ========== Entity Descriptions ==========

class QueueDescription(BaseModel):
    """A queue with its properties."""
    model_config = ConfigDict(extra='forbid')

    name: str
    properties: QueueProperties = Field(default_factory=QueueProperties)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    accessed_at: datetime = Field(default_factory=_utcnow)


class TopicDescription(BaseModel):
    """A topic with its properties."""
    model_config = ConfigDict(extra='forbid')

    name: str
    properties: TopicProperties = Field(default_factory=TopicProperties)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    accessed_at: datetime = Field(default_factory=_utcnow)


class SubscriptionDescription(BaseModel):
    """A subscription with its properties and rules."""
    model_config = ConfigDict(extra='forbid')

    topic_name: str
    subscription_name: str
    properties: SubscriptionProperties = Field(default_factory=SubscriptionProperties)
    rules: List[RuleProperties] = Field(default_factory=lambda: [RuleProperties()])
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    accessed_at: datetime = Field(default_factory=_utcnow)

    @property
    def path(self) -> str:
        return f"{self.topic_name}/Subscriptions/{self.subscription_name}"


# ========== Runtime Properties ==========

class QueueRuntimeProperties(BaseModel):
    """Message counts for a queue or subscription."""
    model_config = ConfigDict(extra='forbid')

    name: str
    total_message_count: int = Field(default=0, ge=0)
    active_message_count: int = Field(default=0, ge=0)
    dead_letter_message_count: int = Field(default=0, ge=0)
    transfer_dead_letter_message_count: int = Field(default=0, ge=0)
    scheduled_message_count: int = Field(default=0, ge=0)
    size_in_bytes: int = Field(default=0, ge=0)

    def to_dict(self) -> Dict[str, Any]:
        """Convert runtime info to the vendor's PascalCase layout."""
        return {
            "Name": self.name,
            "MessageCount": self.total_message_count,
            "ActiveMessageCount": self.active_message_count,
            "DeadLetterMessageCount": self.dead_letter_message_count,
            "TransferDeadLetterMessageCount": self.transfer_dead_letter_message_count,
            "ScheduledMessageCount": self.scheduled_message_count,
            "SizeInBytes": self.size_in_bytes,
        }


class SubscriptionRuntimeProperties(QueueRuntimeProperties):
    """Message counts for a subscription."""

    topic_name: str = ""


class TopicRuntimeProperties(BaseModel):
    """Runtime information for a topic."""
    model_config = ConfigDict(extra='forbid')

    name: str
    subscription_count: int = 0
    scheduled_message_count: int = 0
    size_in_bytes: int = 0


# ========== Messages ==========

class ServiceBusMessage(BaseModel):
    """
    Outgoing message.

    The body is kept as bytes; ``str(message)`` decodes it as UTF-8.
    """
    model_config = ConfigDict(extra='forbid', validate_assignment=True)

    body: bytes = b""
    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    session_id: Optional[str] = None
    correlation_id: Optional[str] = None
    content_type: Optional[str] = None
    subject: Optional[str] = None
    to: Optional[str] = None
    reply_to: Optional[str] = None
    reply_to_session_id: Optional[str] = None
    time_to_live: Optional[int] = Field(default=None, gt=0)
    scheduled_enqueue_time_utc: Optional[datetime] = None
    application_properties: Dict[str, Any] = Field(default_factory=dict)

    def __init__(self, body: Union[str, bytes, None] = None, **data: Any):
        if body is not None:
            data["body"] = body
        super().__init__(**data)

    @field_validator('body', mode='before')
    @classmethod
    def encode_body(cls, v: Any) -> Any:
        if v is None:
            return b""
        if isinstance(v, str):
            return v.encode('utf-8')
        return v

    @field_validator('time_to_live', mode='before')
    @classmethod
    def coerce_ttl(cls, v: Any) -> Any:
        return _coerce_seconds(v)

    @field_validator('scheduled_enqueue_time_utc')
    @classmethod
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Naive scheduled times are taken as UTC."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    def __str__(self) -> str:
        return self.body.decode('utf-8', errors='replace')


class ServiceBusReceivedMessage(ServiceBusMessage):
    """Message as held by the broker, including system properties."""

    sequence_number: int = 0
    enqueued_time_utc: datetime = Field(default_factory=_utcnow)
    expires_at_utc: Optional[datetime] = None
    delivery_count: int = 0
    lock_token: Optional[str] = None
    locked_until_utc: Optional[datetime] = None
    state: MessageState = MessageState.ACTIVE
    dead_letter_reason: Optional[str] = None
    dead_letter_error_description: Optional[str] = None
    dead_letter_source: Optional[str] = None
    forwarding_hops: int = 0

    @property
    def dead_lettered(self) -> bool:
        return self.dead_letter_reason is not None
