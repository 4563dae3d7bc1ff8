"""
Service Bus Input Validation

Entity-name, message, property, session-id, and SQL filter checks applied
before anything reaches the namespace.

Author: LocalBus Team
Date: 2026-03-04
"""

import re
from typing import Any, Dict, Optional

from .constants import (
    MAX_MESSAGE_SIZE,
    MAX_QUEUE_NAME_LENGTH,
    MAX_RULE_NAME_LENGTH,
    MAX_SUBSCRIPTION_NAME_LENGTH,
    MAX_TOPIC_NAME_LENGTH,
)
from .exceptions import (
    InvalidEntityNameError,
    InvalidOperationError,
    MessageSizeExceededError,
)
from .models import ServiceBusMessage


# ========== Entity Name Validation ==========

class EntityNameValidator:
    """
    Validates entity names against Azure Service Bus naming rules.

    Queue and topic names may contain letters, digits, periods, hyphens,
    underscores and forward slashes (for hierarchical paths). Subscription
    and rule names are limited to 50 characters and may not contain slashes.
    """

    RESERVED_SEGMENTS = {'$deadletterqueue', '$transfer', 'subscriptions', 'rules'}

    QUEUE_TOPIC_PATTERN = re.compile(r'^[a-zA-Z0-9][\w\-./]*[a-zA-Z0-9_]$|^[a-zA-Z0-9]$')
    SUBSCRIPTION_PATTERN = re.compile(r'^[a-zA-Z0-9][\w\-.]*[a-zA-Z0-9_]$|^[a-zA-Z0-9]$')
    RULE_PATTERN = re.compile(r'^[$a-zA-Z0-9][\w\-.]*$')

    @classmethod
    def validate_queue_name(cls, name: str) -> None:
        """
        Validate queue name.

        Raises:
            InvalidEntityNameError: If validation fails
        """
        cls._validate_entity_name(name, "queue", MAX_QUEUE_NAME_LENGTH, cls.QUEUE_TOPIC_PATTERN)

    @classmethod
    def validate_topic_name(cls, name: str) -> None:
        """Validate topic name."""
        cls._validate_entity_name(name, "topic", MAX_TOPIC_NAME_LENGTH, cls.QUEUE_TOPIC_PATTERN)

    @classmethod
    def validate_subscription_name(cls, name: str) -> None:
        """Validate subscription name."""
        cls._validate_entity_name(
            name, "subscription", MAX_SUBSCRIPTION_NAME_LENGTH, cls.SUBSCRIPTION_PATTERN
        )

    @classmethod
    def validate_rule_name(cls, name: str) -> None:
        """Validate rule name; '$Default' is allowed."""
        cls._validate_entity_name(name, "rule", MAX_RULE_NAME_LENGTH, cls.RULE_PATTERN)

    @classmethod
    def _validate_entity_name(
        cls,
        name: str,
        entity_type: str,
        max_length: int,
        pattern: re.Pattern
    ) -> None:
        if not name:
            raise InvalidEntityNameError(entity_type, name, "Name cannot be empty")

        if len(name) > max_length:
            raise InvalidEntityNameError(
                entity_type,
                name,
                f"Name exceeds maximum length of {max_length} characters"
            )

        if not pattern.match(name):
            raise InvalidEntityNameError(
                entity_type,
                name,
                "Name must start and end with alphanumeric characters and contain only "
                "letters, digits, periods, hyphens and underscores"
            )

        if '//' in name:
            raise InvalidEntityNameError(entity_type, name, "Name cannot contain empty path segments")

        for segment in name.split('/'):
            if segment.lower() in cls.RESERVED_SEGMENTS:
                raise InvalidEntityNameError(
                    entity_type, name, f"Name uses reserved segment '{segment}'"
                )


# ========== Message Validation ==========

class MessageValidator:
    """
    Validates message size and application properties.

    Size is the body plus every string-encoded header and property, which is
    close enough to the broker's own accounting for quota purposes.
    """

    MAX_APPLICATION_PROPERTIES = 64
    MAX_PROPERTY_KEY_LENGTH = 128
    MAX_PROPERTY_VALUE_SIZE = 32 * 1024
    SYSTEM_PROPERTY_PREFIX = 'sys.'
    ALLOWED_VALUE_TYPES = (str, int, float, bool, bytes, type(None))

    @classmethod
    def message_size(cls, message: ServiceBusMessage) -> int:
        """Approximate encoded size of a message in bytes."""
        size = len(message.body)
        for header in (
            message.message_id,
            message.session_id,
            message.correlation_id,
            message.content_type,
            message.subject,
            message.to,
            message.reply_to,
            message.reply_to_session_id,
        ):
            if header:
                size += len(header.encode('utf-8'))
        for key, value in message.application_properties.items():
            size += len(key.encode('utf-8'))
            if isinstance(value, bytes):
                size += len(value)
            elif value is not None:
                size += len(str(value).encode('utf-8'))
        return size

    @classmethod
    def validate_message_size(cls, message: ServiceBusMessage, max_size: int = MAX_MESSAGE_SIZE) -> int:
        """
        Validate message size does not exceed limit.

        Returns:
            The computed size in bytes

        Raises:
            MessageSizeExceededError: If message exceeds size limit
        """
        actual_size = cls.message_size(message)
        if actual_size > max_size:
            raise MessageSizeExceededError(actual_size, max_size)
        return actual_size

    @classmethod
    def validate_application_properties(cls, properties: Dict[str, Any]) -> None:
        """
        Validate application properties.

        Raises:
            InvalidOperationError: If validation fails
        """
        if len(properties) > cls.MAX_APPLICATION_PROPERTIES:
            raise InvalidOperationError(
                "validate_application_properties",
                f"Too many properties: {len(properties)} (max: {cls.MAX_APPLICATION_PROPERTIES})"
            )

        for key, value in properties.items():
            if not isinstance(key, str) or not key:
                raise InvalidOperationError(
                    "validate_application_properties",
                    "Property keys must be non-empty strings"
                )

            if len(key) > cls.MAX_PROPERTY_KEY_LENGTH:
                raise InvalidOperationError(
                    "validate_application_properties",
                    f"Property key '{key}' exceeds maximum length of {cls.MAX_PROPERTY_KEY_LENGTH}"
                )

            if key.lower().startswith(cls.SYSTEM_PROPERTY_PREFIX):
                raise InvalidOperationError(
                    "validate_application_properties",
                    f"Property key '{key}' is reserved (sys.* prefix)"
                )

            if not isinstance(value, cls.ALLOWED_VALUE_TYPES):
                raise InvalidOperationError(
                    "validate_application_properties",
                    f"Property '{key}' has invalid type: {type(value).__name__}"
                )

            if isinstance(value, str) and len(value.encode('utf-8')) > cls.MAX_PROPERTY_VALUE_SIZE:
                raise InvalidOperationError(
                    "validate_application_properties",
                    f"Property '{key}' value exceeds maximum size of {cls.MAX_PROPERTY_VALUE_SIZE} bytes"
                )


# ========== Session ID Validation ==========

class SessionIdValidator:
    """Validates session IDs."""

    MAX_SESSION_ID_LENGTH = 128

    @classmethod
    def validate(cls, session_id: Optional[str]) -> None:
        """
        Validate session ID.

        Raises:
            InvalidOperationError: If validation fails
        """
        if session_id is None:
            return

        if not session_id:
            raise InvalidOperationError("validate_session_id", "Session ID cannot be empty")

        if len(session_id) > cls.MAX_SESSION_ID_LENGTH:
            raise InvalidOperationError(
                "validate_session_id",
                f"Session ID exceeds maximum length of {cls.MAX_SESSION_ID_LENGTH} characters"
            )


# ========== SQL Filter Limits ==========

class SqlFilterLimits:
    """Size and nesting limits applied to SQL filter and action text."""

    MAX_FILTER_LENGTH = 1024
    MAX_NESTING_LEVEL = 8

    @classmethod
    def validate(cls, expression: str) -> None:
        """
        Raises:
            InvalidOperationError: If the expression is too long or too deeply nested
        """
        if len(expression) > cls.MAX_FILTER_LENGTH:
            raise InvalidOperationError(
                "sql_filter_validation",
                f"Expression exceeds maximum length of {cls.MAX_FILTER_LENGTH} characters"
            )

        max_depth = 0
        current_depth = 0
        in_string = False
        for char in expression:
            if char == "'":
                in_string = not in_string
            elif in_string:
                continue
            elif char == '(':
                current_depth += 1
                max_depth = max(max_depth, current_depth)
            elif char == ')':
                current_depth -= 1

        if max_depth > cls.MAX_NESTING_LEVEL:
            raise InvalidOperationError(
                "sql_filter_validation",
                f"Expression nesting too deep: {max_depth} levels (max: {cls.MAX_NESTING_LEVEL})"
            )
