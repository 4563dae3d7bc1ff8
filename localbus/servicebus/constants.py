"""
Service Bus Constants

Centralized limits, defaults, and well-known names for the in-memory namespace.

Author: LocalBus Team
Date: 2026-03-02
"""

# Namespace defaults
DEFAULT_NAMESPACE = "localbus"
NAMESPACE_SUFFIX = ".servicebus.windows.net"
ROOT_KEY_NAME = "RootManageSharedAccessKey"
CONNECTION_STRING_ENV_VAR = "SERVICEBUS_CONNECTION_STRING"
DEVELOPMENT_SHARED_ACCESS_KEY = "SAS_KEY_VALUE"

# Timeout defaults (seconds)
DEFAULT_LOCK_DURATION = 60
DEFAULT_MESSAGE_TTL = 1209600  # 14 days
DEFAULT_DUPLICATE_DETECTION_WINDOW = 600  # 10 minutes
MIN_DUPLICATE_DETECTION_WINDOW = 20
MAX_DUPLICATE_DETECTION_WINDOW = 604800  # 7 days
MAX_MESSAGE_TTL = 315360000  # ~10 years
DEFAULT_MAX_DELIVERY_COUNT = 10
DEFAULT_RECEIVE_POLL_INTERVAL = 0.05

# Size limits
MAX_MESSAGE_SIZE = 256 * 1024  # 256 KB
MAX_QUEUE_NAME_LENGTH = 260
MAX_TOPIC_NAME_LENGTH = 260
MAX_SUBSCRIPTION_NAME_LENGTH = 50
MAX_RULE_NAME_LENGTH = 50

# Quota limits
MAX_QUEUES = 100
MAX_TOPICS = 100
MAX_SUBSCRIPTIONS_PER_TOPIC = 2000
MAX_RULES_PER_SUBSCRIPTION = 100

# Auto-forwarding chains longer than this end in the transfer dead-letter queue
MAX_FORWARDING_HOPS = 4

# Rule names
DEFAULT_RULE_NAME = "$Default"

# Sub-queue path suffixes
DEAD_LETTER_QUEUE_SUFFIX = "/$DeadLetterQueue"
TRANSFER_DEAD_LETTER_QUEUE_SUFFIX = "/$Transfer/$DeadLetterQueue"

# Application properties stamped on dead-lettered messages
DEAD_LETTER_REASON_HEADER = "DeadLetterReason"
DEAD_LETTER_DESCRIPTION_HEADER = "DeadLetterErrorDescription"
